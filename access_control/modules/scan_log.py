"""
Scan Log Writer Module - Library Access Control

This module durably records every scan attempt, granted or denied, and is the
single source of truth for a user's last known state and for replay checks.
Rows are append-only; corrections are new events.

Granted events are written with a compare-and-set against the id of the
user's latest granted event, inside an IMMEDIATE transaction. Two stations
racing to grant the same transition therefore cannot both commit; the loser
gets a 'conflict' and must re-read the log.

Features:
- Conditional (compare-and-set) grant writes
- One grant per token nonce (unique partial index)
- Deadline-bounded writes that never commit late
- Latest-event and history queries per user
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from access_control.modules.errors import StoreUnavailableError, ScanTimeoutError
from access_control.modules.models import (
    ScanEvent, ScanType, ScanResult, format_timestamp, parse_timestamp,
    REASON_CONFLICT, REASON_TIMEOUT, REASON_WRITE_FAILED,
)
from access_control.modules.ports import ScanHistoryStore

REASON_DUPLICATE_NONCE = 'duplicate_nonce'

# Sentinel: append without comparing against the latest granted event
UNCONDITIONAL = object()


@dataclass(frozen=True)
class RecordResult:
    committed: bool
    event_id: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def failed(cls, reason: str) -> 'RecordResult':
        return cls(committed=False, reason=reason)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return 'locked' in message or 'busy' in message


class ScanLogWriter(ScanHistoryStore):
    """
    Append-only scan log backed by the DatabaseManager.
    """

    def __init__(self, database_manager, monotonic=time.monotonic):
        """
        Initialize the scan log writer.

        Args:
            database_manager: Database manager instance
            monotonic: Monotonic clock used to enforce write deadlines
        """
        self.db = database_manager
        self.monotonic = monotonic
        self.logger = logging.getLogger(__name__)

    def record(self, event: ScanEvent, expected_latest_id=UNCONDITIONAL,
               deadline: Optional[float] = None) -> RecordResult:
        """
        Append a scan event.

        Args:
            event (ScanEvent): Event to persist
            expected_latest_id: For grants, the id of the user's latest granted
                event the decision was based on (None if there was none).
                UNCONDITIONAL skips the check.
            deadline (float): Monotonic time after which nothing may commit

        Returns:
            RecordResult: committed with the new id, or failed with one of
            'conflict', 'duplicate_nonce', 'timeout', 'write_failed'
        """
        lock_timeout = None
        if deadline is not None:
            lock_timeout = deadline - self.monotonic()
            if lock_timeout <= 0:
                return RecordResult.failed(REASON_TIMEOUT)

        try:
            with self.db.transaction(immediate=True, timeout=lock_timeout) as conn:
                if expected_latest_id is not UNCONDITIONAL:
                    row = conn.execute(
                        """SELECT id FROM scan_events
                           WHERE user_id = ? AND outcome = 'granted'
                           ORDER BY id DESC LIMIT 1""",
                        (event.user_id,)
                    ).fetchone()
                    latest_id = row['id'] if row else None
                    if latest_id != expected_latest_id:
                        self.logger.info(
                            f"Scan log conflict for user {event.user_id}: "
                            f"expected latest {expected_latest_id}, found {latest_id}"
                        )
                        return RecordResult.failed(REASON_CONFLICT)

                cursor = conn.execute(
                    """INSERT INTO scan_events (user_id, scan_type, scanned_at, scanned_by,
                                                location, outcome, denial_reason, nonce)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event.user_id,
                        ScanType(event.scan_type).value,
                        format_timestamp(event.scanned_at),
                        event.scanned_by,
                        event.location,
                        ScanResult(event.outcome).value,
                        event.denial_reason,
                        event.nonce,
                    )
                )
                event_id = cursor.lastrowid

                if deadline is not None and self.monotonic() > deadline:
                    raise ScanTimeoutError("scan budget exhausted before commit")

        except ScanTimeoutError:
            self.logger.error(f"Scan log write for user {event.user_id} abandoned: deadline passed")
            return RecordResult.failed(REASON_TIMEOUT)
        except sqlite3.IntegrityError as e:
            if 'unique' in str(e).lower() and event.nonce is not None:
                self.logger.warning(f"Nonce already granted for user {event.user_id}")
                return RecordResult.failed(REASON_DUPLICATE_NONCE)
            self.logger.error(f"Scan log rejected event: {str(e)}")
            return RecordResult.failed(REASON_WRITE_FAILED)
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                self.logger.error(f"Scan log locked past deadline: {str(e)}")
                return RecordResult.failed(REASON_TIMEOUT)
            self.logger.error(f"Scan log write failed: {str(e)}")
            return RecordResult.failed(REASON_WRITE_FAILED)
        except sqlite3.Error as e:
            self.logger.error(f"Scan log write failed: {str(e)}")
            return RecordResult.failed(REASON_WRITE_FAILED)

        event.id = event_id
        return RecordResult(committed=True, event_id=event_id)

    def latest_for(self, user_id: str, granted_only: bool = False) -> Optional[ScanEvent]:
        """
        Get the most recently committed event for a user.

        Commit order (row id) is authoritative: all writes are serialized, so
        it is the order in which state transitions actually happened.
        """
        query = "SELECT * FROM scan_events WHERE user_id = ?"
        if granted_only:
            query += " AND outcome = 'granted'"
        query += " ORDER BY id DESC LIMIT 1"

        row = self._query(query, (user_id,), fetch_all=False)
        return self._row_to_event(row) if row else None

    def history_for(self, user_id: str, limit: int = 100) -> List[ScanEvent]:
        """Scan events for a user, newest first."""
        rows = self._query(
            """SELECT * FROM scan_events WHERE user_id = ?
               ORDER BY scanned_at DESC, id DESC LIMIT ?""",
            (user_id, limit)
        )
        return [self._row_to_event(row) for row in rows]

    def recent_events(self, limit: int = 50) -> List[ScanEvent]:
        """Most recent scan events across all users, newest first."""
        rows = self._query(
            "SELECT * FROM scan_events ORDER BY scanned_at DESC, id DESC LIMIT ?",
            (limit,)
        )
        return [self._row_to_event(row) for row in rows]

    def nonce_consumed(self, user_id: str, nonce: str, since: datetime) -> bool:
        row = self._query(
            """SELECT 1 AS used FROM scan_events
               WHERE user_id = ? AND nonce = ? AND outcome = 'granted' AND scanned_at >= ?
               LIMIT 1""",
            (user_id, nonce, format_timestamp(since)),
            fetch_all=False
        )
        return row is not None

    def _query(self, query, params, fetch_all=True):
        try:
            return self.db.execute_query(query, params, fetch_all=fetch_all)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"scan log unavailable: {str(e)}") from e

    @staticmethod
    def _row_to_event(row) -> ScanEvent:
        return ScanEvent(
            id=row['id'],
            user_id=row['user_id'],
            scan_type=ScanType(row['scan_type']),
            scanned_at=parse_timestamp(row['scanned_at']),
            scanned_by=row['scanned_by'],
            location=row['location'],
            outcome=ScanResult(row['outcome']),
            denial_reason=row['denial_reason'],
            nonce=row['nonce'],
        )
