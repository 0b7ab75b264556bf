"""
SQLite-backed subscription store.

The membership system owns subscriptions; this table is a mirror it keeps in
sync through upsert_subscription(). The access control core only ever reads
it through the SubscriptionStore port.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from access_control.modules.errors import StoreUnavailableError
from access_control.modules.models import (
    SubscriptionStatus, format_timestamp, parse_timestamp,
    SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED, SUBSCRIPTION_INACTIVE,
)
from access_control.modules.ports import SubscriptionStore

VALID_STATUSES = (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED, SUBSCRIPTION_INACTIVE)


class SqliteSubscriptionStore(SubscriptionStore):

    def __init__(self, database_manager):
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    def get_subscription_status(self, user_id: str) -> Optional[SubscriptionStatus]:
        try:
            row = self.db.execute_query(
                "SELECT user_id, status, valid_until FROM subscriptions WHERE user_id = ?",
                (user_id,),
                fetch_all=False
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"subscription store unavailable: {str(e)}") from e

        if not row:
            return None

        valid_until = parse_timestamp(row['valid_until']) if row['valid_until'] else None
        return SubscriptionStatus(row['user_id'], row['status'], valid_until)

    def upsert_subscription(self, user_id: str, status: str, valid_until: Optional[datetime]):
        """
        Mirror a subscription from the membership system.

        Args:
            user_id (str): Subscriber
            status (str): 'active', 'expired' or 'inactive'
            valid_until (datetime): End of the paid period, if any
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown subscription status: {status}")

        self.db.execute_update(
            """INSERT INTO subscriptions (user_id, status, valid_until)
               VALUES (?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   status = excluded.status,
                   valid_until = excluded.valid_until,
                   updated_at = CURRENT_TIMESTAMP""",
            (user_id, status, format_timestamp(valid_until) if valid_until else None)
        )
        self.logger.info(f"Subscription for user {user_id} set to {status}")
