"""
Read-only ports the token validator depends on.

Storage technology stays behind these interfaces so the validator can be
exercised with plain in-memory doubles.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from access_control.modules.models import SubscriptionStatus


class SubscriptionStore(ABC):

    @abstractmethod
    def get_subscription_status(self, user_id: str) -> Optional[SubscriptionStatus]:
        """Return the user's subscription, or None if the user has none.

        Raises StoreUnavailableError when the store cannot be read.
        """


class ScanHistoryStore(ABC):

    @abstractmethod
    def nonce_consumed(self, user_id: str, nonce: str, since: datetime) -> bool:
        """True if a granted scan at or after `since` already used this nonce.

        Raises StoreUnavailableError when the store cannot be read.
        """
