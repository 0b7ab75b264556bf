"""
Error types shared by the access control modules.

Only infrastructure problems are modelled as exceptions. Policy denials and
decode failures travel as typed results and never raise.
"""


class AccessControlError(Exception):
    """Base class for access control errors."""

    reason = 'internal_error'


class StoreUnavailableError(AccessControlError):
    """A backing store (scan log, subscriptions) could not be read or written."""

    reason = 'store_unavailable'


class ScanTimeoutError(AccessControlError):
    """The interactive scan budget was exhausted before the scan completed."""

    reason = 'timeout'
