# Library Access Control - App Package
"""
Main application package for the library access control core.
Issues dynamic QR access tokens and validates scans at entry/exit stations.
"""

__version__ = "1.0.0"
__description__ = "Dynamic QR access token lifecycle and entry/exit control for library access"

# Import core components for easy access
from .modules.access_manager import AccessManager, ScanOutcome
from .modules.database_manager import DatabaseManager
from .modules.key_provider import KeyProvider, KeyMaterial
from .modules.qr_generator import QRGenerator
from .modules.scan_log import ScanLogWriter
from .modules.subscription_store import SqliteSubscriptionStore
from .modules.token_codec import TokenCodec, DecodeError
from .modules.token_validator import TokenValidator, ValidationContext

__all__ = [
    'AccessManager',
    'ScanOutcome',
    'DatabaseManager',
    'KeyProvider',
    'KeyMaterial',
    'QRGenerator',
    'ScanLogWriter',
    'SqliteSubscriptionStore',
    'TokenCodec',
    'DecodeError',
    'TokenValidator',
    'ValidationContext'
]
