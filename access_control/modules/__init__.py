# Library Access Control - Modules Package
"""
Core modules for the library access control system.

- key_provider: static and remote token key resolution
- token_codec: authenticated token encoding and decoding
- token_validator: expiry, replay and subscription checks
- session_state: entry/exit session state machine
- scan_log: append-only scan log
- subscription_store: read-only subscription lookups
- database_manager: SQLite connections, schema and transactions
- qr_generator: QR code image rendering
- access_manager: token issuance and scan processing
"""
