"""Services module for the Revisit scheduler."""

from services.database import check_connection, get_sync_session, init_db
from services.ntfy import NtfyClient

__all__ = [
    "check_connection",
    "get_sync_session",
    "init_db",
    "NtfyClient",
]
