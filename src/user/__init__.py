"""Relational storage module.

This module provides dual-backend storage (Postgres/SQLite) for account links,
link codes, request status state, watch alerts, digest queries and the
scheduler's advisory lock.
"""

from src.user.storage import (
    BaseStorage,
    JobFailureSummary,
    LinkCodeError,
    LinkCodeExpiredError,
    LinkCodeNotFoundError,
    LinkedAccount,
    LinkedAdmin,
    LinkToken,
    PostgresStorage,
    RequestStatusRow,
    RequestStatusState,
    SQLiteStorage,
    WatchAlert,
    generate_link_code,
    get_storage,
    get_storage_backend,
    is_admin_groups,
)

__all__ = [
    # Storage backends
    "BaseStorage",
    "PostgresStorage",
    "SQLiteStorage",
    # Factory functions
    "get_storage",
    "get_storage_backend",
    # Helpers
    "generate_link_code",
    "is_admin_groups",
    # Exceptions
    "LinkCodeError",
    "LinkCodeExpiredError",
    "LinkCodeNotFoundError",
    # Models
    "JobFailureSummary",
    "LinkToken",
    "LinkedAccount",
    "LinkedAdmin",
    "RequestStatusRow",
    "RequestStatusState",
    "WatchAlert",
]
