"""
Roost: a minimal user credential store.

Keeps a single users table (username, email, password hash, last login,
created), repairs that table's columns when they drift, and handles
registration, login and session projection on top of it.

Usage:
    from roost.storage import SQLiteStorage
    from roost.schema import SchemaReconciler
    from roost.credentials import CredentialManager
    from roost.session import MemorySessionStore

    storage = SQLiteStorage(".roost/users.db")
    SchemaReconciler(storage).ensure_user_table()

    manager = CredentialManager(storage, MemorySessionStore())
    manager.register_user({"username": "owl", "email": "owl@example.com"}, "password123")
    manager.login_user("owl", "password123")
"""

__version__ = "0.1.0"

from .config import RoostConfig, load_config
from .credentials import CredentialManager, UserRecord
from .errors import (
    AuthError,
    DuplicateError,
    IntegrityError,
    RoostError,
    SchemaError,
    StorageError,
    UpdateError,
    ValidationError,
)
from .schema import SchemaReconciler
from .storage import SQLiteStorage

__all__ = [
    "RoostConfig",
    "load_config",
    "CredentialManager",
    "UserRecord",
    "SchemaReconciler",
    "SQLiteStorage",
    "RoostError",
    "SchemaError",
    "ValidationError",
    "DuplicateError",
    "IntegrityError",
    "AuthError",
    "UpdateError",
    "StorageError",
]
