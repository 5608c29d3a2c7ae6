"""Registration, login and session projection for the users table.

Assumes ``SchemaReconciler.ensure_user_table`` has already run against the
same storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .config import RoostConfig
from .errors import AuthError, DuplicateError, IntegrityError, UpdateError, ValidationError
from .events import EventLog
from .hashing import BcryptHasher, Hasher
from .schema import CREATED_COLUMN, LAST_LOGIN_COLUMN, MAIL_LENGTH
from .session import SessionStore
from .storage import Storage

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(f"Unreadable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _creation_order(user: "UserRecord") -> tuple[bool, datetime]:
    return (user.created is None, user.created or datetime.min.replace(tzinfo=timezone.utc))


@dataclass
class UserRecord:
    """A row of the users table.

    ``extra`` holds any columns beyond the five the store manages.
    """

    username: str
    email: Optional[str]
    password_hash: str
    last_login: Optional[datetime]
    created: Optional[datetime]
    extra: dict[str, Any] = field(default_factory=dict)


class CredentialManager:
    """User registration and authentication over an injected storage.

    Args:
        storage: Storage holding the users table.
        sessions: Session store the logged-in user is projected into.
        hasher: Password hasher. Defaults to bcrypt at ``config.bcrypt_rounds``.
        config: Table, column and session names. Defaults to ``RoostConfig()``.
        events: Optional event log for registrations, logins and logouts.
    """

    def __init__(
        self,
        storage: Storage,
        sessions: SessionStore,
        hasher: Optional[Hasher] = None,
        config: Optional[RoostConfig] = None,
        events: Optional[EventLog] = None,
    ) -> None:
        self.config = config or RoostConfig()
        self.storage = storage
        self.sessions = sessions
        self.hasher = hasher or BcryptHasher(self.config.bcrypt_rounds)
        if events is None and self.config.event_log:
            events = EventLog(self.config.event_log)
        self.events = events
        self._dummy_hash: Optional[str] = None

    def _record(self, event_type: str, **details: Any) -> None:
        if self.events is not None:
            self.events.record(event_type, **details)

    def _row_to_user(self, row: dict[str, Any]) -> UserRecord:
        row = dict(row)
        return UserRecord(
            username=row.pop(self.config.user_column),
            email=row.pop(self.config.mail_column, None),
            password_hash=row.pop(self.config.hash_column, ""),
            last_login=_parse_timestamp(row.pop(LAST_LOGIN_COLUMN, None)),
            created=_parse_timestamp(row.pop(CREATED_COLUMN, None)),
            extra=row,
        )

    def user_to_row(self, user: UserRecord) -> dict[str, Any]:
        """Column-named mapping of a user, timestamps formatted as stored."""
        return {
            self.config.user_column: user.username,
            self.config.mail_column: user.email,
            self.config.hash_column: user.password_hash,
            LAST_LOGIN_COLUMN: _format_timestamp(user.last_login),
            CREATED_COLUMN: _format_timestamp(user.created),
            **user.extra,
        }

    def register_user(
        self, user_data: dict[str, Any], password: Optional[str] = None
    ) -> int:
        """Insert a new user with a hashed password.

        ``user_data`` may carry the password under ``"password"`` when the
        argument is omitted; it is never stored. Keys that are not columns of
        the users table are dropped.

        Returns the number of rows inserted.

        Raises:
            ValidationError: username or email missing or too long, or the
                password is blank or too long for the hasher.
            DuplicateError: username or email already registered.
        """
        user_data = dict(user_data)
        supplied = user_data.pop("password", None)
        if password is None:
            password = supplied

        table = self.config.users_table
        params = {
            col: val
            for col, val in user_data.items()
            if self.storage.column_exists(table, col)
        }

        username = params.get(self.config.user_column)
        email = params.get(self.config.mail_column)
        if not isinstance(username, str) or not username:
            raise ValidationError("Username is required.")
        if len(username) > self.config.name_length:
            raise ValidationError("Username too long.")
        if not isinstance(email, str) or not email:
            raise ValidationError("Email is required.")
        if len(email) > MAIL_LENGTH:
            raise ValidationError("Email too long.")
        if not isinstance(password, str) or not password.strip():
            raise ValidationError("Empty password provided.")

        params[self.config.hash_column] = self.hasher.hash(password)
        now = _now()
        params.setdefault(CREATED_COLUMN, now)
        params.setdefault(LAST_LOGIN_COLUMN, now)

        try:
            inserted = self.storage.insert(table, params)
        except DuplicateError as e:
            logger.info(f"Registration rejected for {username}: already registered")
            raise DuplicateError("Username or email already registered.") from e

        if inserted == 1:
            logger.info(f"Registered user {username}")
            self._record("user_registered", username=username)
        else:
            logger.warning(f"Insert for {username} affected {inserted} rows")
        return inserted

    def get_user(self, username: str) -> Optional[UserRecord]:
        """Look up a user by exact username. Returns None if there is none.

        Raises:
            IntegrityError: more than one row has this username, which can only
                happen on a table created without the primary key.
        """
        rows = self.storage.select(
            self.config.users_table, {self.config.user_column: username}
        )
        if not rows:
            return None
        if len(rows) != 1:
            raise IntegrityError("More than one user has the same identifier.")
        return self._row_to_user(rows[0])

    def _reject_login(self, username: str) -> AuthError:
        logger.info(f"Failed login for {username}")
        self._record("login_failure", username=username)
        return AuthError()

    def login_user(
        self, username: str, password: str, load_to_session: bool = True
    ) -> UserRecord:
        """Authenticate a user and stamp the login time.

        An outdated digest is replaced with a fresh one while the plaintext is
        at hand. With ``load_to_session`` the user is projected into the
        session store.

        Raises:
            AuthError: unknown username or wrong password (same message).
        """
        user = self.get_user(username)
        if user is None:
            # equalise timing with the wrong-password path
            if self._dummy_hash is None:
                self._dummy_hash = self.hasher.hash("dummy-password")
            self.hasher.verify(password, self._dummy_hash)
            raise self._reject_login(username)

        if not self.hasher.verify(password, user.password_hash):
            raise self._reject_login(username)

        if self.hasher.needs_rehash(user.password_hash):
            self.change_password(username, password)
            logger.info(f"Rehashed password for {username}")
            self._record("password_rehashed", username=username)

        self.update_user(username, {LAST_LOGIN_COLUMN: _now()})

        user = self.get_user(username)
        if user is None:
            raise self._reject_login(username)

        if load_to_session:
            self.load_user_session(user)

        logger.info(f"User {username} logged in")
        self._record("login_success", username=username)
        return user

    def update_user(self, username: str, user_data: dict[str, Any]) -> int:
        """Apply ``user_data`` to the user's row as-is. Returns rows affected."""
        return self.storage.update(
            self.config.users_table,
            user_data,
            {self.config.user_column: username},
        )

    def change_password(self, username: str, new_password: str) -> bool:
        """Replace the user's password hash.

        Raises:
            ValidationError: the new password is blank or too long for the hasher.
            UpdateError: the update did not affect exactly one row.
        """
        if not new_password.strip():
            raise ValidationError("Empty password provided.")

        new_hash = self.hasher.hash(new_password)
        updated = self.update_user(username, {self.config.hash_column: new_hash})
        if updated != 1:
            raise UpdateError("Failed to update password hash.")

        self._record("password_changed", username=username)
        return True

    def load_user_session(self, user: UserRecord) -> None:
        """Copy every column of ``user`` into the session namespace."""
        for col, val in self.user_to_row(user).items():
            self.sessions.set(self.config.session_key, col, val)

    def logout_user(self) -> None:
        """Clear the session namespace."""
        # get() is optional on session stores
        get = getattr(self.sessions, "get", None)
        username = get(self.config.session_key).get(self.config.user_column) if get else None
        self.sessions.clear(self.config.session_key)
        if username:
            logger.info(f"User {username} logged out")
            self._record("logout", username=username)

    def list_users(self) -> list[UserRecord]:
        """Return all users ordered by creation time, undated rows last."""
        users = [
            self._row_to_user(row)
            for row in self.storage.select(self.config.users_table, {})
        ]
        return sorted(users, key=_creation_order)

    def verify_email(self) -> bool:
        """Email verification is not implemented; nobody is verified."""
        return False
