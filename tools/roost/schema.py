"""Schema reconciliation for the users table.

The expected schema is the source of truth. ``ensure_user_table`` creates the
table when it is absent and otherwise adds back, one column at a time, any
expected column a pre-existing table lacks. Only presence is checked; a column
with the right name but a different type or width is left alone.

SQLite cannot add a PRIMARY KEY or UNIQUE column to an existing table, nor a
NOT NULL column without a constant default, so the repair statements differ
from the create definitions:

- username and email are nullable and each get a unique index in the
  same transaction
- the hash column gets an empty-string default, which never verifies
- the timestamp columns are backfilled with CURRENT_TIMESTAMP
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import RoostConfig
from .errors import SchemaError
from .storage import Storage, quote_identifier

logger = logging.getLogger(__name__)

MAIL_LENGTH = 320  # RFC 5321 & RFC 5322
HASH_LENGTH = 128
LAST_LOGIN_COLUMN = "last_login"
CREATED_COLUMN = "created"
EPOCH = "1970-01-01 00:00:00"


@dataclass(frozen=True)
class ColumnSpec:
    """One expected column.

    Attributes:
        name: Column name.
        definition: Column definition used in CREATE TABLE.
        repair: Statements that add the column to an existing table. They run
                in a single transaction.
    """

    name: str
    definition: str
    repair: tuple[str, ...]


def expected_columns(config: RoostConfig) -> list[ColumnSpec]:
    table = quote_identifier(config.users_table)
    user = quote_identifier(config.user_column)
    mail = quote_identifier(config.mail_column)
    hashword = quote_identifier(config.hash_column)
    last_login = quote_identifier(LAST_LOGIN_COLUMN)
    created = quote_identifier(CREATED_COLUMN)
    user_index = quote_identifier(f"{config.users_table}_unique_{config.user_column}")
    mail_index = quote_identifier(f"{config.users_table}_unique_{config.mail_column}")

    return [
        ColumnSpec(
            config.user_column,
            f"{user} VARCHAR({config.name_length}) NOT NULL PRIMARY KEY",
            (
                f"ALTER TABLE {table} ADD COLUMN {user} VARCHAR({config.name_length})",
                f"CREATE UNIQUE INDEX {user_index} ON {table} ({user})",
            ),
        ),
        ColumnSpec(
            config.mail_column,
            f"{mail} VARCHAR({MAIL_LENGTH}) NOT NULL UNIQUE",
            (
                f"ALTER TABLE {table} ADD COLUMN {mail} VARCHAR({MAIL_LENGTH})",
                f"CREATE UNIQUE INDEX {mail_index} ON {table} ({mail})",
            ),
        ),
        ColumnSpec(
            config.hash_column,
            f"{hashword} VARCHAR({HASH_LENGTH}) NOT NULL",
            (
                f"ALTER TABLE {table} ADD COLUMN {hashword} "
                f"VARCHAR({HASH_LENGTH}) NOT NULL DEFAULT ''",
            ),
        ),
        ColumnSpec(
            LAST_LOGIN_COLUMN,
            f"{last_login} TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP",
            (
                f"ALTER TABLE {table} ADD COLUMN {last_login} "
                f"TIMESTAMP NOT NULL DEFAULT '{EPOCH}'",
                f"UPDATE {table} SET {last_login} = CURRENT_TIMESTAMP",
            ),
        ),
        ColumnSpec(
            CREATED_COLUMN,
            f"{created} TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
            (
                f"ALTER TABLE {table} ADD COLUMN {created} TIMESTAMP",
                f"UPDATE {table} SET {created} = CURRENT_TIMESTAMP",
            ),
        ),
    ]


class SchemaReconciler:
    """Brings the users table to the expected shape without dropping data.

    Args:
        storage: Storage the table lives in.
        config: Table and column names. Defaults to ``RoostConfig()``.
    """

    def __init__(self, storage: Storage, config: RoostConfig | None = None) -> None:
        self.storage = storage
        self.config = config or RoostConfig()
        self.columns = expected_columns(self.config)

    def create_table_sql(self) -> str:
        definitions = ",\n    ".join(col.definition for col in self.columns)
        return (
            f"CREATE TABLE IF NOT EXISTS {quote_identifier(self.config.users_table)} (\n"
            f"    {definitions}\n"
            f")"
        )

    def missing_columns(self) -> list[str]:
        """Names of expected columns the table lacks (all of them if no table)."""
        self.storage.load_schema_metadata()
        table = self.config.users_table
        if not self.storage.table_exists(table):
            return [col.name for col in self.columns]
        return [
            col.name
            for col in self.columns
            if not self.storage.column_exists(table, col.name)
        ]

    def ensure_user_table(self) -> bool:
        """Create the users table, or add any expected columns it is missing.

        Returns the result of CREATE TABLE when the table was absent, True
        otherwise.

        Raises:
            SchemaError: a missing column could not be added. Columns after it
                are not attempted; calling again retries whatever is still
                missing.
        """
        table = self.config.users_table
        self.storage.load_schema_metadata()
        if not self.storage.table_exists(table):
            logger.info(f"Creating table {table}")
            created = self.storage.execute(self.create_table_sql())
            if not created:
                logger.error(f"Failed to create table {table}")
            return created

        for col in self.columns:
            if self.storage.column_exists(table, col.name):
                continue
            logger.warning(f"Table {table} is missing column {col.name}, adding it")
            if not self.storage.execute(*col.repair):
                raise SchemaError(f"failed to add column '{col.name}'")
        return True
