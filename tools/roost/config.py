"""Configuration for the credential store.

Settings live under the ``roost`` key of a JSON config file::

    {
        "roost": {
            "db_path": ".roost/users.db",
            "users_table": "roost_users",
            "name_length": 64,
            "session_key": "user_data"
        }
    }

Table and column names end up in SQL, so they are restricted to plain
identifiers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import jsonschema

DEFAULT_DB_PATH = ".roost/users.db"

_IDENTIFIER = {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$", "maxLength": 64}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "db_path": {"type": "string", "minLength": 1},
        "users_table": _IDENTIFIER,
        "user_column": _IDENTIFIER,
        "mail_column": _IDENTIFIER,
        "hash_column": _IDENTIFIER,
        "name_length": {"type": "integer", "minimum": 1, "maximum": 255},
        "session_key": {"type": "string", "minLength": 1},
        "bcrypt_rounds": {"type": "integer", "minimum": 4, "maximum": 31},
        "event_log": {"type": ["string", "null"]},
    },
}


@dataclass(frozen=True)
class RoostConfig:
    """Names and limits used by the schema reconciler and credential manager.

    Frozen so a running manager never sees its table or column names change.
    """

    users_table: str = "roost_users"
    user_column: str = "username"
    name_length: int = 64
    mail_column: str = "email"
    hash_column: str = "hashword"
    session_key: str = "user_data"
    db_path: str = DEFAULT_DB_PATH
    bcrypt_rounds: int = 12
    event_log: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoostConfig":
        """Validate a ``roost`` config section and build a config from it."""
        jsonschema.validate(data, CONFIG_SCHEMA)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def load_config(config_path: str) -> RoostConfig:
    """Load configuration from JSON file.

    A file without a ``roost`` section yields the defaults.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found at {path}")

    with open(path) as f:
        data = json.load(f)

    return RoostConfig.from_dict(data.get("roost", {}))
