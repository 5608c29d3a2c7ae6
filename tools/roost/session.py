"""Session stores that receive the logged-in user's projection.

A session store holds values grouped by namespace. The credential manager
writes one namespace (``RoostConfig.session_key``) on login and clears it on
logout; everything else in the store belongs to the host application.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol


class SessionStore(Protocol):
    def set(self, namespace: str, key: str, value: Any) -> None:
        ...

    def clear(self, namespace: str) -> None:
        ...

    def get(self, namespace: str) -> dict[str, Any]:
        """Optional. Used only to name the user when logging a logout."""
        ...


class MemorySessionStore:
    """Per-request session held in a plain dict."""

    def __init__(self, data: dict[str, dict[str, Any]] | None = None) -> None:
        self.data: dict[str, dict[str, Any]] = data if data is not None else {}

    def set(self, namespace: str, key: str, value: Any) -> None:
        self.data.setdefault(namespace, {})[key] = value

    def clear(self, namespace: str) -> None:
        self.data.pop(namespace, None)

    def get(self, namespace: str) -> dict[str, Any]:
        return dict(self.data.get(namespace, {}))


class JsonSessionStore:
    """Session persisted to a JSON file, one top-level key per namespace.

    Values that JSON cannot represent (datetimes) are stored as strings.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)

    def set(self, namespace: str, key: str, value: Any) -> None:
        data = self._load()
        data.setdefault(namespace, {})[key] = value
        self._save(data)

    def clear(self, namespace: str) -> None:
        data = self._load()
        if data.pop(namespace, None) is not None:
            self._save(data)

    def get(self, namespace: str) -> dict[str, Any]:
        return self._load().get(namespace, {})
