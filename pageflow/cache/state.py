"""Serializable snapshot of a session's cookies and per-origin storage.

The JSON layout matches Playwright's ``storage_state`` so files can be shared
with other tooling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class Cookie:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: float = -1
    http_only: bool = False
    secure: bool = False
    same_site: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }
        if self.same_site:
            payload["sameSite"] = self.same_site
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Cookie:
        return cls(
            name=str(raw.get("name") or ""),
            value=str(raw.get("value") or ""),
            domain=str(raw.get("domain") or ""),
            path=str(raw.get("path") or "/"),
            expires=float(raw["expires"]) if raw.get("expires") is not None else -1.0,
            http_only=bool(raw.get("httpOnly", False)),
            secure=bool(raw.get("secure", False)),
            same_site=raw.get("sameSite") or None,
        )


@dataclass(slots=True)
class OriginStorage:
    origin: str
    local_storage: dict[str, str] | None = None
    session_storage: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"origin": self.origin}
        if self.local_storage is not None:
            payload["localStorage"] = dict(self.local_storage)
        if self.session_storage is not None:
            payload["sessionStorage"] = dict(self.session_storage)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OriginStorage:
        return cls(
            origin=str(raw.get("origin") or ""),
            local_storage=_storage_map(raw.get("localStorage")),
            session_storage=_storage_map(raw.get("sessionStorage")),
        )


def _storage_map(raw: Any) -> dict[str, str] | None:
    if raw is None:
        return None
    # Playwright writes storage as a list of {name, value} pairs.
    if isinstance(raw, list):
        return {
            str(item.get("name")): str(item.get("value", ""))
            for item in raw
            if isinstance(item, dict) and item.get("name") is not None
        }
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items()}
    raise ValueError(f"Unsupported storage layout: {type(raw).__name__}")


@dataclass(slots=True)
class StorageState:
    cookies: list[Cookie] = field(default_factory=list)
    origins: list[OriginStorage] = field(default_factory=list)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for entry in self.origins:
            if entry.origin in seen:
                raise ValueError(f"Duplicate origin in storage state: {entry.origin}")
            seen.add(entry.origin)

    def origin(self, origin: str) -> OriginStorage | None:
        for entry in self.origins:
            if entry.origin == origin:
                return entry
        return None

    def merge_origin(self, entry: OriginStorage) -> None:
        """Insert or replace the storage of ``entry.origin``."""
        self.origins = [existing for existing in self.origins if existing.origin != entry.origin]
        self.origins.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cookies": [cookie.to_dict() for cookie in self.cookies],
            "origins": [entry.to_dict() for entry in self.origins],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StorageState:
        if not isinstance(raw, dict):
            raise ValueError("Storage state must be a JSON object")
        cookies = raw.get("cookies") or []
        origins = raw.get("origins") or []
        return cls(
            cookies=[Cookie.from_dict(item) for item in cookies if isinstance(item, dict)],
            origins=[OriginStorage.from_dict(item) for item in origins if isinstance(item, dict)],
        )
