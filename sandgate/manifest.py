"""
Sync manifest entries and the markers that record their last sync.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

MARKER_NAME = ".last-sync"


class ManifestEntry(BaseModel):
    """Maps one local directory to a remote storage prefix."""

    name: str = Field(..., min_length=1)
    local_dir: str
    remote_prefix: str
    exclude: list[str] = Field(default_factory=list)

    @field_validator("remote_prefix")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        value = value.strip("/")
        if not value:
            raise ValueError("remote_prefix must not be empty")
        return value

    @property
    def local_path(self) -> Path:
        return Path(self.local_dir)

    @property
    def marker_key(self) -> str:
        return f"{self.remote_prefix}/{MARKER_NAME}"

    @property
    def local_marker_path(self) -> Path:
        return self.local_path / MARKER_NAME

    def remote_key(self, relpath: str) -> str:
        return f"{self.remote_prefix}/{relpath}"

    def relpath_for_key(self, key: str) -> str | None:
        prefix = f"{self.remote_prefix}/"
        if not key.startswith(prefix):
            return None
        relpath = key[len(prefix):]
        return relpath or None

    def is_excluded(self, relpath: str, extra: list[str] | None = None) -> bool:
        if relpath == MARKER_NAME:
            return True
        patterns = list(self.exclude) + list(extra or [])
        parts = relpath.split("/")
        for pattern in patterns:
            if fnmatch(relpath, pattern) or fnmatch(parts[-1], pattern):
                return True
            # "dir/*" style patterns also match the directory at any depth.
            if pattern.endswith("/*") and pattern[:-2] in parts[:-1]:
                return True
        return False


@dataclass(frozen=True)
class Marker:
    """Sentinel recording when an entry was last synced and what it held."""

    synced_at: datetime
    files: dict[str, str] = field(default_factory=dict)

    @classmethod
    def now(cls, files: dict[str, str]) -> "Marker":
        return cls(synced_at=datetime.now(timezone.utc), files=dict(files))

    def is_newer_than(self, other: "Marker | None") -> bool:
        if other is None:
            return True
        return self.synced_at > other.synced_at

    def to_bytes(self) -> bytes:
        payload = {
            "synced_at": self.synced_at.isoformat(),
            "files": dict(sorted(self.files.items())),
        }
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Marker":
        text = raw.decode("utf-8").strip()
        if not text.startswith("{"):
            # Bare timestamp written by older sync scripts.
            return cls(synced_at=_parse_timestamp(text))
        payload = json.loads(text)
        return cls(
            synced_at=_parse_timestamp(payload["synced_at"]),
            files={str(k): str(v) for k, v in (payload.get("files") or {}).items()},
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
