"""Content-addressed cache for generated media and narration audio.

A Fingerprint identifies one generation request: media kind, producing
model, a numeric variant (clip duration, speech speed, 0 for images) and the
normalized request text. Identical fingerprints share one payload, so a
repeated request never reaches a provider.

Backend failures are logged and treated as misses; the cache never raises.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Protocol

from pydantic import BaseModel

from journeys.config import (
    AUDIO_CACHE_MAX_AGE_DAYS,
    AUDIO_CACHE_MAX_ENTRIES,
    MEDIA_CACHE_MAX_AGE_DAYS,
    MEDIA_CACHE_MAX_ENTRIES,
)
from journeys.models import MediaKind

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Fingerprint:
    kind: MediaKind
    model: str
    variant: float
    text: str

    @property
    def normalized_text(self) -> str:
        return self.text.strip().lower()

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.model}:{float(self.variant):g}:{self.normalized_text}"

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.key.encode("utf-8")).hexdigest()


class CacheEntryMeta(BaseModel):
    key: str
    kind: MediaKind
    model: str
    variant: float
    source_text: str
    created_at: datetime
    size: int


@dataclass(frozen=True)
class KindLimits:
    max_age: timedelta
    max_entries: int


DEFAULT_LIMITS: dict[MediaKind, KindLimits] = {
    MediaKind.IMAGE: KindLimits(timedelta(days=MEDIA_CACHE_MAX_AGE_DAYS), MEDIA_CACHE_MAX_ENTRIES),
    MediaKind.CLIP: KindLimits(timedelta(days=MEDIA_CACHE_MAX_AGE_DAYS), MEDIA_CACHE_MAX_ENTRIES),
    MediaKind.AUDIO: KindLimits(timedelta(days=AUDIO_CACHE_MAX_AGE_DAYS), AUDIO_CACHE_MAX_ENTRIES),
}


@dataclass
class CacheStats:
    entries: int
    total_bytes: int
    oldest: datetime | None
    newest: datetime | None


# ---------------------------------------------------------------------------
# Blob backends
# ---------------------------------------------------------------------------


class BlobStore(Protocol):
    def read(self, digest: str) -> tuple[CacheEntryMeta, bytes] | None: ...

    def write(self, digest: str, meta: CacheEntryMeta, payload: bytes) -> None: ...

    def delete(self, digest: str) -> None: ...

    def list_meta(self) -> list[tuple[str, CacheEntryMeta]]: ...

    def clear(self) -> None: ...


class MemoryBlobStore:
    def __init__(self) -> None:
        self._entries: dict[str, tuple[CacheEntryMeta, bytes]] = {}

    def read(self, digest: str) -> tuple[CacheEntryMeta, bytes] | None:
        return self._entries.get(digest)

    def write(self, digest: str, meta: CacheEntryMeta, payload: bytes) -> None:
        self._entries[digest] = (meta, payload)

    def delete(self, digest: str) -> None:
        self._entries.pop(digest, None)

    def list_meta(self) -> list[tuple[str, CacheEntryMeta]]:
        return [(digest, meta) for digest, (meta, _) in self._entries.items()]

    def clear(self) -> None:
        self._entries.clear()


class FileBlobStore:
    """One payload file plus a .meta.json sidecar per entry, named by digest."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _payload_path(self, digest: str) -> Path:
        return self.root / f"{digest}.bin"

    def _meta_path(self, digest: str) -> Path:
        return self.root / f"{digest}.meta.json"

    def read(self, digest: str) -> tuple[CacheEntryMeta, bytes] | None:
        meta_path = self._meta_path(digest)
        payload_path = self._payload_path(digest)
        if not meta_path.exists() or not payload_path.exists():
            return None
        meta = CacheEntryMeta.model_validate_json(meta_path.read_text(encoding="utf-8"))
        return meta, payload_path.read_bytes()

    def write(self, digest: str, meta: CacheEntryMeta, payload: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self._payload_path(digest).write_bytes(payload)
        self._meta_path(digest).write_text(meta.model_dump_json(indent=2), encoding="utf-8")

    def delete(self, digest: str) -> None:
        self._payload_path(digest).unlink(missing_ok=True)
        self._meta_path(digest).unlink(missing_ok=True)

    def list_meta(self) -> list[tuple[str, CacheEntryMeta]]:
        if not self.root.exists():
            return []
        entries = []
        for meta_path in self.root.glob("*.meta.json"):
            digest = meta_path.name.removesuffix(".meta.json")
            try:
                entries.append((digest, CacheEntryMeta.model_validate_json(meta_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError):
                logger.warning("cache_backend_failed", extra={"operation": "list", "digest": digest})
        return entries

    def clear(self) -> None:
        if not self.root.exists():
            return
        for path in self.root.iterdir():
            if path.name.endswith(".bin") or path.name.endswith(".meta.json"):
                path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class GenerationCache:
    def __init__(
        self,
        store: BlobStore,
        limits: dict[MediaKind, KindLimits] | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._limits = {**DEFAULT_LIMITS, **(limits or {})}
        self._clock = clock

    def _backend_failed(self, operation: str, exc: Exception, fingerprint: Fingerprint | None = None) -> None:
        logger.warning(
            "cache_backend_failed",
            extra={
                "operation": operation,
                "kind": fingerprint.kind.value if fingerprint else None,
                "error": str(exc),
            },
        )

    def _is_expired(self, meta: CacheEntryMeta) -> bool:
        return self._clock() - meta.created_at > self._limits[meta.kind].max_age

    def get(self, fingerprint: Fingerprint) -> bytes | None:
        try:
            entry = self._store.read(fingerprint.digest)
            if entry is None:
                return None
            meta, payload = entry
            if meta.key != fingerprint.key:
                return None
            if self._is_expired(meta):
                self._store.delete(fingerprint.digest)
                return None
            return payload
        except Exception as exc:
            self._backend_failed("get", exc, fingerprint)
            return None

    def put(self, fingerprint: Fingerprint, payload: bytes, source_text: str | None = None) -> None:
        meta = CacheEntryMeta(
            key=fingerprint.key,
            kind=fingerprint.kind,
            model=fingerprint.model,
            variant=fingerprint.variant,
            source_text=source_text if source_text is not None else fingerprint.text,
            created_at=self._clock(),
            size=len(payload),
        )
        try:
            self._store.write(fingerprint.digest, meta, payload)
        except Exception as exc:
            self._backend_failed("put", exc, fingerprint)
            return
        self.evict(fingerprint.kind)

    def evict(self, kind: MediaKind) -> int:
        """Drop expired entries of ``kind``, then the oldest beyond the kind's max count."""
        limits = self._limits[kind]
        removed = 0
        try:
            entries = sorted(
                ((digest, meta) for digest, meta in self._store.list_meta() if meta.kind == kind),
                key=lambda item: item[1].created_at,
            )
            survivors = []
            for digest, meta in entries:
                if self._is_expired(meta):
                    self._store.delete(digest)
                    removed += 1
                else:
                    survivors.append(digest)
            overflow = len(survivors) - limits.max_entries
            for digest in survivors[:max(overflow, 0)]:
                self._store.delete(digest)
                removed += 1
        except Exception as exc:
            self._backend_failed("evict", exc)
            return removed
        if removed:
            logger.info("cache_evicted", extra={"kind": kind.value, "removed": removed})
        return removed

    def clear(self) -> None:
        try:
            self._store.clear()
        except Exception as exc:
            self._backend_failed("clear", exc)

    def stats(self, kind: MediaKind | None = None) -> CacheStats:
        try:
            metas = [meta for _, meta in self._store.list_meta() if kind is None or meta.kind == kind]
        except Exception as exc:
            self._backend_failed("stats", exc)
            metas = []
        created = [meta.created_at for meta in metas]
        return CacheStats(
            entries=len(metas),
            total_bytes=sum(meta.size for meta in metas),
            oldest=min(created) if created else None,
            newest=max(created) if created else None,
        )
