# keel_engine/cache.py
"""
Stage output cache.

Features:
- Fingerprint = SHA-256 over the cache-key inputs, the stage key and the
  content hashes of watched files
- TTL expiry plus immediate invalidation when a watched file changes
- Single-flight: one in-flight computation per (stage, input digest),
  later callers await the first through asyncio.shield
- Atomic publish: entries are fully built before they become visible;
  on disk they are written to a temp file and os.replace'd into place
- Only successful outputs are published; failed or cancelled
  computations leave the cache untouched
- Bounded: the oldest 10% are evicted once max_entries is exceeded
"""
import asyncio
import copy
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional

from keel_engine.pipeline import PipelineStage, StageOutput

logger = logging.getLogger("keel.engine.cache")

MISSING_FILE_HASH = "missing"
DIGEST_LENGTH = 24
EVICT_FRACTION = 0.1

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class CacheFingerprint:
    """Cache identity of one stage invocation."""
    input_digest: str
    file_hashes: tuple[tuple[str, str], ...]
    digest: str


@dataclass(frozen=True)
class CacheEntry:
    stage: str
    input_digest: str
    digest: str
    file_hashes: tuple[tuple[str, str], ...]
    output: dict[str, Any]
    created_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps({
            "stage": self.stage,
            "input_digest": self.input_digest,
            "digest": self.digest,
            "file_hashes": [list(pair) for pair in self.file_hashes],
            "output": self.output,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        })

    @classmethod
    def from_json(cls, text: str) -> "CacheEntry":
        data = json.loads(text)
        return cls(
            stage=data["stage"],
            input_digest=data["input_digest"],
            digest=data["digest"],
            file_hashes=tuple((p, h) for p, h in data["file_hashes"]),
            output=data["output"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a lookup: reason is hit / no_entry / expired / file_changed."""
    hit: bool
    reason: str
    output: Optional[StageOutput] = None


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


def hash_file(path: str | Path) -> str:
    """SHA-256 of a file's content, or ``missing``."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(65536), b""):
                digest.update(chunk)
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return MISSING_FILE_HASH
    return digest.hexdigest()


def cache_key_values(stage: PipelineStage, resolved_inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Inputs that participate in the key (default: all except ``*_content``)."""
    names = stage.cache.cache_key_inputs if stage.cache else None
    if names is None:
        names = [n for n in resolved_inputs if not n.endswith("_content")]
    return {n: resolved_inputs.get(n) for n in sorted(names)}


def _entry_output(output: StageOutput) -> dict[str, Any]:
    return {
        "stage": output.stage,
        "outputs": output.outputs,
        "duration_ms": output.duration_ms,
        "metadata": {k: v for k, v in output.metadata.items() if k not in ("cached", "attempts")},
    }


class StageOutputCache:
    """
    In-memory stage cache with optional JSON persistence.

    Parameters:
        max_entries: Capacity before the oldest 10% are evicted.
        persist_dir: Directory for JSON entries (None = memory only).
        clock: Seconds-since-epoch callable, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 100,
        persist_dir: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        if self.persist_dir:
            self.persist_dir.mkdir(parents=True, exist_ok=True)

    def _now_ms(self) -> float:
        return self._clock() * 1000

    # ── fingerprints ────────────────────────────────────────────────────

    async def fingerprint(self, stage: PipelineStage, resolved_inputs: Mapping[str, Any]) -> CacheFingerprint:
        """Hash key inputs and watched files (file reads run off-loop)."""
        input_digest = hashlib.sha256(
            _canonical({"stage": stage.key, "inputs": cache_key_values(stage, resolved_inputs)}).encode("utf-8")
        ).hexdigest()[:DIGEST_LENGTH]

        paths = sorted(stage.cache.file_dependencies) if stage.cache else []
        hashes = []
        for path in paths:
            hashes.append((path, await asyncio.to_thread(hash_file, path)))
        file_hashes = tuple(hashes)

        digest = hashlib.sha256(
            _canonical({"inputs": input_digest, "__file_hashes__": file_hashes}).encode("utf-8")
        ).hexdigest()[:DIGEST_LENGTH]
        return CacheFingerprint(input_digest=input_digest, file_hashes=file_hashes, digest=digest)

    # ── lookup / publish ────────────────────────────────────────────────

    async def lookup(self, stage_id: str, fp: CacheFingerprint) -> CacheLookup:
        slot = (stage_id, fp.input_digest)
        entry = self._entries.get(slot)
        if entry is None and self.persist_dir:
            entry = await asyncio.to_thread(self._read_entry, slot)
            if entry is not None:
                self._entries[slot] = entry

        if entry is None:
            self._misses += 1
            return CacheLookup(hit=False, reason="no_entry")
        if self._now_ms() >= entry.expires_at:
            await self._drop(slot)
            self._misses += 1
            return CacheLookup(hit=False, reason="expired")
        if entry.digest != fp.digest:
            await self._drop(slot)
            self._misses += 1
            return CacheLookup(hit=False, reason="file_changed")

        self._hits += 1
        return CacheLookup(hit=True, reason="hit", output=self._materialize(entry))

    async def publish(self, stage_id: str, fp: CacheFingerprint, output: StageOutput, ttl_ms: int) -> CacheEntry:
        """Store a successful output; the dict swap is the visibility point."""
        now = self._now_ms()
        entry = CacheEntry(
            stage=stage_id,
            input_digest=fp.input_digest,
            digest=fp.digest,
            file_hashes=fp.file_hashes,
            output=copy.deepcopy(_entry_output(output)),
            created_at=now,
            expires_at=now + ttl_ms,
        )
        slot = (stage_id, fp.input_digest)
        self._entries[slot] = entry
        if self.persist_dir:
            await asyncio.to_thread(self._write_entry, slot, entry)
        await self._evict_if_needed()
        logger.debug("Cached stage '%s' (%s, ttl=%dms)", stage_id, fp.digest, ttl_ms)
        return entry

    async def get_or_compute(
        self,
        stage_id: str,
        fp: CacheFingerprint,
        ttl_ms: int,
        compute: Callable[[], Awaitable[StageOutput]],
        cacheable: Optional[Callable[[StageOutput], bool]] = None,
    ) -> tuple[StageOutput, bool]:
        """
        Return a cached output or run *compute* exactly once per key.

        Returns:
            (output, from_cache)
        """
        slot = (stage_id, fp.input_digest)
        while True:
            found = await self.lookup(stage_id, fp)
            if found.hit:
                return found.output, True
            pending = self._inflight.get(slot)
            if pending is None:
                break
            logger.debug("Stage '%s' already computing; awaiting in-flight result", stage_id)
            entry = await asyncio.shield(pending)
            if entry is not None and entry.digest == fp.digest:
                self._hits += 1
                return self._materialize(entry), True
            # Producer failed, was cancelled or saw different files: re-check

        future = asyncio.get_running_loop().create_future()
        self._inflight[slot] = future
        entry = None
        try:
            output = await compute()
            if output.success and not output.skipped and (cacheable is None or cacheable(output)):
                entry = await self.publish(stage_id, fp, output, ttl_ms)
            return output, False
        finally:
            self._inflight.pop(slot, None)
            if not future.done():
                future.set_result(entry)

    # ── maintenance ─────────────────────────────────────────────────────

    async def invalidate(self, stage_id: Optional[str] = None) -> int:
        """Drop entries for one stage (or all); returns the count removed."""
        slots = [s for s in self._entries if stage_id is None or s[0] == stage_id]
        if self.persist_dir:
            slots.extend(
                s for s in await asyncio.to_thread(self._persisted_slots)
                if (stage_id is None or s[0] == stage_id) and s not in slots
            )
        for slot in slots:
            await self._drop(slot)
        return len(slots)

    async def clear(self) -> None:
        await self.invalidate()
        self._hits = self._misses = self._evictions = 0

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
        }

    # ── internals ───────────────────────────────────────────────────────

    def _materialize(self, entry: CacheEntry) -> StageOutput:
        data = copy.deepcopy(entry.output)
        metadata = dict(data.get("metadata") or {})
        metadata.update({
            "cached": True,
            "cache_key": entry.digest,
            "cached_at": entry.created_at,
            "original_duration_ms": data.get("duration_ms", 0),
        })
        return StageOutput(
            stage=data.get("stage", entry.stage),
            success=True,
            outputs=data.get("outputs") or {},
            duration_ms=0,
            metadata=metadata,
        )

    async def _evict_if_needed(self) -> None:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        count = max(overflow, int(len(self._entries) * EVICT_FRACTION), 1)
        oldest = sorted(self._entries, key=lambda s: self._entries[s].created_at)[:count]
        for slot in oldest:
            await self._drop(slot)
            self._evictions += 1
        logger.debug("Evicted %d cache entries", len(oldest))

    async def _drop(self, slot: tuple[str, str]) -> None:
        self._entries.pop(slot, None)
        if self.persist_dir:
            await asyncio.to_thread(self._delete_entry, slot)

    def _path_for(self, slot: tuple[str, str]) -> Path:
        stage_id, input_digest = slot
        return self.persist_dir / f"{_UNSAFE_CHARS.sub('_', stage_id)}__{input_digest}.json"

    def _read_entry(self, slot: tuple[str, str]) -> Optional[CacheEntry]:
        path = self._path_for(slot)
        try:
            entry = CacheEntry.from_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cache entry %s: %s", path.name, e)
            path.unlink(missing_ok=True)
            return None
        return entry if entry.stage == slot[0] else None

    def _write_entry(self, slot: tuple[str, str], entry: CacheEntry) -> None:
        try:
            payload = entry.to_json()
        except (TypeError, ValueError) as e:
            logger.warning("Stage '%s' output is not JSON-serializable; memory-only cache: %s", entry.stage, e)
            return
        target = self._path_for(slot)
        fd, tmp = tempfile.mkstemp(dir=self.persist_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, target)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            logger.warning("Failed to persist cache entry for '%s': %s", entry.stage, e)

    def _delete_entry(self, slot: tuple[str, str]) -> None:
        self._path_for(slot).unlink(missing_ok=True)

    def _persisted_slots(self) -> list[tuple[str, str]]:
        slots = []
        for path in self.persist_dir.glob("*.json"):
            if path.name.startswith(".tmp-"):
                continue
            try:
                entry = CacheEntry.from_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError, KeyError, TypeError):
                continue
            slots.append((entry.stage, entry.input_digest))
        return slots
