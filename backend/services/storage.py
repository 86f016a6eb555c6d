"""
Persistence for subject photos, try-on results and usage counters.

The store is a plain document surface (get/put/delete/list per collection).
``TryOnRepository`` layers the domain rules on top: typed records, newest-first
listing and the result history cap.
"""

import asyncio
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional, Protocol

from config import Settings
from schemas.tryon import SubjectPhoto, TryOnResult, UsageStats
from services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

PHOTOS = "photos"
RESULTS = "results"
USAGE = "usage"
USAGE_KEY = "stats"

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def _check_name(value: str, kind: str) -> str:
    if not _SAFE_NAME_RE.match(value or "") or value in (".", ".."):
        raise StorageError(f"Invalid {kind} name: {value!r}")
    return value


def _lookup_key(value: str, kind: str) -> str:
    if not _SAFE_NAME_RE.match(value or "") or value in (".", ".."):
        raise NotFoundError(f"{kind} not found: {value}")
    return value


class DocumentStore(Protocol):
    """Protocol for document store backends."""

    async def get(self, collection: str, key: str) -> Optional[dict]:
        ...

    async def put(self, collection: str, key: str, doc: dict) -> None:
        ...

    async def delete(self, collection: str, key: str) -> bool:
        ...

    async def list(self, collection: str) -> list[dict]:
        ...


class InMemoryDocumentStore:
    """Process-local store for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Optional[dict]:
        raw = self._collections.get(collection, {}).get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, collection: str, key: str, doc: dict) -> None:
        _check_name(collection, "collection")
        _check_name(key, "key")
        try:
            # Serialise on write so stored docs never alias caller objects.
            raw = json.dumps(doc)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Document is not JSON serialisable: {exc}") from exc
        async with self._lock:
            self._collections.setdefault(collection, {})[key] = raw

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None

    async def list(self, collection: str) -> list[dict]:
        return [json.loads(raw) for raw in self._collections.get(collection, {}).values()]


class LocalDocumentStore:
    """JSON files under ``base_dir/<collection>/<key>.json``."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info("Local document store initialized at %s", self.base_dir)

    def _validate_within_base_dir(self, file_path: Path) -> None:
        base_dir_resolved = self.base_dir.resolve()
        resolved_path = file_path.resolve()
        try:
            resolved_path.relative_to(base_dir_resolved)
        except ValueError:
            raise StorageError("Invalid path: path traversal attempt detected")

    def _path(self, collection: str, key: str) -> Path:
        file_path = self.base_dir / _check_name(collection, "collection") / f"{_check_name(key, 'key')}.json"
        self._validate_within_base_dir(file_path)
        return file_path

    async def get(self, collection: str, key: str) -> Optional[dict]:
        file_path = self._path(collection, key)
        if not file_path.exists():
            return None
        try:
            return json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read {collection}/{key}: {exc}") from exc

    async def put(self, collection: str, key: str, doc: dict) -> None:
        file_path = self._path(collection, key)
        try:
            payload = json.dumps(doc)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Document is not JSON serialisable: {exc}") from exc

        async with self._lock:
            tmp_path = file_path.with_suffix(".json.tmp")
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(payload, encoding="utf-8")
                os.replace(tmp_path, file_path)
            except OSError as exc:
                tmp_path.unlink(missing_ok=True)
                raise StorageError(f"Failed to write {collection}/{key}: {exc}") from exc

    async def delete(self, collection: str, key: str) -> bool:
        file_path = self._path(collection, key)
        async with self._lock:
            try:
                file_path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise StorageError(f"Failed to delete {collection}/{key}: {exc}") from exc
        return True

    async def list(self, collection: str) -> list[dict]:
        directory = self.base_dir / _check_name(collection, "collection")
        if not directory.is_dir():
            return []
        docs = []
        for file_path in sorted(directory.glob("*.json")):
            try:
                docs.append(json.loads(file_path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable document %s: %s", file_path, exc)
        return docs


def get_storage(settings: Settings) -> DocumentStore:
    """Build the document store selected by ``STORAGE_BACKEND``."""
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryDocumentStore()
    return LocalDocumentStore(settings.STORAGE_DIR)


class TryOnRepository:
    """Typed access to photos, results and usage stats."""

    def __init__(self, store: DocumentStore, history_limit: int = 50):
        self.store = store
        self.history_limit = history_limit

    # Subject photos

    async def add_photo(self, photo: SubjectPhoto) -> SubjectPhoto:
        await self.store.put(PHOTOS, photo.id, photo.model_dump(mode="json", by_alias=True))
        return photo

    async def get_photo(self, photo_id: str) -> SubjectPhoto:
        doc = await self.store.get(PHOTOS, _lookup_key(photo_id, "Subject photo"))
        if doc is None:
            raise NotFoundError(f"Subject photo not found: {photo_id}")
        return SubjectPhoto.model_validate(doc)

    async def list_photos(self) -> list[SubjectPhoto]:
        photos = [SubjectPhoto.model_validate(doc) for doc in await self.store.list(PHOTOS)]
        return sorted(photos, key=lambda p: p.created_at, reverse=True)

    async def latest_photo(self) -> Optional[SubjectPhoto]:
        photos = await self.list_photos()
        return photos[0] if photos else None

    async def delete_photo(self, photo_id: str) -> None:
        if not await self.store.delete(PHOTOS, _lookup_key(photo_id, "Subject photo")):
            raise NotFoundError(f"Subject photo not found: {photo_id}")

    # Try-on results

    async def save_result(self, result: TryOnResult, original_image: Optional[str] = None) -> str:
        """Write a new result, then evict the oldest beyond the history cap."""
        record = result.to_record(original_image)
        record["savedAt"] = time.time_ns()
        await self.store.put(RESULTS, result.id, record)
        await self._enforce_history_limit()
        logger.info("Saved try-on result %s (%s)", result.id, result.processing_method.value)
        return result.id

    async def update_result(self, result: TryOnResult) -> None:
        existing = await self.get_result_record(result.id)
        record = result.to_record(existing.get("originalImage"))
        record["savedAt"] = existing.get("savedAt", time.time_ns())
        await self.store.put(RESULTS, result.id, record)

    async def get_result_record(self, result_id: str) -> dict:
        doc = await self.store.get(RESULTS, _lookup_key(result_id, "Try-on result"))
        if doc is None:
            raise NotFoundError(f"Try-on result not found: {result_id}")
        return doc

    async def get_result(self, result_id: str) -> TryOnResult:
        return TryOnResult.from_record(await self.get_result_record(result_id))

    async def _sorted_records(self) -> list[dict]:
        records = await self.store.list(RESULTS)
        return sorted(
            records, key=lambda r: (r.get("savedAt", 0), r.get("id", "")), reverse=True
        )

    async def list_results(self, limit: int = 50) -> list[TryOnResult]:
        records = await self._sorted_records()
        return [TryOnResult.from_record(r) for r in records[: max(0, limit)]]

    async def delete_result(self, result_id: str) -> None:
        if not await self.store.delete(RESULTS, _lookup_key(result_id, "Try-on result")):
            raise NotFoundError(f"Try-on result not found: {result_id}")

    async def _enforce_history_limit(self) -> None:
        records = await self._sorted_records()
        for stale in records[self.history_limit :]:
            await self.store.delete(RESULTS, stale["id"])
            logger.debug("Evicted try-on result %s (history limit %d)", stale["id"], self.history_limit)

    # Usage

    async def get_usage(self) -> UsageStats:
        doc = await self.store.get(USAGE, USAGE_KEY)
        return UsageStats.model_validate(doc) if doc else UsageStats()

    async def save_usage(self, stats: UsageStats) -> None:
        await self.store.put(USAGE, USAGE_KEY, stats.model_dump(mode="json", by_alias=True))
