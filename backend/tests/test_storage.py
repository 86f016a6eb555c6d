"""
Tests for document stores and the try-on repository.
"""

import json

import pytest

from schemas.tryon import GarmentItem, ProcessingMethod, SubjectPhoto, TryOnResult, UsageStats, Watermark
from services.errors import NotFoundError, StorageError
from services.storage import (
    InMemoryDocumentStore,
    LocalDocumentStore,
    TryOnRepository,
    get_storage,
)


def _result(result_id: str, **overrides) -> TryOnResult:
    fields = dict(
        id=result_id,
        generated_image="data:image/png;base64,AAAA",
        description="fits",
        recommendations=["wear boots"],
        confidence=0.8,
        quality_score=0.9,
        watermark=Watermark(model="m", disclaimer_text="d", synthetic_id="s"),
        processing_method=ProcessingMethod.EXTERNAL_AI,
        subject_photo_id="photo_1",
        garment_item=GarmentItem(image="data:image/png;base64,BBBB", category="tops"),
    )
    fields.update(overrides)
    return TryOnResult(**fields)


@pytest.fixture(params=["memory", "local"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return LocalDocumentStore(tmp_path / "docs")


class TestDocumentStores:
    @pytest.mark.asyncio
    async def test_put_get_roundtrip(self, store):
        await store.put("results", "r1", {"id": "r1", "n": 1})
        assert await store.get("results", "r1") == {"id": "r1", "n": 1}

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self, store):
        assert await store.get("results", "nope") is None

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, store):
        await store.put("results", "r1", {"id": "r1"})
        assert await store.delete("results", "r1") is True
        assert await store.delete("results", "r1") is False

    @pytest.mark.asyncio
    async def test_list_collection(self, store):
        await store.put("photos", "a", {"id": "a"})
        await store.put("photos", "b", {"id": "b"})
        assert sorted(doc["id"] for doc in await store.list("photos")) == ["a", "b"]
        assert await store.list("empty") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["../escape", "a/b", "", ".."])
    async def test_unsafe_keys_rejected(self, store, key):
        with pytest.raises(StorageError):
            await store.put("results", key, {"id": "x"})

    @pytest.mark.asyncio
    async def test_non_serialisable_document(self, store):
        with pytest.raises(StorageError):
            await store.put("results", "r1", {"value": object()})

    @pytest.mark.asyncio
    async def test_stored_documents_do_not_alias_caller(self, store):
        doc = {"id": "r1", "tags": ["a"]}
        await store.put("results", "r1", doc)
        doc["tags"].append("b")
        assert (await store.get("results", "r1"))["tags"] == ["a"]


class TestLocalDocumentStore:
    @pytest.mark.asyncio
    async def test_writes_json_files(self, tmp_path):
        store = LocalDocumentStore(tmp_path)
        await store.put("usage", "stats", {"totalRequests": 3})

        path = tmp_path / "usage" / "stats.json"
        assert json.loads(path.read_text()) == {"totalRequests": 3}
        assert not list(tmp_path.glob("usage/*.tmp"))

    @pytest.mark.asyncio
    async def test_unreadable_files_skipped_in_list(self, tmp_path):
        store = LocalDocumentStore(tmp_path)
        await store.put("results", "ok", {"id": "ok"})
        (tmp_path / "results" / "broken.json").write_text("{not json")

        assert await store.list("results") == [{"id": "ok"}]


def test_get_storage_selects_backend(test_settings, tmp_path):
    assert isinstance(get_storage(test_settings), InMemoryDocumentStore)
    local = test_settings.model_copy(update={"STORAGE_BACKEND": "local", "STORAGE_DIR": str(tmp_path)})
    assert isinstance(get_storage(local), LocalDocumentStore)


class TestTryOnRepository:
    @pytest.mark.asyncio
    async def test_save_and_load_result(self, repository):
        result = _result("tryon_1_aaaaaaaaa")
        await repository.save_result(result, original_image="data:image/png;base64,CCCC")

        record = await repository.get_result_record(result.id)
        assert record["originalImage"] == "data:image/png;base64,CCCC"
        assert record["generatedImage"] == result.generated_image
        assert record["category"] == "tops"
        assert record["metadata"]["qualityScore"] == pytest.approx(0.9)
        assert record["metadata"]["fitAnalysis"] == {"sizeCompat": None, "bodyMatch": None, "poseCompat": None}

        loaded = await repository.get_result(result.id)
        assert loaded.id == result.id
        assert loaded.recommendations == ["wear boots"]
        assert loaded.garment_item.category.value == "tops"

    @pytest.mark.asyncio
    async def test_history_limit_evicts_oldest(self):
        repository = TryOnRepository(InMemoryDocumentStore(), history_limit=2)
        for index in range(4):
            await repository.save_result(_result(f"tryon_{index}_aaaaaaaaa"))

        remaining = [r.id for r in await repository.list_results()]
        assert remaining == ["tryon_3_aaaaaaaaa", "tryon_2_aaaaaaaaa"]

    @pytest.mark.asyncio
    async def test_update_keeps_original_image(self, repository):
        result = _result("tryon_5_aaaaaaaaa")
        await repository.save_result(result, original_image="data:image/png;base64,ORIG")

        result.description = "updated"
        await repository.update_result(result)

        record = await repository.get_result_record(result.id)
        assert record["originalImage"] == "data:image/png;base64,ORIG"
        assert record["metadata"]["description"] == "updated"

    @pytest.mark.asyncio
    async def test_missing_and_invalid_ids_are_not_found(self, repository):
        with pytest.raises(NotFoundError):
            await repository.get_result("tryon_404_xxxxxxxxx")
        with pytest.raises(NotFoundError):
            await repository.get_result("../../etc/passwd")
        with pytest.raises(NotFoundError):
            await repository.delete_result("tryon_404_xxxxxxxxx")

    @pytest.mark.asyncio
    async def test_photos_newest_first(self, repository):
        from datetime import datetime, timedelta, timezone

        now = datetime.now(timezone.utc)
        await repository.add_photo(SubjectPhoto(id="old", data="x", created_at=now - timedelta(days=1)))
        await repository.add_photo(SubjectPhoto(id="new", data="y", created_at=now))

        assert [p.id for p in await repository.list_photos()] == ["new", "old"]
        assert (await repository.latest_photo()).id == "new"

        await repository.delete_photo("new")
        assert (await repository.latest_photo()).id == "old"

    @pytest.mark.asyncio
    async def test_usage_defaults_and_persistence(self, repository):
        assert await repository.get_usage() == UsageStats()
        await repository.save_usage(UsageStats(total_requests=4, error_count=1))
        stored = await repository.get_usage()
        assert stored.total_requests == 4
        assert stored.error_count == 1

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_state_untouched(self, repository, monkeypatch):
        await repository.save_result(_result("tryon_1_aaaaaaaaa"))

        async def failing_put(collection, key, doc):
            raise StorageError("disk full")

        monkeypatch.setattr(repository.store, "put", failing_put)
        with pytest.raises(StorageError):
            await repository.save_result(_result("tryon_2_aaaaaaaaa"))

        assert [r.id for r in await repository.list_results()] == ["tryon_1_aaaaaaaaa"]
