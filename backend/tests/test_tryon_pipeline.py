"""
Tests for the try-on pipeline coordinator.
"""

import base64
import random
import re

import httpx
import pytest

from schemas.tryon import (
    GarmentItem,
    ImageData,
    PipelineRequest,
    ProcessingMethod,
    RawPixels,
    RequestOptions,
    SafetyTag,
    TryOnOptions,
)
from services.errors import (
    ConfigurationError,
    NetworkError,
    NoImageDataError,
    NotFoundError,
    SafetyRejectionError,
    ValidationError,
)
from services.gemini_orchestrator import GeminiOrchestrator
from services.storage import InMemoryDocumentStore, TryOnRepository
from services.tryon_pipeline import (
    FALLBACK_RENDERER_MODEL,
    SETUP_HINT,
    TryOnPipeline,
    calculate_quality_score,
    confidence_placeholder_svg,
    generate_result_id,
)
from services.usage_tracker import UsageTracker
from conftest import (
    REJECT_VERDICT,
    SAFE_VERDICT,
    make_data_url,
    make_image_bytes,
    text_response,
)


def _garment(category: str = "tops") -> GarmentItem:
    return GarmentItem(image=make_data_url(60, 90, (10, 10, 200)), category=category)


class TestQualityScore:
    def test_external_ai_with_high_confidence(self):
        assert calculate_quality_score(0.9, ProcessingMethod.EXTERNAL_AI, 0) == pytest.approx(0.97)

    def test_recommendation_bonus_is_capped(self):
        assert calculate_quality_score(0.0, "synthetic-fallback", 10) == pytest.approx(0.65)

    @pytest.mark.parametrize("confidence", [-5.0, 0.0, 0.5, 1.0, 7.0])
    def test_always_in_unit_interval(self, confidence):
        score = calculate_quality_score(confidence, ProcessingMethod.EXTERNAL_AI, 100)
        assert 0.0 <= score <= 1.0


class TestResultHelpers:
    def test_result_id_format(self):
        result_id = generate_result_id(1700000000000, random.Random(1))
        assert re.fullmatch(r"tryon_1700000000000_[0-9a-z]{9}", result_id)

    def test_placeholder_svg_shows_confidence(self):
        data_url = confidence_placeholder_svg(0.85)
        svg = base64.b64decode(data_url.split(",", 1)[1]).decode()
        assert data_url.startswith("data:image/svg+xml;base64,")
        assert "85%" in svg
        assert 'width="150"' in svg

    def test_placeholder_svg_without_confidence(self):
        svg = base64.b64decode(confidence_placeholder_svg(None).split(",", 1)[1]).decode()
        assert "N/A" in svg

    def test_placeholder_svg_zero_confidence(self):
        svg = base64.b64decode(confidence_placeholder_svg(0.0).split(",", 1)[1]).decode()
        assert "0%" in svg
        assert "N/A" not in svg


class TestGenerateTryOn:
    @pytest.mark.asyncio
    async def test_successful_run_is_external_ai(self, pipeline, subject_photo, fake_client, repository):
        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.processing_method == ProcessingMethod.EXTERNAL_AI
        assert result.confidence == pytest.approx(0.9)
        assert result.quality_score == pytest.approx(0.97)
        assert result.generated_image.startswith("data:image/png;base64,")
        assert result.image_url == result.generated_image
        assert result.thumbnail.startswith("data:image/jpeg;base64,")
        assert result.watermark.model == pipeline.orchestrator.image_model
        assert result.safety_tag == SafetyTag.APPROPRIATE
        assert result.fit_assessment.body_match == "excellent"
        assert result.version == "1.0"
        assert fake_client.stages() == ["safety", "safety", "generate", "analyze"]

        stored = await repository.get_result_record(result.id)
        assert stored["originalImage"] == subject_photo.data
        assert stored["metadata"]["processingMethod"] == "external-ai"
        assert stored["garmentItem"]["category"] == "tops"

        usage = await pipeline.usage.get_stats()
        assert usage.total_requests == 1
        assert usage.error_count == 0

    @pytest.mark.asyncio
    async def test_generate_network_error_becomes_synthetic_result(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["generate"] = ConnectionError("connection reset")

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.processing_method == ProcessingMethod.SYNTHETIC_FALLBACK
        assert result.is_synthetic
        assert result.generated_image.startswith("data:image/png;base64,")
        assert result.watermark.model == FALLBACK_RENDERER_MODEL
        assert "Not AI-generated" in result.watermark.disclaimer_text
        assert result.confidence == pytest.approx(0.85)
        assert len(result.recommendations) == 1
        assert "generation failed" in result.error
        assert "analyze" not in fake_client.stages()
        assert (await pipeline.usage.get_stats()).error_count == 1

    @pytest.mark.asyncio
    async def test_text_only_generation_keeps_placeholder(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["generate"] = text_response("I am unable to create that image.")

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.processing_method == ProcessingMethod.SYNTHETIC_FALLBACK
        assert result.generated_image is not None
        assert "analyze" not in fake_client.stages()

    @pytest.mark.asyncio
    async def test_analysis_failure_becomes_synthetic_result(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["analyze"] = ConnectionError("boom")

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.processing_method == ProcessingMethod.SYNTHETIC_FALLBACK
        assert "analysis failed" in result.error

    @pytest.mark.asyncio
    async def test_heuristic_analysis_is_tagged(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["analyze"] = text_response("Nice fit.\nWe suggest a belt.\nconfidence: 60")

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.processing_method == ProcessingMethod.EXTERNAL_AI_FALLBACK_ANALYSIS
        assert result.recommendations == ["We suggest a belt."]
        assert result.confidence == pytest.approx(0.6)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reported", ["5000", "-7", '"NaN"'])
    async def test_scores_clamped_for_adversarial_confidence(self, pipeline, subject_photo, fake_client, reported):
        fake_client.handlers["analyze"] = text_response(
            '{"description": "x", "confidence_score": %s, "recommendations": ["a", "b", "c", "d", "e"]}' % reported
        )

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert 0.0 <= result.confidence <= 1.0
        assert 0.0 <= result.quality_score <= 1.0

    @pytest.mark.asyncio
    async def test_garment_rejection_aborts_before_generation(self, pipeline, subject_photo, fake_client, repository):
        fake_client.handlers["safety"] = [text_response(SAFE_VERDICT), text_response(REJECT_VERDICT)]

        with pytest.raises(SafetyRejectionError) as exc_info:
            await pipeline.generate_try_on(subject_photo.id, _garment())

        assert exc_info.value.subject == "garment"
        assert exc_info.value.concerns == ["explicit content"]
        assert "generate" not in fake_client.stages()
        assert await repository.list_results() == []
        assert (await pipeline.usage.get_stats()).error_count == 1

    @pytest.mark.asyncio
    async def test_review_verdict_tags_result(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["safety"] = [
            text_response('{"safe": true, "concerns": ["partial nudity"], "recommendation": "review"}'),
            text_response(SAFE_VERDICT),
        ]

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.safety_tag == SafetyTag.NEEDS_REVIEW
        assert result.processing_method == ProcessingMethod.EXTERNAL_AI

    @pytest.mark.asyncio
    async def test_safety_service_outage_is_review(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["safety"] = [ConnectionError("down"), text_response(SAFE_VERDICT)]

        result = await pipeline.generate_try_on(subject_photo.id, _garment())

        assert result.safety_tag == SafetyTag.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_unknown_subject_photo(self, pipeline, fake_client):
        with pytest.raises(NotFoundError):
            await pipeline.generate_try_on("photo_missing", _garment())
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_invalid_garment_image_fails_before_network(self, pipeline, subject_photo, fake_client):
        garment = GarmentItem(image="data:image/png;base64,AAAA", category="tops")
        with pytest.raises(ValidationError):
            await pipeline.generate_try_on(subject_photo.id, garment)
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_save_result_false_skips_persistence(self, pipeline, subject_photo, repository):
        await pipeline.generate_try_on(subject_photo.id, _garment(), TryOnOptions(save_result=False))
        assert await repository.list_results() == []

    @pytest.mark.asyncio
    async def test_history_is_capped(self, fake_client, test_settings):
        repository = TryOnRepository(InMemoryDocumentStore(), history_limit=3)
        pipeline = TryOnPipeline(
            GeminiOrchestrator(fake_client, test_settings),
            repository,
            UsageTracker(repository),
            test_settings,
            rng=random.Random(3),
        )
        photo = await pipeline.register_photo(make_data_url(80, 120))

        ids = [(await pipeline.generate_try_on(photo.id, _garment())).id for _ in range(5)]

        stored = await repository.list_results(limit=10)
        assert [r.id for r in stored] == list(reversed(ids))[:3]


class TestWithoutApiKey:
    @pytest.fixture
    def offline_pipeline(self, repository, usage_tracker, test_settings):
        return TryOnPipeline(None, repository, usage_tracker, test_settings)

    @pytest.mark.asyncio
    async def test_process_image_returns_mock_detection(self, offline_pipeline):
        response = await offline_pipeline.process_image(ImageData(base64=make_data_url()))

        assert response.success is True
        assert response.detection_data.processing_method == "mock-no-api-key"
        assert response.detection_data.items[0].confidence == pytest.approx(0.85)
        assert "API key" in response.message

    @pytest.mark.asyncio
    async def test_generate_requires_configuration(self, offline_pipeline):
        with pytest.raises(ConfigurationError):
            await offline_pipeline.generate_try_on("photo_1", _garment())


class TestProcessImage:
    @pytest.mark.asyncio
    async def test_no_subject_photo_returns_detection_only(self, pipeline, fake_client):
        response = await pipeline.process_image(
            ImageData(base64=make_data_url()), RequestOptions(auto_try_on=True)
        )

        assert response.success is True
        assert response.result is None
        assert response.detection_data.items[0].type == "jacket"
        assert SETUP_HINT in response.message
        assert fake_client.stages() == ["detect"]

    @pytest.mark.asyncio
    async def test_without_auto_try_on_only_detects(self, pipeline, subject_photo, fake_client):
        response = await pipeline.process_image(ImageData(base64=make_data_url()))

        assert response.result is None
        assert response.detection_data.metadata["lighting"] == "studio"
        assert fake_client.stages() == ["detect"]

    @pytest.mark.asyncio
    async def test_auto_try_on_with_photo_generates(self, pipeline, subject_photo, fake_client):
        response = await pipeline.process_image(
            ImageData(base64=make_data_url()), RequestOptions(auto_try_on=True, source="screenshot")
        )

        assert response.result is not None
        assert response.result.garment_item.category.value == "tops"
        assert response.result.garment_item.description == "red jacket"
        assert response.result.subject_photo_id == subject_photo.id
        assert fake_client.stages() == ["detect", "safety", "safety", "generate", "analyze"]

    @pytest.mark.asyncio
    async def test_no_items_detected(self, pipeline, subject_photo, fake_client):
        fake_client.handlers["detect"] = text_response('{"items": []}')

        response = await pipeline.process_image(
            ImageData(base64=make_data_url()), RequestOptions(auto_try_on=True)
        )

        assert response.result is None
        assert "No clothing items" in response.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            '{"items": [{"category": "tops", "type": "shirt", "boundingBox": [10, 10, 40, 40]}]}',
            '{"items": [{"category": "tops", "type": "shirt", "color": ["red", "white"]}]}',
            '{"items": 3}',
            '{"items": [{"category": "tops", "type": "shirt"}, "not an item", 7]}',
        ],
    )
    async def test_unexpected_detection_shapes_still_answer(self, pipeline, fake_client, payload):
        fake_client.handlers["detect"] = text_response(payload)
        request = PipelineRequest.model_validate(
            {"action": "processImage", "imageData": {"base64": make_data_url()}}
        )

        response = await pipeline.handle_request(request)

        assert response.success is True
        assert response.detection_data is not None
        for item in response.detection_data.items:
            assert item.type == "shirt"

    @pytest.mark.asyncio
    async def test_list_shaped_fields_are_coerced(self, pipeline, fake_client):
        fake_client.handlers["detect"] = text_response(
            '{"items": [{"category": "tops", "color": ["red", "white"], "boundingBox": [1, 2, 30, 40]}]}'
        )

        response = await pipeline.process_image(ImageData(base64=make_data_url()))

        item = response.detection_data.items[0]
        assert item.color == "red, white"
        assert item.bounding_box == {"x": 1, "y": 2, "width": 30, "height": 40}

    @pytest.mark.asyncio
    async def test_detect_outage_uses_fallback_detection(self, pipeline, fake_client):
        fake_client.handlers["detect"] = ConnectionError("offline")

        response = await pipeline.process_image(ImageData(base64=make_data_url()))

        assert response.success is True
        assert response.detection_data.processing_method == "fallback-detection"
        assert response.detection_data.items[0].confidence == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_raw_pixels_input(self, pipeline):
        raw = base64.b64encode(bytes([120, 60, 30, 255]) * (40 * 40)).decode()
        content, mime_type = await pipeline.resolve_image(
            ImageData(raw_pixels=RawPixels(width=40, height=40, data=raw))
        )
        assert mime_type == "image/png"
        assert content.startswith(b"\x89PNG")

    @pytest.mark.asyncio
    async def test_raw_pixels_length_mismatch(self, pipeline):
        raw = base64.b64encode(b"\x00" * 10).decode()
        with pytest.raises(ValidationError):
            await pipeline.resolve_image(ImageData(raw_pixels=RawPixels(width=40, height=40, data=raw)))


class TestUrlImages:
    def _pipeline(self, settings, repository, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TryOnPipeline(None, repository, UsageTracker(repository), settings, http_client=client)

    @pytest.mark.asyncio
    async def test_fetches_url(self, test_settings, repository):
        png = make_image_bytes(64, 64)
        pipeline = self._pipeline(
            test_settings,
            repository,
            lambda request: httpx.Response(200, content=png, headers={"content-type": "image/png"}),
        )

        content, mime_type = await pipeline.resolve_image(ImageData(url="https://shop.example/item.png"))

        assert content == png
        assert mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_oversized_download_rejected(self, test_settings, repository):
        settings = test_settings.model_copy(update={"MAX_UPLOAD_SIZE_BYTES": 100})
        pipeline = self._pipeline(
            settings, repository, lambda request: httpx.Response(200, content=b"\x00" * 500)
        )
        with pytest.raises(ValidationError, match="too large"):
            await pipeline.resolve_image(ImageData(url="https://shop.example/big.png"))

    @pytest.mark.asyncio
    async def test_http_error_is_network_error(self, test_settings, repository):
        pipeline = self._pipeline(test_settings, repository, lambda request: httpx.Response(404))
        with pytest.raises(NetworkError, match="HTTP 404"):
            await pipeline.resolve_image(ImageData(url="https://shop.example/missing.png"))

    @pytest.mark.asyncio
    async def test_non_http_scheme_rejected(self, test_settings, repository):
        pipeline = self._pipeline(test_settings, repository, lambda request: httpx.Response(200))
        with pytest.raises(ValidationError):
            await pipeline.resolve_image(ImageData(url="file:///etc/passwd"))


class TestRefine:
    @pytest.mark.asyncio
    async def test_refine_updates_stored_result(self, pipeline, subject_photo, repository):
        original = await pipeline.generate_try_on(subject_photo.id, _garment())

        refined = await pipeline.refine(original.id, "make it more casual")

        assert refined.id == original.id
        assert refined.generated_image != original.generated_image
        assert [entry.prompt for entry in refined.refinement_history] == ["make it more casual"]
        stored = await repository.get_result(original.id)
        assert len(stored.refinement_history) == 1
        record = await repository.get_result_record(original.id)
        assert record["originalImage"] == subject_photo.data

    @pytest.mark.asyncio
    async def test_refine_without_image_surfaces_error(self, pipeline, subject_photo, fake_client):
        original = await pipeline.generate_try_on(subject_photo.id, _garment())
        fake_client.handlers["refine"] = text_response("Cannot edit.")

        with pytest.raises(NoImageDataError):
            await pipeline.refine(original.id, "brighter")
        assert (await pipeline.usage.get_stats()).error_count == 1

    @pytest.mark.asyncio
    async def test_refine_unknown_result(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.refine("tryon_0_missing00", "brighter")


class TestBatchAndDispatch:
    @pytest.mark.asyncio
    async def test_batch_reports_per_item_outcomes(self, pipeline, subject_photo):
        garments = [_garment("tops"), GarmentItem(image="data:image/png;base64,AAAA", category="shoes")]

        response = await pipeline.batch_try_on(garments)

        assert response.processed == 2
        assert response.successful == 1
        assert response.results[0].result is not None
        assert response.results[1].success is False
        assert response.results[1].error

    @pytest.mark.asyncio
    async def test_batch_requires_photo(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.batch_try_on([_garment()])

    @pytest.mark.asyncio
    async def test_handle_request_generate(self, pipeline, subject_photo):
        request = PipelineRequest.model_validate(
            {"action": "generateTryOn", "garment": {"image": make_data_url(), "category": "dresses"}}
        )

        response = await pipeline.handle_request(request)

        assert response.success is True
        assert response.result.subject_photo_id == subject_photo.id

    @pytest.mark.asyncio
    async def test_inline_data_url_is_not_stored_as_garment_url(self, pipeline, subject_photo, repository):
        request = PipelineRequest.model_validate(
            {"action": "generateTryOn", "imageData": {"url": make_data_url()}}
        )

        response = await pipeline.handle_request(request)

        assert response.success is True
        assert response.result.garment_item.url is None
        record = await repository.get_result_record(response.result.id)
        assert record["garmentItem"]["url"] is None

    @pytest.mark.asyncio
    async def test_handle_request_converts_errors(self, pipeline):
        response = await pipeline.handle_request(PipelineRequest(action="refineImage"))

        assert response.success is False
        assert response.error_type == "ValidationError"
        assert "resultId" in response.error

    @pytest.mark.asyncio
    async def test_handle_request_generate_without_photo(self, pipeline):
        request = PipelineRequest.model_validate(
            {"action": "generateTryOn", "imageData": {"base64": make_data_url()}}
        )

        response = await pipeline.handle_request(request)

        assert response.success is False
        assert response.error_type == "NotFoundError"
        assert SETUP_HINT in response.error

    def test_processing_stats(self, pipeline):
        stats = pipeline.get_processing_stats()
        assert stats.version == "1.0"
        assert "tops" in stats.supported_categories
        assert stats.limitations
