"""
Try-on pipeline coordinator.

Sequence for one run:

    validate inputs -> safety(subject) -> safety(garment) -> prepare(subject)
    -> prepare(garment) -> generate -> analyze -> post-process -> persist

Generate/Analyze failures never reach the caller: they become a clearly
tagged synthetic result. Safety rejections, validation and configuration
errors do surface, before any generation call is made.
"""

import asyncio
import base64
import binascii
import logging
import random
import string
import time
import uuid
from io import BytesIO
from typing import Any, Callable, Optional

import httpx
from PIL import Image

from config import Settings
from schemas.tryon import (
    BatchItemOutcome,
    BatchTryOnResponse,
    DetectedItem,
    DetectionData,
    FitAssessment,
    GarmentItem,
    ImageData,
    PipelineRequest,
    PipelineResponse,
    ProcessingMethod,
    ProcessingStats,
    RefinementEntry,
    RequestOptions,
    SafetyTag,
    StylingAssessment,
    SubjectPhoto,
    TryOnOptions,
    TryOnResult,
    VisualAssessment,
    Watermark,
    utcnow,
)
from services import image_processor
from services.error_sanitizer import sanitize_public_error_message
from services.errors import (
    ConfigurationError,
    ImageLoadError,
    NetworkError,
    NotFoundError,
    SafetyRejectionError,
    TryOnError,
    ValidationError,
)
from services.gemini_orchestrator import (
    AnalysisResult,
    GeminiOrchestrator,
    GeneratedImage,
    SafetyVerdict,
    synthesize_fallback,
)
from services.image_processor import EnhanceOptions, ProcessedImage
from services.image_validation import (
    decode_image_input,
    normalize_image_mime_type,
    to_data_url,
    validate_uploaded_image_payload,
)
from services.storage import TryOnRepository, get_storage
from services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

PIPELINE_VERSION = "1.0"
SETUP_HINT = "Add a photo in Settings to enable virtual try-on"
URL_FETCH_TIMEOUT_SECONDS = 30.0

WATERMARK_DISCLAIMER = (
    "AI-generated virtual try-on preview. Actual fit, colour and appearance may differ."
)
SYNTHETIC_DISCLAIMER = (
    "Locally rendered placeholder. Not AI-generated content and not a real try-on."
)
FALLBACK_RENDERER_MODEL = "local-fallback-renderer"

FALLBACK_DESCRIPTIONS = (
    "The {category} fits well and complements your body shape. The color works nicely with your skin tone.",
    "This item creates a flattering silhouette. Consider pairing with complementary accessories.",
    "The fit appears comfortable and stylish. The fabric drapes naturally on your frame.",
    "This piece enhances your natural features while maintaining a modern, fashionable look.",
)
FALLBACK_RECOMMENDATIONS = (
    "Consider sizing up for a more relaxed fit",
    "This color palette works well with your complexion",
    "Pair with neutral accessories for a balanced look",
    "The style suits your body type perfectly",
)
FALLBACK_CONFIDENCE = 0.85

SUBJECT_ENHANCEMENT = EnhanceOptions(brightness=1.1, contrast=1.05, sharpen=True)
GARMENT_ENHANCEMENT = EnhanceOptions(brightness=1.05, contrast=1.1, sharpen=True)

SUPPORTED_CATEGORIES = ["tops", "bottoms", "dresses", "shoes", "accessories"]
PIPELINE_FEATURES = [
    "AI-powered try-on generation",
    "Multiple clothing categories",
    "Quality enhancement",
    "Safety screening",
    "Result refinement",
    "Batch processing",
    "Local storage",
]
PIPELINE_LIMITATIONS = [
    "Requires user photos",
    "Internet connection for AI processing",
    "Processing time varies by image complexity",
]

_BASE36 = string.digits + string.ascii_lowercase


def calculate_quality_score(
    confidence: float, processing_method: ProcessingMethod | str, recommendation_count: int
) -> float:
    confidence = min(1.0, max(0.0, float(confidence)))
    score = 0.5 + confidence * 0.3
    if ProcessingMethod(processing_method) == ProcessingMethod.EXTERNAL_AI:
        score += 0.2
    score += min(0.15, 0.05 * max(0, recommendation_count))
    return min(1.0, max(0.0, score))


def generate_result_id(now_ms: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    """``tryon_<epoch ms>_<9 base36 chars>``."""
    rng = rng or random.SystemRandom()
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(rng.choice(_BASE36) for _ in range(9))
    return f"tryon_{ms}_{suffix}"


def confidence_placeholder_svg(confidence: Optional[float]) -> str:
    """150x150 SVG thumbnail showing the confidence percentage, as a data URL."""
    label = f"{round(confidence * 100)}%" if confidence is not None else "N/A"
    svg = (
        '<svg width="150" height="150" xmlns="http://www.w3.org/2000/svg">'
        '<rect width="150" height="150" fill="#f8f9fa" stroke="#dee2e6"/>'
        '<text x="75" y="75" text-anchor="middle" fill="#6c757d" '
        'font-family="Arial" font-size="12">Try-on Result</text>'
        '<text x="75" y="95" text-anchor="middle" fill="#6c757d" '
        f'font-family="Arial" font-size="10">{label}</text>'
        "</svg>"
    )
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")


def _source_url(url: Optional[str]) -> Optional[str]:
    """Page or CDN url worth keeping on a garment; inline data URLs are not."""
    if url and not url.startswith("data:"):
        return url
    return None


def _first_str(assessment: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = assessment.get(key)
        if value is not None and value != "":
            return str(value)
    return None


class TryOnPipeline:
    """Coordinates detection, generation, analysis and persistence of try-ons."""

    def __init__(
        self,
        orchestrator: Optional[GeminiOrchestrator],
        repository: TryOnRepository,
        usage_tracker: UsageTracker,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.orchestrator = orchestrator
        self.repository = repository
        self.usage = usage_tracker
        self.settings = settings
        self._http_client = http_client
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Image helpers
    # ------------------------------------------------------------------

    async def _run_image_op(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking image routine under the fixed decode timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.settings.IMAGE_DECODE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise ImageLoadError(
                f"Image decode timed out after {self.settings.IMAGE_DECODE_TIMEOUT_SECONDS}s"
            ) from exc

    async def _validated_bytes(
        self, payload: bytes | str, claimed_mime_type: Optional[str] = None
    ) -> tuple[bytes, str]:
        content, declared = decode_image_input(payload)
        info = await self._run_image_op(
            lambda: validate_uploaded_image_payload(
                content,
                claimed_mime_type or declared,
                max_bytes=self.settings.MAX_UPLOAD_SIZE_BYTES,
            )
        )
        return content, info.mime_type

    async def _fetch_url(self, url: str) -> tuple[bytes, Optional[str]]:
        max_bytes = self.settings.MAX_UPLOAD_SIZE_BYTES
        client = self._http_client or httpx.AsyncClient(
            timeout=URL_FETCH_TIMEOUT_SECONDS, follow_redirects=True
        )
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                declared_length = response.headers.get("content-length")
                if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
                    raise ValidationError(
                        f"Image too large ({round(int(declared_length) / 1024 / 1024)}MB). "
                        f"Maximum size is {max_bytes // (1024 * 1024)}MB."
                    )
                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > max_bytes:
                        raise ValidationError(
                            f"Image too large. Maximum size is {max_bytes // (1024 * 1024)}MB."
                        )
                content_type = response.headers.get("content-type")
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Failed to fetch image: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Failed to fetch image: {exc}") from exc
        finally:
            if self._http_client is None:
                await client.aclose()
        return bytes(buffer), normalize_image_mime_type(content_type or "") or None

    @staticmethod
    def _raw_pixels_to_png(width: int, height: int, data: str) -> bytes:
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("rawPixels data is not valid base64") from exc
        if len(raw) != width * height * 4:
            raise ValidationError(
                f"rawPixels data has {len(raw)} bytes, expected {width * height * 4} "
                f"for {width}x{height} RGBA"
            )
        buffer = BytesIO()
        Image.frombytes("RGBA", (width, height), raw).save(buffer, format="PNG")
        return buffer.getvalue()

    async def resolve_image(self, image_data: ImageData) -> tuple[bytes, str]:
        """Turn an inbound image reference into validated bytes plus mime type."""
        if image_data.base64:
            return await self._validated_bytes(image_data.base64, image_data.mime_type)
        if image_data.raw_pixels:
            pixels = image_data.raw_pixels
            png = await self._run_image_op(
                self._raw_pixels_to_png, pixels.width, pixels.height, pixels.data
            )
            return await self._validated_bytes(png, "image/png")
        url = image_data.url or ""
        if url.startswith("data:"):
            return await self._validated_bytes(url, image_data.mime_type)
        if not url.startswith(("http://", "https://")):
            raise ValidationError("Image url must be http(s) or a data URL")
        content, content_type = await self._fetch_url(url)
        return await self._validated_bytes(content, image_data.mime_type or content_type)

    async def _garment_bytes(self, garment: GarmentItem) -> tuple[bytes, str]:
        if garment.image:
            return await self._validated_bytes(garment.image)
        return await self.resolve_image(ImageData(url=garment.url))

    async def _prepare(
        self,
        content: bytes,
        options: TryOnOptions,
        enhancement: EnhanceOptions,
    ) -> ProcessedImage:
        max_size = options.max_size or self.settings.DEFAULT_MAX_IMAGE_SIZE
        prepared = await self._run_image_op(image_processor.resize, content, max_size, max_size)
        if options.enhance_quality:
            prepared = await self._run_image_op(image_processor.enhance, prepared.data, enhancement)
        return prepared

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    async def _check_safety(self, content: bytes, mime_type: str, subject: str) -> SafetyVerdict:
        try:
            verdict = await self.orchestrator.check_safety(content, mime_type, subject=subject)
        except NetworkError as exc:
            logger.warning("Safety check for %s unavailable (%s); flagging for review", subject, exc)
            return SafetyVerdict(
                safe=True,
                concerns=["safety assessment unavailable"],
                recommendation="review",
                degraded=True,
            )

        if verdict.is_rejected:
            logger.warning("Safety check rejected %s image: %s", subject, verdict.concerns)
            await self.usage.record_error()
            raise SafetyRejectionError(
                f"The {subject} image was rejected by the safety check",
                subject=subject,
                concerns=verdict.concerns,
            )
        return verdict

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _watermark(self, synthetic: bool) -> Watermark:
        return Watermark(
            model=FALLBACK_RENDERER_MODEL if synthetic or self.orchestrator is None
            else self.orchestrator.image_model,
            generated_at=utcnow(),
            disclaimer_text=SYNTHETIC_DISCLAIMER if synthetic else WATERMARK_DISCLAIMER,
            synthetic_id=f"synthid_{uuid.uuid4().hex}",
        )

    async def _thumbnail(self, generated: Optional[GeneratedImage], confidence: float) -> str:
        if generated is not None:
            try:
                thumb = await self._run_image_op(image_processor.create_thumbnail, generated.data)
                return thumb.data_url
            except ValidationError as exc:
                logger.warning("Thumbnail generation failed (%s); using placeholder", exc)
        return confidence_placeholder_svg(confidence)

    async def _finalize(
        self,
        *,
        photo: SubjectPhoto,
        garment: GarmentItem,
        options: TryOnOptions,
        generated: GeneratedImage,
        processing_method: ProcessingMethod,
        description: str,
        recommendations: list[str],
        confidence: float,
        safety_tag: SafetyTag,
        analysis: Optional[AnalysisResult] = None,
        error: Optional[str] = None,
    ) -> TryOnResult:
        confidence = min(1.0, max(0.0, confidence))
        analysis = analysis or AnalysisResult(description="", recommendations=[], confidence=confidence)
        fit = analysis.fit_analysis
        visual = analysis.visual_result
        styling = analysis.styling_assessment

        result = TryOnResult(
            id=generate_result_id(rng=self._rng),
            generated_image=generated.data_url,
            description=description,
            recommendations=recommendations,
            confidence=confidence,
            quality_score=calculate_quality_score(
                confidence, processing_method, len(recommendations)
            ),
            fit_assessment=FitAssessment(
                size_compat=_first_str(fit, "size_compatibility", "size_compat"),
                body_match=_first_str(fit, "body_type_match", "body_match"),
                pose_compat=_first_str(fit, "pose_compatibility", "pose_compat"),
            ),
            visual_assessment=VisualAssessment(
                realism=_first_str(visual, "realism"),
                lighting_match=_first_str(visual, "lighting_match"),
                fabric_draping=_first_str(visual, "fabric_draping"),
            ),
            styling_assessment=StylingAssessment(
                color_harmony=_first_str(styling, "color_harmony"),
                style_match=_first_str(styling, "style_match"),
                occasion=_first_str(styling, "occasion"),
            ),
            safety_tag=safety_tag,
            watermark=self._watermark(generated.is_synthetic),
            processing_method=processing_method,
            version=PIPELINE_VERSION,
            subject_photo_id=photo.id,
            garment_item=garment,
            error=error,
        )
        if options.create_thumbnail:
            result.thumbnail = await self._thumbnail(generated, result.confidence)

        if options.save_result:
            await self.repository.save_result(result, original_image=photo.data)
        return result

    async def _synthetic_result(
        self,
        *,
        photo: SubjectPhoto,
        garment: GarmentItem,
        options: TryOnOptions,
        safety_tag: SafetyTag,
        reason: str,
        placeholder: Optional[GeneratedImage] = None,
    ) -> TryOnResult:
        category = options.category or garment.category.value
        return await self._finalize(
            photo=photo,
            garment=garment,
            options=options,
            generated=placeholder or synthesize_fallback(reason),
            processing_method=ProcessingMethod.SYNTHETIC_FALLBACK,
            description=self._rng.choice(FALLBACK_DESCRIPTIONS).format(category=category),
            recommendations=[self._rng.choice(FALLBACK_RECOMMENDATIONS)],
            confidence=FALLBACK_CONFIDENCE,
            safety_tag=safety_tag,
            error=reason,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_orchestrator(self) -> GeminiOrchestrator:
        if self.orchestrator is None:
            raise ConfigurationError(
                "Gemini API key is not configured. Add GOOGLE_API_KEY to enable AI try-on."
            )
        return self.orchestrator

    async def generate_try_on(
        self,
        subject_photo_id: str,
        garment: GarmentItem,
        options: Optional[TryOnOptions] = None,
    ) -> TryOnResult:
        """
        Run the full try-on sequence for one subject photo and one garment.

        Raises ``ValidationError``/``NotFoundError``/``ConfigurationError``
        before any network call, ``SafetyRejectionError`` before any
        generation call, and ``StorageError`` if persisting fails.
        """
        options = options or TryOnOptions()
        if not subject_photo_id:
            raise ValidationError("A subject photo is required for try-on")
        if garment is None:
            raise ValidationError("A garment item is required for try-on")

        orchestrator = self._require_orchestrator()
        photo = await self.repository.get_photo(subject_photo_id)
        subject_bytes, subject_mime = await self._validated_bytes(photo.data, photo.mime_type)
        garment_bytes, garment_mime = await self._garment_bytes(garment)

        await self.usage.record_request()
        started = time.monotonic()

        subject_verdict = await self._check_safety(subject_bytes, subject_mime, "subject")
        garment_verdict = await self._check_safety(garment_bytes, garment_mime, "garment")
        safety_tag = (
            SafetyTag.NEEDS_REVIEW
            if subject_verdict.needs_review or garment_verdict.needs_review
            else SafetyTag.APPROPRIATE
        )

        subject = await self._prepare(subject_bytes, options, SUBJECT_ENHANCEMENT)
        garment_image = await self._prepare(garment_bytes, options, GARMENT_ENHANCEMENT)
        synthetic_kwargs = dict(photo=photo, garment=garment, options=options, safety_tag=safety_tag)

        try:
            generated = await orchestrator.generate_tryon(
                subject.data,
                subject.mime_type,
                garment_image.data,
                garment_image.mime_type,
                options.model_copy(update={"category": options.category or garment.category.value}),
            )
        except Exception as exc:
            logger.warning("Generate stage failed (%s); using synthetic fallback", exc)
            await self.usage.record_error()
            return await self._synthetic_result(reason=f"generation failed: {exc}", **synthetic_kwargs)

        if generated.is_synthetic:
            return await self._synthetic_result(
                reason="no image data in response", placeholder=generated, **synthetic_kwargs
            )

        try:
            analysis = await orchestrator.analyze_result(generated.data, generated.mime_type)
        except Exception as exc:
            logger.warning("Analyze stage failed (%s); using synthetic fallback", exc)
            await self.usage.record_error()
            return await self._synthetic_result(reason=f"analysis failed: {exc}", **synthetic_kwargs)

        if analysis.safety_assessment == SafetyTag.NEEDS_REVIEW.value:
            safety_tag = SafetyTag.NEEDS_REVIEW
        method = (
            ProcessingMethod.EXTERNAL_AI_FALLBACK_ANALYSIS
            if analysis.used_heuristics
            else ProcessingMethod.EXTERNAL_AI
        )
        result = await self._finalize(
            photo=photo,
            garment=garment,
            options=options,
            generated=generated,
            processing_method=method,
            description=analysis.description or generated.text,
            recommendations=analysis.recommendations,
            confidence=analysis.confidence,
            safety_tag=safety_tag,
            analysis=analysis,
        )
        logger.info(
            "Try-on %s completed in %.2fs (method=%s, quality=%.2f)",
            result.id,
            time.monotonic() - started,
            result.processing_method.value,
            result.quality_score,
        )
        return result

    def _fallback_detection(self, source: str, error: str) -> DetectionData:
        return DetectionData(
            items=[
                DetectedItem(
                    category="tops",
                    type="shirt",
                    color="blue",
                    confidence=0.75,
                    note="Fallback detection due to AI error",
                )
            ],
            metadata={"error": error},
            source=source,
            processing_method="fallback-detection",
        )

    async def process_image(
        self, image_data: ImageData, options: Optional[RequestOptions] = None
    ) -> PipelineResponse:
        """
        Detect clothing in an image and, when asked and possible, try it on.

        Generation only runs with ``auto_try_on`` set, at least one detected
        item and at least one registered subject photo.
        """
        options = options or RequestOptions()
        content, mime_type = await self.resolve_image(image_data)
        source = options.source.value

        if self.orchestrator is None:
            return PipelineResponse(
                success=True,
                detection_data=DetectionData(
                    items=[
                        DetectedItem(
                            category="tops",
                            type="shirt",
                            color="blue",
                            confidence=0.85,
                            note="Mock detection - add API key for real AI analysis",
                        )
                    ],
                    source=source,
                    processing_method="mock-no-api-key",
                ),
                message="Please add your Gemini API key in settings to enable AI analysis. Using mock detection.",
            )

        await self.usage.record_request()
        try:
            detection = await self.orchestrator.detect_clothing(
                content, mime_type, category=options.category, source=source
            )
        except NetworkError as exc:
            logger.warning("Detect stage failed (%s); using fallback detection", exc)
            await self.usage.record_error()
            return PipelineResponse(
                success=True,
                detection_data=self._fallback_detection(source, exc.message),
                message=f"AI processing failed ({exc.message}). Using fallback detection.",
            )

        detection_data = DetectionData(
            items=[DetectedItem.model_validate(item) for item in detection.items],
            metadata=detection.metadata,
            source=source,
        )
        if not detection_data.items:
            return PipelineResponse(
                success=True,
                detection_data=detection_data,
                message="No clothing items detected in the image",
            )

        found = f"Found {len(detection_data.items)} clothing item(s) using AI analysis"
        if not options.auto_try_on:
            return PipelineResponse(success=True, detection_data=detection_data, message=found)

        photo = await self.repository.latest_photo()
        if photo is None:
            return PipelineResponse(
                success=True,
                detection_data=detection_data,
                message=f"{found}. {SETUP_HINT}.",
            )

        top_item = max(detection_data.items, key=lambda item: item.confidence)
        garment = GarmentItem(
            image=to_data_url(content, mime_type),
            category=options.category or top_item.category,
            description=" ".join(
                part for part in (top_item.color, top_item.type) if part
            ),
            source=options.source,
            url=_source_url(image_data.url),
        )
        result = await self.generate_try_on(photo.id, garment, options)
        return PipelineResponse(
            success=True,
            result=result,
            detection_data=detection_data,
            message=f"{found}. Virtual try-on generated.",
        )

    async def refine(self, result_id: str, instruction: str) -> TryOnResult:
        """Apply a follow-up edit to a stored result. Failures surface to the caller."""
        if not instruction or not instruction.strip():
            raise ValidationError("A refinement instruction is required")
        orchestrator = self._require_orchestrator()
        result = await self.repository.get_result(result_id)
        if not result.generated_image:
            raise ValidationError(f"Result {result_id} has no generated image to refine")

        content, declared_mime = decode_image_input(result.generated_image)
        await self.usage.record_request()
        try:
            refined = await orchestrator.refine_image(
                content, declared_mime or "image/png", instruction.strip()
            )
        except TryOnError:
            await self.usage.record_error()
            raise

        result.generated_image = refined.data_url
        result.refinement_history.append(RefinementEntry(prompt=instruction.strip()))
        if result.thumbnail is not None:
            result.thumbnail = await self._thumbnail(refined, result.confidence)
        await self.repository.update_result(result)
        logger.info("Refined try-on %s (%d refinements)", result.id, len(result.refinement_history))
        return result

    async def batch_try_on(
        self, garments: list[GarmentItem], options: Optional[TryOnOptions] = None
    ) -> BatchTryOnResponse:
        """Try on each garment in turn with the most recent subject photo."""
        photo = await self.repository.latest_photo()
        if photo is None:
            raise NotFoundError(f"No subject photos available. {SETUP_HINT}.")

        outcomes = []
        for garment in garments:
            try:
                result = await self.generate_try_on(photo.id, garment, options)
                outcomes.append(BatchItemOutcome(success=True, garment=garment, result=result))
            except TryOnError as exc:
                logger.info("Batch item failed: %s", exc.message)
                outcomes.append(
                    BatchItemOutcome(
                        success=False,
                        garment=garment,
                        error=sanitize_public_error_message(exc.message, fallback=exc.public_message),
                    )
                )

        return BatchTryOnResponse(
            success=True,
            results=outcomes,
            processed=len(outcomes),
            successful=sum(1 for outcome in outcomes if outcome.success),
        )

    async def register_photo(
        self, data: str, mime_type: Optional[str] = None, filename: Optional[str] = None
    ) -> SubjectPhoto:
        content, resolved_mime = await self._validated_bytes(data, mime_type)
        metadata = await self._run_image_op(image_processor.get_metadata, content)
        photo = SubjectPhoto(
            id=f"photo_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
            data=to_data_url(content, resolved_mime),
            mime_type=resolved_mime,
            filename=filename,
            metadata=metadata,
        )
        return await self.repository.add_photo(photo)

    async def handle_request(self, request: PipelineRequest) -> PipelineResponse:
        """Dispatch an inbound action. Always returns a response object."""
        try:
            if request.action == "processImage":
                if request.image_data is None:
                    raise ValidationError("imageData is required for processImage")
                return await self.process_image(request.image_data, request.options)

            if request.action == "generateTryOn":
                garment = request.garment
                if garment is None:
                    if request.image_data is None:
                        raise ValidationError("garment or imageData is required for generateTryOn")
                    content, mime_type = await self.resolve_image(request.image_data)
                    garment = GarmentItem(
                        image=to_data_url(content, mime_type),
                        category=request.options.category or "clothing",
                        source=request.options.source,
                        url=_source_url(request.image_data.url),
                    )
                photo_id = request.subject_photo_id
                if not photo_id:
                    photo = await self.repository.latest_photo()
                    if photo is None:
                        raise NotFoundError(SETUP_HINT)
                    photo_id = photo.id
                result = await self.generate_try_on(photo_id, garment, request.options)
                return PipelineResponse(success=True, result=result)

            if not request.result_id:
                raise ValidationError("resultId is required for refineImage")
            result = await self.refine(request.result_id, request.instruction or "")
            return PipelineResponse(success=True, result=result)
        except TryOnError as exc:
            logger.info("%s request failed: %s: %s", request.action, type(exc).__name__, exc.message)
            return PipelineResponse(
                success=False,
                error=sanitize_public_error_message(exc.message, fallback=exc.public_message),
                error_type=type(exc).__name__,
            )

    def get_processing_stats(self) -> ProcessingStats:
        return ProcessingStats(
            version=PIPELINE_VERSION,
            supported_categories=list(SUPPORTED_CATEGORIES),
            features=list(PIPELINE_FEATURES),
            limitations=list(PIPELINE_LIMITATIONS),
        )


def build_pipeline(
    settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None
) -> TryOnPipeline:
    """Wire store, repository, tracker and orchestrator from settings."""
    repository = TryOnRepository(get_storage(settings), history_limit=settings.RESULT_HISTORY_LIMIT)
    orchestrator: Optional[GeminiOrchestrator] = None
    if settings.has_api_key:
        orchestrator = GeminiOrchestrator.from_settings(settings)
    else:
        logger.warning("No GOOGLE_API_KEY configured; detection will use mock results")
    return TryOnPipeline(
        orchestrator,
        repository,
        UsageTracker(repository),
        settings,
        http_client=http_client,
    )
