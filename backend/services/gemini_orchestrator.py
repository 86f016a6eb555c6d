"""
Google Gemini orchestration for the try-on pipeline.

Wraps the five call types (detect, generate, analyze, refine, safety) around
a ``google.genai`` client. Every call is a single round-trip: no retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from schemas.tryon import DetectedItem, TryOnOptions
from services.errors import ConfigurationError, NetworkError, NoImageDataError, ParseError
from services.fallback_renderer import PLACEHOLDER_MIME_TYPE, render_placeholder
from services.image_validation import to_data_url
from services.prompt_templates import (
    CONNECTION_TEST_PROMPT,
    build_analysis_prompt,
    build_detection_prompt,
    build_refine_prompt,
    build_safety_prompt,
    build_tryon_prompt,
)
from services.response_parsing import (
    extract_confidence,
    extract_image_part,
    extract_json_object,
    extract_recommendations,
    normalize_confidence,
    response_text,
)

logger = logging.getLogger(__name__)

SAFETY_RECOMMENDATIONS = ("proceed", "review", "reject")


@dataclass
class DetectionResult:
    items: list[dict]
    metadata: dict
    raw_text: str = ""
    parsed: bool = True


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str
    text: str = ""
    is_synthetic: bool = False

    @property
    def data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


@dataclass
class AnalysisResult:
    description: str
    recommendations: list[str]
    confidence: float
    fit_analysis: dict = field(default_factory=dict)
    visual_result: dict = field(default_factory=dict)
    styling_assessment: dict = field(default_factory=dict)
    safety_assessment: str = "appropriate"
    used_heuristics: bool = False
    raw_text: str = ""


@dataclass
class SafetyVerdict:
    safe: bool
    concerns: list[str]
    recommendation: str
    degraded: bool = False

    @property
    def is_rejected(self) -> bool:
        return self.recommendation == "reject"

    @property
    def needs_review(self) -> bool:
        return self.recommendation == "review"


def synthesize_fallback(reason: str = "") -> GeneratedImage:
    """Locally rendered stand-in image, tagged as synthetic."""
    caption = (
        "The AI service did not return an image for this request"
        + (f" ({reason})" if reason else "")
        + ". This placeholder is not AI-generated content."
    )
    return GeneratedImage(
        data=render_placeholder(caption),
        mime_type=PLACEHOLDER_MIME_TYPE,
        text=caption,
        is_synthetic=True,
    )


def _as_dict(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class GeminiOrchestrator:
    """
    Gemini client wrapper for detection, generation, analysis, refinement
    and safety checks.

    Build with ``GeminiOrchestrator.from_settings(settings)`` in the app or
    pass a fake client in tests.
    """

    IMAGE_MODALITIES = ["TEXT", "IMAGE"]
    # Detection wants near-deterministic JSON.
    DETECT_TEMPERATURE = 0.1
    DETECT_TOP_P = 1.0
    DETECT_TOP_K = 32
    TEXT_MAX_OUTPUT_TOKENS = 2048
    IMAGE_TEMPERATURE = 0.4
    IMAGE_TOP_P = 0.90
    IMAGE_TOP_K = 32

    def __init__(self, client: Any, settings: Settings, types_module: Any = types):
        self._client = client
        self._types = types_module
        self.image_model = settings.GEMINI_IMAGE_MODEL
        self.vision_model = settings.GEMINI_VISION_MODEL
        self.timeout_seconds = settings.API_TIMEOUT_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiOrchestrator":
        if not settings.has_api_key:
            raise ConfigurationError(
                "GOOGLE_API_KEY is missing or invalid. Set it in .env to enable AI generation."
            )
        client = genai.Client(api_key=settings.GOOGLE_API_KEY.strip())
        logger.info(
            "Gemini orchestrator config: image_model=%s vision_model=%s timeout=%ss",
            settings.GEMINI_IMAGE_MODEL,
            settings.GEMINI_VISION_MODEL,
            settings.API_TIMEOUT_SECONDS,
        )
        return cls(client, settings)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _run_with_timeout(self, call: Callable[[], object]) -> object:
        """Run a blocking SDK call in a worker thread under the API timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(call), timeout=self.timeout_seconds
        )

    async def _generate_content(
        self, stage: str, model: str, contents: list, config: object
    ) -> object:
        def _call_generate_content():
            return self._client.models.generate_content(
                model=model, contents=contents, config=config
            )

        try:
            return await self._run_with_timeout(_call_generate_content)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Gemini %s call timed out after %ss", stage, self.timeout_seconds
            )
            raise NetworkError(
                f"{stage} request timed out after {self.timeout_seconds}s"
            ) from exc
        except (genai_errors.APIError, httpx.HTTPError, OSError) as exc:
            logger.warning("Gemini %s call failed: %s", stage, exc)
            raise NetworkError(f"{stage} request failed: {exc}") from exc

    def _image_part(self, data: bytes, mime_type: str) -> object:
        return self._types.Part.from_bytes(data=data, mime_type=mime_type)

    def _build_generation_config(
        self,
        *,
        modalities: Optional[list[str]] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        max_output_tokens: Optional[int] = None,
    ) -> object:
        types_module = self._types
        config_kwargs: dict[str, object] = {}
        if modalities:
            config_kwargs["response_modalities"] = list(modalities)

        safety_setting_cls = getattr(types_module, "SafetySetting", None)
        harm_category_cls = getattr(types_module, "HarmCategory", None)
        harm_threshold_cls = getattr(types_module, "HarmBlockThreshold", None)
        if (
            safety_setting_cls is not None
            and harm_category_cls is not None
            and harm_threshold_cls is not None
        ):
            threshold = getattr(harm_threshold_cls, "BLOCK_MEDIUM_AND_ABOVE", None)
            categories = [
                getattr(harm_category_cls, "HARM_CATEGORY_SEXUALLY_EXPLICIT", None),
                getattr(harm_category_cls, "HARM_CATEGORY_DANGEROUS_CONTENT", None),
                getattr(harm_category_cls, "HARM_CATEGORY_HARASSMENT", None),
                getattr(harm_category_cls, "HARM_CATEGORY_HATE_SPEECH", None),
            ]
            if threshold is not None:
                safety_settings = [
                    safety_setting_cls(category=category, threshold=threshold)
                    for category in categories
                    if category is not None
                ]
                if safety_settings:
                    config_kwargs["safety_settings"] = safety_settings

        sampling = {
            "temperature": temperature,
            "top_p": top_p,
            "top_k": top_k,
            "max_output_tokens": max_output_tokens,
        }
        config_kwargs.update({k: v for k, v in sampling.items() if v is not None})

        # Older SDK builds reject some sampling fields; drop them one at a time.
        removable_keys = [k for k in ("max_output_tokens", "top_k", "top_p", "temperature") if k in config_kwargs]
        while True:
            try:
                return types_module.GenerateContentConfig(**config_kwargs)
            except (TypeError, ValueError) as e:
                keys_left = [k for k in removable_keys if k in config_kwargs]
                if not keys_left:
                    raise
                message = str(e)
                key_to_remove = next((k for k in keys_left if k in message), keys_left[0])
                config_kwargs.pop(key_to_remove, None)
                logger.warning(
                    "GenerateContentConfig rejected '%s'; retrying without it (%s)",
                    key_to_remove,
                    e,
                )

    def _image_config(self) -> object:
        return self._build_generation_config(
            modalities=self.IMAGE_MODALITIES,
            temperature=self.IMAGE_TEMPERATURE,
            top_p=self.IMAGE_TOP_P,
            top_k=self.IMAGE_TOP_K,
        )

    def _text_config(self) -> object:
        return self._build_generation_config(
            temperature=self.DETECT_TEMPERATURE,
            top_p=self.DETECT_TOP_P,
            top_k=self.DETECT_TOP_K,
            max_output_tokens=self.TEXT_MAX_OUTPUT_TOKENS,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def detect_clothing(
        self,
        image_bytes: bytes,
        mime_type: str,
        *,
        category: Optional[str] = None,
        source: Optional[str] = None,
    ) -> DetectionResult:
        prompt = build_detection_prompt(category=category, source=source)
        response = await self._generate_content(
            "detect",
            self.vision_model,
            [prompt, self._image_part(image_bytes, mime_type)],
            self._text_config(),
        )
        text = response_text(response)

        try:
            payload = extract_json_object(text)
        except ParseError as exc:
            logger.info("Detection response was not JSON (%s); returning raw text", exc)
            return DetectionResult(
                items=[], metadata={"raw_text": text}, raw_text=text, parsed=False
            )

        raw_items = payload.get("items")
        if not isinstance(raw_items, list):
            if raw_items is not None:
                logger.info("Detection items had unexpected type %s; ignoring", type(raw_items).__name__)
            raw_items = []

        items = []
        for raw_item in raw_items:
            if not isinstance(raw_item, dict):
                continue
            if "confidence" in raw_item:
                raw_item = {**raw_item, "confidence": normalize_confidence(raw_item["confidence"])}
            try:
                item = DetectedItem.model_validate(raw_item)
            except PydanticValidationError as exc:
                logger.info("Dropping malformed detected item: %s", exc.errors()[:1])
                continue
            items.append(item.model_dump(by_alias=True))
        metadata = {
            "background": payload.get("background"),
            "lighting": payload.get("lighting"),
            "quality": payload.get("quality"),
        }
        logger.info("Detected %d clothing item(s)", len(items))
        return DetectionResult(items=items, metadata=metadata, raw_text=text)

    async def generate_tryon(
        self,
        subject_bytes: bytes,
        subject_mime_type: str,
        garment_bytes: bytes,
        garment_mime_type: str,
        options: Optional[TryOnOptions] = None,
    ) -> GeneratedImage:
        """
        Composite the garment onto the subject.

        A response without image data yields a synthetic placeholder instead
        of an error. Transport failures raise ``NetworkError``.
        """
        options = options or TryOnOptions()
        prompt = build_tryon_prompt(
            options.category,
            preserve_features=options.preserve_features,
            high_quality=options.high_quality,
            style=options.style,
            lighting=options.lighting,
            character_consistency=options.character_consistency,
            multi_image_fusion=options.multi_image_fusion,
        )
        response = await self._generate_content(
            "generate",
            self.image_model,
            [
                prompt,
                self._image_part(subject_bytes, subject_mime_type),
                self._image_part(garment_bytes, garment_mime_type),
            ],
            self._image_config(),
        )
        text = response_text(response)

        try:
            image = extract_image_part(response)
        except NoImageDataError:
            logger.warning("No image in Gemini generate response; rendering fallback")
            return synthesize_fallback("no image data in response")

        logger.info("Generated try-on image (%s, %d bytes)", image.mime_type, len(image.data))
        return GeneratedImage(data=image.data, mime_type=image.mime_type, text=text)

    async def analyze_result(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        response = await self._generate_content(
            "analyze",
            self.vision_model,
            [build_analysis_prompt(), self._image_part(image_bytes, mime_type)],
            self._text_config(),
        )
        text = response_text(response)

        try:
            payload = extract_json_object(text)
        except ParseError:
            logger.info("Analysis response not structured; using heuristic extraction")
            return AnalysisResult(
                description=text.strip(),
                recommendations=extract_recommendations(text),
                confidence=extract_confidence(text),
                used_heuristics=True,
                raw_text=text,
            )

        safety_assessment = str(payload.get("safety_assessment") or "appropriate").lower()
        if safety_assessment not in ("appropriate", "needs_review"):
            safety_assessment = "needs_review"

        return AnalysisResult(
            description=str(payload.get("description") or "").strip(),
            recommendations=_as_str_list(payload.get("recommendations")),
            confidence=normalize_confidence(payload.get("confidence_score")),
            fit_analysis=_as_dict(payload.get("fit_analysis")),
            visual_result=_as_dict(payload.get("visual_result")),
            styling_assessment=_as_dict(payload.get("styling_assessment")),
            safety_assessment=safety_assessment,
            raw_text=text,
        )

    async def refine_image(
        self, image_bytes: bytes, mime_type: str, instruction: str
    ) -> GeneratedImage:
        """Apply an edit instruction. Missing image data raises ``NoImageDataError``."""
        prompt = build_refine_prompt(instruction)
        response = await self._generate_content(
            "refine",
            self.image_model,
            [prompt, self._image_part(image_bytes, mime_type)],
            self._image_config(),
        )
        image = extract_image_part(response)
        return GeneratedImage(
            data=image.data, mime_type=image.mime_type, text=response_text(response)
        )

    async def check_safety(
        self, image_bytes: bytes, mime_type: str, *, subject: str = "image"
    ) -> SafetyVerdict:
        response = await self._generate_content(
            "safety",
            self.vision_model,
            [build_safety_prompt(subject), self._image_part(image_bytes, mime_type)],
            self._text_config(),
        )
        text = response_text(response)

        try:
            payload = extract_json_object(text)
        except ParseError:
            logger.warning("Safety response for %s could not be parsed; flagging for review", subject)
            return SafetyVerdict(
                safe=True,
                concerns=["safety assessment unavailable"],
                recommendation="review",
                degraded=True,
            )

        recommendation = str(payload.get("recommendation") or "").strip().lower()
        if recommendation not in SAFETY_RECOMMENDATIONS:
            recommendation = "review"
        safe_value = payload.get("safe")
        safe = bool(safe_value) if isinstance(safe_value, bool) else recommendation != "reject"
        return SafetyVerdict(
            safe=safe,
            concerns=_as_str_list(payload.get("concerns")),
            recommendation=recommendation,
        )

    async def test_connection(self) -> bool:
        try:
            response = await self._generate_content(
                "connection-test",
                self.vision_model,
                [CONNECTION_TEST_PROMPT],
                self._build_generation_config(max_output_tokens=32),
            )
        except NetworkError as exc:
            logger.warning("Gemini connection test failed: %s", exc)
            return False
        return bool(getattr(response, "candidates", None) or response_text(response))
