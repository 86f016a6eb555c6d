"""Schemas for try-on requests, results and usage stats.

Wire names are camelCase; Python attributes are snake_case. Models accept
either form on input.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_unit(value: Any) -> float:
    """Clamp a score into [0, 1]; non-numeric and NaN become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


class CamelModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class GarmentCategory(str, Enum):
    TOPS = "tops"
    BOTTOMS = "bottoms"
    DRESSES = "dresses"
    SHOES = "shoes"
    ACCESSORIES = "accessories"
    CLOTHING = "clothing"


class GarmentSource(str, Enum):
    SCREENSHOT = "screenshot"
    URL = "url"
    SELECTION = "selection"


class ProcessingMethod(str, Enum):
    EXTERNAL_AI = "external-ai"
    EXTERNAL_AI_FALLBACK_ANALYSIS = "external-ai-fallback-analysis"
    SYNTHETIC_FALLBACK = "synthetic-fallback"


class SafetyTag(str, Enum):
    APPROPRIATE = "appropriate"
    NEEDS_REVIEW = "needs_review"


class SubjectPhotoCreate(CamelModel):
    data: str = Field(..., min_length=1, description="data URL or base64 image")
    mime_type: Optional[str] = None
    filename: Optional[str] = Field(None, max_length=255)


class SubjectPhoto(CamelModel):
    id: str
    data: str
    mime_type: str = "image/jpeg"
    filename: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict = Field(default_factory=dict)


class SubjectPhotoSummary(CamelModel):
    """Subject photo without its image payload."""
    id: str
    mime_type: str
    filename: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)


class GarmentItem(CamelModel):
    image: Optional[str] = None
    category: GarmentCategory = GarmentCategory.CLOTHING
    description: str = ""
    source: GarmentSource = GarmentSource.SELECTION
    url: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def unknown_category_is_clothing(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {c.value for c in GarmentCategory}:
            return GarmentCategory.CLOTHING
        return value.lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def require_image_reference(self) -> "GarmentItem":
        if not self.image and not self.url:
            raise ValueError("Garment item needs an image or a source url")
        return self


class TryOnOptions(CamelModel):
    preserve_features: bool = True
    high_quality: bool = False
    style: str = "natural"
    lighting: str = "auto"
    character_consistency: bool = False
    multi_image_fusion: bool = False
    category: Optional[str] = None
    max_size: Optional[int] = Field(None, ge=16, le=4096)
    enhance_quality: bool = False
    save_result: bool = True
    create_thumbnail: bool = True


class RequestOptions(TryOnOptions):
    type: str = "clothing_detection"
    source: GarmentSource = GarmentSource.SELECTION
    auto_try_on: bool = False


class DetectedItem(CamelModel):
    category: str = "clothing"
    type: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    confidence: float = 0.0
    bounding_box: Optional[dict] = None
    features: List[str] = Field(default_factory=list)
    note: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        return clamp_unit(value)

    @field_validator("category", mode="before")
    @classmethod
    def category_as_string(cls, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            value = next((v for v in value if v), None)
        if value is None or isinstance(value, (dict, bool)):
            return "clothing"
        return str(value) or "clothing"

    @field_validator("type", "color", "style", "note", mode="before")
    @classmethod
    def text_or_joined_list(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (list, tuple)):
            joined = ", ".join(str(v) for v in value if v is not None)
            return joined or None
        if isinstance(value, dict):
            return None
        return str(value)

    @field_validator("bounding_box", mode="before")
    @classmethod
    def bounding_box_as_dict(cls, value: Any) -> Optional[dict]:
        """Accept ``{x, y, width, height}`` or a ``[x, y, width, height]`` list."""
        if isinstance(value, dict):
            return value
        if isinstance(value, (list, tuple)) and len(value) == 4:
            return dict(zip(("x", "y", "width", "height"), value))
        return None

    @field_validator("features", mode="before")
    @classmethod
    def features_as_strings(cls, value: Any) -> List[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v) for v in value]


class DetectionData(CamelModel):
    items: List[DetectedItem] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)
    source: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    processing_method: str = "gemini-ai"


class FitAssessment(CamelModel):
    size_compat: Optional[str] = None
    body_match: Optional[str] = None
    pose_compat: Optional[str] = None


class VisualAssessment(CamelModel):
    realism: Optional[str] = None
    lighting_match: Optional[str] = None
    fabric_draping: Optional[str] = None


class StylingAssessment(CamelModel):
    color_harmony: Optional[str] = None
    style_match: Optional[str] = None
    occasion: Optional[str] = None


class Watermark(CamelModel):
    model: str
    generated_at: datetime = Field(default_factory=utcnow)
    disclaimer_text: str
    synthetic_id: str


class RefinementEntry(CamelModel):
    prompt: str
    timestamp: datetime = Field(default_factory=utcnow)


class TryOnResult(CamelModel):
    id: str
    generated_image: Optional[str] = None
    description: str = ""
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    quality_score: float = 0.0
    fit_assessment: FitAssessment = Field(default_factory=FitAssessment)
    visual_assessment: VisualAssessment = Field(default_factory=VisualAssessment)
    styling_assessment: StylingAssessment = Field(default_factory=StylingAssessment)
    safety_tag: SafetyTag = SafetyTag.APPROPRIATE
    watermark: Watermark
    processing_method: ProcessingMethod
    timestamp: datetime = Field(default_factory=utcnow)
    refinement_history: List[RefinementEntry] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    version: str = "1.0"
    subject_photo_id: str = Field(..., min_length=1)
    garment_item: GarmentItem
    error: Optional[str] = None

    @field_validator("confidence", "quality_score", mode="before")
    @classmethod
    def clamp_scores(cls, value: Any) -> float:
        return clamp_unit(value)

    @computed_field
    @property
    def image_url(self) -> Optional[str]:
        return self.generated_image

    @property
    def is_synthetic(self) -> bool:
        return self.processing_method == ProcessingMethod.SYNTHETIC_FALLBACK

    def to_record(self, original_image: Optional[str] = None) -> dict:
        """Persisted record layout (JSON-safe)."""
        dumped = self.model_dump(mode="json", by_alias=True)
        return {
            "id": self.id,
            "originalImage": original_image,
            "processedImage": self.thumbnail,
            "generatedImage": self.generated_image,
            "garmentItem": {
                "image": self.garment_item.image,
                "category": self.garment_item.category.value,
                "source": self.garment_item.source.value,
                "url": self.garment_item.url,
                "description": self.garment_item.description,
            },
            "category": self.garment_item.category.value,
            "subjectPhotoId": self.subject_photo_id,
            "version": self.version,
            "safetyTag": self.safety_tag.value,
            "refinementHistory": dumped["refinementHistory"],
            "error": self.error,
            "metadata": {
                "description": self.description,
                "recommendations": list(self.recommendations),
                "confidence": self.confidence,
                "qualityScore": self.quality_score,
                "processingMethod": self.processing_method.value,
                "timestamp": dumped["timestamp"],
                "fitAnalysis": dumped["fitAssessment"],
                "visualResult": dumped["visualAssessment"],
                "stylingAssessment": dumped["stylingAssessment"],
                "safetyAssessment": self.safety_tag.value,
                "watermark": dumped["watermark"],
            },
        }

    @classmethod
    def from_record(cls, record: dict) -> "TryOnResult":
        metadata = record.get("metadata") or {}
        return cls.model_validate(
            {
                "id": record["id"],
                "generatedImage": record.get("generatedImage"),
                "description": metadata.get("description", ""),
                "recommendations": metadata.get("recommendations") or [],
                "confidence": metadata.get("confidence", 0.0),
                "qualityScore": metadata.get("qualityScore", 0.0),
                "fitAssessment": metadata.get("fitAnalysis") or {},
                "visualAssessment": metadata.get("visualResult") or {},
                "stylingAssessment": metadata.get("stylingAssessment") or {},
                "safetyTag": record.get("safetyTag")
                or metadata.get("safetyAssessment")
                or SafetyTag.APPROPRIATE.value,
                "watermark": metadata["watermark"],
                "processingMethod": metadata["processingMethod"],
                "timestamp": metadata.get("timestamp") or utcnow(),
                "refinementHistory": record.get("refinementHistory") or [],
                "thumbnail": record.get("processedImage"),
                "version": record.get("version", "1.0"),
                "subjectPhotoId": record["subjectPhotoId"],
                "garmentItem": record["garmentItem"],
                "error": record.get("error"),
            }
        )


class UsageStats(CamelModel):
    requests_today: int = 0
    requests_this_month: int = 0
    last_request_at: Optional[datetime] = None
    total_requests: int = 0
    error_count: int = 0


class RawPixels(CamelModel):
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)
    data: str = Field(..., description="base64 of width*height*4 RGBA bytes")


class ImageData(CamelModel):
    url: Optional[str] = None
    base64: Optional[str] = None
    raw_pixels: Optional[RawPixels] = None
    mime_type: Optional[str] = None

    @model_validator(mode="after")
    def require_one_source(self) -> "ImageData":
        if not (self.url or self.base64 or self.raw_pixels):
            raise ValueError("imageData needs one of url, base64 or rawPixels")
        return self


class PipelineRequest(CamelModel):
    action: Literal["processImage", "generateTryOn", "refineImage"]
    image_data: Optional[ImageData] = None
    options: RequestOptions = Field(default_factory=RequestOptions)
    subject_photo_id: Optional[str] = None
    garment: Optional[GarmentItem] = None
    result_id: Optional[str] = None
    instruction: Optional[str] = Field(None, max_length=1000)


class PipelineResponse(CamelModel):
    success: bool
    result: Optional[TryOnResult] = None
    detection_data: Optional[DetectionData] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class BatchItemOutcome(CamelModel):
    success: bool
    garment: GarmentItem
    result: Optional[TryOnResult] = None
    error: Optional[str] = None


class BatchTryOnRequest(CamelModel):
    garments: List[GarmentItem] = Field(..., min_length=1, max_length=20)
    options: TryOnOptions = Field(default_factory=TryOnOptions)


class BatchTryOnResponse(CamelModel):
    success: bool
    results: List[BatchItemOutcome]
    processed: int
    successful: int


class ProcessingStats(CamelModel):
    version: str
    supported_categories: List[str]
    features: List[str]
    limitations: List[str]
