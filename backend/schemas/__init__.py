from .tryon import (
    BatchTryOnRequest,
    BatchTryOnResponse,
    DetectionData,
    GarmentCategory,
    GarmentItem,
    ImageData,
    PipelineRequest,
    PipelineResponse,
    ProcessingMethod,
    ProcessingStats,
    RequestOptions,
    SafetyTag,
    SubjectPhoto,
    SubjectPhotoCreate,
    SubjectPhotoSummary,
    TryOnOptions,
    TryOnResult,
    UsageStats,
)

__all__ = [
    "BatchTryOnRequest",
    "BatchTryOnResponse",
    "DetectionData",
    "GarmentCategory",
    "GarmentItem",
    "ImageData",
    "PipelineRequest",
    "PipelineResponse",
    "ProcessingMethod",
    "ProcessingStats",
    "RequestOptions",
    "SafetyTag",
    "SubjectPhoto",
    "SubjectPhotoCreate",
    "SubjectPhotoSummary",
    "TryOnOptions",
    "TryOnResult",
    "UsageStats",
]
