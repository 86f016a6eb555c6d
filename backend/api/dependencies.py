from fastapi import Request

from services.storage import TryOnRepository
from services.tryon_pipeline import TryOnPipeline
from services.usage_tracker import UsageTracker


def get_pipeline(request: Request) -> TryOnPipeline:
    """Pipeline built by the application lifespan."""
    return request.app.state.pipeline


def get_repository(request: Request) -> TryOnRepository:
    return request.app.state.pipeline.repository


def get_usage_tracker(request: Request) -> UsageTracker:
    return request.app.state.pipeline.usage
