import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse

from api.dependencies import get_pipeline, get_repository
from api.errors import status_for_error_type
from schemas.tryon import (
    BatchTryOnRequest,
    BatchTryOnResponse,
    PipelineRequest,
    PipelineResponse,
    ProcessingStats,
    TryOnResult,
)
from services.storage import TryOnRepository
from services.tryon_pipeline import TryOnPipeline

router = APIRouter(prefix="/tryon", tags=["tryon"])
logger = logging.getLogger(__name__)


@router.post("", response_model=PipelineResponse)
async def handle_pipeline_request(
    request: PipelineRequest,
    pipeline: TryOnPipeline = Depends(get_pipeline),
):
    """Run one pipeline action (processImage, generateTryOn or refineImage)."""
    response = await pipeline.handle_request(request)
    if response.success:
        return response
    return JSONResponse(
        status_code=status_for_error_type(response.error_type),
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post("/batch", response_model=BatchTryOnResponse)
async def batch_try_on(
    request: BatchTryOnRequest,
    pipeline: TryOnPipeline = Depends(get_pipeline),
):
    return await pipeline.batch_try_on(request.garments, request.options)


@router.get("/results", response_model=List[TryOnResult])
async def list_results(
    limit: int = Query(20, ge=1, le=200),
    repository: TryOnRepository = Depends(get_repository),
):
    """Stored results, newest first."""
    return await repository.list_results(limit)


@router.get("/results/{result_id}", response_model=TryOnResult)
async def get_result(
    result_id: str,
    repository: TryOnRepository = Depends(get_repository),
):
    return await repository.get_result(result_id)


@router.delete("/results/{result_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_result(
    result_id: str,
    repository: TryOnRepository = Depends(get_repository),
):
    await repository.delete_result(result_id)
    logger.info("Deleted try-on result %s", result_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/stats", response_model=ProcessingStats)
async def processing_stats(pipeline: TryOnPipeline = Depends(get_pipeline)):
    return pipeline.get_processing_stats()


@router.get("/connection")
async def connection_check(pipeline: TryOnPipeline = Depends(get_pipeline)):
    """Probe the generation service with a minimal text request."""
    if pipeline.orchestrator is None:
        return {"connected": False, "reason": "GOOGLE_API_KEY not configured"}
    return {"connected": await pipeline.orchestrator.test_connection()}
