import logging
from typing import List

from fastapi import APIRouter, Depends, Response, status

from api.dependencies import get_pipeline, get_repository
from schemas.tryon import SubjectPhotoCreate, SubjectPhotoSummary
from services.storage import TryOnRepository
from services.tryon_pipeline import TryOnPipeline

router = APIRouter(prefix="/photos", tags=["photos"])
logger = logging.getLogger(__name__)


@router.post("", response_model=SubjectPhotoSummary, status_code=status.HTTP_201_CREATED)
async def register_photo(
    payload: SubjectPhotoCreate,
    pipeline: TryOnPipeline = Depends(get_pipeline),
):
    """Register a subject photo. The most recent one is used for try-ons."""
    photo = await pipeline.register_photo(payload.data, payload.mime_type, payload.filename)
    logger.info("Registered subject photo %s (%s)", photo.id, photo.mime_type)
    return SubjectPhotoSummary.model_validate(photo.model_dump())


@router.get("", response_model=List[SubjectPhotoSummary])
async def list_photos(repository: TryOnRepository = Depends(get_repository)):
    photos = await repository.list_photos()
    return [SubjectPhotoSummary.model_validate(p.model_dump()) for p in photos]


@router.delete("/{photo_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_photo(
    photo_id: str,
    repository: TryOnRepository = Depends(get_repository),
):
    await repository.delete_photo(photo_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
