"""Guide router: creation with automatic tags and bulk re-tagging."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from anirum_api.core.auth import CurrentUser
from anirum_api.database import get_db
from anirum_api.middleware.rate_limit import GUIDE_TAGGING_LIMIT, limiter
from anirum_api.schemas.guide import (
    BatchTagRequest,
    BatchTagResponse,
    GuideCreate,
    GuideResponse,
    TagPreviewRequest,
    TagPreviewResponse,
)
from anirum_api.services.container import AppServices, get_services
from anirum_api.services.guide_tagging import create_guide, generate_guide_tags

router = APIRouter(
    prefix="/api/guides",
    tags=["guides"],
)


@router.post("", response_model=GuideResponse, status_code=status.HTTP_201_CREATED)
async def create_guide_endpoint(
    body: GuideCreate,
    user: CurrentUser,
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> GuideResponse:
    """Create a guide; manual tags are merged with generated ones."""
    guide = await create_guide(
        db,
        services.tag_aggregator,
        user.id,
        title=body.title,
        text=body.text,
        image_url=body.image_url,
        image_formats=body.image_formats,
        manual_tags=body.tags,
    )
    return GuideResponse.model_validate(guide)


@router.post("/tags/preview", response_model=TagPreviewResponse)
@limiter.limit(GUIDE_TAGGING_LIMIT)
async def preview_tags(
    request: Request,
    body: TagPreviewRequest,
    user: CurrentUser,
    services: AppServices = Depends(get_services),
) -> TagPreviewResponse:
    """Tags a guide would get, without saving anything."""
    tags = await generate_guide_tags(
        services.tag_aggregator,
        title=body.title,
        text=body.text,
        image_url=body.image_url,
        image_formats=body.image_formats,
        manual_tags=body.tags,
    )
    return TagPreviewResponse(tags=tags)


@router.post("/tags/batch", response_model=BatchTagResponse)
@limiter.limit(GUIDE_TAGGING_LIMIT)
async def batch_tag_guides(
    request: Request,
    body: BatchTagRequest,
    user: CurrentUser,
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> BatchTagResponse:
    """Regenerate tags for the caller's guides."""
    tagger = services.batch_tagger(body.batch_size, body.delay_seconds)
    report = await tagger.process_user_guides(db, user.id, force_update=body.force_update)
    return BatchTagResponse(
        processed=report.processed,
        errors=report.errors,
        skipped=report.skipped,
    )
