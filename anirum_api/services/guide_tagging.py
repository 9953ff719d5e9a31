"""Guide creation and bulk (re)tagging.

Tag generation never fails a guide operation: the aggregator degrades to
fewer tags. Bulk processing runs the AI calls of a batch concurrently,
writes results one guide at a time, and pauses between batches to stay
under provider rate limits.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from anirum_api.logging_config import get_logger
from anirum_api.models.guide import Guide
from anirum_api.services.tagging import TagAggregator, TextInput

logger = get_logger(__name__)

# Smallest rendition first: cheaper for the vision model
TAGGING_IMAGE_FORMATS = ("thumbnail", "small", "medium", "large")


def pick_tagging_image_url(
    image_url: str | None,
    image_formats: dict[str, Any] | None = None,
) -> str | None:
    """Choose the image URL sent to the tagger."""
    for name in TAGGING_IMAGE_FORMATS:
        rendition = (image_formats or {}).get(name)
        if isinstance(rendition, dict) and rendition.get("url"):
            return rendition["url"]
    return image_url or None


def text_input_for(title: str | None, text: str | None) -> TextInput | None:
    if not (title or "").strip() and not (text or "").strip():
        return None
    return TextInput(title=title or "", body=text or None)


@dataclass
class BatchTagReport:
    processed: int = 0
    errors: int = 0
    skipped: int = 0


async def generate_guide_tags(
    aggregator: TagAggregator,
    *,
    title: str | None,
    text: str | None = None,
    image_url: str | None = None,
    image_formats: dict[str, Any] | None = None,
    manual_tags: list[str] | None = None,
) -> list[str]:
    return await aggregator.aggregate(
        manual_tags=manual_tags or [],
        image_url=pick_tagging_image_url(image_url, image_formats),
        text=text_input_for(title, text),
    )


async def create_guide(
    db: AsyncSession,
    aggregator: TagAggregator,
    owner_id: uuid.UUID,
    *,
    title: str,
    text: str | None = None,
    image_url: str | None = None,
    image_formats: dict[str, Any] | None = None,
    manual_tags: list[str] | None = None,
) -> Guide:
    """Persist a guide whose tags are the aggregated manual and AI tags."""
    tags = await generate_guide_tags(
        aggregator,
        title=title,
        text=text,
        image_url=image_url,
        image_formats=image_formats,
        manual_tags=manual_tags,
    )

    guide = Guide(
        owner_id=owner_id,
        title=title,
        text=text,
        image_url=image_url,
        image_formats=image_formats,
        tags=tags,
    )
    db.add(guide)
    await db.commit()
    await db.refresh(guide)

    logger.info(
        "Guide created",
        guide_id=str(guide.id),
        owner_id=str(owner_id),
        tag_count=len(tags),
    )
    return guide


@dataclass(frozen=True)
class _GuideSnapshot:
    id: uuid.UUID
    title: str
    text: str | None
    image_url: str | None
    image_formats: dict[str, Any] | None
    has_tags: bool


class GuideBatchTagger:
    """Regenerates tags for a user's existing guides.

    Args:
        aggregator: Tag pipeline used for every guide
        batch_size: Guides whose AI calls run concurrently
        delay_seconds: Pause between batches
    """

    def __init__(
        self,
        aggregator: TagAggregator,
        batch_size: int = 5,
        delay_seconds: float = 1.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.aggregator = aggregator
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds

    async def _tags_for(self, guide: _GuideSnapshot) -> list[str]:
        # Existing tags are replaced, not merged
        return await generate_guide_tags(
            self.aggregator,
            title=guide.title,
            text=guide.text,
            image_url=guide.image_url,
            image_formats=guide.image_formats,
        )

    async def process_user_guides(
        self,
        db: AsyncSession,
        owner_id: uuid.UUID,
        force_update: bool = False,
    ) -> BatchTagReport:
        result = await db.execute(
            select(Guide).where(Guide.owner_id == owner_id).order_by(Guide.created_at)
        )
        guides = [
            _GuideSnapshot(
                id=g.id,
                title=g.title,
                text=g.text,
                image_url=g.image_url,
                image_formats=g.image_formats,
                has_tags=bool(g.tags),
            )
            for g in result.scalars().all()
        ]
        report = BatchTagReport()

        pending: list[_GuideSnapshot] = []
        for guide in guides:
            if not force_update and guide.has_tags:
                report.skipped += 1
            else:
                pending.append(guide)

        logger.info(
            "Batch tagging started",
            owner_id=str(owner_id),
            guide_count=len(pending),
            skipped=report.skipped,
        )

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            generated = await asyncio.gather(*(self._tags_for(g) for g in batch))

            for guide, tags in zip(batch, generated):
                if not tags:
                    report.skipped += 1
                    logger.warning("No tags generated for guide", guide_id=str(guide.id))
                    continue
                try:
                    await db.execute(
                        update(Guide).where(Guide.id == guide.id).values(tags=tags)
                    )
                    await db.commit()
                    report.processed += 1
                except SQLAlchemyError as e:
                    await db.rollback()
                    report.errors += 1
                    logger.error(
                        "Failed to update guide tags",
                        guide_id=str(guide.id),
                        error=str(e),
                    )

            if start + self.batch_size < len(pending):
                await asyncio.sleep(self.delay_seconds)

        logger.info(
            "Batch tagging completed",
            owner_id=str(owner_id),
            processed=report.processed,
            errors=report.errors,
            skipped=report.skipped,
        )
        return report
