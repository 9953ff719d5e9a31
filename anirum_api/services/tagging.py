"""Tag aggregation for guides.

Manual tags and AI-derived tags are merged into one normalized,
deduplicated list. Tag sources are optional and unreliable: a source
that fails or returns nothing contributes no tags and never aborts the
aggregation.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from anirum_api.config import settings
from anirum_api.logging_config import get_logger

logger = get_logger(__name__)


class ImageTagSource(Protocol):
    async def tags_from_image(self, image_url: str) -> list[str]: ...


class TextTagSource(Protocol):
    async def tags_from_text(self, title: str, body: str | None = None) -> list[str]: ...


@dataclass(frozen=True)
class TextInput:
    title: str
    body: str | None = None


def normalize_tag(tag: str, max_length: int | None = None) -> str | None:
    """Trimmed, lower-cased tag, or None if empty or too long."""
    limit = max_length if max_length is not None else settings.tag_max_length
    if not isinstance(tag, str):
        return None
    normalized = tag.strip().lower()
    if not normalized or len(normalized) >= limit:
        return None
    return normalized


def merge_tags(*groups: Iterable[str], max_length: int | None = None) -> list[str]:
    """Normalize and deduplicate tags, keeping first-seen order."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for tag in group:
            normalized = normalize_tag(tag, max_length)
            if normalized is None or normalized in seen:
                continue
            seen.add(normalized)
            merged.append(normalized)
    return merged


class TagAggregator:
    """Combines manual, image-derived and text-derived tags.

    Order of the result: manual tags, then image tags, then text tags.
    """

    def __init__(
        self,
        image_source: ImageTagSource | None = None,
        text_source: TextTagSource | None = None,
        max_length: int | None = None,
    ) -> None:
        self.image_source = image_source
        self.text_source = text_source
        self.max_length = max_length if max_length is not None else settings.tag_max_length

    async def _collect(
        self,
        source_name: str,
        fetch: Callable[..., Awaitable[list[str]]],
        *args: Any,
    ) -> list[str]:
        try:
            result = await fetch(*args)
        except Exception as e:
            logger.warning(
                "Tag source failed",
                source=source_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return []

        if not isinstance(result, (list, tuple)):
            logger.warning(
                "Tag source returned no tag list",
                source=source_name,
                result_type=type(result).__name__,
            )
            return []
        return [tag for tag in result if isinstance(tag, str)]

    async def aggregate(
        self,
        manual_tags: Iterable[str] = (),
        image_url: str | None = None,
        text: TextInput | None = None,
    ) -> list[str]:
        use_image = bool(image_url) and self.image_source is not None
        use_text = text is not None and self.text_source is not None

        calls: list[Awaitable[list[str]]] = []
        if use_image:
            calls.append(self._collect("image", self.image_source.tags_from_image, image_url))
        if use_text:
            calls.append(
                self._collect("text", self.text_source.tags_from_text, text.title, text.body)
            )

        results = list(await asyncio.gather(*calls))
        image_tags = results.pop(0) if use_image else []
        text_tags = results.pop(0) if use_text else []

        tags = merge_tags(
            manual_tags or [], image_tags, text_tags, max_length=self.max_length
        )
        logger.debug(
            "Tags aggregated",
            tag_count=len(tags),
            image_tag_count=len(image_tags),
            text_tag_count=len(text_tags),
        )
        return tags
