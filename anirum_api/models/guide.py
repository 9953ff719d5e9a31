"""Drawing guide model."""

import uuid
from typing import Any

from sqlalchemy import JSON, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from anirum_api.models.base import Base, TimestampMixin


class Guide(Base, TimestampMixin):
    """A drawing tutorial.

    Attributes:
        id: Guide identifier
        owner_id: Author of the guide
        title: Guide title
        text: Optional long description
        image_url: URL of the original cover image
        image_formats: Resized renditions keyed by name
            (thumbnail, small, medium, large), each ``{"url": ...}``
        tags: Normalized, deduplicated tags
    """

    __tablename__ = "guides"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    image_formats: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    owner = relationship("User", back_populates="guides")

    def __repr__(self) -> str:
        return f"<Guide {self.title!r}>"
