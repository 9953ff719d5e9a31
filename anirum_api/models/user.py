"""User profile model.

Accounts are created by the external identity system; this service only
reads them for authentication and writes the messenger verification
flags once a code has been confirmed.
"""

import uuid

from sqlalchemy import BigInteger, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from anirum_api.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """User account model.

    Attributes:
        id: Unique user identifier (UUID)
        email: User's email address
        is_active: Whether the account is active
        whatsapp_phone: Last WhatsApp number confirmed by the user
        whatsapp_phone_verified: Whether a WhatsApp code was confirmed
        telegram_username: Telegram handle (without @) confirmed by the user
        telegram_chat_id: Telegram chat the code was delivered to
        telegram_phone_verified: Whether a Telegram code was confirmed
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(default=True)

    whatsapp_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    whatsapp_phone_verified: Mapped[bool] = mapped_column(default=False)

    telegram_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    telegram_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    telegram_phone_verified: Mapped[bool] = mapped_column(default=False)

    guides = relationship(
        "Guide",
        back_populates="owner",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"
