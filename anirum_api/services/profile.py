"""Profile verification flags.

The only durable side effect of a successful verification.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anirum_api.logging_config import get_logger, mask_phone
from anirum_api.models.user import User
from anirum_api.services.messenger import Channel
from anirum_api.services.verification_results import CodeVerified

logger = get_logger(__name__)


class ProfileNotFoundError(Exception):
    """The verified user no longer exists."""


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def mark_channel_verified(db: AsyncSession, verified: CodeVerified) -> User:
    """Record a confirmed channel on the owner's profile.

    Raises:
        ProfileNotFoundError: If the owner's account is gone.
    """
    user = await get_user(db, verified.owner_user_id)
    if user is None:
        raise ProfileNotFoundError(str(verified.owner_user_id))

    if verified.channel == Channel.WHATSAPP:
        user.whatsapp_phone = verified.recipient
        user.whatsapp_phone_verified = True
        logger.info(
            "WhatsApp number verified",
            user_id=str(user.id),
            phone=mask_phone(verified.recipient),
        )
    else:
        user.telegram_username = verified.recipient
        if verified.chat_id is not None and verified.chat_id.lstrip("-").isdigit():
            user.telegram_chat_id = int(verified.chat_id)
        user.telegram_phone_verified = True
        logger.info("Telegram account verified", user_id=str(user.id))

    await db.commit()
    await db.refresh(user)
    return user


def verification_flags(user: User) -> dict[str, bool]:
    return {
        "whatsapp_verified": bool(user.whatsapp_phone_verified),
        "telegram_verified": bool(user.telegram_phone_verified),
    }
