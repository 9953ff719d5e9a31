# Database Models
from anirum_api.models.base import Base, TimestampMixin
from anirum_api.models.guide import Guide
from anirum_api.models.user import User

__all__ = [
    "Base",
    "Guide",
    "TimestampMixin",
    "User",
]
