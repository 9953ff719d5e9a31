# Verification and tagging services
from anirum_api.services.direct_verification import DirectSendVerificationFlow
from anirum_api.services.handshake_verification import HandshakeVerificationFlow
from anirum_api.services.scheduler import (
    get_scheduler,
    start_scheduler,
    stop_scheduler,
    sweep_expired_sessions,
)
from anirum_api.services.session_store import InMemorySessionStore, SessionStore
from anirum_api.services.tagging import TagAggregator

__all__ = [
    "DirectSendVerificationFlow",
    "HandshakeVerificationFlow",
    "InMemorySessionStore",
    "SessionStore",
    "TagAggregator",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "sweep_expired_sessions",
]
