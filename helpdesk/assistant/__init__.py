from .client import (
    AssistantClient,
    AssistantError,
    AssistantMalformedStreamError,
    AssistantQuotaExceededError,
    AssistantRateLimitedError,
    AssistantReply,
    AssistantUnavailableError,
    ConversationTurn,
)

__all__ = [
    "AssistantClient",
    "AssistantError",
    "AssistantMalformedStreamError",
    "AssistantQuotaExceededError",
    "AssistantRateLimitedError",
    "AssistantReply",
    "AssistantUnavailableError",
    "ConversationTurn",
]
