"""AI agent components for Kindred: prompts, model gateway and rate limiting."""

from .errors import AIError, AIErrorType, RateLimitExceededError
from .gateway import Credentials, GatewaySettings, ModelBackend, ModelGateway, ModelResponse
from .prompts import ExtractionContext, PromptBuilder, PromptStrategy, prompt_registry
from .rate_limiter import SlidingWindowRateLimiter, get_rate_limiter

__all__ = [
    "AIError",
    "AIErrorType",
    "RateLimitExceededError",
    "Credentials",
    "GatewaySettings",
    "ModelBackend",
    "ModelGateway",
    "ModelResponse",
    "ExtractionContext",
    "PromptBuilder",
    "PromptStrategy",
    "prompt_registry",
    "SlidingWindowRateLimiter",
    "get_rate_limiter",
]
