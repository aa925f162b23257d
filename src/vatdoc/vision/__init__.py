"""Vision/AI service collaborator."""

from .vision_service import (
    BaseVisionService,
    HTTPVisionService,
    VisionServiceFactory,
    vision_payload_to_amounts,
)
from .resilience import RateLimiter, retry_with_backoff

__all__ = [
    "BaseVisionService",
    "HTTPVisionService",
    "VisionServiceFactory",
    "vision_payload_to_amounts",
    "RateLimiter",
    "retry_with_backoff",
]
