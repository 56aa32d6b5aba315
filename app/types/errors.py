"""Exception taxonomy for the delivery engine.

Collaborators (content sources, channel gateways) raise these; the scheduler,
linker and reply router catch them at their boundary and turn them into
outcome models, so none of them ever reaches a webhook or a sweep caller.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class; ``reason`` is safe to show in an outcome or log line."""

    status = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(EngineError):
    """Delivery config is unusable (missing credentials, bad tz, bad time)."""

    status = "configuration_error"


class ContentNotFound(EngineError):
    status = "content_not_found"


class SourceUnavailable(EngineError):
    """Content store timed out, was unreachable or answered 5xx."""

    status = "source_unavailable"


class DeliveryFailed(EngineError):
    status = "delivery_failed"


class LinkNotFound(EngineError):
    status = "link_not_found"


class LinkExpired(EngineError):
    status = "link_expired"


class ReplyTargetMissing(EngineError):
    status = "reply_target_missing"
