from __future__ import annotations

from typing import Any


class IntegrationError(Exception):
    """Base error for the GHL integration core."""


class SignatureError(IntegrationError):
    """Raised when a webhook signature is missing, invalid, or no secret is configured."""


class OAuthError(IntegrationError):
    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class RefreshNotSupportedError(IntegrationError):
    def __init__(self, message: str = "Refresh token not available") -> None:
        super().__init__(message)


class ExternalApiError(IntegrationError):
    """Non-2xx response or timeout from the GHL REST API."""

    def __init__(self, method: str, path: str, status: int | None, body: Any = None) -> None:
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        label = "timeout" if status is None else str(status)
        super().__init__(f"GHL API {method} {path} failed: {label}")

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class UnknownPlanError(ValueError):
    def __init__(self, plan: str) -> None:
        self.plan = plan
        super().__init__(f"Unknown plan: {plan}")


class InvalidTransitionError(IntegrationError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"invalid subscription transition: {current} -> {target}")


class PlanLimitExceededError(IntegrationError):
    def __init__(self, limit_type: str, current: int, maximum: int) -> None:
        self.limit_type = limit_type
        self.current = current
        self.maximum = maximum
        super().__init__(f"{limit_type.replace('_', ' ').title()} limit exceeded: {current}/{maximum}")

    def to_dict(self) -> dict[str, Any]:
        return {"limit_type": self.limit_type, "current": self.current, "maximum": self.maximum}
