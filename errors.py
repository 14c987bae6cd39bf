"""Error taxonomy shared by the orchestrator and the HTTP layer.

Every error the core reports to a caller is a ``StorefrontError``; the
FastAPI handler in ``main`` renders it as ``{"error": message, **extra}``
with the class' status code.
"""

from typing import Any, Optional


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str, reason: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.extra = extra

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.reason:
            payload["reason"] = self.reason
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class InvalidRequest(StorefrontError):
    status_code = 400

    def __init__(self, message: str, issues: Optional[list] = None, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.issues = issues or []

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.issues:
            payload["issues"] = self.issues
        return payload


class NotFound(StorefrontError):
    status_code = 404


class Conflict(StorefrontError):
    status_code = 409


class GatewayError(StorefrontError):
    """The payment processor rejected or failed a call."""

    status_code = 500

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class DeliveryGatewayError(GatewayError):
    """The courier API failed; ``status`` and ``body`` are the upstream response."""

    status_code = 502

    def __init__(self, status: Optional[int], body: Optional[str], message: Optional[str] = None) -> None:
        super().__init__(message or f"Uber API {status}: {body or 'unknown error'}", status=status, body=body)
