"""ASGI middleware enforcing the shared ``X-Webhook-Secret`` header."""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from src.audit.logger import AuditLogger
from src.models import AuditEvent, AuditEventType, RiskLevel

SECRET_HEADER = "x-webhook-secret"

# Path prefixes that require the secret
PROTECTED_PREFIXES = (
    "/api/webhook/send",
    "/api/webhook/proxy",
    "/api/messages",
    "/api/webhooks",
    "/api/queue",
    "/api/test-webhook",
)


class SharedSecretMiddleware:
    """Rejects protected requests whose secret header does not match.

    Comparison is constant-time. CORS preflight requests pass through.
    """

    def __init__(
        self,
        app: ASGIApp,
        secret: str,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.app = app
        self._secret = secret.encode()
        self.audit_logger = audit_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if request.method == "OPTIONS" or not path.startswith(PROTECTED_PREFIXES):
            await self.app(scope, receive, send)
            return

        provided = request.headers.get(SECRET_HEADER, "")
        if not provided:
            self._log_failure(request, "missing_secret")
            response = JSONResponse(
                {"success": False, "error": "Unauthorized"}, status_code=401,
            )
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(provided.encode(), self._secret):
            self._log_failure(request, "invalid_secret")
            response = JSONResponse(
                {"success": False, "error": "Unauthorized"}, status_code=401,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

    def _log_failure(self, request: Request, reason: str) -> None:
        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.AUTH_FAILURE,
                action=f"{request.method} {request.url.path}",
                result="failure",
                risk_level=RiskLevel.HIGH,
                details={
                    "reason": reason,
                    "source_ip": request.client.host if request.client else None,
                },
            ))
