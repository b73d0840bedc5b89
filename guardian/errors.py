"""
Error taxonomy and the FastAPI handlers that shape it into JSON responses.

Adapters raise these errors at their seams; they are mapped to HTTP
responses exactly once, here.
"""

import logging
import re
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class GuardianError(Exception):
    """Base class for every error the service reports to callers."""

    status_code = 500
    kind = "internal"
    default_error = "Internal server error"

    def __init__(
        self,
        error: Optional[str] = None,
        details: Optional[str] = None,
        **extra: Any,
    ):
        self.error = error or self.default_error
        self.details = details
        self.extra = extra
        super().__init__(self.error if not details else f"{self.error}: {details}")

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details:
            body["details"] = self.details
        body.update({key: value for key, value in self.extra.items() if value is not None})
        return body


class ValidationError(GuardianError):
    status_code = 400
    kind = "validation"
    default_error = "Invalid request"


class InvalidPriceError(ValidationError):
    kind = "invalid-price"
    default_error = "Invalid plan price ID"


class PaymentFailedError(ValidationError):
    kind = "payment-failed"
    default_error = "Payment failed"


class BadSignatureError(GuardianError):
    status_code = 400
    kind = "bad-signature"
    default_error = "Invalid signature"


class NotFoundError(GuardianError):
    status_code = 404
    kind = "not-found"
    default_error = "Not found"


class ConflictError(GuardianError):
    """Double-subscription guard tripped; carries the subscription that blocked it."""

    status_code = 409
    kind = "conflict"
    default_error = "Subscription conflict"


class DuplicateCodeError(ConflictError):
    kind = "duplicate-code"
    default_error = "Promotion code already exists"


class UpstreamError(GuardianError):
    """Stripe or Supabase I/O failure."""

    status_code = 500
    kind = "upstream"
    default_error = "Upstream service error"


class InitializationError(GuardianError):
    """Required configuration is missing; dependent endpoints refuse to serve."""

    status_code = 503
    kind = "initialization"
    default_error = "Service not properly initialized"


def require_fields(values: Dict[str, Any], *names: str) -> None:
    """
    Raise ValidationError listing every missing or empty field.

    Args:
        values: Mapping of public field name to value.
        names: Field names that must be present.
    """
    missing = [name for name in names if values.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def register_exception_handlers(app: FastAPI) -> None:
    """Register JSON error shaping for the application."""

    @app.exception_handler(GuardianError)
    async def handle_guardian_error(request: Request, exc: GuardianError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": problems},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        path = request.url.path
        if exc.status_code == 404:
            if "//" in path:
                corrected = _DUPLICATE_SLASHES.sub("/", path)
                if request.url.query:
                    corrected = f"{corrected}?{request.url.query}"
                logger.info(f"Redirecting {path} to {corrected}")
                return RedirectResponse(url=corrected, status_code=301)
            return JSONResponse(
                status_code=404,
                content={
                    "error": "Endpoint not found",
                    "details": f"No route for {request.method} {path}",
                    "path": path,
                },
            )
        if exc.status_code == 405:
            allow = (exc.headers or {}).get("Allow") or (exc.headers or {}).get("allow", "")
            return JSONResponse(
                status_code=405,
                content={
                    "error": "Method not allowed",
                    "details": f"{request.method} is not supported here. Allowed methods: {allow}",
                },
                headers=exc.headers,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=exc.headers,
        )
