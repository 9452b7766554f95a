from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from examdesk.core.errors import TooManyRequestsError

EXEMPT_PATHS = ("/health", "/metrics")


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _limit_headers(result) -> dict:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global fixed-window limit per client, using the limiter on app.state."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(EXEMPT_PATHS):
            return await call_next(request)
        limiter = request.app.state.rate_limiter
        result = await limiter.hit(client_identifier(request))
        if not result.allowed:
            error = TooManyRequestsError()
            return JSONResponse(
                status_code=error.status_code,
                content={"success": False, "error": error.message, "code": error.code},
                headers=_limit_headers(result),
            )
        response = await call_next(request)
        response.headers.update(_limit_headers(result))
        return response


async def auth_rate_limit(request: Request) -> None:
    """Stricter limiter for credential endpoints."""
    if not request.app.state.settings.RATE_LIMIT_ENABLED:
        return
    result = await request.app.state.auth_rate_limiter.hit(f"auth:{client_identifier(request)}")
    if not result.allowed:
        raise TooManyRequestsError()
