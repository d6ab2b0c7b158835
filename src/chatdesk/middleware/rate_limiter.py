"""
Rate limiting with SlowAPI.

Limits the auth and chat endpoints per user (verified bearer token) or per
client IP. The limiter is a process-wide singleton shared by the routers.

Features:
- Per-user quotas keyed by the verified bearer token, per-IP otherwise
- Limits per endpoint read from config on every request, so they can be
  changed without rebuilding the app
- Redis storage when configured and reachable, in-memory fallback
- 429 responses in the API's `{"message"}` shape with a Retry-After header
"""
from typing import Callable, Optional

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from chatdesk.config import get_config
from chatdesk.errors import AuthenticationError
from chatdesk.services.auth_service import get_auth_service

log = structlog.get_logger()

RATE_LIMITED = "Muitas requisições. Tente novamente em instantes."


def get_user_identifier(request: Request) -> str:
    """
    Rate-limit key for a request.

    Priority:
    1. `user:<id>` when the bearer token verifies against our JWT secret
    2. `ip:<address>` otherwise (no header, forged, tampered or expired token)

    `/api/chat` accepts anonymous requests, so an unverified token must not
    pick its own bucket: a fresh `userId` per request would never hit a limit.

    Args:
        request: incoming FastAPI request

    Returns:
        The storage key SlowAPI counts hits under
    """
    auth_header = request.headers.get("Authorization", "")

    if auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        try:
            return f"user:{get_auth_service().verify_token(token)}"
        except AuthenticationError:
            log.debug("rate_limit_token_rejected", path=request.url.path)

    return f"ip:{get_remote_address(request)}"


def _storage_uri() -> str:
    """
    Pick the SlowAPI storage backend.

    Redis only when `rate_limits.storage` is `redis`, a URL is set, the
    package is installed and the server answers a ping; otherwise
    `memory://`, which counts per process.

    Returns:
        A limits storage URI
    """
    rl = get_config().rate_limits
    if rl.storage != "redis":
        return "memory://"

    if not rl.redis_url:
        log.warning("redis_url_not_configured", fallback="memory")
        return "memory://"

    try:
        import redis
    except ImportError:
        log.warning(
            "redis_package_not_installed",
            fallback="memory",
            message="Install redis for shared rate limits: pip install 'chatdesk[redis]'",
        )
        return "memory://"

    try:
        client = redis.from_url(rl.redis_url, decode_responses=True)
        client.ping()
        client.close()
    except redis.RedisError as e:
        log.warning("redis_connection_failed", error=str(e), fallback="memory")
        return "memory://"

    log.info("rate_limiter_redis_connected", redis_url=rl.redis_url.split("@")[-1])
    return rl.redis_url


def create_limiter() -> Limiter:
    """
    Build the Limiter with the user-or-IP key function.

    `headers_enabled` adds X-RateLimit-* headers to limited responses, which
    is why every decorated route takes a `response: Response` parameter.
    A disabled config still returns a Limiter, with `enabled=False`.

    Returns:
        Configured Limiter instance
    """
    rl = get_config().rate_limits
    if not rl.enabled:
        log.warning("rate_limiting_disabled", reason="not enabled in config")

    storage_uri = _storage_uri()
    limiter = Limiter(
        key_func=get_user_identifier,
        storage_uri=storage_uri,
        default_limits=[rl.default_limit],
        headers_enabled=True,
        enabled=rl.enabled,
    )
    log.info("rate_limiter_initialized", storage=storage_uri.split(":")[0], default_limit=rl.default_limit)
    return limiter


def endpoint_limit(name: str) -> Callable[[], str]:
    """Limit string for one endpoint, read from config on every request."""
    return lambda: getattr(get_config().rate_limits.endpoints, name)


_limiter: Optional[Limiter] = None


def get_limiter() -> Limiter:
    """Process-wide Limiter used by the route decorators and app.state."""
    global _limiter
    if _limiter is None:
        _limiter = create_limiter()
    return _limiter


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Render RateLimitExceeded as 429 `{"message": ...}`.

    Retry-After is the length of the window that was exceeded (60 for a
    per-minute limit).

    Args:
        request: the rejected request
        exc: RateLimitExceeded raised by SlowAPI

    Returns:
        JSONResponse with status 429
    """
    log.warning(
        "rate_limit_exceeded",
        identifier=get_user_identifier(request),
        path=request.url.path,
        limit=str(exc.detail),
    )
    retry_after = 60
    limit = getattr(exc, "limit", None)
    if limit is not None:
        retry_after = int(limit.limit.get_expiry())

    return JSONResponse(
        status_code=429,
        content={"message": RATE_LIMITED},
        headers={"Retry-After": str(retry_after)},
    )
