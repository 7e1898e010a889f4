import logging

from fastapi import Depends, Header, HTTPException, Request, status

from src.domain.exceptions import (
    AccessDeniedError,
    BookingEngineError,
    ConfigurationError,
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    SignatureError,
    StateError,
    TransientStorageError,
    ValidationError,
)
from src.infrastructure.container import ServiceContainer

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.audit")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


def rate_limited(
    request: Request,
    x_user_id: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    client_host = request.client.host if request.client else "unknown"
    key = f"{request.url.path}:{x_user_id or client_host}"
    decision = container.rate_limiter.hit(key)
    if not decision.allowed:
        logger.warning("Rate limit exceeded. key=%s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


def to_http_error(exc: BookingEngineError) -> HTTPException:
    """Translates a domain error into the HTTP response the API promises."""
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "conflicting_seats": exc.conflicting_seats},
        )
    if isinstance(exc, StateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "current_status": exc.current_status},
        )
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AccessDeniedError):
        security_logger.warning("Access denied: %s", exc)
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if isinstance(exc, SignatureError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, ExternalProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, TransientStorageError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage is busy, please retry",
            headers={"Retry-After": "1"},
        )
    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment provider is not configured",
        )
    logger.exception("Unhandled domain error", exc_info=exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal error",
    )
