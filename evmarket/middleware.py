"""
Middleware for FastAPI: request logging and latency header.
"""
import time
import hashlib
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from evmarket.config import Config

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware for request logging"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        user_id = request.headers.get("X-User-ID")
        hashed_user_id = hash_identifier(user_id) if user_id else None

        # Log request (no PII)
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "hashed_user_id": hashed_user_id,
                "remote_addr": request.client.host if request.client else None
            }
        )

        try:
            response = await call_next(request)

            latency_ms = (time.time() - start_time) * 1000

            logger.info(
                f"Response: {request.method} {request.url.path} {response.status_code}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                    "hashed_user_id": hashed_user_id
                }
            )

            response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
            return response

        except Exception as e:
            logger.error(
                f"Error: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "hashed_user_id": hashed_user_id
                },
                exc_info=True
            )

            # Re-raise so the app's exception handlers produce the response
            raise
