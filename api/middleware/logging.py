"""
Request/response logging middleware with timing.

Bodies are never logged: webhook payloads carry buyer and payee details.
"""
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.time()
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "content_type": request.headers.get("content-type"),
        }
        user_agent = request.headers.get("User-Agent")
        if user_agent:
            request_info["user_agent"] = user_agent
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.time() - start_time,
                error=str(exc),
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        self._log_response(response, duration, request_info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    def _log_response(self, response: Response, duration: float, request_info: dict) -> None:
        log_data = {"status_code": response.status_code, "duration": duration, **request_info}
        if response.status_code < 400:
            logger.info("request_completed", **log_data)
        elif response.status_code < 500:
            logger.warning("request_client_error", **log_data)
        else:
            logger.error("request_server_error", **log_data)
