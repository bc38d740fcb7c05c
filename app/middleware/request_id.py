import contextvars
import logging
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


def install_request_id_logging() -> None:
    """Stamp `request_id` onto every log record so formatters can include it."""
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "_stamps_request_id", False):
        return

    def factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        record.request_id = _request_id.get()
        return record

    factory._stamps_request_id = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(factory)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        # Attach to state for downstream usage
        request.state.request_id = request_id
        token = _request_id.set(request_id)
        started = time.time()
        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error. request_id={request_id} path={request.url.path}")
            raise
        finally:
            _request_id.reset(token)
        elapsed_ms = (time.time() - started) * 1000.0
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} "
                    f"({elapsed_ms:.1f} ms) request_id={request_id}")
        response.headers["X-Request-Id"] = request_id
        return response


def add_request_id_middleware(app, enable_logging: bool = True):
    """Helper to register the RequestIdMiddleware on a FastAPI app"""
    app.add_middleware(RequestIdMiddleware)
    if enable_logging:
        install_request_id_logging()
