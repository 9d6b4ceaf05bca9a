import logging

import uvicorn
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from oppflow.api.routes import router as api_router
from oppflow.core.config import get_settings
from oppflow.logging import configure_logging
from oppflow.middleware.correlation_id import CorrelationIdMiddleware
from oppflow.middleware.request_logging import RequestLoggingMiddleware
from oppflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("oppflow.lifecycle")

settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

logger.info("app.started", extra={"status": "ready"})


def run() -> None:
    current = get_settings()
    uvicorn.run("oppflow.main:app", host="0.0.0.0", port=current.api_port, reload=current.app_debug)
