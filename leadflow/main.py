from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.core.database import dependency_session_scope
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel
from leadflow.services.notifications import notification_dispatcher


settings = get_settings()
configure_logging(settings)
setup_otel(settings)
logger = logging.getLogger("leadflow.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    notification_dispatcher.start()
    logger.info("service started", extra={"operation": "startup"})
    try:
        yield
    finally:
        # drain queued notifications before the process exits
        notification_dispatcher.stop()
        logger.info("service stopped", extra={"operation": "shutdown"})


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
# outermost last: correlation id must be bound before the request is logged
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

notification_dispatcher.session_scope = dependency_session_scope(app)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
