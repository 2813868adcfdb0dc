import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

# Load env from dreamstate/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from dreamstate.core.config import settings, validate_config  # noqa: E402
from dreamstate.core.logging import configure_logging  # noqa: E402
from dreamstate.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from dreamstate.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from dreamstate.core.validation import validate_env  # noqa: E402
from dreamstate.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from dreamstate.api import ai_normalize, health, ingest, metrics, state, userdata  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("dreamstate")
    logger.info("Starting dreamstate backend...", extra={"queue_mode": settings.QUEUE_MODE})
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("dreamstate").info("Stopping dreamstate backend...")


app = FastAPI(title="dreamstate - telemetry & consolidation", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest.router)
app.include_router(ai_normalize.router)
app.include_router(state.router)
app.include_router(userdata.router)
app.include_router(health.router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dreamstate.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
