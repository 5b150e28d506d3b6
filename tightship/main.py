import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from tightship/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from tightship.api import admin, health, menu, subscription  # noqa: E402
from tightship.api import rpc as rpc_api  # noqa: E402
from tightship.core.config import settings, validate_config  # noqa: E402
from tightship.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from tightship.core.logging import configure_logging  # noqa: E402
from tightship.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from tightship.core.rpc import RpcError, rpc_error_handler  # noqa: E402
from tightship.core.tasks import shutdown_task_runner  # noqa: E402
from tightship.features.enforcement.denials import EntitlementDeniedError  # noqa: E402
from tightship.features.enforcement.http import entitlement_denied_handler  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tightship")
    logger.info("Starting tightship...")
    try:
        yield
    finally:
        # Drain pending usage/audit writes before exit
        shutdown_task_runner(wait=True)
        logger.info("Stopping tightship...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="tightship - subscription entitlements", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(EntitlementDeniedError, entitlement_denied_handler)
    app.add_exception_handler(RpcError, rpc_error_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(health.root_router)
    app.include_router(subscription.router)
    app.include_router(menu.router)
    app.include_router(admin.router)
    app.include_router(rpc_api.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tightship.main:app", host="0.0.0.0", port=8000, reload=False, log_level="info")
