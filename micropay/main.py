from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

from micropay import __version__
from micropay.api.deps import get_store
from micropay.api.endpoints import swaps
from micropay.core.config import settings
from micropay.oracle.runtime import build_reconciliation_loop, start_background_oracle

# Configure basic logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    oracle = None
    if settings.ORACLE_EMBEDDED:
        # Share the API's store so appends and oracle checkpoints use one lock
        loop = build_reconciliation_loop(store=get_store())
        oracle = start_background_oracle(loop)
        logger.info("Embedded oracle started.")
    try:
        yield
    finally:
        if oracle is not None:
            thread, stop_event = oracle
            stop_event.set()
            logger.info("Waiting for the embedded oracle to finish its current tick...")
            thread.join()
            logger.info("Embedded oracle stopped.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json", # Standard location for OpenAPI spec
    lifespan=lifespan,
)

app.include_router(swaps.router, prefix=settings.API_V1_STR, tags=["swaps"])


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": details},
    )


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}", "version": __version__}
