"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.reconciliation import reconciliation_error_handler
from src.api.reconciliation import router as reconciliation_router
from src.config.settings import settings
from src.services import init_db
from src.services.errors import ReconciliationError, ValidationError, error_response
from src.services.logging import setup_server_logging

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create missing tables before serving requests."""
    await init_db()
    logger.info("Database ready")
    yield


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed requests in the same shape as other validation errors."""
    messages = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=error_response(ValidationError(messages)))


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.api_title,
        description="Meter reconciliation, aggregation and costing",
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(reconciliation_router)
    return app


app = create_app()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Meter reconciliation API")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    args = parser.parse_args()

    setup_server_logging(log_file=settings.log_file, level=settings.log_level)
    logger.info("Starting Uvicorn server on %s:%s...", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
