from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import KeyValueStore, create_store
from constants import BASE_PATH
from exceptions import ClientError, StoreError
from logging_config import get_logger, setup_logging
from room_store import RoomStore
from routers.signaling import build_signaling_router
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.room_store.store.ping()
        logger.info("Store connection verified")
    except StoreError as e:
        logger.error(f"Store is unreachable at startup, requests will fail until it recovers: {e}")
    yield


async def client_error_handler(request: Request, exc: ClientError):
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Malformed body for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "malformed request body"})


async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store failure while handling {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "store failure"})


def permissive_headers(request: Request) -> dict:
    return {
        "Access-Control-Allow-Origin": request.headers.get("origin", "*"),
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": request.headers.get("access-control-request-headers", "Content-Type"),
        "Access-Control-Max-Age": "600",
        "Vary": "Origin",
    }


async def options_headers_only(request: Request, call_next):
    # Outermost layer: every OPTIONS, preflight or not, gets CORS headers and an empty body
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=permissive_headers(request))
    return await call_next(request)


def create_app(store: Optional[KeyValueStore] = None, base_path: str = BASE_PATH) -> FastAPI:
    app = FastAPI(title="Signaling Relay", lifespan=lifespan)
    app.state.room_store = RoomStore(store if store is not None else create_store())

    app.add_exception_handler(ClientError, client_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)

    # Reflect whatever origin the caller sends
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    # Added last so it wraps the CORS middleware
    app.middleware("http")(options_headers_only)

    app.include_router(build_signaling_router(base_path))
    logger.info(f"FastAPI application initialized, base path '{base_path or '/'}'")
    return app


app = create_app()
