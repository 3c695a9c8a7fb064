import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, parse_origins
from database import SessionLocal, init_db
from routers import auth_router, delivery_router, payments_router
from services.factory import Services, build_services
from utils.log import get_logger, setup_logging

# Load .env
load_dotenv()

logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # missing settings or an unreadable supply ledger abort startup
    if app.state.settings is None:
        app.state.settings = Settings.from_env()
    settings = app.state.settings
    setup_logging(settings.log_level, settings.log_format)

    if app.state.services is None:
        init_db()
        app.state.services = build_services(settings, SessionLocal)
    app.state.services.ledger.load()

    logger.info("Delivery service started", extra={"max_supply": settings.max_supply})
    yield


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="NFT Delivery Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    # CORS; the module-level app reads FRONTEND_URL before settings are loaded
    origins = settings.cors_origins if settings is not None else parse_origins(os.getenv("FRONTEND_URL"))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(payments_router)
    app.include_router(delivery_router)

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": "nft-delivery",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/.well-known/pi-validation", response_class=PlainTextResponse)
    def pi_validation(request: Request):
        return request.app.state.settings.pi_validation_key

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        error = "Route not found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": error})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
        logger.warning("Validation failed", extra={"path": request.url.path, "errors": errors})
        return JSONResponse(status_code=400, content={"success": False, "errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", extra={"path": request.url.path}, exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    uvicorn.run("main:app", host="0.0.0.0", port=port)
