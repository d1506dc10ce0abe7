from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os

from config import APP_NAME, APP_VERSION
from database import init_db, health_check_db
from errors import OrchestrationError
from internal_routes import router as internal_router
from port_routes import router as port_router
from proxy_routes import router as proxy_router
from server_routes import router as server_router
from services import build_services

logger = logging.getLogger(__name__)


def _configure_cors(app: FastAPI) -> None:
    origins = os.getenv("ALLOWED_ORIGINS", "*")
    # Strip surrounding quotes that may appear due to docker-compose quoting
    if len(origins) >= 2 and origins[0] == origins[-1] and origins[0] in ("'", '"'):
        origins = origins[1:-1]
    if origins.strip() == "*":
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=".*",
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            max_age=600,
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            max_age=600,
        )


def create_app(services=None) -> FastAPI:
    app = FastAPI(title=APP_NAME, version=APP_VERSION)
    _configure_cors(app)
    if services is not None:
        app.state.services = services

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(request: Request, exc: OrchestrationError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        """Initialize the application when it starts."""
        logging.basicConfig(level=logging.INFO)
        logging.info("Initializing database...")
        init_db()
        logging.info("Database initialized")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
            logging.info(f"Loaded {len(app.state.services.registry)} proxy definition(s)")

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok" if health_check_db() else "degraded", "app": APP_NAME, "version": APP_VERSION}

    app.include_router(server_router)
    app.include_router(port_router)
    app.include_router(proxy_router)
    app.include_router(internal_router)
    return app


app = create_app()
