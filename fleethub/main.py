import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
import structlog

from .config import settings
from .db import Base, engine, SessionLocal
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .routes.files import router as files_router
from .routes.machines import router as machines_router
from .routes.sites import router as sites_router
from .routes.suppliers import router as suppliers_router
from .routes.events import router as events_router
from .routes.allocations import router as allocations_router
from .routes.reports import router as reports_router
from .routes.logs import router as logs_router
from .services.permissions import ensure_roles, ensure_admin_user

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(auth_router)
    app.include_router(files_router)
    app.include_router(machines_router)
    app.include_router(sites_router)
    app.include_router(suppliers_router)
    app.include_router(events_router)
    app.include_router(allocations_router)
    app.include_router(reports_router)
    app.include_router(logs_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        logger.info("startup_begin", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("startup_tables_verified")
        db = SessionLocal()
        try:
            ensure_roles(db)
            admin = ensure_admin_user(db, settings.seed_admin_username, settings.seed_admin_password)
            if admin is not None:
                logger.info("startup_admin_created", username=admin.username)
        finally:
            db.close()
        logger.info("startup_complete")

    @app.on_event("shutdown")
    def _shutdown():
        engine.dispose()

    @app.get("/health")
    def health():
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            logger.warning("health_database_unavailable", error=str(e))
            database = "unavailable"
        finally:
            db.close()
        return {"status": "ok" if database == "ok" else "degraded", "database": database}

    return app


app = create_app()
