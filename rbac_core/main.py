"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from rbac_core.config import get_settings
from rbac_core.database import Base, SessionLocal, engine
from rbac_core.log_config import configure_logging
from rbac_core.api.dependencies import session_registry
from rbac_core.api.routes import router
# Import models to register them with SQLAlchemy Base
from rbac_core.models.tables import AuditLogRow, PermissionRow, RoleRow, UserRow
from rbac_core.repositories.sql import SqlPermissionStore, SqlRoleStore, SqlUserStore
from rbac_core.seed import seed_defaults

settings = get_settings()
configure_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables and seed the defaults into an empty database
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_defaults(SqlUserStore(db), SqlRoleStore(db), SqlPermissionStore(db), settings=settings)
    finally:
        db.close()

    await session_registry.start(settings.session_check_interval_seconds)
    logger.info(f"{settings.app_name} {settings.app_version} started")
    yield
    await session_registry.stop()
    session_registry.clear()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Role-based access control: permission checks, sessions, mutation guards and an audit trail.",
    version=settings.app_version,
    lifespan=lifespan,
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For MVP - restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["RBAC"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
