import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_calendar,  # noqa: F401
)
from .database import Base, engine
from .domain.scheduling import router as scheduling_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Meeting scheduler starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("✅ Scheduling tables ready")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("ℹ️ Scheduling tables already exist (created by another worker)")
        else:
            logger.error(f"❌ Failed to create scheduling tables: {e}")
    yield
    logger.info("👋 Meeting scheduler shutting down...")


app = FastAPI(title="Meeting Scheduler API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"⚠️ Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


app.include_router(scheduling_router)


@app.get("/health")
def health():
    return {"status": "healthy"}
