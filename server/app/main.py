import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import DEFAULT_CORS_ORIGINS, load_settings
from .database import close_pool, init_db, init_pool
from .recordkeeping.routes import recordkeeping_router

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = load_settings()
    print(f"[Recordkeeping] Starting server on port {settings.port}")
    print(f"[Recordkeeping] Records retained for {settings.retention_years} years after each log year")

    # Initialize database
    await init_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    await init_db()

    yield

    # Cleanup
    await close_pool()
    print("[Recordkeeping] Server shutdown complete")


app = FastAPI(
    title="Recordkeeping API",
    description="Workplace injury and illness recordkeeping: classification, annual logs and certification",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - middleware is registered before settings load, so read the env directly
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(recordkeeping_router, prefix="/api/recordkeeping")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "recordkeeping"}
