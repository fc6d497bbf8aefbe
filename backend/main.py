"""
CarePanel FastAPI application entry point.

Startup sequence:
  1. Load settings (missing env vars are logged, not fatal)
  2. Configure logging from LOG_LEVEL
  3. Create the per-organization RosterRegistry (rosters load lazily on
     first request, so startup never waits on Supabase)
  4. Register middleware (CORS)
  5. Mount routers
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from routers import notifications, roster

log      = logging.getLogger("carepanel")
settings = get_settings()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.roster_registry = roster.RosterRegistry()
    log.info("carepanel: started (environment=%s)", settings.environment)

    yield

    log.info("carepanel: shutting down")


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="CarePanel API",
    version="0.1.0",
    description="Provider portal backend with optimistic patient roster updates",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

# ── CORS ──────────────────────────────────────────────────────────────────────

origins = [
    "http://localhost:5173",
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(roster.router)
app.include_router(notifications.router)


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "carepanel-backend"}
