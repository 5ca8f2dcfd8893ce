import logging
import os
from typing import Dict

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import get_current_admin
from .cache import ResponseCache
from .database import init_db
from .performance import PerformanceMonitor, install_performance_middleware
from .routers import address_router, group_purchase_router, product_router
from .scheduler import start_scheduler

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
EXPIRY_SCHEDULER_ENABLED = os.getenv("EXPIRY_SCHEDULER_ENABLED", "true").lower() == "true"
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "120"))
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "10000"))
PERF_MAX_METRICS = int(os.getenv("PERF_MAX_METRICS", "1000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Group Purchase Service",
    description="Products, discount tiers and group purchases for the group-buy marketplace",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag", "X-Cache-Status", "X-Response-Time"],
)
install_performance_middleware(app)

app.state.cache = ResponseCache(max_size=CACHE_MAX_SIZE, default_ttl=CACHE_TTL_SECONDS)
app.state.monitor = PerformanceMonitor(max_metrics=PERF_MAX_METRICS)

# Create database tables
init_db()

app.include_router(product_router.router)
app.include_router(group_purchase_router.router)
app.include_router(address_router.router)


@app.on_event("startup")
async def _startup() -> None:
    if EXPIRY_SCHEDULER_ENABLED:
        app.state.scheduler = start_scheduler(app.state.cache)


@app.on_event("shutdown")
async def _shutdown() -> None:
    task = getattr(app.state, "scheduler", None)
    if task is not None:
        task.cancel()


@app.get("/")
def root():
    return {
        "service": "Group Purchase Service",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "group-service",
    }


@app.get("/metrics/performance")
def performance_metrics(current_admin: Dict = Depends(get_current_admin)):
    monitor: PerformanceMonitor = app.state.monitor
    return {
        "stats": monitor.get_stats(),
        "slow_endpoints": monitor.get_slow_endpoints(),
        "cache": app.state.cache.stats(),
    }
