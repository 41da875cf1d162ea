from fastapi import FastAPI
import logging

from mitr_analytics.config import get_section, load_config
from mitr_analytics.database.client import init_tables
from mitr_analytics.extraction.jobs import get_processor
from mitr_analytics.extraction.write_queue import start_write_worker, stop_write_worker
from mitr_analytics.routers import analytics

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(title="Mitr Analytics API", version=VERSION)


# ─── Startup ──────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup_event():
    # 1. Load config (writes defaults on first launch)
    load_config(force_reload=True)

    # 2. Initialize DB tables
    init_tables()

    # 3. Start the async write queue
    await start_write_worker()

    # 4. Start the extraction job worker
    if bool(get_section("job_queue").get("enabled", True)):
        get_processor().start()
        logger.info("Extraction job worker scheduled")

    # 5. Start housekeeping scheduler (cache cleanup, job retention)
    from mitr_analytics.scheduler import start_scheduler
    start_scheduler()
    logger.info("Scheduler started")


@app.on_event("shutdown")
async def shutdown_event():
    from mitr_analytics.scheduler import stop_scheduler

    await get_processor().stop()
    await stop_scheduler()
    await stop_write_worker()


# ─── Routers ──────────────────────────────────────────────────────────────────
app.include_router(analytics.router)


# ─── Health Endpoint ──────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    from mitr_analytics.extraction.jobs import get_queue_stats

    try:
        queue = get_queue_stats()
    except Exception as e:
        logger.warning(f"Health check could not read queue stats: {e}")
        queue = None
    return {
        "status": "ok",
        "version": VERSION,
        "worker": get_processor().state(),
        "queue": queue,
    }
