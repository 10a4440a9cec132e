# crm_api/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crm_api.routers import events, health, rules, scores, suppression, templates, workflows

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown events."""
    # Startup
    from crm_api.db.engine import get_engine
    from crm_api.services.sweeper import start_sweeper
    from crm_api.services.templates import seed_builtin_templates

    get_engine()
    try:
        seed_builtin_templates()
    except Exception as e:
        logger.error("Failed to seed built-in templates: %s", e, exc_info=True)
    start_sweeper()

    logger.info("API server started")

    yield

    # Shutdown
    from crm_api.services.sweeper import stop_sweeper

    stop_sweeper()


app = FastAPI(
    title="CRM Automation API",
    description="Rule engine, workflow sequences and template library for CRM automations",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(health.router, tags=["health"])
app.include_router(rules.router, prefix="/api/v1", tags=["rules"])
app.include_router(templates.router, prefix="/api/v1", tags=["templates"])
app.include_router(workflows.router, prefix="/api/v1", tags=["workflows"])
app.include_router(events.router, prefix="/api/v1", tags=["events"])
app.include_router(scores.router, prefix="/api/v1", tags=["scores"])
app.include_router(suppression.router, prefix="/api/v1", tags=["suppression"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
