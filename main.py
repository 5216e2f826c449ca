from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routers.articles import current_deps, router as articles_router
from config import ensure_valid_settings, settings
from utils.log_context import install_correlation_filter
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(correlation_id)s | %(message)s",
)
install_correlation_filter()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_valid_settings(settings)
    yield
    # let pending cache writes finish before the loop goes away
    deps = current_deps()
    if deps is not None and deps.background.pending:
        logger.info(f"Draining {deps.background.pending} background job(s)")
        await deps.background.drain()


app = FastAPI(
    title="Game Article Engine",
    description="Multi-agent game article generation powered by Tavily, Exa + Gemini",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(articles_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8001, reload=True)
