import time
import json
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from config import Settings, settings
from errors import ArticleGenerationError, ErrorKind
from models.articles import ArticleDraft
from models.requests import ArticleContext
from models.responses import ErrorResponse, HealthResponse, ProgressEvent
from services.orchestrator import PipelineDeps, build_default_deps, generate_article
from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["articles"])

_deps: Optional[PipelineDeps] = None


def get_settings() -> Settings:
    return settings


def get_pipeline_deps() -> PipelineDeps:
    """Built once per process so the LLM client and background writer are shared."""
    global _deps
    if _deps is None:
        _deps = build_default_deps(settings)
    return _deps


def current_deps() -> Optional[PipelineDeps]:
    """The shared dependencies if a request has built them, without building them."""
    return _deps


def _status_for(e: ArticleGenerationError) -> int:
    return 422 if e.kind is ErrorKind.CONTEXT_INVALID else 500


@router.post(
    "/articles",
    response_model=ArticleDraft,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid article context"},
        500: {"model": ErrorResponse, "description": "Pipeline failure"},
    },
    summary="Generate a game article",
    description="Runs scout, editor, specialist, reviewer and fixer for one game and returns the draft.",
)
async def create_article(
    context: ArticleContext,
    cfg: Settings = Depends(get_settings),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    start_time = time.time()
    try:
        draft = await generate_article(context, cfg, deps=deps)
    except ArticleGenerationError as e:
        logger.error(f"Article failed for {context.game_name} after {time.time() - start_time:.1f}s: {e}")
        return JSONResponse(status_code=_status_for(e), content=ErrorResponse.from_error(e).model_dump())
    logger.info(f"Article for {context.game_name} completed in {time.time() - start_time:.1f}s")
    return draft


@router.post("/articles/stream", summary="Generate a game article with SSE progress")
async def create_article_stream(
    context: ArticleContext,
    cfg: Settings = Depends(get_settings),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    progress_q: asyncio.Queue = asyncio.Queue()
    token = CancellationToken()

    def on_progress(stage: str, percent: int, detail=None):
        progress_q.put_nowait(ProgressEvent(stage=stage, percent=percent, detail=detail).model_dump())

    async def generate():
        start_time = time.time()
        task = asyncio.create_task(generate_article(context, cfg, deps=deps, on_progress=on_progress, cancel=token))
        try:
            while not task.done():
                try:
                    event = await asyncio.wait_for(progress_q.get(), timeout=0.5)
                    yield f"data: {json.dumps(event)}\n\n"
                except asyncio.TimeoutError:
                    pass

            while not progress_q.empty():
                yield f"data: {json.dumps(progress_q.get_nowait())}\n\n"

            try:
                draft = task.result()
            except ArticleGenerationError as e:
                logger.error(f"Article stream failed after {time.time() - start_time:.1f}s: {e}")
                payload = {"type": "error", **ErrorResponse.from_error(e).model_dump()}
                yield f"data: {json.dumps(payload)}\n\n"
                return
            except Exception as e:
                logger.error(f"Article stream crashed after {time.time() - start_time:.1f}s: {e}", exc_info=True)
                payload = {"type": "error", "error": "Article generation failed", "kind": "INTERNAL", "detail": None}
                yield f"data: {json.dumps(payload)}\n\n"
                return

            elapsed = round(time.time() - start_time, 1)
            yield f"data: {json.dumps({'type': 'result', 'elapsed': elapsed, 'data': draft.model_dump(mode='json')})}\n\n"
        finally:
            # client went away mid-run
            if not task.done():
                token.cancel("client disconnected")
                task.cancel()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/health", response_model=HealthResponse)
async def health(cfg: Settings = Depends(get_settings)):
    return HealthResponse(
        semantic_routing=bool(cfg.exa_api_key),
        cache_enabled=bool(cfg.database_path),
    )
