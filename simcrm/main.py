import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from .clock import SystemClock
from .config import CONFIG_PATH, SECRET_MASK, AppSettings, load_settings, merge_sections, save_settings
from .crm_client import CrmClient
from .db import Database
from .errors import PlanningError
from .executor import RecordExecutor
from .generator import ContentCache, ContentGenerator
from .job_store import JobStore
from .llm import LLMClient
from .logging_utils import configure_structured_logging
from .metadata import CrmMetadataService
from .planner import StepPlanner
from .rate_limiter import RateLimiter
from .references import ReferenceResolver
from .runner import StepRunner
from .schemas import JobRequest


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_planner(request: Request) -> StepPlanner:
    return request.app.state.planner


def get_runner(request: Request) -> StepRunner:
    return request.app.state.runner


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def _control_result(result: Dict[str, Any]) -> Dict[str, Any]:
    if result.get("ok"):
        return result
    if result.get("status") == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    raise HTTPException(status_code=409, detail=f"Job is {result.get('job_status')}")


router = APIRouter()


@router.get("/health")
async def health(runner: StepRunner = Depends(get_runner)):
    return {"ok": True, "runner_running": runner.running}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object")
    # Masked secrets echoed back from GET /settings keep the stored value.
    body = {k: v for k, v in body.items() if v != SECRET_MASK}
    try:
        new_settings = AppSettings(**merge_sections(settings.model_dump(), body))
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=400, detail=[{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
        )
    save_settings(new_settings, config_path=config_path)
    state = request.app.state
    state.settings = new_settings
    state.limiter.update_config(**new_settings.rate_limit.model_dump())
    state.resolver.strict = new_settings.references_strict
    state.resolver.search_fallback = new_settings.references.search_fallback
    state.generator.strict = new_settings.generation_strict
    state.generator.config = new_settings.generation
    state.executor.config = new_settings.executor
    state.planner.config = new_settings.planner
    state.runner.config = new_settings.runner
    configure_structured_logging(new_settings.structured_logging)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/jobs", status_code=201)
async def create_job(payload: JobRequest, planner: StepPlanner = Depends(get_planner)):
    try:
        return await planner.create_job(payload)
    except PlanningError as exc:
        raise HTTPException(status_code=exc.status, detail=exc.to_dict())


@router.get("/api/jobs")
async def list_jobs(status: Optional[str] = None, limit: int = 100, store: JobStore = Depends(get_store)):
    return {"jobs": await store.list_jobs(status=status, limit=limit)}


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, store: JobStore = Depends(get_store)):
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job": job, "overview": await store.get_overview(job_id)}


@router.get("/api/jobs/{job_id}/steps")
async def list_steps(job_id: str, status: Optional[str] = None, store: JobStore = Depends(get_store)):
    if not await store.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"steps": await store.list_steps(job_id, status=status)}


@router.post("/api/jobs/{job_id}/pause")
async def pause_job(job_id: str, runner: StepRunner = Depends(get_runner)):
    return _control_result(await runner.pause_job(job_id))


@router.post("/api/jobs/{job_id}/resume")
async def resume_job(job_id: str, runner: StepRunner = Depends(get_runner)):
    return _control_result(await runner.resume_job(job_id))


@router.post("/api/jobs/{job_id}/stop")
async def stop_job(job_id: str, runner: StepRunner = Depends(get_runner)):
    return _control_result(await runner.stop_job(job_id))


@router.post("/api/jobs/{job_id}/retry")
async def retry_job(job_id: str, runner: StepRunner = Depends(get_runner)):
    return _control_result(await runner.retry_failed_steps(job_id))


@router.post("/api/runner/poll")
async def trigger_poll(runner: StepRunner = Depends(get_runner)):
    return await runner.poll_once()


@router.get("/api/stats")
async def stats(request: Request, runner: StepRunner = Depends(get_runner)):
    return {
        "rate_limiter": request.app.state.limiter.get_stats(),
        "active_requests": request.app.state.limiter.active_requests,
        "content_cache": request.app.state.cache.get_stats(),
        "runner": {**runner.stats, "running": runner.running},
    }


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    crm_client: Optional[Any] = None,
    llm_client: Optional[Any] = None,
    clock: Optional[Any] = None,
    rng: Optional[random.Random] = None,
    config_path: Optional[Path] = None,
    start_runner: Optional[bool] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_structured_logging(app.state.settings.structured_logging)
        await app.state.db.init()
        should_start = app.state.settings.runner.enabled if start_runner is None else start_runner
        if should_start:
            app.state.runner.start()
        try:
            yield
        finally:
            await app.state.runner.stop()
            await app.state.crm_client.close()
            await app.state.llm_client.close()

    app = FastAPI(title="SimCRM Job Engine", lifespan=lifespan)
    clock = clock or SystemClock()
    rng = rng or random.Random()
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.store = JobStore(app.state.db.path)
    app.state.crm_client = crm_client or CrmClient(settings.crm_base_url, settings.crm_access_token)
    app.state.llm_client = llm_client or LLMClient(
        settings.llm_base_url, settings.llm_api_key, max_output_tokens=settings.generation.max_tokens
    )
    app.state.limiter = RateLimiter(settings.rate_limit, clock=clock, rng=rng)
    app.state.cache = ContentCache(settings.generation.cache_ttl_s, clock=clock)
    app.state.metadata = CrmMetadataService(app.state.crm_client, app.state.limiter, clock=clock)
    app.state.resolver = ReferenceResolver(
        app.state.store,
        app.state.crm_client,
        app.state.limiter,
        strict=settings.references_strict,
        search_fallback=settings.references.search_fallback,
    )
    app.state.generator = ContentGenerator(
        app.state.llm_client,
        app.state.limiter,
        app.state.cache,
        config=settings.generation,
        metadata=app.state.metadata,
        strict=settings.generation_strict,
    )
    app.state.executor = RecordExecutor(app.state.crm_client, app.state.limiter, settings.executor)
    app.state.planner = StepPlanner(app.state.store, settings.planner, clock=clock, rng=rng)
    app.state.runner = StepRunner(
        app.state.store,
        app.state.resolver,
        app.state.generator,
        app.state.executor,
        settings.runner,
        clock=clock,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SIMCRM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "simcrm.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
