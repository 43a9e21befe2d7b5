import asyncio
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

from .clock import SystemClock
from .config import RunnerConfig
from .errors import ValidationError, error_payload, is_non_retryable
from .logging_utils import correlation_id, log_event, logger
from .schemas import split_action


class StepRunner:
    """Polls for due steps and drives each through claim, resolve, generate and execute."""

    def __init__(
        self,
        store: Any,
        resolver: Any,
        generator: Any,
        executor: Any,
        config: Optional[RunnerConfig] = None,
        *,
        clock: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.generator = generator
        self.executor = executor
        self.config = config or RunnerConfig()
        self.clock = clock or SystemClock()
        self._loop_task: Optional[asyncio.Task] = None
        self._passes: Set[asyncio.Task] = set()
        self._active_jobs: Set[str] = set()
        self._stopping = asyncio.Event()
        self.stats: Dict[str, int] = {"passes": 0, "completed": 0, "failed": 0, "failed_non_retryable": 0, "skipped": 0}

    async def poll_once(self) -> Dict[str, Any]:
        """One pass: fetch due steps, run them per job in step order, jobs concurrently."""
        due = await self.store.list_due_steps(self.clock.now(), self.config.batch_size)
        by_job: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for step in due:
            # A job already being driven by an overlapping pass keeps its own step order.
            if step["job_id"] in self._active_jobs:
                continue
            by_job.setdefault(step["job_id"], []).append(step)
        self._active_jobs.update(by_job)
        try:
            outcomes: List[List[str]] = await asyncio.gather(
                *(self._run_job_steps(steps) for steps in by_job.values())
            )
        finally:
            self._active_jobs.difference_update(by_job)
        summary: Dict[str, Any] = {"due": len(due), "jobs": len(by_job)}
        for outcome in (o for group in outcomes for o in group):
            summary[outcome] = summary.get(outcome, 0) + 1
            self.stats[outcome] = self.stats.get(outcome, 0) + 1
        self.stats["passes"] += 1
        if due:
            log_event("info", "runner", "poll_pass", summary)
        return summary

    async def _run_job_steps(self, steps: List[Dict[str, Any]]) -> List[str]:
        outcomes = []
        for step in sorted(steps, key=lambda s: s["step_index"]):
            outcomes.append(await self.execute_step(step))
        if steps:
            job_id = steps[0]["job_id"]
            await self.store.finalize_job_if_done(job_id)
            job = await self.store.get_job(job_id)
            if job is None or job["status"] in ("completed", "stopped"):
                self.resolver.forget(job_id)
        return outcomes

    async def execute_step(self, step: Dict[str, Any]) -> str:
        job_id = step["job_id"]
        corr = correlation_id(job_id, step["step_index"])
        if not await self.store.claim_step(step["step_id"]):
            log_event("debug", corr, "step_claim_rejected", {"step_id": step["step_id"]})
            return "skipped"
        await self.store.update_job_status(job_id, "processing", only_from=["pending"])
        log_event("info", corr, "step_started", {"action_type": step.get("action_type"), "attempt": step.get("attempt", 0) + 1})
        try:
            result = await self._perform(step, corr)
        except Exception as exc:
            non_retryable = is_non_retryable(exc)
            payload = {**error_payload(exc), "correlation_id": corr}
            await self.store.mark_failed(step["step_id"], payload, non_retryable)
            log_event(
                "error",
                corr,
                "step_failed",
                {"error": payload["code"], "message": payload["message"], "non_retryable": non_retryable},
            )
            if not getattr(exc, "code", None):
                logger.exception("Unexpected failure in step %s", corr)
            return "failed_non_retryable" if non_retryable else "failed"
        await self.store.mark_completed(step["step_id"], result)
        log_event("info", corr, "step_completed", {"record_id": result.get("record_id"), "source": result.get("content_source")})
        return "completed"

    async def _perform(self, step: Dict[str, Any], corr: str) -> Dict[str, Any]:
        job = await self.store.get_job(step["job_id"])
        if job is None:
            raise ValidationError("JOB_NOT_FOUND", "owning job is missing", {"correlation_id": corr})
        try:
            verb, record_type = split_action(step.get("action_type") or "", step.get("record_type") or None)
        except ValueError as exc:
            raise ValidationError("INVALID_ACTION", str(exc), {"correlation_id": corr}) from exc
        context = dict(job.get("context") or {})
        refs = await self.resolver.resolve_step(job, step, verb, context)
        generated = await self.generator.generate(job, step, verb, record_type, correlation=corr)
        result = await self.executor.execute(verb, record_type, generated.content, refs, correlation=corr)
        symbol = step.get("record_id_template")
        if verb == "create" and symbol and result.get("record_id"):
            await self.resolver.remember(job["job_id"], symbol, result["record_id"], context)
        result["content_source"] = generated.source
        result["seed"] = generated.seed
        if generated.repairs:
            result["repairs"] = generated.repairs
        if refs.unresolved:
            result["unresolved"] = refs.unresolved
        return result

    async def pause_job(self, job_id: str) -> Dict[str, Any]:
        result = await self.store.pause_job(job_id)
        log_event("info", correlation_id(job_id), "job_paused", result)
        return result

    async def resume_job(self, job_id: str) -> Dict[str, Any]:
        result = await self.store.resume_job(job_id)
        log_event("info", correlation_id(job_id), "job_resumed", result)
        return result

    async def stop_job(self, job_id: str) -> Dict[str, Any]:
        result = await self.store.stop_job(job_id)
        self.resolver.forget(job_id)
        log_event("info", correlation_id(job_id), "job_stopped", result)
        return result

    async def retry_failed_steps(self, job_id: str) -> Dict[str, Any]:
        result = await self.store.retry_failed_steps(
            job_id,
            max_attempts=self.config.max_step_attempts,
            base_delay_s=self.config.retry_base_delay_s,
            now=self.clock.now(),
        )
        log_event(
            "info",
            correlation_id(job_id),
            "job_retry_requested",
            {"requeued": len(result.get("requeued") or []), "exhausted": len(result.get("exhausted") or [])},
        )
        return result

    async def _safe_pass(self) -> None:
        try:
            await self.poll_once()
        except Exception:
            logger.exception("Runner poll pass failed")

    def _spawn_pass(self) -> None:
        task = asyncio.create_task(self._safe_pass())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            # Passes are not awaited; a slow pass may overlap the next one and claims keep that safe.
            self._spawn_pass()
            await self.clock.sleep(self.config.poll_interval_s)

    def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("Step runner started (interval=%ss)", self.config.poll_interval_s)

    async def stop(self) -> None:
        self._stopping.set()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._passes:
            await asyncio.gather(*list(self._passes), return_exceptions=True)
        logger.info("Step runner stopped")

    @property
    def running(self) -> bool:
        return bool(self._loop_task and not self._loop_task.done())
