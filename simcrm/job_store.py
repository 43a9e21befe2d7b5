import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from .clock import from_iso, to_iso, utc_now

JOB_STATUSES = {"pending", "processing", "paused", "stopped", "completed"}
EXECUTABLE_JOB_STATUSES = ("pending", "processing")

STEP_STATUSES = {
    "pending",
    "processing",
    "completed",
    "failed",
    "failed_non_retryable",
    "paused",
    "cancelled",
}
STEP_TRANSITIONS = {
    "pending": {"processing", "paused", "cancelled"},
    "paused": {"pending", "cancelled"},
    "processing": {"completed", "failed", "failed_non_retryable"},
    "completed": set(),
    # Only the explicit retry control moves a failed step back to pending.
    "failed": {"pending"},
    "failed_non_retryable": set(),
    "cancelled": set(),
}
OPEN_STEP_STATUSES = ("pending", "paused", "processing")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def can_transition(current: str, target: str) -> bool:
    return target in STEP_TRANSITIONS.get(current, set())


def checked_sources(from_statuses: Iterable[str], target: str) -> List[str]:
    """Source statuses for a step write; raises on a move the transition table forbids."""
    sources = list(from_statuses)
    for current in sources:
        if not can_transition(current, target):
            raise ValueError(f"illegal step transition: {current} -> {target}")
    return sources


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class JobStore:
    """Persistent job/step store with atomic claims and per-job context."""

    def __init__(self, path: str):
        self.path = path

    def _row_to_job(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "job_id": row["job_id"],
            "simulation_id": row["simulation_id"],
            "user_id": row["user_id"],
            "outcome": row["outcome"],
            "theme": row["theme"],
            "industry": row["industry"],
            "frequency": row["frequency"],
            "sequence": row["sequence"],
            "template_id": row["template_id"],
            "scaling_factor": row["scaling_factor"],
            "base_cycle_days": row["base_cycle_days"],
            "target_cycle_days": row["target_cycle_days"],
            "job_start_at": row["job_start_at"],
            "status": row["status"],
            "metadata": _json_loads(row["metadata_json"], {}),
            "context": _json_loads(row["context_json"], {}),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _row_to_step(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "step_id": row["step_id"],
            "job_id": row["job_id"],
            "step_index": int(row["step_index"] or 0),
            "template_day": row["template_day"],
            "scaled_day": row["scaled_day"],
            "scheduled_at": row["scheduled_at"],
            "action_type": row["action_type"],
            "record_type": row["record_type"],
            "record_id_template": row["record_id_template"],
            "associations_template": _json_loads(row["associations_template_json"], {}),
            "source_label": row["source_label"],
            "action_template": _json_loads(row["action_template_json"], {}),
            "reason_template": row["reason_template"],
            "status": row["status"],
            "result": _json_loads(row["result_json"], None),
            "attempt": int(row["attempt"] or 0),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def create_job(self, job: Dict[str, Any], steps: List[Dict[str, Any]]) -> str:
        """Insert a job and all of its steps in one transaction."""
        job_id = str(job.get("job_id") or uuid.uuid4())
        created_at = to_iso(utc_now())
        start_at = job.get("job_start_at")
        if isinstance(start_at, datetime):
            start_at = to_iso(start_at)
        async with aiosqlite.connect(self.path) as db:
            await db.execute("BEGIN IMMEDIATE")
            await db.execute(
                "INSERT INTO jobs(job_id, simulation_id, user_id, outcome, theme, industry, frequency, sequence, "
                "template_id, scaling_factor, base_cycle_days, target_cycle_days, job_start_at, status, "
                "metadata_json, context_json, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    job_id,
                    job.get("simulation_id"),
                    job.get("user_id"),
                    job.get("outcome"),
                    job.get("theme"),
                    job.get("industry"),
                    job.get("frequency"),
                    job.get("sequence"),
                    job.get("template_id"),
                    job.get("scaling_factor"),
                    job.get("base_cycle_days"),
                    job.get("target_cycle_days"),
                    start_at,
                    job.get("status") or "pending",
                    _json_dumps(job.get("metadata") or {}),
                    _json_dumps(job.get("context") or {}),
                    created_at,
                    created_at,
                ),
            )
            for step in steps:
                scheduled_at = step.get("scheduled_at")
                if isinstance(scheduled_at, datetime):
                    scheduled_at = to_iso(scheduled_at)
                await db.execute(
                    "INSERT INTO job_steps(step_id, job_id, step_index, template_day, scaled_day, scheduled_at, "
                    "action_type, record_type, record_id_template, associations_template_json, source_label, "
                    "action_template_json, reason_template, status, result_json, attempt, created_at, updated_at) "
                    "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        str(step.get("step_id") or uuid.uuid4()),
                        job_id,
                        int(step.get("step_index") or 0),
                        step.get("template_day"),
                        step.get("scaled_day"),
                        scheduled_at,
                        step.get("action_type"),
                        step.get("record_type"),
                        step.get("record_id_template"),
                        _json_dumps(step.get("associations_template") or {}),
                        step.get("source_label"),
                        _json_dumps(step.get("action_template") or {}),
                        step.get("reason_template"),
                        step.get("status") or "pending",
                        _json_dumps(step.get("result")) if step.get("result") is not None else None,
                        0,
                        created_at,
                        created_at,
                    ),
                )
            await db.commit()
        return job_id

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_job(row) if row else None

    async def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM jobs"
        params: List[Any] = []
        if status:
            query += " WHERE status=?"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, tuple(params))
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_job(row) for row in rows]

    async def get_step(self, step_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM job_steps WHERE step_id=?", (step_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_step(row) if row else None

    async def list_steps(self, job_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM job_steps WHERE job_id=?"
        params: List[Any] = [job_id]
        if status:
            query += " AND status=?"
            params.append(status)
        query += " ORDER BY step_index ASC"
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, tuple(params))
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_step(row) for row in rows]

    async def list_due_steps(self, now: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        # Job status is filtered in the query so a stop recorded before this read is honoured.
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT s.* FROM job_steps s JOIN jobs j ON j.job_id = s.job_id "
                f"WHERE s.status='pending' AND s.scheduled_at <= ? AND j.status IN ({_placeholders(EXECUTABLE_JOB_STATUSES)}) "
                "ORDER BY s.scheduled_at ASC, s.step_index ASC LIMIT ?",
                (to_iso(now), *EXECUTABLE_JOB_STATUSES, limit),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_step(row) for row in rows]

    async def claim_step(self, step_id: str) -> bool:
        """Atomically move a step from pending to processing."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE job_steps SET status='processing', attempt=attempt+1, updated_at=? "
                "WHERE step_id=? AND status=? AND job_id IN "
                f"(SELECT job_id FROM jobs WHERE status IN ({_placeholders(EXECUTABLE_JOB_STATUSES)}))",
                (to_iso(utc_now()), step_id, *checked_sources(["pending"], "processing"), *EXECUTABLE_JOB_STATUSES),
            )
            claimed = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return claimed

    async def _finish_step(self, step_id: str, status: str, result: Dict[str, Any]) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE job_steps SET status=?, result_json=?, updated_at=? WHERE step_id=? AND status=?",
                (status, _json_dumps(result), to_iso(utc_now()), step_id, *checked_sources(["processing"], status)),
            )
            updated = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return updated

    async def mark_completed(self, step_id: str, result: Dict[str, Any]) -> bool:
        return await self._finish_step(step_id, "completed", result)

    async def mark_failed(self, step_id: str, error: Dict[str, Any], non_retryable: bool) -> bool:
        status = "failed_non_retryable" if non_retryable else "failed"
        return await self._finish_step(step_id, status, error)

    async def update_job_status(
        self, job_id: str, status: str, only_from: Optional[Iterable[str]] = None
    ) -> bool:
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status}")
        query = "UPDATE jobs SET status=?, updated_at=? WHERE job_id=?"
        params: List[Any] = [status, to_iso(utc_now()), job_id]
        allowed = list(only_from or [])
        if allowed:
            query += f" AND status IN ({_placeholders(allowed)})"
            params.extend(allowed)
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, tuple(params))
            updated = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return updated

    async def get_context(self, job_id: str) -> Dict[str, str]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT context_json FROM jobs WHERE job_id=?", (job_id,))
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return {}
        return _json_loads(row["context_json"], {})

    async def set_context_entry(self, job_id: str, symbol: str, real_id: str) -> Dict[str, Any]:
        """Add or overwrite one context entry; entries are never removed."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT context_json FROM jobs WHERE job_id=?", (job_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "not_found"}
            context = _json_loads(row["context_json"], {})
            previous = context.get(symbol)
            if previous == str(real_id):
                await db.execute("ROLLBACK")
                return {"ok": True, "changed": False, "previous": previous}
            context[symbol] = str(real_id)
            await db.execute(
                "UPDATE jobs SET context_json=?, updated_at=? WHERE job_id=?",
                (_json_dumps(context), to_iso(utc_now()), job_id),
            )
            await db.commit()
        return {"ok": True, "changed": True, "previous": previous}

    async def _bulk_step_status(
        self, db: aiosqlite.Connection, job_id: str, from_statuses: Iterable[str], to_status: str
    ) -> int:
        sources = checked_sources(from_statuses, to_status)
        cursor = await db.execute(
            f"UPDATE job_steps SET status=?, updated_at=? WHERE job_id=? AND status IN ({_placeholders(sources)})",
            (to_status, to_iso(utc_now()), job_id, *sources),
        )
        count = cursor.rowcount
        await cursor.close()
        return count

    async def _fetch_job_row(self, db: aiosqlite.Connection, job_id: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute("SELECT status, metadata_json FROM jobs WHERE job_id=?", (job_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def pause_job(self, job_id: str) -> Dict[str, Any]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch_job_row(db, job_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "not_found"}
            if row["status"] not in EXECUTABLE_JOB_STATUSES:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "job_status": row["status"]}
            paused = await self._bulk_step_status(db, job_id, ["pending"], "paused")
            metadata = _json_loads(row["metadata_json"], {})
            metadata["status_before_pause"] = row["status"]
            await db.execute(
                "UPDATE jobs SET status='paused', metadata_json=?, updated_at=? WHERE job_id=?",
                (_json_dumps(metadata), to_iso(utc_now()), job_id),
            )
            await db.commit()
        return {"ok": True, "job_status": "paused", "steps_paused": paused}

    async def resume_job(self, job_id: str) -> Dict[str, Any]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch_job_row(db, job_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "not_found"}
            if row["status"] != "paused":
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "job_status": row["status"]}
            resumed = await self._bulk_step_status(db, job_id, ["paused"], "pending")
            metadata = _json_loads(row["metadata_json"], {})
            restored = metadata.pop("status_before_pause", None) or "processing"
            await db.execute(
                "UPDATE jobs SET status=?, metadata_json=?, updated_at=? WHERE job_id=?",
                (restored, _json_dumps(metadata), to_iso(utc_now()), job_id),
            )
            await db.commit()
        return {"ok": True, "job_status": restored, "steps_resumed": resumed}

    async def stop_job(self, job_id: str) -> Dict[str, Any]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch_job_row(db, job_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "not_found"}
            if row["status"] in ("stopped", "completed"):
                await db.execute("ROLLBACK")
                return {"ok": True, "job_status": row["status"], "steps_cancelled": 0}
            # Job status goes first so concurrent due-step queries stop selecting this job.
            await db.execute(
                "UPDATE jobs SET status='stopped', updated_at=? WHERE job_id=?",
                (to_iso(utc_now()), job_id),
            )
            cancelled = await self._bulk_step_status(db, job_id, ["pending", "paused"], "cancelled")
            await db.commit()
        return {"ok": True, "job_status": "stopped", "steps_cancelled": cancelled}

    async def retry_failed_steps(
        self,
        job_id: str,
        *,
        max_attempts: int,
        base_delay_s: float,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Requeue generic failures below the attempt ceiling; non-retryable ones stay put."""
        now = now or utc_now()
        requeued: List[str] = []
        exhausted: List[str] = []
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch_job_row(db, job_id)
            if not row:
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "not_found"}
            if row["status"] in ("stopped", "paused"):
                await db.execute("ROLLBACK")
                return {"ok": False, "status": "conflict", "job_status": row["status"]}
            cursor = await db.execute(
                "SELECT step_id, attempt FROM job_steps WHERE job_id=? AND status='failed' ORDER BY step_index",
                (job_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
            for step_row in rows:
                attempt = int(step_row["attempt"] or 0)
                if attempt >= max_attempts:
                    exhausted.append(step_row["step_id"])
                    continue
                delay = base_delay_s * (2 ** max(0, attempt - 1))
                await db.execute(
                    "UPDATE job_steps SET status='pending', scheduled_at=?, updated_at=? WHERE step_id=? AND status=?",
                    (
                        to_iso(now + timedelta(seconds=delay)),
                        to_iso(utc_now()),
                        step_row["step_id"],
                        *checked_sources(["failed"], "pending"),
                    ),
                )
                requeued.append(step_row["step_id"])
            if requeued and row["status"] == "completed":
                await db.execute(
                    "UPDATE jobs SET status='processing', updated_at=? WHERE job_id=?",
                    (to_iso(utc_now()), job_id),
                )
            await db.commit()
        return {"ok": True, "requeued": requeued, "exhausted": exhausted}

    async def finalize_job_if_done(self, job_id: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE jobs SET status='completed', updated_at=? WHERE job_id=? "
                f"AND status IN ({_placeholders(EXECUTABLE_JOB_STATUSES)}) AND NOT EXISTS "
                f"(SELECT 1 FROM job_steps WHERE job_id=? AND status IN ({_placeholders(OPEN_STEP_STATUSES)}))",
                (to_iso(utc_now()), job_id, *EXECUTABLE_JOB_STATUSES, job_id, *OPEN_STEP_STATUSES),
            )
            updated = cursor.rowcount == 1
            await cursor.close()
            await db.commit()
        return updated

    async def get_overview(self, job_id: str) -> Dict[str, Any]:
        job = await self.get_job(job_id)
        if not job:
            return {}
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT status, COUNT(*) AS cnt FROM job_steps WHERE job_id=? GROUP BY status",
                (job_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
            cursor = await db.execute(
                "SELECT MIN(scheduled_at) AS next_at FROM job_steps WHERE job_id=? AND status='pending'",
                (job_id,),
            )
            next_row = await cursor.fetchone()
            await cursor.close()
        counts = {row["status"]: int(row["cnt"]) for row in rows}
        total = sum(counts.values())
        done = sum(counts.get(s, 0) for s in ("completed", "failed", "failed_non_retryable", "cancelled"))
        next_at = next_row["next_at"] if next_row else None
        return {
            "job_id": job_id,
            "status": job["status"],
            "counts_by_status": counts,
            "total_steps": total,
            "progress": round((done / total) * 100) if total else 0,
            "next_scheduled_at": next_at,
            "next_scheduled_in_s": self._seconds_until(next_at),
        }

    def _seconds_until(self, value: Optional[str]) -> Optional[float]:
        target = from_iso(value)
        if target is None:
            return None
        return max(0.0, (target - utc_now()).total_seconds())
