import csv
import io
import json
import math
import random
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .clock import SystemClock, to_iso
from .config import PlannerConfig
from .errors import PlanningError
from .logging_utils import correlation_id, log_event
from .schemas import JobRequest, TimingRow, split_action

HEADER_ALIASES = {
    "relativeday": "relative_day",
    "offsetday": "relative_day",
    "day": "relative_day",
    "offset": "relative_day",
    "actiontype": "action_type",
    "action": "action_type",
    "recordtype": "record_type",
    "objecttype": "record_type",
    "recordidtemplate": "record_id_template",
    "recordid": "record_id_template",
    "symbol": "record_id_template",
    "associationstemplate": "associations_template",
    "associations": "associations_template",
    "sourcelabel": "source_label",
    "source": "source_label",
    "actiontemplate": "action_template",
    "template": "action_template",
    "payload": "action_template",
    "reasontemplate": "reason_template",
    "reason": "reason_template",
    "description": "reason_template",
    "dealstage(after)": "stage_after",
}
JSON_COLUMNS = ("associations_template", "action_template")
_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_]+)\s*\}\}")


def _header_key(name: str) -> str:
    return re.sub(r"[\s_]+", "", str(name or "").strip().lower())


def _parse_json_cell(value: str, column: str, line: int) -> Any:
    text = (value or "").strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError as exc:
        raise PlanningError(
            "INVALID_TEMPLATE_JSON",
            f"row {line}: column {column} is not valid JSON",
            {"line": line, "column": column, "value": text[:200]},
        ) from exc


def parse_timing_template(text: str) -> List[TimingRow]:
    """Parse a comma-delimited timing template; quoted cells may contain commas."""
    reader = csv.reader(io.StringIO(text or ""))
    header: Optional[List[Optional[str]]] = None
    rows: List[TimingRow] = []
    for line_no, cells in enumerate(reader, start=1):
        if not any(c.strip() for c in cells):
            continue
        if header is None:
            header = [HEADER_ALIASES.get(_header_key(c)) for c in cells]
            if "relative_day" not in header or "action_type" not in header:
                raise PlanningError(
                    "INVALID_TEMPLATE_HEADER",
                    "timing template needs a day column and an action column",
                    {"header": cells},
                )
            continue
        raw: Dict[str, str] = {}
        for name, cell in zip(header, cells):
            if name:
                raw[name] = cell.strip()
        try:
            day = float(raw.get("relative_day", ""))
        except ValueError as exc:
            raise PlanningError(
                "INVALID_TEMPLATE_ROW",
                f"row {line_no}: relative day is not a number",
                {"line": line_no, "value": raw.get("relative_day")},
            ) from exc
        fields: Dict[str, Any] = {
            "relative_day": day,
            "action_type": raw.get("action_type", ""),
            "record_type": raw.get("record_type", "").lower(),
            "record_id_template": raw.get("record_id_template", ""),
            "source_label": raw.get("source_label", ""),
            "reason_template": raw.get("reason_template", ""),
        }
        for column in JSON_COLUMNS:
            fields[column] = _parse_json_cell(raw.get(column, ""), column, line_no)
        if raw.get("stage_after"):
            template = fields["action_template"] if isinstance(fields["action_template"], dict) else {}
            fields["action_template"] = {**template, "deal_stage": raw["stage_after"]}
        try:
            rows.append(TimingRow(**fields))
        except PydanticValidationError as exc:
            raise PlanningError(
                "INVALID_TEMPLATE_ROW",
                f"row {line_no} is malformed",
                {"line": line_no, "errors": exc.errors(include_url=False)},
            ) from exc
    return rows


def build_tokens(job: Dict[str, Any], now: datetime) -> Dict[str, str]:
    simulation = str(job.get("simulation_id") or job.get("job_id") or "")
    industry = str(job.get("industry") or "")
    sequence = str(job.get("sequence") if job.get("sequence") is not None else "")
    return {
        "theme": str(job.get("theme") or ""),
        "industry": industry,
        "domain": industry,
        "frequency": str(job.get("frequency") or ""),
        "simulation_id": simulation,
        "job_id": simulation,
        "user_id": str(job.get("user_id") or ""),
        "contact_seq": sequence,
        "sequence": sequence,
        "timestamp": to_iso(now),
    }


def substitute_placeholders(value: Any, tokens: Dict[str, str]) -> Any:
    """Replace ``{{token}}`` markers in every string of ``value``; returns a new structure."""
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: tokens.get(m.group(1).lower(), m.group(0)), value)
    if isinstance(value, dict):
        return {k: substitute_placeholders(v, tokens) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_placeholders(v, tokens) for v in value]
    return value


def plan_from_template(
    rows: List[TimingRow],
    *,
    start_at: datetime,
    target_cycle_days: Optional[float] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Scale template rows onto the target cycle; steps come back sorted by scaled day."""
    if not rows:
        raise PlanningError("EMPTY_TEMPLATE", "timing template has no rows")
    for row in rows:
        if row.relative_day < 0:
            raise PlanningError(
                "INVALID_TEMPLATE_ROW", "relative day cannot be negative", {"relative_day": row.relative_day}
            )
        try:
            split_action(row.action_type, row.record_type or None)
        except ValueError as exc:
            raise PlanningError("INVALID_ACTION", str(exc), {"action_type": row.action_type}) from exc
    base_cycle_days = max(row.relative_day for row in rows)
    if base_cycle_days <= 0:
        raise PlanningError(
            "INVALID_BASE_CYCLE", "template base cycle must be positive", {"base_cycle_days": base_cycle_days}
        )
    target = base_cycle_days if target_cycle_days is None else float(target_cycle_days)
    if target <= 0:
        raise PlanningError("INVALID_TARGET_CYCLE", "target cycle must be positive", {"target_cycle_days": target})
    scaling_factor = (target * 24) / (base_cycle_days * 24)
    steps: List[Dict[str, Any]] = []
    for row in rows:
        scaled_hours = row.relative_day * 24 * scaling_factor
        steps.append(
            {
                "template_day": row.relative_day,
                "scaled_day": scaled_hours / 24,
                "scheduled_at": start_at + timedelta(hours=scaled_hours),
                "action_type": row.action_type,
                "record_type": row.record_type,
                "record_id_template": row.record_id_template,
                "associations_template": row.associations_template,
                "source_label": row.source_label,
                "action_template": row.action_template,
                "reason_template": row.reason_template,
            }
        )
    # Stable: rows landing on the same scaled day keep their template order.
    steps.sort(key=lambda s: s["scaled_day"])
    for index, step in enumerate(steps):
        step["step_index"] = index
    job_fields = {
        "scaling_factor": scaling_factor,
        "base_cycle_days": base_cycle_days,
        "target_cycle_days": target,
        "job_start_at": start_at,
    }
    return job_fields, steps


def _split_evenly(total: int, parts: int) -> List[int]:
    base, remainder = divmod(total, parts)
    return [base + (1 if i < remainder else 0) for i in range(parts)]


def plan_programmatic(
    target_records: int,
    *,
    duration_days: float,
    start_at: datetime,
    config: Optional[PlannerConfig] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Spread ``target_records`` creates over jittered sets of contact, company and deal."""
    config = config or PlannerConfig()
    rng = rng or random.Random()
    if target_records is None or int(target_records) < 1:
        raise PlanningError("INVALID_TARGET", "target record count must be at least 1", {"target_records": target_records})
    if duration_days is None or float(duration_days) <= 0:
        raise PlanningError("INVALID_DURATION", "duration must be positive", {"duration_days": duration_days})
    total_minutes = float(duration_days) * 24 * 60
    set_count = max(1, min(config.max_sets, math.ceil(int(target_records) / 3)))
    spacing = total_minutes / set_count
    jitter = max(0.0, min(config.set_jitter_fraction, 0.9))
    offsets: List[float] = []
    for index in range(set_count):
        if index == 0:
            offsets.append(rng.uniform(0, max(0.0, config.first_set_max_delay_minutes)))
        else:
            offsets.append(offsets[-1] + spacing * rng.uniform(1 - jitter, 1 + jitter))
    steps: List[Dict[str, Any]] = []
    for set_no, (offset, count) in enumerate(zip(offsets, _split_evenly(int(target_records), set_count)), start=1):
        dependent = offset + config.dependent_offset_minutes
        group = 0
        remaining = count
        while remaining > 0:
            group += 1
            tag = f"{set_no}_{group}"
            contact = f"contact_{tag}"
            company = f"company_{tag}"
            steps.append(_programmatic_step(offset, "create_contact", "contact", contact, {}, set_no))
            remaining -= 1
            if remaining <= 0:
                break
            steps.append(_programmatic_step(offset, "create_company", "company", company, {}, set_no))
            remaining -= 1
            steps.append(
                _programmatic_step(dependent, "associate", "contact", contact, {"company": company}, set_no)
            )
            if remaining <= 0:
                break
            steps.append(
                _programmatic_step(
                    dependent,
                    "create_deal",
                    "deal",
                    f"deal_{tag}",
                    {"contact": contact, "company": company},
                    set_no,
                )
            )
            remaining -= 1
    steps.sort(key=lambda s: s["scaled_day"])
    for index, step in enumerate(steps):
        step["step_index"] = index
        step["scheduled_at"] = start_at + timedelta(minutes=step.pop("_offset_minutes"))
    job_fields = {
        "scaling_factor": 1.0,
        "base_cycle_days": float(duration_days),
        "target_cycle_days": float(duration_days),
        "job_start_at": start_at,
    }
    return job_fields, steps


def _programmatic_step(
    offset_minutes: float,
    action_type: str,
    record_type: str,
    symbol: str,
    associations: Dict[str, Any],
    set_no: int,
) -> Dict[str, Any]:
    day = offset_minutes / (24 * 60)
    return {
        "_offset_minutes": offset_minutes,
        "template_day": day,
        "scaled_day": day,
        "action_type": action_type,
        "record_type": record_type,
        "record_id_template": symbol,
        "associations_template": associations,
        "source_label": "programmatic",
        "action_template": {},
        "reason_template": f"set {set_no}",
    }


class StepPlanner:
    """Turns a job request into a persisted job with scheduled steps."""

    def __init__(
        self,
        store: Any,
        config: Optional[PlannerConfig] = None,
        *,
        clock: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.config = config or PlannerConfig()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    def plan(self, request: JobRequest) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        now = self.clock.now()
        job: Dict[str, Any] = {
            "job_id": str(uuid.uuid4()),
            "simulation_id": request.simulation_id,
            "user_id": request.user_id,
            "outcome": request.outcome,
            "theme": request.theme,
            "industry": request.industry,
            "frequency": request.frequency,
            "sequence": request.sequence,
            "template_id": request.template_id,
            "status": "pending",
            "metadata": {**request.metadata, "mode": request.mode},
            "context": {},
        }
        if request.mode == "programmatic":
            job_fields, steps = plan_programmatic(
                request.target_records or 0,
                duration_days=request.duration_days or request.target_cycle_days or 0,
                start_at=now,
                config=self.config,
                rng=self.rng,
            )
        else:
            rows = list(request.rows)
            if not rows and request.template_csv:
                rows = parse_timing_template(request.template_csv)
            job_fields, steps = plan_from_template(
                rows, start_at=now, target_cycle_days=request.target_cycle_days
            )
        job.update(job_fields)
        tokens = build_tokens(job, now)
        for step in steps:
            for key in ("record_id_template", "associations_template", "action_template", "reason_template", "source_label"):
                step[key] = substitute_placeholders(step.get(key), tokens)
        return job, steps

    async def create_job(self, request: JobRequest) -> Dict[str, Any]:
        job, steps = self.plan(request)
        job_id = await self.store.create_job(job, steps)
        log_event(
            "info",
            correlation_id(job_id),
            "job_created",
            {
                "mode": request.mode,
                "steps": len(steps),
                "scaling_factor": round(job["scaling_factor"], 4),
                "base_cycle_days": job["base_cycle_days"],
            },
        )
        return {"job_id": job_id, "steps": len(steps), "scaling_factor": job["scaling_factor"]}
