import copy
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel
from pydantic import ValidationError as PydanticValidationError

from .clock import SystemClock
from .config import GenerationConfig
from .errors import GenerationError, SimCrmError, ValidationError
from .logging_utils import log_event
from .metadata import CrmMetadata, default_pipeline_stage, is_valid_pipeline_stage, owner_options, pipeline_options
from .schemas import BOOKKEEPING_PREFIX, CONTENT_ADAPTER, CONTENT_MODELS, EMAIL_PATTERN, UpdateContent

SYSTEM_PROMPT = (
    "You are a creative data generator for a CRM simulation system. Generate realistic, themed data "
    "that matches the requested industry and theme. Always respond with valid JSON."
)

FIELD_GUIDES = {
    "contact": (
        "first_name, last_name, email (valid address), phone, company_name, job_title, "
        "lifecycle_stage (one of subscriber, lead, marketingqualifiedlead, salesqualifiedlead, "
        "opportunity, customer, evangelist, other), lead_status"
    ),
    "company": (
        "name, domain (bare domain such as example.com), industry, city, state, country, phone, "
        "number_of_employees (integer), annual_revenue (number), lifecycle_stage"
    ),
    "deal": (
        "deal_name, amount (number), deal_stage (stage id), pipeline (pipeline id), close_date "
        "(YYYY-MM-DD), deal_type (newbusiness or existingbusiness), owner_id"
    ),
    "ticket": (
        "subject, content, pipeline (pipeline id), pipeline_stage (stage id), "
        "priority (LOW, MEDIUM, HIGH or URGENT), owner_id"
    ),
    "note": "body (a realistic activity note: call, email, meeting or task summary with a next action)",
}
DEFAULT_PIPELINE_STAGE = {"deal": ("default", "appointmentscheduled"), "ticket": ("0", "1")}
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def derive_seed(job_id: Any, theme: str, industry: str, step_index: Any, action_type: str) -> str:
    """Stable 8-hex-char seed for one step's content."""
    context = f"{job_id}:{theme}:{industry}:{step_index}:{action_type}"
    return hashlib.md5(context.encode("utf-8")).hexdigest()[:8]


def seeded_prompt(prompt: str, seed: str) -> str:
    return (
        f"{prompt}\n\nIMPORTANT: Use this seed for consistent generation: {seed}. "
        "Generate the same realistic data every time for this seed."
    )


def strip_bookkeeping(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if not str(k).startswith(BOOKKEEPING_PREFIX)}


@dataclass
class GenerationResult:
    content: Dict[str, Any]
    source: str
    seed: str
    repairs: List[str] = field(default_factory=list)


@dataclass
class _CacheEntry:
    data: Dict[str, Any]
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evicted_invalid: int = 0
    writes: int = 0


class ContentCache:
    """TTL cache of validated generated content."""

    def __init__(self, ttl_s: float = 3600.0, clock: Optional[Any] = None):
        self.ttl_s = ttl_s
        self.clock = clock or SystemClock()
        self._entries: Dict[Tuple[str, str, str, str], _CacheEntry] = {}
        self.stats = CacheStats()

    @staticmethod
    def key(theme: str, industry: str, seed: str, action_type: str = "") -> Tuple[str, str, str, str]:
        return (str(theme or "").lower(), str(industry or "").lower(), seed, str(action_type or "").lower())

    def get(
        self,
        theme: str,
        industry: str,
        seed: str,
        action_type: str = "",
        validate: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        key = self.key(theme, industry, seed, action_type)
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        if self.clock.monotonic() >= entry.expires_at:
            self._entries.pop(key, None)
            self.stats.misses += 1
            return None
        data = copy.deepcopy(entry.data)
        if validate is not None:
            try:
                validate(data)
            except (PydanticValidationError, ValueError, SimCrmError):
                self._entries.pop(key, None)
                self.stats.evicted_invalid += 1
                self.stats.misses += 1
                log_event("warn", seed, "content_cache_evicted_invalid", {"theme": theme, "industry": industry})
                return None
        self.stats.hits += 1
        return data

    def set(
        self,
        theme: str,
        industry: str,
        seed: str,
        data: Dict[str, Any],
        action_type: str = "",
        ttl_s: Optional[float] = None,
    ) -> None:
        ttl = self.ttl_s if ttl_s is None else ttl_s
        self._entries[self.key(theme, industry, seed, action_type)] = _CacheEntry(
            data=copy.deepcopy(strip_bookkeeping(data)),
            expires_at=self.clock.monotonic() + ttl,
        )
        self.stats.writes += 1

    def delete(self, theme: str, industry: str, seed: str, action_type: str = "") -> bool:
        return self._entries.pop(self.key(theme, industry, seed, action_type), None) is not None

    def cleanup(self) -> int:
        now = self.clock.monotonic()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            self._entries.pop(k, None)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def reset(self) -> None:
        self.clear()
        self.stats = CacheStats()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evicted_invalid": self.stats.evicted_invalid,
            "writes": self.stats.writes,
        }


def _alias_names(model: type, name: str) -> List[str]:
    info = model.model_fields[name]
    alias = info.validation_alias
    if isinstance(alias, AliasChoices):
        return [c for c in alias.choices if isinstance(c, str)]
    if isinstance(alias, str):
        return [alias]
    return [name]


def canonicalize(model: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Collapse alias spellings (``firstName``, ``dealname``...) onto field names."""
    out = dict(data)
    for name in model.model_fields:
        if name == "kind":
            continue
        names = _alias_names(model, name)
        value = None
        found = False
        for alias in names:
            if alias in out:
                if not found:
                    value = out[alias]
                    found = True
                if alias != name:
                    out.pop(alias)
        if found:
            out[name] = value
    return out


def parse_json_payload(text: str) -> Dict[str, Any]:
    cleaned = _CODE_FENCE.sub("", str(text or "").strip())
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _slug(text: Any) -> str:
    return re.sub(r"[^a-z0-9]+", "", str(text or "").lower())


def normalize_domain(value: Any) -> str:
    text = str(value or "").strip().lower()
    text = re.sub(r"^[a-z]+://", "", text)
    text = text.split("/")[0].split("?")[0]
    if text.startswith("www."):
        text = text[4:]
    text = re.sub(r"[^a-z0-9.-]+", "", text).strip(".-")
    if text and "." not in text:
        text = f"{text}.com"
    return text


class ContentGenerator:
    """Builds prompts, calls the generative service, validates, repairs and caches."""

    def __init__(
        self,
        llm: Any,
        limiter: Any,
        cache: ContentCache,
        *,
        config: Optional[GenerationConfig] = None,
        metadata: Optional[Any] = None,
        strict: bool = False,
    ) -> None:
        self.llm = llm
        self.limiter = limiter
        self.cache = cache
        self.config = config or GenerationConfig()
        self.metadata = metadata
        self.strict = strict

    def _model_for(self, kind: str) -> type:
        if kind == "update":
            return UpdateContent
        return CONTENT_MODELS[kind]

    def validate(self, kind: str, data: Dict[str, Any], metadata: Optional[CrmMetadata] = None) -> BaseModel:
        """Validate against the content union; deal and ticket pipelines are checked when metadata is known."""
        if kind == "update":
            return CONTENT_ADAPTER.validate_python({"kind": "update", "properties": data.get("properties", data)})
        context = None
        if metadata is not None and metadata.pipelines(kind):
            context = {"pipeline_stage_check": lambda rt, p, s: is_valid_pipeline_stage(metadata, rt, p, s)}
        payload = {**canonicalize(self._model_for(kind), data), "kind": kind}
        return CONTENT_ADAPTER.validate_python(payload, context=context)

    def _dump(self, kind: str, validated: BaseModel) -> Dict[str, Any]:
        if kind == "update":
            return dict(validated.properties)
        return strip_bookkeeping(validated.model_dump(exclude_none=True, exclude={"kind"}))

    async def _load_metadata(self, correlation: str) -> Optional[CrmMetadata]:
        if self.metadata is None:
            return None
        try:
            return await self.metadata.get()
        except SimCrmError as exc:
            log_event("warn", correlation, "crm_metadata_unavailable", {"error": exc.message})
            return None

    def build_prompt(
        self,
        kind: str,
        record_type: str,
        job: Dict[str, Any],
        step: Dict[str, Any],
        hints: Dict[str, Any],
        metadata: Optional[CrmMetadata],
    ) -> str:
        theme = job.get("theme") or "general"
        industry = job.get("industry") or "business"
        if kind == "update":
            guide = FIELD_GUIDES.get(record_type, "")
            lines = [
                f"Generate a realistic field update for an existing {record_type} record in a {industry} "
                f"business with a {theme} theme.",
                'Return a JSON object of the form {"properties": {...}} with one to three changed fields '
                f"drawn from: {guide}.",
            ]
        else:
            lines = [
                f"Generate a realistic CRM {record_type} for a {industry} business with a {theme} theme.",
                f"Return a JSON object with these fields: {FIELD_GUIDES[record_type]}.",
            ]
        reason = step.get("reason_template")
        if reason:
            lines.append(f"Context for this activity: {reason}")
        if hints:
            lines.append(f"Use these values where given: {json.dumps(hints, ensure_ascii=True, default=str)}")
        if metadata is not None and record_type in ("deal", "ticket"):
            lines.append(pipeline_options(metadata, record_type))
            lines.append(owner_options(metadata))
        lines.append("Respond with valid JSON only.")
        return "\n".join(lines)

    def repair(
        self, kind: str, data: Dict[str, Any], metadata: Optional[CrmMetadata]
    ) -> Tuple[Dict[str, Any], List[str]]:
        """One pass over known-common omissions; returns the repaired copy and a change log."""
        if kind == "update":
            props = data.get("properties", data)
            if not isinstance(props, dict):
                return data, []
            cleaned = {k: v for k, v in props.items() if not (isinstance(v, str) and not v.strip())}
            changes = ["dropped blank update values"] if len(cleaned) != len(props) else []
            return {"properties": cleaned}, changes
        model = self._model_for(kind)
        fixed = canonicalize(model, copy.deepcopy(data))
        changes: List[str] = []
        if kind in ("contact", "company") and not fixed.get("lifecycle_stage"):
            fixed["lifecycle_stage"] = "lead"
            changes.append("set default lifecycle_stage")
        elif kind in ("contact", "company") and isinstance(fixed.get("lifecycle_stage"), str):
            stage = re.sub(r"[\s_-]+", "", fixed["lifecycle_stage"].lower())
            if stage != fixed["lifecycle_stage"]:
                fixed["lifecycle_stage"] = stage
                changes.append("normalized lifecycle_stage")
        if kind == "contact":
            email = str(fixed.get("email") or "")
            if not re.match(EMAIL_PATTERN, email.strip()):
                first = _slug(fixed.get("first_name")) or "user"
                company = _slug(fixed.get("company_name")) or "example"
                fixed["email"] = f"{first}@{company}.com"
                changes.append("rebuilt email")
        if kind == "company":
            domain = normalize_domain(fixed.get("domain"))
            if not domain and fixed.get("name"):
                domain = normalize_domain(_slug(fixed.get("name")))
            if domain and domain != fixed.get("domain"):
                fixed["domain"] = domain
                changes.append("normalized domain")
        if kind == "deal":
            amount = fixed.get("amount")
            if isinstance(amount, str):
                cleaned = re.sub(r"[^0-9.]", "", amount)
                fixed["amount"] = float(cleaned) if re.match(r"^\d+(\.\d+)?$", cleaned) else None
                changes.append("coerced amount")
            deal_type = fixed.get("deal_type")
            if isinstance(deal_type, str):
                normalized = re.sub(r"[\s_-]+", "", deal_type.lower())
                fixed["deal_type"] = normalized if normalized in ("newbusiness", "existingbusiness") else None
                changes.append("normalized deal_type")
        if kind == "ticket" and isinstance(fixed.get("priority"), str):
            priority = fixed["priority"].strip().upper()
            fixed["priority"] = priority if priority in ("LOW", "MEDIUM", "HIGH", "URGENT") else "MEDIUM"
            changes.append("normalized priority")
        if kind in ("deal", "ticket"):
            stage_field = "deal_stage" if kind == "deal" else "pipeline_stage"
            defaults = default_pipeline_stage(metadata, kind) if metadata is not None else None
            pipeline_id, stage_id = defaults or DEFAULT_PIPELINE_STAGE[kind]
            if not fixed.get("pipeline"):
                fixed["pipeline"] = pipeline_id
                changes.append("set default pipeline")
            if not fixed.get(stage_field):
                fixed[stage_field] = stage_id
                changes.append(f"set default {stage_field}")
            if defaults and not is_valid_pipeline_stage(metadata, kind, fixed["pipeline"], fixed[stage_field]):
                fixed["pipeline"], fixed[stage_field] = pipeline_id, stage_id
                changes.append("replaced unknown pipeline/stage")
        if kind == "note" and not fixed.get("body"):
            for key in ("content", "description", "title"):
                if fixed.get(key):
                    fixed["body"] = str(fixed[key])
                    changes.append("filled body")
                    break
        return {k: v for k, v in fixed.items() if v is not None}, changes

    def _fallback(self, step: Dict[str, Any], seed: str, reason: str, correlation: str, detail: str) -> GenerationResult:
        if self.strict:
            raise GenerationError(
                reason,
                f"content generation failed: {detail}",
                {"correlation_id": correlation, "seed": seed, "action_type": step.get("action_type")},
            )
        log_event("warn", correlation, "generation_fallback", {"reason": reason, "detail": detail[:200]})
        return GenerationResult(content=copy.deepcopy(step.get("action_template") or {}), source="fallback", seed=seed)

    async def generate(
        self,
        job: Dict[str, Any],
        step: Dict[str, Any],
        verb: str,
        record_type: str,
        *,
        correlation: str,
    ) -> GenerationResult:
        action_type = str(step.get("action_type") or "")
        seed = derive_seed(job.get("job_id"), job.get("theme") or "", job.get("industry") or "", step.get("step_index"), action_type)
        hints = copy.deepcopy(step.get("action_template") or {})
        if verb == "associate":
            return GenerationResult(content=hints, source="template", seed=seed)
        kind = "update" if verb == "update" else record_type
        if kind == "update" and hints:
            try:
                validated = self.validate(kind, hints)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "INVALID_UPDATE_TEMPLATE",
                    "update template has no usable properties",
                    {"correlation_id": correlation, "errors": exc.errors(include_url=False)},
                ) from exc
            return GenerationResult(content=self._dump(kind, validated), source="template", seed=seed)

        theme = job.get("theme") or ""
        industry = job.get("industry") or ""
        cached = self.cache.get(theme, industry, seed, action_type, validate=lambda d: self.validate(kind, d))
        if cached is not None:
            log_event("debug", correlation, "content_cache_hit", {"seed": seed})
            return GenerationResult(content=cached, source="cache", seed=seed)

        metadata = await self._load_metadata(correlation)
        prompt = seeded_prompt(self.build_prompt(kind, record_type, job, step, hints, metadata), seed)
        messages = [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}]
        try:
            text = await self.limiter.execute(
                "llm",
                lambda: self.llm.complete_text(
                    self.config.model_id,
                    messages,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                    response_format={"type": "json_object"},
                    seed=int(seed, 16),
                ),
                correlation=correlation,
            )
        except SimCrmError as exc:
            return self._fallback(step, seed, "GENERATION_CALL_FAILED", correlation, exc.message)
        try:
            parsed = parse_json_payload(text)
        except ValueError as exc:
            return self._fallback(step, seed, "GENERATION_PARSE_FAILED", correlation, str(exc))

        if kind != "update" and hints:
            model = self._model_for(kind)
            parsed = {**canonicalize(model, parsed), **canonicalize(model, hints)}
        repairs: List[str] = []
        try:
            validated = self.validate(kind, parsed, metadata)
        except PydanticValidationError:
            repaired, repairs = self.repair(kind, parsed, metadata)
            try:
                validated = self.validate(kind, repaired, metadata)
            except PydanticValidationError as exc:
                return self._fallback(step, seed, "GENERATION_INVALID", correlation, str(exc))
            log_event("info", correlation, "generation_repaired", {"changes": repairs})
        content = self._dump(kind, validated)
        self.cache.set(theme, industry, seed, content, action_type)
        return GenerationResult(content=content, source="llm", seed=seed, repairs=repairs)

