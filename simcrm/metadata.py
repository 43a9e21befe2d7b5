import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .clock import SystemClock
from .logging_utils import log_event

METADATA_TTL_S = 3600.0
PIPELINE_RECORD_TYPES = ("deal", "ticket")


@dataclass
class CrmMetadata:
    deal_pipelines: List[Dict[str, Any]] = field(default_factory=list)
    ticket_pipelines: List[Dict[str, Any]] = field(default_factory=list)
    owners: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: float = 0.0

    def pipelines(self, record_type: str) -> List[Dict[str, Any]]:
        if record_type == "deal":
            return self.deal_pipelines
        if record_type == "ticket":
            return self.ticket_pipelines
        return []


def _normalize_pipeline(raw: Dict[str, Any]) -> Dict[str, Any]:
    stages = sorted(raw.get("stages") or [], key=lambda s: s.get("displayOrder") or 0)
    return {
        "id": str(raw.get("id")),
        "label": raw.get("label") or "",
        "stages": [{"id": str(s.get("id")), "label": s.get("label") or ""} for s in stages if s.get("id") is not None],
    }


def _normalize_owner(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(raw.get("id")),
        "email": raw.get("email") or "",
        "first_name": raw.get("firstName") or "",
        "last_name": raw.get("lastName") or "",
    }


class CrmMetadataService:
    """Caches pipelines and owners so generated content can reference valid ids."""

    def __init__(self, crm: Any, limiter: Any, *, clock: Optional[Any] = None, ttl_s: float = METADATA_TTL_S):
        self.crm = crm
        self.limiter = limiter
        self.clock = clock or SystemClock()
        self.ttl_s = ttl_s
        self._cache: Dict[str, CrmMetadata] = {}
        self._lock = asyncio.Lock()

    def _cache_key(self) -> str:
        return str(getattr(self.crm, "access_token", None) or "anonymous")

    async def get(self, force: bool = False) -> CrmMetadata:
        key = self._cache_key()
        async with self._lock:
            cached = self._cache.get(key)
            now = self.clock.monotonic()
            if cached and not force and now - cached.fetched_at < self.ttl_s:
                return cached
            deals, tickets, owners = await asyncio.gather(
                self.limiter.execute("crm", lambda: self.crm.list_pipelines("deal"), correlation="metadata"),
                self.limiter.execute("crm", lambda: self.crm.list_pipelines("ticket"), correlation="metadata"),
                self.limiter.execute("crm", lambda: self.crm.list_owners(), correlation="metadata"),
            )
            metadata = CrmMetadata(
                deal_pipelines=[_normalize_pipeline(p) for p in deals],
                ticket_pipelines=[_normalize_pipeline(p) for p in tickets],
                owners=[_normalize_owner(o) for o in owners],
                fetched_at=now,
            )
            self._cache[key] = metadata
        log_event(
            "info",
            "metadata",
            "crm_metadata_cached",
            {
                "deal_pipelines": len(metadata.deal_pipelines),
                "ticket_pipelines": len(metadata.ticket_pipelines),
                "owners": len(metadata.owners),
            },
        )
        return metadata

    def reset(self) -> None:
        self._cache.clear()


def pipeline_options(metadata: CrmMetadata, record_type: str) -> str:
    pipelines = metadata.pipelines(record_type)
    if not pipelines:
        return f"No {record_type} pipelines available"
    lines = []
    for pipeline in pipelines:
        stages = ", ".join(f'"{s["id"]}"' for s in pipeline["stages"])
        lines.append(f'Pipeline "{pipeline["id"]}" ({pipeline["label"]}) with stages: {stages}')
    return f"Available {record_type} pipelines and stages:\n" + "\n".join(lines)


def owner_options(metadata: CrmMetadata) -> str:
    if not metadata.owners:
        return "No owners available"
    options = ", ".join(
        f'"{o["id"]}" ({o["first_name"]} {o["last_name"]} - {o["email"]})' for o in metadata.owners
    )
    return f"Available owners: {options}"


def default_pipeline_stage(metadata: CrmMetadata, record_type: str) -> Optional[Tuple[str, str]]:
    """Pipeline labelled 'default' if any, else the first; its first stage."""
    pipelines = [p for p in metadata.pipelines(record_type) if p["stages"]]
    if not pipelines:
        return None
    chosen = next((p for p in pipelines if "default" in p["label"].lower()), pipelines[0])
    return chosen["id"], chosen["stages"][0]["id"]


def is_valid_pipeline_stage(metadata: CrmMetadata, record_type: str, pipeline_id: str, stage_id: str) -> bool:
    for pipeline in metadata.pipelines(record_type):
        if pipeline["id"] == str(pipeline_id):
            return any(s["id"] == str(stage_id) for s in pipeline["stages"])
    return False
