import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import StepReferenceError
from .logging_utils import correlation_id, log_event
from .properties import NATURAL_KEYS

_REAL_ID = re.compile(r"^\d+$")
_DOMAIN_LIKE = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)+$", re.IGNORECASE)
_TYPE_ALIASES = {
    "contact": "contact",
    "contacts": "contact",
    "person": "contact",
    "company": "company",
    "companies": "company",
    "account": "company",
    "deal": "deal",
    "deals": "deal",
    "ticket": "ticket",
    "tickets": "ticket",
    "note": "note",
    "notes": "note",
}
_HINT_FIELDS = {
    "contact": ("email", "contact_email", "contactEmail"),
    "company": ("domain", "company_domain", "companyDomain", "website"),
    "deal": ("deal_name", "dealname", "dealName"),
    "ticket": ("subject", "ticket_subject"),
}


def is_real_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and bool(_REAL_ID.match(value.strip()))


def canonical_record_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return _TYPE_ALIASES.get(str(value).strip().lower())


def infer_record_type(symbol: str) -> Optional[str]:
    """Guess the record type from the symbol's shape, e.g. ``contact_1`` or ``deal-renewal``."""
    text = str(symbol or "").strip()
    if "@" in text:
        return "contact"
    head = re.split(r"[_\-:.\s{]", text.lower(), maxsplit=1)[0]
    found = canonical_record_type(head)
    if found:
        return found
    if _DOMAIN_LIKE.match(text):
        return "company"
    return None


def infer_natural_key(
    symbol: str, record_type: Optional[str], content: Optional[Dict[str, Any]]
) -> Optional[Tuple[str, str, str]]:
    """Return ``(record_type, property, value)`` to search on, or None."""
    text = str(symbol or "").strip()
    if "@" in text:
        return "contact", "email", text
    rtype = record_type or infer_record_type(text)
    if rtype == "company" and _DOMAIN_LIKE.match(text):
        return "company", "domain", text.lower()
    if not rtype or rtype not in NATURAL_KEYS:
        return None
    for key in _HINT_FIELDS.get(rtype, ()):
        value = (content or {}).get(key)
        if isinstance(value, str) and value.strip():
            if rtype == "company":
                value = re.sub(r"^https?://", "", value.strip().lower()).split("/")[0]
            return rtype, NATURAL_KEYS[rtype], value.strip()
    return None


@dataclass
class ResolvedReferences:
    record_id: Optional[str] = None
    associations: Any = field(default_factory=dict)
    unresolved: List[Dict[str, Any]] = field(default_factory=list)


class ReferenceResolver:
    """Maps symbolic step ids onto real CRM ids through the job context."""

    def __init__(
        self,
        store: Any,
        crm: Any,
        limiter: Any,
        *,
        strict: bool = False,
        search_fallback: bool = True,
    ) -> None:
        self.store = store
        self.crm = crm
        self.limiter = limiter
        self.strict = strict
        self.search_fallback = search_fallback
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def forget(self, job_id: str) -> None:
        """Drop a finished job's context lock unless a write still holds it."""
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]

    def reset(self) -> None:
        self._locks.clear()

    async def remember(
        self, job_id: str, symbol: str, real_id: str, context: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Write one context entry; serialized per job."""
        async with self._lock_for(job_id):
            result = await self.store.set_context_entry(job_id, symbol, str(real_id))
        if context is not None:
            context[symbol] = str(real_id)
        if result.get("changed"):
            log_event("debug", correlation_id(job_id), "context_updated", {"symbol": symbol, "id": real_id})
        return result

    async def resolve_symbol(
        self,
        job_id: str,
        step_index: int,
        symbol: Any,
        *,
        context: Dict[str, str],
        record_type: Optional[str] = None,
        content: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        if symbol is None or (isinstance(symbol, str) and not symbol.strip()):
            return None
        if is_real_id(symbol):
            return str(symbol).strip()
        token = str(symbol).strip()
        corr = correlation_id(job_id, step_index)
        if token in context:
            return context[token]
        if self.strict:
            raise StepReferenceError(
                "UNRESOLVED_REFERENCE",
                f"symbol {token} is not in the job context",
                {"correlation_id": corr, "token": token},
            )
        if not self.search_fallback:
            return None
        key = infer_natural_key(token, record_type, content)
        if key is None:
            log_event("debug", corr, "reference_no_natural_key", {"token": token})
            return None
        rtype, prop, value = key
        matches = await self.limiter.execute(
            "crm",
            lambda: self.crm.search_records(rtype, prop, value, limit=2),
            correlation=corr,
        )
        if not matches:
            log_event("info", corr, "reference_search_miss", {"token": token, "property": prop, "value": value})
            return None
        if len(matches) > 1:
            raise StepReferenceError(
                "AMBIGUOUS_REFERENCE",
                f"symbol {token} matched {len(matches)} {rtype} records on {prop}",
                {"correlation_id": corr, "token": token, "property": prop, "value": value},
            )
        real_id = str(matches[0].get("id"))
        await self.remember(job_id, token, real_id, context)
        log_event("info", corr, "reference_search_hit", {"token": token, "id": real_id})
        return real_id

    async def resolve_tree(
        self,
        job_id: str,
        step_index: int,
        tree: Any,
        *,
        context: Dict[str, str],
        content: Optional[Dict[str, Any]] = None,
        record_type: Optional[str] = None,
        path: str = "",
        unresolved: Optional[List[Dict[str, Any]]] = None,
    ) -> Any:
        """Copy ``tree`` with every resolvable symbolic leaf replaced; the input is not touched."""
        if unresolved is None:
            unresolved = []
        if isinstance(tree, dict):
            out: Dict[str, Any] = {}
            for key, value in tree.items():
                child_type = canonical_record_type(key) or record_type
                out[key] = await self.resolve_tree(
                    job_id,
                    step_index,
                    value,
                    context=context,
                    content=content,
                    record_type=child_type,
                    path=f"{path}.{key}" if path else str(key),
                    unresolved=unresolved,
                )
            return out
        if isinstance(tree, list):
            items = []
            for idx, value in enumerate(tree):
                items.append(
                    await self.resolve_tree(
                        job_id,
                        step_index,
                        value,
                        context=context,
                        content=content,
                        record_type=record_type,
                        path=f"{path}[{idx}]",
                        unresolved=unresolved,
                    )
                )
            return items
        if isinstance(tree, (str, int)) and not isinstance(tree, bool):
            resolved = await self.resolve_symbol(
                job_id, step_index, tree, context=context, record_type=record_type, content=content
            )
            if resolved is None:
                if str(tree).strip():
                    unresolved.append({"path": path, "token": str(tree), "record_type": record_type})
                return tree
            return resolved
        return tree

    async def resolve_step(
        self, job: Dict[str, Any], step: Dict[str, Any], verb: str, context: Dict[str, str]
    ) -> ResolvedReferences:
        job_id = job["job_id"]
        step_index = step["step_index"]
        hints = step.get("action_template") or {}
        record_type = canonical_record_type(step.get("record_type"))
        resolved = ResolvedReferences()
        if verb in ("update", "associate") and step.get("record_id_template"):
            resolved.record_id = await self.resolve_symbol(
                job_id,
                step_index,
                step["record_id_template"],
                context=context,
                record_type=record_type,
                content=hints if isinstance(hints, dict) else None,
            )
            if resolved.record_id is None:
                resolved.unresolved.append(
                    {"path": "record_id", "token": step["record_id_template"], "record_type": record_type}
                )
        resolved.associations = await self.resolve_tree(
            job_id,
            step_index,
            step.get("associations_template") or {},
            context=context,
            content=hints if isinstance(hints, dict) else None,
            unresolved=resolved.unresolved,
        )
        return resolved
