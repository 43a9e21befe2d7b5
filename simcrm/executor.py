from typing import Any, Dict, List, Optional, Tuple

from .config import ExecutorConfig
from .errors import StepReferenceError, ValidationError
from .logging_utils import log_event
from .properties import (
    build_property_definition,
    natural_key,
    normalize_properties,
)
from .references import ResolvedReferences, canonical_record_type, is_real_id

# (from, to) -> HUBSPOT_DEFINED association type id; every pair is listed in both directions.
ASSOCIATION_TYPES: Dict[Tuple[str, str], int] = {
    ("contact", "company"): 1,
    ("company", "contact"): 2,
    ("deal", "contact"): 3,
    ("contact", "deal"): 4,
    ("deal", "company"): 5,
    ("company", "deal"): 6,
    ("contact", "ticket"): 15,
    ("ticket", "contact"): 16,
    ("company", "ticket"): 25,
    ("ticket", "company"): 26,
    ("deal", "ticket"): 27,
    ("ticket", "deal"): 28,
    ("company", "note"): 189,
    ("note", "company"): 190,
    ("contact", "note"): 201,
    ("note", "contact"): 202,
    ("deal", "note"): 213,
    ("note", "deal"): 214,
    ("ticket", "note"): 227,
    ("note", "ticket"): 228,
}


def association_type_id(from_type: str, to_type: str) -> int:
    source = canonical_record_type(from_type) or str(from_type)
    target = canonical_record_type(to_type) or str(to_type)
    type_id = ASSOCIATION_TYPES.get((source, target))
    if type_id is None:
        supported = sorted({t for (f, t) in ASSOCIATION_TYPES if f == source})
        raise ValidationError(
            "UNSUPPORTED_ASSOCIATION",
            f"unsupported association: {from_type} -> {to_type}",
            {"from_type": from_type, "to_type": to_type, "supported_targets": supported},
        )
    return type_id


def association_targets(tree: Any, record_type: Optional[str] = None) -> List[Tuple[str, Any]]:
    """Flatten a (resolved) associations tree into ``(target_type, id_or_symbol)`` pairs."""
    pairs: List[Tuple[str, Any]] = []
    if isinstance(tree, dict):
        for key, value in tree.items():
            pairs.extend(association_targets(value, canonical_record_type(key) or record_type))
    elif isinstance(tree, list):
        for value in tree:
            pairs.extend(association_targets(value, record_type))
    elif tree not in (None, "") and not isinstance(tree, bool):
        pairs.append((record_type or "", tree))
    return pairs


class RecordExecutor:
    """Performs create/update/associate calls against the CRM through the rate limiter."""

    def __init__(self, crm: Any, limiter: Any, config: Optional[ExecutorConfig] = None):
        self.crm = crm
        self.limiter = limiter
        self.config = config or ExecutorConfig()
        self._known_properties: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def reset(self) -> None:
        self._known_properties.clear()

    async def _call(self, correlation: str, fn: Any) -> Any:
        return await self.limiter.execute("crm", fn, correlation=correlation)

    async def ensure_properties(self, record_type: str, custom: Dict[str, Any], correlation: str) -> List[str]:
        """Create missing property definitions and enumeration options before a write."""
        touched: List[str] = []
        for name, sample in custom.items():
            wanted = build_property_definition(name, sample, self.config.property_group)
            cache_key = (record_type, name)
            existing = self._known_properties.get(cache_key)
            if existing is None:
                existing = await self._call(correlation, lambda: self.crm.get_property(record_type, name))
            if existing is None:
                existing = await self._call(correlation, lambda: self.crm.create_property(record_type, wanted))
                existing = existing or wanted
                touched.append(name)
                log_event("info", correlation, "property_created", {"record_type": record_type, "name": name, "type": wanted["type"]})
            elif existing.get("type") == "enumeration" and wanted.get("options"):
                have = {str(o.get("value")) for o in existing.get("options") or []}
                missing = [o for o in wanted["options"] if o["value"] not in have]
                if missing:
                    options = list(existing.get("options") or [])
                    for offset, option in enumerate(missing):
                        options.append({**option, "displayOrder": len(have) + offset})
                    existing = await self._call(
                        correlation, lambda: self.crm.update_property(record_type, name, {"options": options})
                    )
                    existing = existing or {**wanted, "options": options}
                    touched.append(name)
                    log_event("info", correlation, "property_options_added", {"name": name, "added": len(missing)})
            self._known_properties[cache_key] = existing
        return touched

    async def _apply_custom_properties(
        self, record_type: str, properties: Dict[str, Any], custom: Dict[str, Any], correlation: str
    ) -> Dict[str, Any]:
        if custom:
            if self.config.auto_create_properties:
                await self.ensure_properties(record_type, custom, correlation)
            else:
                for name in custom:
                    properties.pop(name, None)
        return properties

    async def _dedupe(
        self, record_type: str, properties: Dict[str, Any], correlation: str
    ) -> Optional[str]:
        key = natural_key(record_type, properties)
        if not self.config.dedupe or key is None or record_type not in ("contact", "company"):
            return None
        prop, value = key
        matches = await self._call(correlation, lambda: self.crm.search_records(record_type, prop, value, limit=2))
        if not matches:
            return None
        if len(matches) > 1:
            raise StepReferenceError(
                "AMBIGUOUS_MATCH",
                f"{len(matches)} existing {record_type} records share {prop}={value}",
                {"correlation_id": correlation, "property": prop, "value": value},
            )
        return str(matches[0].get("id"))

    async def _associate_all(
        self,
        record_type: str,
        record_id: str,
        pairs: List[Tuple[str, Any]],
        correlation: str,
    ) -> List[Dict[str, Any]]:
        done: List[Dict[str, Any]] = []
        for target_type, target_id in pairs:
            type_id = association_type_id(record_type, target_type)
            await self._call(
                correlation,
                lambda: self.crm.associate(record_type, record_id, target_type, str(target_id), type_id),
            )
            done.append({"to_type": target_type, "to_id": str(target_id), "association_type_id": type_id})
        return done

    async def create(
        self,
        record_type: str,
        content: Dict[str, Any],
        refs: ResolvedReferences,
        *,
        correlation: str,
    ) -> Dict[str, Any]:
        pairs = association_targets(refs.associations)
        ready = [(t, i) for t, i in pairs if is_real_id(i)]
        skipped = [{"to_type": t, "token": str(i)} for t, i in pairs if not is_real_id(i)]
        # Unsupported pairs fail before any write.
        for target_type, _ in pairs:
            association_type_id(record_type, target_type)
        properties, custom = normalize_properties(record_type, content)
        existing_id = await self._dedupe(record_type, properties, correlation)
        if existing_id:
            record_id = existing_id
            deduplicated = True
            log_event("info", correlation, "record_deduplicated", {"record_type": record_type, "id": record_id})
        else:
            # Schema changes only happen for records that are actually written.
            properties = await self._apply_custom_properties(record_type, properties, custom, correlation)
            created = await self._call(correlation, lambda: self.crm.create_record(record_type, properties))
            record_id = str(created.get("id"))
            deduplicated = False
            log_event("info", correlation, "record_created", {"record_type": record_type, "id": record_id})
        associations = await self._associate_all(record_type, record_id, ready, correlation)
        result = {
            "action": "create",
            "record_type": record_type,
            "record_id": record_id,
            "deduplicated": deduplicated,
            "properties": properties,
            "associations": associations,
        }
        if skipped:
            result["skipped_associations"] = skipped
        return result

    async def update(
        self,
        record_type: str,
        content: Dict[str, Any],
        refs: ResolvedReferences,
        *,
        correlation: str,
    ) -> Dict[str, Any]:
        if not refs.record_id:
            raise StepReferenceError(
                "UNRESOLVED_RECORD",
                f"no {record_type} id to update",
                {"correlation_id": correlation, "unresolved": refs.unresolved},
            )
        properties, custom = normalize_properties(record_type, content)
        properties = await self._apply_custom_properties(record_type, properties, custom, correlation)
        if not properties:
            raise ValidationError("EMPTY_UPDATE", "update has no properties", {"correlation_id": correlation})
        await self._call(correlation, lambda: self.crm.update_record(record_type, refs.record_id, properties))
        log_event("info", correlation, "record_updated", {"record_type": record_type, "id": refs.record_id})
        return {"action": "update", "record_type": record_type, "record_id": refs.record_id, "properties": properties}

    async def associate(
        self,
        record_type: str,
        refs: ResolvedReferences,
        *,
        correlation: str,
    ) -> Dict[str, Any]:
        pairs = association_targets(refs.associations)
        if not record_type:
            raise ValidationError("MISSING_RECORD_TYPE", "associate step has no source record type", {"correlation_id": correlation})
        if not pairs:
            raise ValidationError("EMPTY_ASSOCIATION", "associate step has no targets", {"correlation_id": correlation})
        for target_type, _ in pairs:
            association_type_id(record_type, target_type)
        unresolved = [{"to_type": t, "token": str(i)} for t, i in pairs if not is_real_id(i)]
        if not refs.record_id or unresolved:
            raise StepReferenceError(
                "UNRESOLVED_REFERENCE",
                "association endpoints are not resolved",
                {"correlation_id": correlation, "record_id": refs.record_id, "unresolved": unresolved or refs.unresolved},
            )
        associations = await self._associate_all(record_type, refs.record_id, pairs, correlation)
        return {"action": "associate", "record_type": record_type, "record_id": refs.record_id, "associations": associations}

    async def execute(
        self,
        verb: str,
        record_type: str,
        content: Dict[str, Any],
        refs: ResolvedReferences,
        *,
        correlation: str,
    ) -> Dict[str, Any]:
        if verb == "create":
            return await self.create(record_type, content, refs, correlation=correlation)
        if verb == "update":
            return await self.update(record_type, content, refs, correlation=correlation)
        if verb == "associate":
            return await self.associate(record_type, refs, correlation=correlation)
        raise ValidationError("UNKNOWN_ACTION", f"unsupported action: {verb}", {"correlation_id": correlation})
