import json
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Tuple

FIELD_MAP: Dict[str, Dict[str, str]] = {
    "contact": {
        "first_name": "firstname",
        "last_name": "lastname",
        "email": "email",
        "phone": "phone",
        "company_name": "company",
        "job_title": "jobtitle",
        "lifecycle_stage": "lifecyclestage",
        "lead_status": "hs_lead_status",
        "website": "website",
        "city": "city",
        "state": "state",
        "country": "country",
    },
    "company": {
        "name": "name",
        "domain": "domain",
        "industry": "industry",
        "city": "city",
        "state": "state",
        "country": "country",
        "phone": "phone",
        "number_of_employees": "numberofemployees",
        "annual_revenue": "annualrevenue",
        "lifecycle_stage": "lifecyclestage",
        "description": "description",
        "website": "website",
    },
    "deal": {
        "deal_name": "dealname",
        "amount": "amount",
        "deal_stage": "dealstage",
        "pipeline": "pipeline",
        "close_date": "closedate",
        "deal_type": "dealtype",
        "owner_id": "hubspot_owner_id",
        "description": "description",
    },
    "ticket": {
        "subject": "subject",
        "content": "content",
        "pipeline_stage": "hs_pipeline_stage",
        "pipeline": "hs_pipeline",
        "priority": "hs_ticket_priority",
        "owner_id": "hubspot_owner_id",
        "category": "hs_ticket_category",
    },
    "note": {
        "body": "hs_note_body",
        "timestamp": "hs_timestamp",
    },
}

NATURAL_KEYS = {
    "contact": "email",
    "company": "domain",
    "deal": "dealname",
    "ticket": "subject",
}

MAX_PROPERTY_NAME = 100
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9_]+")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")

BOOLEAN_NAME_PREFIXES = ("is_", "has_", "can_", "was_", "should_")
BOOLEAN_VALUES = {"true", "false", "yes", "no"}
DATE_NAME_TOKENS = {"date", "at", "on", "birthday", "deadline", "dob"}
NUMBER_NAME_TOKENS = {"count", "amount", "revenue", "price", "total", "score", "number", "num", "quantity", "age", "size"}
ENUM_NAME_TOKENS = {"status", "type", "category", "stage", "level", "tier", "priority", "segment", "source", "tags"}


def slugify_property_name(name: str) -> str:
    slug = _INVALID_NAME_CHARS.sub("_", str(name or "").strip().lower())
    slug = re.sub(r"_+", "_", slug).strip("_")
    if not slug:
        return "custom_field"
    if not slug[0].isalpha():
        slug = f"p_{slug}"
    return slug[:MAX_PROPERTY_NAME].rstrip("_")


def _label_for(name: str) -> str:
    return " ".join(part.capitalize() for part in name.split("_") if part) or name


def _name_tokens(name: str) -> Set[str]:
    return {part for part in re.split(r"[^a-z0-9]+", name.lower()) if part}


def _looks_like_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    return isinstance(value, str) and bool(_ISO_DATE.match(value.strip()))


def _option(value: Any, order: int) -> Dict[str, Any]:
    text = str(value)
    return {"label": text, "value": text, "displayOrder": order}


def infer_property_type(name: str, value: Any) -> Dict[str, Any]:
    """Guess a property definition for an unmapped field from its name and a sample value."""
    lowered = name.lower()
    if isinstance(value, bool) or lowered.startswith(BOOLEAN_NAME_PREFIXES) or (
        isinstance(value, str) and value.strip().lower() in BOOLEAN_VALUES
    ):
        return {
            "type": "bool",
            "fieldType": "booleancheckbox",
            "options": [
                {"label": "Yes", "value": "true", "displayOrder": 0},
                {"label": "No", "value": "false", "displayOrder": 1},
            ],
        }
    tokens = _name_tokens(name)
    date_named = bool(tokens & DATE_NAME_TOKENS)
    if _looks_like_date(value) or (
        date_named and not isinstance(value, bool) and _NUMERIC.match(str(value).strip() or "x")
    ):
        return {"type": "date", "fieldType": "date"}
    if isinstance(value, (int, float)) or (
        isinstance(value, str) and _NUMERIC.match(value.strip()) and tokens & NUMBER_NAME_TOKENS
    ):
        return {"type": "number", "fieldType": "number"}
    if isinstance(value, (list, tuple, set)):
        values = [v for v in value if v not in (None, "")]
        return {
            "type": "enumeration",
            "fieldType": "checkbox",
            "options": [_option(v, i) for i, v in enumerate(dict.fromkeys(str(v) for v in values))],
        }
    if isinstance(value, str) and tokens & ENUM_NAME_TOKENS and len(value) <= 100:
        return {"type": "enumeration", "fieldType": "select", "options": [_option(value, 0)]}
    if isinstance(value, str) and len(value) > 255:
        return {"type": "string", "fieldType": "textarea"}
    return {"type": "string", "fieldType": "text"}


def build_property_definition(name: str, value: Any, group_name: str) -> Dict[str, Any]:
    inferred = infer_property_type(name, value)
    definition = {"name": name, "label": _label_for(name), "groupName": group_name, **inferred}
    return definition


def format_property_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return ";".join(str(v) for v in value if v not in (None, ""))
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=True)
    return value


def known_properties(record_type: str) -> set:
    return set(FIELD_MAP.get(record_type, {}).values())


def normalize_properties(record_type: str, content: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Map content fields onto CRM property names.

    Returns ``(properties, custom)`` where ``custom`` holds the unmapped
    fields (already slugified) with their raw sample values.
    """
    mapping = FIELD_MAP.get(record_type, {})
    canonical = known_properties(record_type)
    properties: Dict[str, Any] = {}
    custom: Dict[str, Any] = {}
    flattened: List[Tuple[str, Any]] = []
    for key, value in content.items():
        if key == "kind" or str(key).startswith("_"):
            continue
        if key in ("custom_properties", "customProperties") and isinstance(value, dict):
            flattened.extend(value.items())
            continue
        flattened.append((key, value))
    for key, value in flattened:
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if key in mapping:
            properties[mapping[key]] = format_property_value(value)
            continue
        lowered = str(key).lower()
        if lowered in canonical:
            properties[lowered] = format_property_value(value)
            continue
        name = slugify_property_name(key)
        properties[name] = format_property_value(value)
        custom[name] = value
    return properties, custom


def natural_key(record_type: str, properties: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    prop = NATURAL_KEYS.get(record_type)
    if not prop:
        return None
    value = properties.get(prop)
    if value in (None, ""):
        return None
    return prop, str(value)
