import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationInfo, field_validator, model_validator

RECORD_TYPES = ("contact", "company", "deal", "ticket", "note")
LifecycleStage = Literal[
    "subscriber",
    "lead",
    "marketingqualifiedlead",
    "salesqualifiedlead",
    "opportunity",
    "customer",
    "evangelist",
    "other",
]
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
DOMAIN_PATTERN = r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9-]+)*\.[a-z]{2,}$"
BOOKKEEPING_PREFIX = "_"


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _check_pipeline_stage(info: ValidationInfo, record_type: str, pipeline: str, stage: str) -> None:
    # Validation context may carry a callable that knows the CRM's live pipelines.
    is_known = (info.context or {}).get("pipeline_stage_check")
    if is_known is not None and not is_known(record_type, pipeline, stage):
        raise ValueError(f"unknown {record_type} pipeline/stage {pipeline}/{stage}")


class ContactContent(BaseModel):
    kind: Literal["contact"] = "contact"
    first_name: str = Field(min_length=1, max_length=50, validation_alias=_alias("first_name", "firstName", "firstname"))
    last_name: str = Field(min_length=1, max_length=50, validation_alias=_alias("last_name", "lastName", "lastname"))
    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    phone: Optional[str] = None
    company_name: Optional[str] = Field(default=None, validation_alias=_alias("company_name", "companyName", "company"))
    job_title: Optional[str] = Field(default=None, validation_alias=_alias("job_title", "jobTitle", "jobtitle"))
    lifecycle_stage: LifecycleStage = Field(validation_alias=_alias("lifecycle_stage", "lifecycleStage", "lifecyclestage"))
    lead_status: Optional[str] = Field(default=None, validation_alias=_alias("lead_status", "leadStatus"))

    model_config = {"extra": "allow", "populate_by_name": True}


class CompanyContent(BaseModel):
    kind: Literal["company"] = "company"
    name: str = Field(min_length=1, max_length=100, validation_alias=_alias("name", "company_name", "companyName"))
    domain: str = Field(pattern=DOMAIN_PATTERN, max_length=100)
    industry: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    number_of_employees: Optional[int] = Field(
        default=None, gt=0, validation_alias=_alias("number_of_employees", "numberOfEmployees", "employee_count")
    )
    annual_revenue: Optional[float] = Field(
        default=None, gt=0, validation_alias=_alias("annual_revenue", "annualRevenue")
    )
    lifecycle_stage: LifecycleStage = Field(validation_alias=_alias("lifecycle_stage", "lifecycleStage", "lifecyclestage"))

    model_config = {"extra": "allow", "populate_by_name": True}


class DealContent(BaseModel):
    kind: Literal["deal"] = "deal"
    deal_name: str = Field(min_length=1, max_length=100, validation_alias=_alias("deal_name", "dealName", "dealname"))
    amount: Optional[float] = Field(default=None, gt=0)
    deal_stage: str = Field(min_length=1, max_length=50, validation_alias=_alias("deal_stage", "dealStage", "dealstage"))
    pipeline: str = Field(min_length=1, max_length=50)
    close_date: Optional[str] = Field(default=None, validation_alias=_alias("close_date", "closeDate", "closedate"))
    deal_type: Optional[Literal["existingbusiness", "newbusiness"]] = Field(
        default=None, validation_alias=_alias("deal_type", "dealType", "dealtype")
    )
    owner_id: Optional[str] = Field(default=None, validation_alias=_alias("owner_id", "hubspot_owner_id"))

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _known_pipeline_stage(self, info: ValidationInfo) -> "DealContent":
        _check_pipeline_stage(info, "deal", self.pipeline, self.deal_stage)
        return self


class TicketContent(BaseModel):
    kind: Literal["ticket"] = "ticket"
    subject: str = Field(min_length=1, max_length=100)
    content: str = Field(min_length=1, max_length=1000, validation_alias=_alias("content", "description"))
    pipeline_stage: str = Field(
        min_length=1, max_length=50, validation_alias=_alias("pipeline_stage", "hs_pipeline_stage", "status")
    )
    pipeline: str = Field(min_length=1, max_length=50, validation_alias=_alias("pipeline", "hs_pipeline"))
    priority: Optional[Literal["LOW", "MEDIUM", "HIGH", "URGENT"]] = Field(
        default=None, validation_alias=_alias("priority", "hs_ticket_priority")
    )
    owner_id: Optional[str] = Field(default=None, validation_alias=_alias("owner_id", "hubspot_owner_id"))

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _known_pipeline_stage(self, info: ValidationInfo) -> "TicketContent":
        _check_pipeline_stage(info, "ticket", self.pipeline, self.pipeline_stage)
        return self


class NoteContent(BaseModel):
    kind: Literal["note"] = "note"
    body: str = Field(min_length=1, max_length=5000, validation_alias=_alias("body", "content", "hs_note_body"))
    timestamp: Optional[str] = None

    model_config = {"extra": "allow", "populate_by_name": True}


class UpdateContent(BaseModel):
    kind: Literal["update"] = "update"
    properties: Dict[str, Any] = Field(min_length=1)

    model_config = {"extra": "forbid"}

    @field_validator("properties")
    @classmethod
    def _no_empty_values(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for key, item in value.items():
            if isinstance(item, str) and not item.strip():
                raise ValueError(f"property {key} is blank")
        return value


GeneratedContent = Annotated[
    Union[ContactContent, CompanyContent, DealContent, TicketContent, NoteContent, UpdateContent],
    Field(discriminator="kind"),
]
CONTENT_ADAPTER = TypeAdapter(GeneratedContent)

CONTENT_MODELS = {
    "contact": ContactContent,
    "company": CompanyContent,
    "deal": DealContent,
    "ticket": TicketContent,
    "note": NoteContent,
}


class TimingRow(BaseModel):
    relative_day: float
    action_type: str
    record_type: str = ""
    record_id_template: str = ""
    associations_template: Dict[str, Any] = Field(default_factory=dict)
    source_label: str = ""
    action_template: Dict[str, Any] = Field(default_factory=dict)
    reason_template: str = ""


class JobRequest(BaseModel):
    mode: Literal["template", "programmatic"] = "template"
    theme: str
    industry: str
    outcome: Optional[str] = None
    frequency: Optional[str] = None
    sequence: int = 1
    simulation_id: Optional[str] = None
    user_id: Optional[str] = None
    template_id: Optional[str] = None
    template_csv: Optional[str] = None
    rows: List[TimingRow] = Field(default_factory=list)
    target_cycle_days: Optional[float] = None
    target_records: Optional[int] = None
    duration_days: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


_VERB_ALIASES = {
    "create": "create",
    "add": "create",
    "log": "create",
    "new": "create",
    "update": "update",
    "modify": "update",
    "edit": "update",
    "associate": "associate",
    "association": "associate",
    "link": "associate",
}
_RECORD_ALIASES = {
    "contact": "contact",
    "contacts": "contact",
    "company": "company",
    "companies": "company",
    "deal": "deal",
    "deals": "deal",
    "ticket": "ticket",
    "tickets": "ticket",
    "note": "note",
    "notes": "note",
}


def split_action(action_type: str, record_type: Optional[str] = None) -> Tuple[str, str]:
    """Split e.g. ``create_contact`` into ``("create", "contact")``.

    An explicit ``record_type`` wins over the one embedded in the action.
    Raises ValueError for an unknown verb, or when a create/update has no record type.
    """
    parts = [p for p in re.split(r"[\s_\-]+", str(action_type or "").strip().lower()) if p]
    if not parts or parts[0] not in _VERB_ALIASES:
        raise ValueError(f"unknown action type: {action_type!r}")
    verb = _VERB_ALIASES[parts[0]]
    rtype = _RECORD_ALIASES.get(str(record_type or "").strip().lower())
    if rtype is None:
        rtype = next((_RECORD_ALIASES[p] for p in parts[1:] if p in _RECORD_ALIASES), "")
    if verb in ("create", "update") and not rtype:
        raise ValueError(f"action {action_type!r} needs a record type")
    return verb, rtype
