"""
Pydantic schemas for automation rules, their conditions and actions.

Actions form a closed union discriminated on `type`; adding a variant here
requires a matching executor and preview handler.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..services.condition_catalog import TRIGGER_KEYS


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ConditionValue = Union[bool, int, float, str]


class _RuleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class RuleCondition(_RuleModel):
    key: str = Field(min_length=1)
    value: ConditionValue
    operator: Optional[str] = None


class SendEmailAction(_RuleModel):
    type: Literal["comm.send_email"] = "comm.send_email"
    to: Literal["customer", "admin", "crew_assigned", "custom"]
    template_key: str = Field(min_length=1)
    custom_email: Optional[str] = None

    @field_validator("custom_email")
    @classmethod
    def _check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not _EMAIL_RE.match(v):
            raise ValueError("customEmail must be a valid email address")
        return v

    @model_validator(mode="after")
    def _custom_needs_email(self) -> "SendEmailAction":
        if self.to == "custom" and not self.custom_email:
            raise ValueError("customEmail is required when sending to a custom recipient")
        return self


class SendSmsAction(_RuleModel):
    type: Literal["comm.send_sms"] = "comm.send_sms"
    to: Literal["customer", "admin", "crew_assigned", "custom"]
    template_key: str = Field(min_length=1)
    custom_phone: Optional[str] = Field(default=None, min_length=6)

    @model_validator(mode="after")
    def _custom_needs_phone(self) -> "SendSmsAction":
        if self.to == "custom" and not self.custom_phone:
            raise ValueError("customPhone is required when sending to a custom recipient")
        return self


class SendInAppAction(_RuleModel):
    type: Literal["comm.send_inapp"] = "comm.send_inapp"
    to: Literal["admin", "crew_assigned", "ops"]
    template_key: str = Field(min_length=1)


class AddTagAction(_RuleModel):
    type: Literal["job.add_tag"] = "job.add_tag"
    tag: str = Field(min_length=1, max_length=64)


class AddFlagAction(_RuleModel):
    type: Literal["job.add_flag"] = "job.add_flag"
    flag: str = Field(min_length=1, max_length=64)


class CreateChecklistAction(_RuleModel):
    type: Literal["tasks.create_checklist"] = "tasks.create_checklist"
    checklist_key: str = Field(min_length=1)


class CreateDraftInvoiceAction(_RuleModel):
    type: Literal["invoice.create_draft"] = "invoice.create_draft"
    mode: Literal["from_job"] = "from_job"


class CreateInternalReminderAction(_RuleModel):
    type: Literal["reminder.create_internal"] = "reminder.create_internal"
    minutes_from_now: int = Field(ge=1, le=1440)
    message: str = Field(min_length=1, max_length=500)


RuleAction = Annotated[
    Union[
        SendEmailAction,
        SendSmsAction,
        SendInAppAction,
        AddTagAction,
        AddFlagAction,
        CreateChecklistAction,
        CreateDraftInvoiceAction,
        CreateInternalReminderAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES: tuple[str, ...] = (
    "comm.send_email",
    "comm.send_sms",
    "comm.send_inapp",
    "job.add_tag",
    "job.add_flag",
    "tasks.create_checklist",
    "invoice.create_draft",
    "reminder.create_internal",
)

COMM_ACTION_TYPES = frozenset({"comm.send_email", "comm.send_sms", "comm.send_inapp"})

CHANNEL_BY_ACTION = {
    "comm.send_email": "email",
    "comm.send_sms": "sms",
    "comm.send_inapp": "in_app",
}

TriggerKey = Literal[TRIGGER_KEYS]  # type: ignore[valid-type]


class RuleDraft(BaseModel):
    """Shape-validated rule body shared by create, test and engine re-validation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=140)
    description: Optional[str] = Field(default=None, max_length=500)
    trigger_key: TriggerKey = Field(alias="triggerKey")
    trigger_version: int = Field(default=1, ge=1, alias="triggerVersion")
    conditions: List[RuleCondition] = Field(default_factory=list, max_length=10)
    actions: List[RuleAction] = Field(min_length=1, max_length=5)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


_ACTION_LIST_ADAPTER = TypeAdapter(List[RuleAction])
_CONDITION_LIST_ADAPTER = TypeAdapter(List[RuleCondition])


def parse_actions(raw: Any) -> list:
    return _ACTION_LIST_ADAPTER.validate_python(raw or [])


def parse_conditions(raw: Any) -> list[RuleCondition]:
    return _CONDITION_LIST_ADAPTER.validate_python(raw or [])


def dump_actions(actions: list) -> list[dict]:
    return [a.model_dump(exclude_none=True) for a in actions]


def dump_conditions(conditions: list[RuleCondition]) -> list[dict]:
    return [c.model_dump(exclude_none=True) for c in conditions]


class RuleFlags(BaseModel):
    is_customer_facing: bool = False
    requires_sms: bool = False
    requires_email: bool = False


class AutomationRuleCreate(RuleDraft):
    pass


class AutomationRuleUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=140)
    description: Optional[str] = Field(default=None, max_length=500)
    trigger_key: Optional[TriggerKey] = Field(default=None, alias="triggerKey")
    trigger_version: Optional[int] = Field(default=None, ge=1, alias="triggerVersion")
    conditions: Optional[List[RuleCondition]] = Field(default=None, max_length=10)
    actions: Optional[List[RuleAction]] = Field(default=None, min_length=1, max_length=5)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class AutomationRuleOut(BaseModel):
    id: str
    org_id: str
    name: str
    description: Optional[str] = None
    trigger_key: str
    trigger_version: int
    conditions: List[dict]
    actions: List[dict]
    enabled: bool
    is_customer_facing: bool
    requires_sms: bool
    requires_email: bool
    last_tested_at: Optional[datetime] = None
    last_enabled_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EnableRuleRequest(BaseModel):
    confirmed_customer_facing: bool = Field(default=False, alias="confirmedCustomerFacing")

    model_config = ConfigDict(populate_by_name=True)


class DryRunRequest(BaseModel):
    """Sample event selection: an existing event id, an inline payload, or the latest event of the trigger type."""

    event_id: Optional[str] = Field(default=None, alias="eventId")
    payload: Optional[dict] = None

    model_config = ConfigDict(populate_by_name=True)


class RuleTestRequest(BaseModel):
    rule: RuleDraft
    event_id: Optional[str] = Field(default=None, alias="eventId")
    payload: Optional[dict] = None
    persist_draft: bool = Field(default=False, alias="persistDraft")

    model_config = ConfigDict(populate_by_name=True)


class DryRunOut(BaseModel):
    matched: bool
    match_details: dict
    action_previews: List[dict]
    warnings: List[str]
    error: Optional[str] = None
    sample_event_id: Optional[str] = None
    rule_id: Optional[str] = None


class ConditionDefinitionOut(BaseModel):
    key: str
    label: str
    description: str
    value_type: str
    operators: List[str]
    enum_values: List[str]
    enum_source: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    requires_job_context: bool
    requires_material_context: bool
    requires_billing_context: bool


class RuleSummaryOut(BaseModel):
    rule_id: str
    total_runs: int
    counts_by_status: dict
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
