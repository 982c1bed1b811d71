"""
Authoring-time validation for automation rules.

Shape is enforced by the pydantic models in `schemas.automation_rule`;
this module adds the catalog checks (condition legality per trigger,
context support, operator and value checks), save-time checks (status and
progress triggers need a filter, templates must exist) and enable-time
checks (customer-facing confirmation, provider readiness).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ConfirmationRequiredError, ProviderNotReadyError, RuleValidationError
from ..models.communication import CommTemplate
from ..models.org import CommProviderStatus, OrgSettings
from ..schemas.automation_rule import CHANNEL_BY_ACTION, RuleCondition, RuleDraft, RuleFlags
from .condition_catalog import ConditionDefinition, conditions_for_trigger, trigger_supports_context


logger = logging.getLogger("rule_validation")

STATUS_CONDITION_KEYS = frozenset({"job.new_status_equals", "job.previous_status_equals"})
PROGRESS_CONDITION_KEYS = frozenset({"job.progress_gte", "job.progress_lte"})


@dataclass(frozen=True)
class ConditionValidationError:
    code: str
    message: str
    field: str

    def to_dict(self) -> dict:
        return asdict(self)


STATUS_CONDITION_ERROR = ConditionValidationError(
    code="status_condition_missing",
    message="Status-based triggers must specify which status change to listen for.",
    field="conditions",
)
PROGRESS_CONDITION_ERROR = ConditionValidationError(
    code="progress_condition_missing",
    message="Progress triggers must specify a progress threshold.",
    field="conditions",
)


@dataclass
class ValidatedRule:
    rule: RuleDraft
    flags: RuleFlags
    warnings: list[str] = field(default_factory=list)


def parse_rule_draft(data: Any) -> RuleDraft:
    if isinstance(data, RuleDraft):
        return data
    try:
        return RuleDraft.model_validate(data)
    except ValidationError as exc:
        raise RuleValidationError(
            "Invalid automation rule input",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_condition_value(
    definition: ConditionDefinition, value: Any, field_name: str
) -> Optional[ConditionValidationError]:
    if definition.value_type == "enum":
        if not isinstance(value, str) or not value.strip():
            return ConditionValidationError("condition_value_invalid", "Enum value must be a non-empty string", field_name)
        if definition.enum_values and value not in definition.enum_values:
            return ConditionValidationError("condition_value_invalid", "Enum value is not allowed", field_name)
        return None

    if definition.value_type == "boolean":
        if not isinstance(value, bool):
            return ConditionValidationError("condition_value_invalid", "Boolean value is required", field_name)
        return None

    if definition.value_type == "text":
        if not isinstance(value, str) or not value.strip():
            return ConditionValidationError("condition_value_invalid", "Text value must be a non-empty string", field_name)
        return None

    if not _is_number(value):
        return ConditionValidationError("condition_value_invalid", "Numeric value is required", field_name)
    if definition.min is not None and value < definition.min:
        return ConditionValidationError("condition_value_out_of_range", "Value is below the minimum", field_name)
    if definition.max is not None and value > definition.max:
        return ConditionValidationError("condition_value_out_of_range", "Value is above the maximum", field_name)
    return None


def validate_conditions_for_trigger(
    trigger_key: str, conditions: Sequence[RuleCondition]
) -> list[ConditionValidationError]:
    errors: list[ConditionValidationError] = []
    allowed = {definition.key: definition for definition in conditions_for_trigger(trigger_key)}
    supports = trigger_supports_context(trigger_key)

    for index, condition in enumerate(conditions):
        prefix = f"conditions[{index}]"
        if not condition.key or not condition.key.strip():
            errors.append(ConditionValidationError("condition_key_missing", "Condition key is required", f"{prefix}.key"))
            continue

        definition = allowed.get(condition.key)
        if definition is None:
            errors.append(
                ConditionValidationError(
                    "condition_not_allowed",
                    f"Condition {condition.key} is not allowed for trigger {trigger_key}.",
                    f"{prefix}.key",
                )
            )
            continue

        for kind, required in (
            ("job", definition.requires_job_context),
            ("material", definition.requires_material_context),
            ("billing", definition.requires_billing_context),
        ):
            if required and not supports[kind]:
                errors.append(
                    ConditionValidationError(
                        "condition_context_invalid",
                        f"Condition requires {kind} context which is not available for this trigger.",
                        f"{prefix}.key",
                    )
                )

        if condition.operator:
            legal = definition.operators or ("=",)
            if condition.operator not in legal:
                errors.append(
                    ConditionValidationError("condition_operator_invalid", "Condition operator is not allowed", f"{prefix}.operator")
                )

        value_error = validate_condition_value(definition, condition.value, f"{prefix}.value")
        if value_error:
            errors.append(value_error)

    return errors


def derive_rule_flags(actions: Sequence[Any]) -> RuleFlags:
    flags = RuleFlags()
    for action in actions:
        if action.type == "comm.send_email":
            flags.requires_email = True
            flags.is_customer_facing = flags.is_customer_facing or action.to == "customer"
        elif action.type == "comm.send_sms":
            flags.requires_sms = True
            flags.is_customer_facing = flags.is_customer_facing or action.to == "customer"
    return flags


def find_missing_templates(db: Session, org_id: str, actions: Sequence[Any]) -> list[str]:
    needed: list[tuple[str, str]] = []
    for action in actions:
        channel = CHANNEL_BY_ACTION.get(action.type)
        if channel and (action.template_key, channel) not in needed:
            needed.append((action.template_key, channel))
    if not needed:
        return []

    rows = (
        db.query(CommTemplate.key, CommTemplate.channel)
        .filter(
            CommTemplate.org_id == org_id,
            CommTemplate.key.in_({key for key, _ in needed}),
            CommTemplate.channel.in_({channel for _, channel in needed}),
        )
        .all()
    )
    found = {(key, channel) for key, channel in rows}
    return [f"{key}::{channel}" for key, channel in needed if (key, channel) not in found]


def _require_trigger_filters(rule: RuleDraft) -> None:
    keys = {c.key for c in rule.conditions}
    if rule.trigger_key == "job.status_updated" and not keys & STATUS_CONDITION_KEYS:
        raise RuleValidationError(STATUS_CONDITION_ERROR.message, details={"errors": [STATUS_CONDITION_ERROR.to_dict()]})
    if rule.trigger_key == "job.progress_updated" and not keys & PROGRESS_CONDITION_KEYS:
        raise RuleValidationError(PROGRESS_CONDITION_ERROR.message, details={"errors": [PROGRESS_CONDITION_ERROR.to_dict()]})


def validate_rule_definition(data: Any) -> RuleDraft:
    """Shape, catalog and trigger-filter checks; needs no database."""
    rule = parse_rule_draft(data)
    errors = validate_conditions_for_trigger(rule.trigger_key, rule.conditions)
    if errors:
        raise RuleValidationError(
            "Invalid conditions for trigger", details={"errors": [e.to_dict() for e in errors]}
        )
    _require_trigger_filters(rule)
    return rule


def validate_rule_for_save(db: Session, org_id: str, data: Any) -> ValidatedRule:
    rule = parse_rule_draft(data)
    errors = validate_conditions_for_trigger(rule.trigger_key, rule.conditions)
    if errors:
        raise RuleValidationError(
            "Invalid conditions for trigger", details={"errors": [e.to_dict() for e in errors]}
        )

    missing = find_missing_templates(db, org_id, rule.actions)
    if missing:
        raise RuleValidationError("One or more templates are missing", details={"missing_templates": missing})

    _require_trigger_filters(rule)
    return ValidatedRule(rule=rule, flags=derive_rule_flags(rule.actions))


def validate_rule_for_enable(
    db: Session,
    org_id: str,
    data: Any,
    *,
    confirmed_customer_facing: bool = False,
) -> ValidatedRule:
    validated = validate_rule_for_save(db, org_id, data)
    flags = validated.flags

    if flags.is_customer_facing and not confirmed_customer_facing:
        raise ConfirmationRequiredError(
            "Customer-facing actions require confirmation", details={"reason": "customer_facing"}
        )

    if flags.requires_email:
        if not settings.email_provider_api_key:
            raise ProviderNotReadyError("Email provider is not configured", details={"channel": "email"})
        org_settings = db.get(OrgSettings, org_id)
        if not org_settings or not (org_settings.comm_from_email or "").strip():
            raise ProviderNotReadyError("Sender identity is missing for email", details={"channel": "email"})

    if flags.requires_sms:
        status = db.get(CommProviderStatus, org_id)
        if not status or not status.sms_enabled:
            raise ProviderNotReadyError("SMS provider is not configured", details={"channel": "sms"})

    return validated


def provider_warnings(db: Session, org_id: str, flags: RuleFlags) -> list[str]:
    """Non-fatal readiness warnings used by dry-runs."""
    warnings: list[str] = []
    org_settings = db.get(OrgSettings, org_id)
    if org_settings is not None and org_settings.automations_disabled:
        warnings.append("org_disabled")
    if flags.requires_email and (
        not settings.email_provider_api_key or not org_settings or not (org_settings.comm_from_email or "").strip()
    ):
        warnings.append("email_provider_not_ready")
    if flags.requires_sms:
        status = db.get(CommProviderStatus, org_id)
        if not status or not status.sms_enabled:
            warnings.append("sms_provider_not_ready")
    return warnings
