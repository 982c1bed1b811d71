"""
Sequential execution and previewing of automation rule actions.

Each action gets one run-step row that moves pending -> running ->
succeeded/failed. Execution stops at the first step that does not succeed;
effects of earlier steps are kept. Dispatch goes through `EXECUTORS` and
`PREVIEWERS`, both keyed by every action type.
"""

from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import quote

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ActionExecutionError, MissingJobReferenceError, error_details, log_exception
from ..models.automation_run import AutomationRuleRunStep
from ..models.billing import JobInvoice
from ..models.job import Job
from ..models.org import Org
from ..models.task import Task, WorkTemplate, WorkTemplateStep
from ..schemas.automation_rule import ACTION_TYPES, CHANNEL_BY_ACTION, COMM_ACTION_TYPES
from .audit import record_audit_event
from .automation_context import AutomationContext, EventSnapshot, iso_utc, thaw
from .communications import PREVIEW_CHARS, CommRecipient, CommunicationsGateway


logger = logging.getLogger("action_executor")

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

AuditWriter = Callable[..., Any]


@dataclass(frozen=True)
class RuleExecutionContext:
    org_id: str
    run_id: str
    rule_id: str
    rule_name: str
    trigger_key: str
    event: EventSnapshot
    context: AutomationContext

    @property
    def payload(self) -> Mapping[str, Any]:
        return self.event.payload

    @property
    def job_id(self) -> Optional[str]:
        value = self.payload.get("jobId")
        return value if isinstance(value, str) and value else None


@dataclass
class ActionOutcome:
    status: str
    result: Optional[dict] = None
    comm_preview: Optional[dict] = None
    error: Optional[str] = None
    error_details: Optional[dict] = None


@dataclass
class ActionRunResult:
    ok: bool
    error: Optional[str] = None
    error_details: Optional[dict] = None
    steps: list[dict] = field(default_factory=list)


# Variables and recipients

def format_address(job: Optional[Mapping[str, Any]]) -> str:
    if not job:
        return ""
    parts = [job.get(k) for k in ("address_line1", "address_line2", "suburb", "state", "postcode")]
    return ", ".join(str(p).strip() for p in parts if p and str(p).strip())


def format_crew_name(member: Mapping[str, Any]) -> str:
    if member.get("display_name"):
        return str(member["display_name"])
    return " ".join(str(p) for p in (member.get("first_name"), member.get("last_name")) if p).strip()


def build_app_link(org_id: str, job_id: Optional[str]) -> str:
    base = settings.public_base_url.rstrip("/")
    if job_id:
        return f"{base}/jobs/{job_id}?orgId={org_id}"
    return f"{base}?orgId={org_id}"


def build_maps_link(address: str) -> Optional[str]:
    if not address:
        return None
    return "https://maps.google.com/?q=" + quote(address, safe="-_.!~*'()")


def merge_deep(target: dict, source: Mapping[str, Any]) -> dict:
    for key, value in source.items():
        if isinstance(value, Mapping):
            existing = target.get(key)
            target[key] = merge_deep(existing if isinstance(existing, dict) else {}, value)
        else:
            target[key] = thaw(value)
    return target


def _contact_vars(contact: Optional[Mapping[str, Any]]) -> Optional[dict]:
    if not contact:
        return None
    return {"name": contact.get("name"), "email": contact.get("email"), "phone": contact.get("phone")}


def build_template_variables(
    db: Session,
    *,
    org_id: str,
    rule_name: str,
    trigger_key: str,
    run_id: str,
    context: AutomationContext,
) -> dict:
    """
    Variable bag exposed to communication templates.

    Keys are camelCase to line up with event payloads, which are deep-merged
    on top so payload values win.
    """
    org = db.get(Org, org_id)
    org_settings = context.org_settings or {}
    job = context.job
    address = format_address(job)
    actor_id = context.event.actor_user_id

    variables: dict[str, Any] = {
        "org": {
            "name": org.name if org else "Organisation",
            "email": org_settings.get("comm_from_email"),
        },
        "actor": {"name": "System", "role": "system", "email": None, "userId": actor_id},
        "recipient": {"name": "there", "email": None, "phone": None},
        "now": iso_utc(context.now),
        "links": {
            "appEntityUrl": build_app_link(org_id, job.get("id") if job else None),
            "mapsUrl": build_maps_link(address),
        },
        "job": (
            {
                "id": job.get("id"),
                "title": job.get("title"),
                "status": job.get("status"),
                "priority": job.get("priority"),
                "tags": list(job.get("tags") or ()),
                "scheduledStart": iso_utc(job.get("scheduled_start")),
                "scheduledEnd": iso_utc(job.get("scheduled_end")),
                "address": address or None,
                "notesSummary": job.get("notes"),
                "completedAt": iso_utc(job.get("updated_at")) if job.get("status") == "completed" else None,
            }
            if job
            else None
        ),
        "client": _contact_vars(context.client_contact),
        "clientContacts": [_contact_vars(context.client_contact)] if context.client_contact else [],
        "siteContacts": [_contact_vars(c) for c in context.site_contacts],
        "crew": [
            {
                "id": m.get("id"),
                "name": format_crew_name(m),
                "role": m.get("role"),
                "phone": m.get("phone"),
                "email": m.get("email"),
            }
            for m in context.crew
        ],
        "crewSummary": ", ".join(n for n in (format_crew_name(m) for m in context.crew) if n),
        "materialsSummary": thaw(context.payload.get("materialsSummary") or context.payload.get("materials") or []),
        "automation": {"ruleName": rule_name, "triggerKey": trigger_key, "runId": run_id},
    }
    return merge_deep(variables, context.payload)


def _user_recipient(user) -> CommRecipient:
    return CommRecipient(
        type="user",
        user_id=user.user_id,
        email=user.email,
        name=user.name,
        role_key=user.role_key,
        crew_member_id=user.crew_member_id,
    )


def resolve_recipients(action: Any, context: AutomationContext) -> list[CommRecipient]:
    """Resolve an action's `to` policy into recipients, deduplicated by identity in first-seen order."""
    to = action.to
    recipients: list[CommRecipient] = []

    if to == "customer":
        client = context.client_contact
        if client and (client.get("email") or client.get("phone")):
            recipients.append(
                CommRecipient(type="client", email=client.get("email"), phone=client.get("phone"), name=client.get("name"))
            )
        if client is None:
            for contact in context.site_contacts:
                recipients.append(
                    CommRecipient(type="custom", email=contact.get("email"), phone=contact.get("phone"), name=contact.get("name"))
                )
    elif to == "admin":
        for user in context.org_users:
            if (user.role_key or "").lower() in ("admin", "manager"):
                recipients.append(_user_recipient(user))
    elif to == "crew_assigned":
        crew_ids = {m.get("id") for m in context.crew if m.get("id")}
        for user in context.org_users:
            if user.crew_member_id and user.crew_member_id in crew_ids:
                recipients.append(_user_recipient(user))
        for member in context.crew:
            if member.get("email") or member.get("phone"):
                recipients.append(
                    CommRecipient(
                        type="custom",
                        email=member.get("email"),
                        phone=member.get("phone"),
                        name=member.get("display_name"),
                        crew_member_id=member.get("id"),
                    )
                )
    elif to == "ops":
        recipients.extend(_user_recipient(user) for user in context.org_users)
    elif to == "custom":
        custom_email = getattr(action, "custom_email", None)
        custom_phone = getattr(action, "custom_phone", None)
        if action.type == "comm.send_email" and custom_email:
            recipients.append(CommRecipient(type="custom", email=custom_email, name=custom_email))
        if action.type == "comm.send_sms" and custom_phone:
            recipients.append(CommRecipient(type="custom", phone=custom_phone, name=custom_phone))

    deduped: dict[str, CommRecipient] = {}
    for recipient in recipients:
        deduped.setdefault(recipient.dedupe_key, recipient)
    return list(deduped.values())


# Executors

def _require_job_id(exec_ctx: RuleExecutionContext, purpose: str) -> str:
    job_id = exec_ctx.job_id
    if not job_id:
        raise MissingJobReferenceError(f"Job ID is required for {purpose}")
    return job_id


def _execute_comm(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    channel = CHANNEL_BY_ACTION[action.type]
    recipients = resolve_recipients(action, exec_ctx.context)
    if not recipients:
        logger.info(
            "No recipients for %s to=%s rule=%s run=%s",
            action.type, action.to, exec_ctx.rule_id, exec_ctx.run_id,
        )
        return ActionOutcome(
            status="succeeded",
            result={"recipient_count": 0, "outbox_ids": [], "skipped_reason": "no_recipients"},
            comm_preview={
                "channel": channel,
                "to": action.to,
                "template_key": action.template_key,
                "subject": None,
                "preview_text": None,
            },
        )

    variables = build_template_variables(
        db,
        org_id=exec_ctx.org_id,
        rule_name=exec_ctx.rule_name,
        trigger_key=exec_ctx.trigger_key,
        run_id=exec_ctx.run_id,
        context=exec_ctx.context,
    )
    variables["automation"]["ruleId"] = exec_ctx.rule_id
    variables["automation"]["stepId"] = step_id
    emitted = comms.emit(
        db,
        exec_ctx.org_id,
        action.template_key,
        channel,
        recipients,
        variables,
        entity_type="automation_rule_step",
        entity_id=step_id,
        source="automation_rule",
    )
    first = emitted.entries[0] if emitted.entries else None
    return ActionOutcome(
        status="succeeded",
        result={
            "comm_event_id": emitted.comm_event_id,
            "outbox_ids": [e.outbox_id for e in emitted.entries],
            "provider_message_ids": [e.provider_message_id for e in emitted.entries if e.provider_message_id],
            "recipient_count": len(emitted.entries),
        },
        comm_preview={
            "channel": channel,
            "to": action.to,
            "template_key": action.template_key,
            "subject": first.subject if first else None,
            "preview_text": first.body[:PREVIEW_CHARS] if first else None,
        },
    )


def _update_job_labels(db, exec_ctx, job_id: str, *, tag: Optional[str] = None, flag: Optional[str] = None, audit) -> ActionOutcome:
    job = db.query(Job).filter(Job.org_id == exec_ctx.org_id, Job.id == job_id).first()
    if job is None:
        raise ActionExecutionError("Job not found", details={"job_id": job_id})

    before_tags = list(job.tags or [])
    before_flags = list(job.flags or [])
    next_tags = before_tags + [tag] if tag and tag not in before_tags else before_tags
    next_flags = before_flags + [flag] if flag and flag not in before_flags else before_flags
    changed = next_tags != before_tags or next_flags != before_flags

    if changed:
        job.tags = list(next_tags)
        job.flags = list(next_flags)
        job.updated_at = datetime.datetime.now(datetime.timezone.utc)
        db.commit()
        audit(
            db,
            org_id=exec_ctx.org_id,
            actor_user_id=exec_ctx.event.actor_user_id,
            actor_type="system",
            action="UPDATE",
            entity_type="job",
            entity_id=job_id,
            before={"tags": before_tags, "flags": before_flags},
            after={"tags": next_tags, "flags": next_flags},
            metadata={"rule_id": exec_ctx.rule_id, "run_id": exec_ctx.run_id},
        )

    return ActionOutcome(
        status="succeeded",
        result={"job_id": job_id, "tags": next_tags, "flags": next_flags, "changed": changed},
    )


def _execute_add_tag(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    job_id = _require_job_id(exec_ctx, "tag updates")
    return _update_job_labels(db, exec_ctx, job_id, tag=action.tag, audit=audit)


def _execute_add_flag(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    job_id = _require_job_id(exec_ctx, "flag updates")
    return _update_job_labels(db, exec_ctx, job_id, flag=action.flag, audit=audit)


def find_checklist_template(db: Session, org_id: str, checklist_key: str) -> Optional[WorkTemplate]:
    query = db.query(WorkTemplate).filter(WorkTemplate.org_id == org_id)
    if _UUID_RE.match(checklist_key):
        query = query.filter(WorkTemplate.id == checklist_key)
    else:
        query = query.filter(WorkTemplate.name == checklist_key)
    return query.order_by(WorkTemplate.id.asc()).first()


def _execute_create_checklist(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    job_id = _require_job_id(exec_ctx, "checklist tasks")
    template = find_checklist_template(db, exec_ctx.org_id, action.checklist_key)
    if template is None:
        raise ActionExecutionError("Checklist template not found", details={"checklist_key": action.checklist_key})

    steps = (
        db.query(WorkTemplateStep)
        .filter(WorkTemplateStep.org_id == exec_ctx.org_id, WorkTemplateStep.template_id == template.id)
        .order_by(WorkTemplateStep.sort_order.asc(), WorkTemplateStep.id.asc())
        .all()
    )
    if not steps:
        raise ActionExecutionError("Checklist template has no steps", details={"template_id": template.id})

    max_order = (
        db.query(func.max(Task.order))
        .filter(Task.org_id == exec_ctx.org_id, Task.job_id == job_id)
        .scalar()
    )
    base_order = int(max_order or 0)

    tasks = [
        Task(
            org_id=exec_ctx.org_id,
            job_id=job_id,
            title=step.title,
            description=step.description,
            status="pending",
            order=base_order + index + 1,
            is_required=True if step.is_required is None else step.is_required,
        )
        for index, step in enumerate(steps)
    ]
    db.add_all(tasks)
    db.commit()
    return ActionOutcome(
        status="succeeded",
        result={"template_id": template.id, "created_task_ids": [t.id for t in tasks]},
    )


def _execute_create_draft_invoice(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    job_id = _require_job_id(exec_ctx, "invoice drafts")
    key = f"{exec_ctx.run_id}:draft"

    existing = db.query(JobInvoice).filter(JobInvoice.idempotency_key == key).first()
    if existing is not None:
        return ActionOutcome(status="succeeded", result={"invoice_id": existing.id, "reused": True})

    invoice = JobInvoice(
        org_id=exec_ctx.org_id,
        job_id=job_id,
        provider="manual",
        amount_cents=0,
        currency="AUD",
        status="draft",
        idempotency_key=key,
    )
    db.add(invoice)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(JobInvoice).filter(JobInvoice.idempotency_key == key).first()
        if existing is None:
            raise
        return ActionOutcome(status="succeeded", result={"invoice_id": existing.id, "reused": True})
    return ActionOutcome(status="succeeded", result={"invoice_id": invoice.id, "reused": False})


def _execute_internal_reminder(db, action, exec_ctx, step_id, *, comms, audit) -> ActionOutcome:
    return ActionOutcome(
        status="succeeded",
        result={
            "stubbed": True,
            "reason": "reminders_not_implemented",
            "minutes_from_now": action.minutes_from_now,
        },
    )


EXECUTORS: dict[str, Callable[..., ActionOutcome]] = {
    "comm.send_email": _execute_comm,
    "comm.send_sms": _execute_comm,
    "comm.send_inapp": _execute_comm,
    "job.add_tag": _execute_add_tag,
    "job.add_flag": _execute_add_flag,
    "tasks.create_checklist": _execute_create_checklist,
    "invoice.create_draft": _execute_create_draft_invoice,
    "reminder.create_internal": _execute_internal_reminder,
}


def _set_step(db: Session, step_id: str, **values: Any) -> None:
    step = db.get(AutomationRuleRunStep, step_id)
    for key, value in values.items():
        setattr(step, key, value)
    db.commit()


def execute_rule_actions(
    db: Session,
    exec_ctx: RuleExecutionContext,
    actions: Sequence[Any],
    *,
    comms: Optional[CommunicationsGateway] = None,
    audit: AuditWriter = record_audit_event,
) -> ActionRunResult:
    comms = comms or CommunicationsGateway()
    steps: list[dict] = []

    for index, action in enumerate(actions):
        step = AutomationRuleRunStep(
            run_id=exec_ctx.run_id,
            step_index=index,
            action_type=action.type,
            action_input=action.model_dump(exclude_none=True),
            status="pending",
        )
        db.add(step)
        db.commit()
        step_id = step.id
        _set_step(db, step_id, status="running")

        try:
            outcome = EXECUTORS[action.type](db, action, exec_ctx, step_id, comms=comms, audit=audit)
        except ActionExecutionError as exc:
            db.rollback()
            logger.warning(
                "Action %s failed rule=%s run=%s step=%s: %s",
                action.type, exec_ctx.rule_id, exec_ctx.run_id, index, exc.message,
            )
            outcome = ActionOutcome(status="failed", error=exc.message, error_details=dict(exc.details, code=exc.code))
        except Exception as exc:
            db.rollback()
            log_exception(
                logger,
                "Action raised unexpectedly",
                exc=exc,
                extra={"rule_id": exec_ctx.rule_id, "run_id": exec_ctx.run_id, "step_index": index, "action": action.type},
            )
            outcome = ActionOutcome(status="failed", error=str(exc) or "Action failed", error_details=error_details(exc))

        details = outcome.error_details
        if outcome.status != "succeeded":
            details = {**(details or {}), "step_index": index, "action_type": action.type}

        _set_step(
            db,
            step_id,
            status=outcome.status,
            result=outcome.result,
            comm_preview=outcome.comm_preview,
            error=outcome.error,
            error_details=details,
        )
        steps.append({"step_index": index, "action_type": action.type, "status": outcome.status})

        if outcome.status != "succeeded":
            return ActionRunResult(
                ok=False, error=outcome.error or "Action failed", error_details=details, steps=steps
            )

    return ActionRunResult(ok=True, steps=steps)


# Previews

def _preview_comm(db, action, params, *, comms) -> dict:
    channel = CHANNEL_BY_ACTION[action.type]
    recipients = resolve_recipients(action, params["context"])
    variables = build_template_variables(
        db,
        org_id=params["org_id"],
        rule_name=params["rule_name"],
        trigger_key=params["trigger_key"],
        run_id=params["run_id"],
        context=params["context"],
    )
    if recipients:
        first = recipients[0]
        variables["recipient"] = {"name": first.name or "there", "email": first.email, "phone": first.phone}
    rendered = comms.render_preview(db, params["org_id"], action.template_key, channel, variables)
    preview = {
        "channel": channel,
        "to": action.to,
        "template_key": action.template_key,
        "recipient_count": len(recipients),
        "subject": rendered["subject"] if rendered else None,
        "preview_text": rendered["preview_text"] if rendered else None,
    }
    if rendered is None:
        preview["template_missing"] = True
    elif rendered.get("render_error"):
        preview["render_error"] = rendered["render_error"]
    return preview


def _preview_labels(action, params, label: str, value: str) -> dict:
    job = params["context"].job
    current = list(job.get(label + "s") or ()) if job else []
    return {
        label: value,
        "job_id": params["job_id"],
        "would_change": bool(job) and value not in current,
    }


def _preview_add_tag(db, action, params, *, comms) -> dict:
    return _preview_labels(action, params, "tag", action.tag)


def _preview_add_flag(db, action, params, *, comms) -> dict:
    return _preview_labels(action, params, "flag", action.flag)


def _preview_create_checklist(db, action, params, *, comms) -> dict:
    template = find_checklist_template(db, params["org_id"], action.checklist_key)
    step_titles: list[str] = []
    if template is not None:
        step_titles = [
            title
            for (title,) in db.query(WorkTemplateStep.title)
            .filter(WorkTemplateStep.org_id == params["org_id"], WorkTemplateStep.template_id == template.id)
            .order_by(WorkTemplateStep.sort_order.asc(), WorkTemplateStep.id.asc())
            .all()
        ]
    return {
        "checklist_key": action.checklist_key,
        "job_id": params["job_id"],
        "template_found": template is not None,
        "task_titles": step_titles,
    }


def _preview_create_draft_invoice(db, action, params, *, comms) -> dict:
    return {"mode": action.mode, "job_id": params["job_id"], "amount_cents": 0, "currency": "AUD", "status": "draft"}


def _preview_internal_reminder(db, action, params, *, comms) -> dict:
    return {"minutes_from_now": action.minutes_from_now, "message": action.message, "stubbed": True}


PREVIEWERS: dict[str, Callable[..., dict]] = {
    "comm.send_email": _preview_comm,
    "comm.send_sms": _preview_comm,
    "comm.send_inapp": _preview_comm,
    "job.add_tag": _preview_add_tag,
    "job.add_flag": _preview_add_flag,
    "tasks.create_checklist": _preview_create_checklist,
    "invoice.create_draft": _preview_create_draft_invoice,
    "reminder.create_internal": _preview_internal_reminder,
}


def build_action_previews(
    db: Session,
    org_id: str,
    rule_name: str,
    trigger_key: str,
    run_id: str,
    actions: Sequence[Any],
    context: AutomationContext,
    event_payload: Optional[Mapping[str, Any]] = None,
    *,
    comms: Optional[CommunicationsGateway] = None,
) -> list[dict]:
    """Describe what each action would do without writing anything."""
    comms = comms or CommunicationsGateway()
    payload = event_payload if event_payload is not None else context.payload
    job_id = payload.get("jobId") if isinstance(payload.get("jobId"), str) else None
    params = {
        "org_id": org_id,
        "rule_name": rule_name,
        "trigger_key": trigger_key,
        "run_id": run_id,
        "context": context,
        "job_id": job_id,
    }
    previews = []
    for index, action in enumerate(actions):
        preview = {"step_index": index, "action_type": action.type}
        preview.update(PREVIEWERS[action.type](db, action, params, comms=comms))
        previews.append(preview)
    return previews


_uncovered = set(ACTION_TYPES) ^ set(EXECUTORS) | set(ACTION_TYPES) ^ set(PREVIEWERS)
if _uncovered or not COMM_ACTION_TYPES <= set(CHANNEL_BY_ACTION):
    raise RuntimeError(f"Action dispatch tables out of sync: {sorted(_uncovered)}")
