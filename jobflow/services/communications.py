"""
Communications hand-off: template rendering and outbox enqueueing.

Automations never deliver messages themselves. `CommunicationsGateway.emit`
renders the org's latest template for a channel once per deliverable
recipient and writes PENDING rows to `comm_outbox`; a separate delivery
process owns sending.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from jinja2 import ChainableUndefined, TemplateError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.orm import Session

from ..core.errors import CommunicationError
from ..models.communication import CommOutbox, CommTemplate


logger = logging.getLogger("communications")

CHANNELS = ("email", "sms", "in_app")
PREVIEW_CHARS = 200


@dataclass(frozen=True)
class CommRecipient:
    type: str  # client | user | custom
    user_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    role_key: Optional[str] = None
    crew_member_id: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"contact:{self.email or self.phone or self.name or ''}"

    def deliverable_on(self, channel: str) -> bool:
        if channel == "email":
            return bool(self.email)
        if channel == "sms":
            return bool(self.phone)
        return bool(self.user_id)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "user_id": self.user_id,
            "email": self.email,
            "phone": self.phone,
            "name": self.name,
        }


@dataclass
class RenderResult:
    rendered: str
    missing: list[str] = field(default_factory=list)


@dataclass
class CommOutboxEntry:
    outbox_id: str
    channel: str
    subject: Optional[str]
    body: str
    recipient_user_id: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class CommEmitResult:
    comm_event_id: str
    entries: list[CommOutboxEntry] = field(default_factory=list)


class _Scope(dict):
    """Template variables mapping that knows its dotted path."""

    _path = ""


class _ScopeList(list):
    _path = ""


def _scoped(value: Any, path: str = "") -> Any:
    # None values are dropped so they render as missing variables.
    if isinstance(value, Mapping):
        scope = _Scope(
            (key, _scoped(item, f"{path}.{key}" if path else str(key)))
            for key, item in value.items()
            if item is not None
        )
        scope._path = path
        return scope
    if isinstance(value, (list, tuple)):
        items = _ScopeList(_scoped(item, f"{path}.{index}") for index, item in enumerate(value))
        items._path = path
        return items
    return value


class _MissingValue(ChainableUndefined):
    """Renders empty and records the dotted path it stands in for."""

    __slots__ = ()
    sink: list = []

    @property
    def dotted_path(self) -> str:
        obj = self._undefined_obj
        parent = obj._path if isinstance(obj, (_Scope, _ScopeList)) else ""
        name = "" if self._undefined_name is None else str(self._undefined_name)
        return f"{parent}.{name}" if parent else name

    def __str__(self) -> str:
        if self._undefined_exception is not UndefinedError:
            # sandbox violations
            self._fail_with_undefined_error()
        self.sink.append(self.dotted_path)
        return ""


def _finalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(_finalize(v)) for v in value if v is not None)
    return value


class _TemplateEnvironment(SandboxedEnvironment):
    # Dotted lookups on variables are key lookups, never dict attributes.
    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, _Scope):
            return self.getitem(obj, attribute)
        return super().getattr(obj, attribute)

    def getitem(self, obj: Any, argument: Any) -> Any:
        if isinstance(obj, _Scope):
            if argument in obj:
                return obj[argument]
            return self.undefined(obj=obj, name=argument)
        return super().getitem(obj, argument)


_ENV = _TemplateEnvironment(
    undefined=_MissingValue,
    finalize=_finalize,
    autoescape=False,
    keep_trailing_newline=True,
)


def render_template(template: str, variables: Mapping[str, Any]) -> RenderResult:
    """Render a Jinja template; unresolved paths render empty and are reported."""
    missing: list[str] = []
    undefined = type("_CollectingMissingValue", (_MissingValue,), {"__slots__": (), "sink": missing})
    try:
        compiled = _ENV.overlay(undefined=undefined).from_string(template or "")
        rendered = compiled.render(_scoped(variables))
    except TemplateError as exc:
        raise CommunicationError("Communication template could not be rendered", details={"error": str(exc)}) from exc
    return RenderResult(rendered=rendered, missing=missing)


def find_template(db: Session, org_id: str, template_key: str, channel: str) -> Optional[CommTemplate]:
    return (
        db.query(CommTemplate)
        .filter(
            CommTemplate.org_id == org_id,
            CommTemplate.key == template_key,
            CommTemplate.channel == channel,
        )
        .order_by(CommTemplate.version.desc())
        .first()
    )


def _recipient_variables(variables: Mapping[str, Any], recipient: CommRecipient) -> dict:
    merged = dict(variables)
    merged["recipient"] = {
        "name": recipient.name or "there",
        "email": recipient.email,
        "phone": recipient.phone,
    }
    return merged


class CommunicationsGateway:
    """Default communications collaborator writing to the outbox table."""

    def render_preview(
        self,
        db: Session,
        org_id: str,
        template_key: str,
        channel: str,
        variables: Mapping[str, Any],
    ) -> Optional[dict]:
        template = find_template(db, org_id, template_key, channel)
        if template is None:
            return None
        try:
            subject = render_template(template.subject, variables).rendered if template.subject else None
            body = render_template(template.body, variables)
        except CommunicationError as exc:
            return {
                "subject": None,
                "body": "",
                "preview_text": "",
                "missing_variables": [],
                "render_error": exc.details.get("error", exc.message),
            }
        return {
            "subject": subject,
            "body": body.rendered,
            "preview_text": body.rendered[:PREVIEW_CHARS],
            "missing_variables": body.missing,
        }

    def emit(
        self,
        db: Session,
        org_id: str,
        template_key: str,
        channel: str,
        recipients: Iterable[CommRecipient],
        variables: Mapping[str, Any],
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        source: str = "automation_rule",
    ) -> CommEmitResult:
        if channel not in CHANNELS:
            raise CommunicationError(f"Unsupported channel: {channel}")
        template = find_template(db, org_id, template_key, channel)
        if template is None:
            raise CommunicationError(
                "Communication template not found",
                details={"template_key": template_key, "channel": channel},
            )

        comm_event_id = str(uuid.uuid4())
        entries: list[CommOutboxEntry] = []
        for recipient in recipients:
            if not recipient.deliverable_on(channel):
                logger.info(
                    "Skipping recipient without %s address template=%s recipient=%s",
                    channel, template_key, recipient.dedupe_key,
                )
                continue
            scoped = _recipient_variables(variables, recipient)
            subject = render_template(template.subject, scoped).rendered if template.subject else None
            body = render_template(template.body, scoped)
            if body.missing:
                logger.debug("Template %s missing variables: %s", template_key, ", ".join(body.missing))
            row = CommOutbox(
                org_id=org_id,
                event_id=comm_event_id,
                template_key=template_key,
                channel=channel,
                source=source,
                entity_type=entity_type,
                entity_id=entity_id,
                recipient_user_id=recipient.user_id,
                recipient_email=recipient.email if channel == "email" else None,
                recipient_phone=recipient.phone if channel == "sms" else None,
                recipient_name=recipient.name,
                subject_rendered=subject,
                body_rendered=body.rendered,
                status="PENDING",
            )
            db.add(row)
            db.flush()
            entries.append(
                CommOutboxEntry(
                    outbox_id=row.id,
                    channel=channel,
                    subject=subject,
                    body=body.rendered,
                    recipient_user_id=row.recipient_user_id,
                    recipient_email=row.recipient_email,
                    recipient_phone=row.recipient_phone,
                )
            )
        db.commit()
        logger.info(
            "Enqueued %s %s message(s) template=%s comm_event=%s",
            len(entries), channel, template_key, comm_event_id,
        )
        return CommEmitResult(comm_event_id=comm_event_id, entries=entries)
