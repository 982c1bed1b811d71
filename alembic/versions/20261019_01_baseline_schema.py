"""Baseline schema: org data read by automations plus rules, runs and steps.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), primary_key=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "orgs",
        _id(),
        sa.Column("name", sa.String(length=256), nullable=False),
        _ts("created_at"),
    )
    op.create_table(
        "org_settings",
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("automations_disabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("comm_from_name", sa.String(length=256), nullable=True),
        sa.Column("comm_from_email", sa.String(length=256), nullable=True),
        sa.Column("comm_reply_to_email", sa.String(length=256), nullable=True),
        _ts("updated_at"),
    )
    op.create_table(
        "org_members",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("role_key", sa.String(length=32), nullable=True),
        sa.Column("crew_member_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
    )
    op.create_index("ix_org_members_org_id", "org_members", ["org_id"])
    op.create_table(
        "comm_provider_status",
        sa.Column("org_id", sa.String(length=36), primary_key=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("updated_at"),
    )

    op.create_table(
        "app_events",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        _ts("created_at"),
        _ts("automation_processed_at", nullable=True),
    )
    op.create_index("ix_app_events_org_id", "app_events", ["org_id"])
    op.create_index("ix_app_events_org_type_created", "app_events", ["org_id", "event_type", "created_at"])
    op.create_index("ix_app_events_automation_pending", "app_events", ["automation_processed_at", "created_at"])

    op.create_table(
        "jobs",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(length=16), nullable=True),
        sa.Column("job_type_id", sa.String(length=36), nullable=True),
        sa.Column("crew_id", sa.String(length=36), nullable=True),
        sa.Column("progress_status", sa.String(length=32), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("flags", sa.JSON(), nullable=False),
        sa.Column("address_line1", sa.String(length=256), nullable=True),
        sa.Column("address_line2", sa.String(length=256), nullable=True),
        sa.Column("suburb", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("postcode", sa.String(length=16), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("scheduled_start", nullable=True),
        _ts("scheduled_end", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_jobs_org_id", "jobs", ["org_id"])
    op.create_table(
        "job_types",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("key", sa.String(length=32), nullable=False),
        sa.Column("label", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_job_types_org_id", "job_types", ["org_id"])
    op.create_table(
        "job_contacts",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=True),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_job_contacts_job_id", "job_contacts", ["job_id"])
    op.create_table(
        "crew_members",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_crew_members_org_id", "crew_members", ["org_id"])
    op.create_table(
        "schedule_assignments",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("crew_id", sa.String(length=36), nullable=True),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("start_minutes", sa.Integer(), nullable=True),
        sa.Column("end_minutes", sa.Integer(), nullable=True),
    )
    op.create_index("ix_schedule_assignments_job_id", "schedule_assignments", ["job_id"])
    op.create_table(
        "job_photos",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_job_photos_job_id", "job_photos", ["job_id"])
    op.create_table(
        "job_activity_events",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_job_activity_events_job_type_created", "job_activity_events", ["job_id", "type", "created_at"])

    op.create_table(
        "tasks",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_tasks_job_id", "tasks", ["job_id"])
    op.create_table(
        "work_templates",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
    )
    op.create_index("ix_work_templates_org_id", "work_templates", ["org_id"])
    op.create_table(
        "work_template_steps",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_required", sa.Boolean(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=True),
    )
    op.create_index("ix_work_template_steps_template_id", "work_template_steps", ["template_id"])

    op.create_table(
        "job_invoices",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("total_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="AUD"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True, unique=True),
        _ts("due_at", nullable=True),
        _ts("sent_at", nullable=True),
        _ts("paid_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_job_invoices_org_id", "job_invoices", ["org_id"])
    op.create_index("ix_job_invoices_job_id", "job_invoices", ["job_id"])
    op.create_table(
        "job_payments",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("method", sa.String(length=32), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_job_payments_org_id", "job_payments", ["org_id"])
    op.create_index("ix_job_payments_job_id", "job_payments", ["job_id"])

    op.create_table(
        "materials",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("unit", sa.String(length=16), nullable=True),
        sa.Column("reserved_quantity", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_index("ix_materials_org_id", "materials", ["org_id"])
    op.create_table(
        "material_inventory_events",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("material_id", sa.String(length=36), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_material_inventory_events_material_id", "material_inventory_events", ["material_id"])
    op.create_table(
        "material_usage_logs",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("material_id", sa.String(length=36), nullable=False),
        sa.Column("quantity_used", sa.Float(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_material_usage_logs_material_id", "material_usage_logs", ["material_id"])
    op.create_table(
        "material_alerts",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("material_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        _ts("created_at"),
        _ts("resolved_at", nullable=True),
    )
    op.create_index("ix_material_alerts_org_id", "material_alerts", ["org_id"])

    op.create_table(
        "comm_templates",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("subject", sa.String(length=256), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_comm_templates_org_key_channel", "comm_templates", ["org_id", "key", "channel"])
    op.create_table(
        "comm_outbox",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("template_key", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_user_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_email", sa.String(length=256), nullable=True),
        sa.Column("recipient_phone", sa.String(length=64), nullable=True),
        sa.Column("recipient_name", sa.String(length=256), nullable=True),
        sa.Column("subject_rendered", sa.String(length=256), nullable=True),
        sa.Column("body_rendered", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_comm_outbox_event_id", "comm_outbox", ["event_id"])
    op.create_index("ix_comm_outbox_org_event", "comm_outbox", ["org_id", "event_id"])

    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        sa.Column("actor_type", sa.String(length=16), nullable=False, server_default="system"),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_audit_logs_org_id", "audit_logs", ["org_id"])

    op.create_table(
        "automation_rules",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=140), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_key", sa.String(length=64), nullable=False),
        sa.Column("trigger_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_customer_facing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_sms", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_email", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("last_tested_at", nullable=True),
        _ts("last_enabled_at", nullable=True),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_automation_rules_org_trigger_enabled", "automation_rules", ["org_id", "trigger_key", "enabled"])
    op.create_table(
        "automation_rule_runs",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column(
            "rule_id",
            sa.String(length=36),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("event_key", sa.String(length=64), nullable=False),
        sa.Column("event_entity_id", sa.String(length=512), nullable=False),
        sa.Column("event_payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("matched", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("match_details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("rate_limited", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        _ts("started_at", nullable=True),
        _ts("finished_at", nullable=True),
        _ts("created_at"),
    )
    op.create_unique_constraint(
        "uq_automation_rule_runs_idempotency_key", "automation_rule_runs", ["idempotency_key"]
    )
    op.create_index("ix_automation_rule_runs_event_id", "automation_rule_runs", ["event_id"])
    op.create_index(
        "ix_automation_rule_runs_org_rule_created", "automation_rule_runs", ["org_id", "rule_id", "created_at"]
    )
    op.create_table(
        "automation_rule_run_steps",
        _id(),
        sa.Column(
            "run_id",
            sa.String(length=36),
            sa.ForeignKey("automation_rule_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("action_input", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("comm_preview", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("run_id", "step_index", name="uq_automation_rule_run_steps_run_index"),
    )
    op.create_index("ix_automation_rule_run_steps_run_id", "automation_rule_run_steps", ["run_id"])


def downgrade() -> None:
    op.drop_table("automation_rule_run_steps")
    op.drop_table("automation_rule_runs")
    op.drop_table("automation_rules")
    op.drop_table("audit_logs")
    op.drop_table("comm_outbox")
    op.drop_table("comm_templates")
    op.drop_table("material_alerts")
    op.drop_table("material_usage_logs")
    op.drop_table("material_inventory_events")
    op.drop_table("materials")
    op.drop_table("job_payments")
    op.drop_table("job_invoices")
    op.drop_table("work_template_steps")
    op.drop_table("work_templates")
    op.drop_table("tasks")
    op.drop_table("job_activity_events")
    op.drop_table("job_photos")
    op.drop_table("schedule_assignments")
    op.drop_table("crew_members")
    op.drop_table("job_contacts")
    op.drop_table("job_types")
    op.drop_table("jobs")
    op.drop_table("app_events")
    op.drop_table("comm_provider_status")
    op.drop_table("org_members")
    op.drop_table("org_settings")
    op.drop_table("orgs")
