"""create intake lifecycle tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("middle_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("email_normalized", sa.Text(), nullable=True),
        sa.Column("phone_normalized", sa.String(length=32), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("referral_source", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("lead_status", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_email_normalized", "contacts", ["email_normalized"], unique=False)
    op.create_index("ix_contacts_phone_normalized", "contacts", ["phone_normalized"], unique=False)

    op.create_table(
        "pipeline_stages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline", "order", name="uq_pipeline_stages_pipeline_order"),
        sa.UniqueConstraint("pipeline", "name", name="uq_pipeline_stages_pipeline_name"),
    )
    op.create_index("ix_pipeline_stages_pipeline", "pipeline_stages", ["pipeline"], unique=False)

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("intake_id", sa.Uuid(), nullable=True),
        sa.Column("pipeline_id", sa.Text(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("estimated_value", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("practice_area", sa.Text(), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("did_not_hire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("did_not_hire_reason", sa.Text(), nullable=True),
        sa.Column("did_not_hire_point", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_opportunities_contact_id", "opportunities", ["contact_id"], unique=False)
    op.create_index("ix_opportunities_pipeline_stage", "opportunities", ["pipeline_id", "stage_id"], unique=False)

    op.create_table(
        "task_templates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stage_name", sa.Text(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=True),
        sa.Column("pipeline_id", sa.Text(), nullable=True),
        sa.Column("task_number", sa.Integer(), nullable=False),
        sa.Column("task_name", sa.Text(), nullable=False),
        sa.Column("task_description", sa.Text(), nullable=True),
        sa.Column("assignee_id", sa.String(length=128), nullable=True),
        sa.Column("assignee_name", sa.Text(), nullable=True),
        sa.Column("due_date_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date_unit", sa.String(length=16), nullable=False, server_default="days"),
        sa.Column("priority", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_templates_stage_id", "task_templates", ["stage_id"], unique=False)
    op.create_index("ix_task_templates_stage_name", "task_templates", ["stage_name", "is_active"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("stage_id", sa.Uuid(), nullable=True),
        sa.Column("task_template_id", sa.Uuid(), nullable=True),
        sa.Column("task_number", sa.Integer(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("assigned_to_name", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Pending"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="Medium"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_contact_id", "tasks", ["contact_id"], unique=False)
    op.create_index("ix_tasks_opportunity_id", "tasks", ["opportunity_id"], unique=False)

    op.create_table(
        "stage_completion_mappings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("source_stage_name", sa.Text(), nullable=False),
        sa.Column("source_stage_id", sa.Uuid(), nullable=True),
        sa.Column("source_pipeline_id", sa.Text(), nullable=True),
        sa.Column("target_pipeline_id", sa.Text(), nullable=False),
        sa.Column("target_pipeline_name", sa.Text(), nullable=False),
        sa.Column("target_stage_name", sa.Text(), nullable=False),
        sa.Column("target_stage_id", sa.Uuid(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["source_stage_id"], ["pipeline_stages.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["target_stage_id"], ["pipeline_stages.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stage_completion_mappings_source_stage_name",
        "stage_completion_mappings",
        ["source_stage_name"],
        unique=False,
    )
    op.create_index(
        "ix_stage_completion_mappings_source_stage_id",
        "stage_completion_mappings",
        ["source_stage_id"],
        unique=False,
    )

    op.create_table(
        "stage_changes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_name", sa.Text(), nullable=False),
        sa.Column("previous_pipeline_id", sa.Text(), nullable=True),
        sa.Column("previous_stage", sa.Text(), nullable=True),
        sa.Column("previous_stage_id", sa.Uuid(), nullable=True),
        sa.Column("new_pipeline_id", sa.Text(), nullable=False),
        sa.Column("new_stage", sa.Text(), nullable=False),
        sa.Column("new_stage_id", sa.Uuid(), nullable=False),
        sa.Column("task_ids", sa.JSON(), nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stage_changes_opportunity_id", "stage_changes", ["opportunity_id"], unique=False)

    op.create_table(
        "intakes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("lead_status", sa.String(length=16), nullable=False),
        sa.Column("duplicate_of_contact_id", sa.Uuid(), nullable=True),
        sa.Column("duplicate_match_type", sa.String(length=8), nullable=True),
        sa.Column("practice_area", sa.Text(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("middle_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("street_address", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("zip_code", sa.String(length=16), nullable=True),
        sa.Column("referral_source", sa.Text(), nullable=True),
        sa.Column("call_details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["duplicate_of_contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_intakes_lead_status", "intakes", ["lead_status"], unique=False)

    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("intake_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_appointments_contact_id", "appointments", ["contact_id"], unique=False)
    op.create_index("ix_appointments_opportunity_id", "appointments", ["opportunity_id"], unique=False)
    op.create_index("ix_appointments_intake_id", "appointments", ["intake_id"], unique=False)

    op.create_table(
        "documents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("intake_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_contact_id", "documents", ["contact_id"], unique=False)
    op.create_index("ix_documents_opportunity_id", "documents", ["opportunity_id"], unique=False)
    op.create_index("ix_documents_intake_id", "documents", ["intake_id"], unique=False)

    op.create_table(
        "invoices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_contact_id", "invoices", ["contact_id"], unique=False)
    op.create_index("ix_invoices_opportunity_id", "invoices", ["opportunity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_invoices_opportunity_id", table_name="invoices")
    op.drop_index("ix_invoices_contact_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_documents_intake_id", table_name="documents")
    op.drop_index("ix_documents_opportunity_id", table_name="documents")
    op.drop_index("ix_documents_contact_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_appointments_intake_id", table_name="appointments")
    op.drop_index("ix_appointments_opportunity_id", table_name="appointments")
    op.drop_index("ix_appointments_contact_id", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_intakes_lead_status", table_name="intakes")
    op.drop_table("intakes")
    op.drop_index("ix_stage_changes_opportunity_id", table_name="stage_changes")
    op.drop_table("stage_changes")
    op.drop_index("ix_stage_completion_mappings_source_stage_id", table_name="stage_completion_mappings")
    op.drop_index("ix_stage_completion_mappings_source_stage_name", table_name="stage_completion_mappings")
    op.drop_table("stage_completion_mappings")
    op.drop_index("ix_tasks_opportunity_id", table_name="tasks")
    op.drop_index("ix_tasks_contact_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_task_templates_stage_name", table_name="task_templates")
    op.drop_index("ix_task_templates_stage_id", table_name="task_templates")
    op.drop_table("task_templates")
    op.drop_index("ix_opportunities_pipeline_stage", table_name="opportunities")
    op.drop_index("ix_opportunities_contact_id", table_name="opportunities")
    op.drop_table("opportunities")
    op.drop_index("ix_pipeline_stages_pipeline", table_name="pipeline_stages")
    op.drop_table("pipeline_stages")
    op.drop_index("ix_contacts_phone_normalized", table_name="contacts")
    op.drop_index("ix_contacts_email_normalized", table_name="contacts")
    op.drop_table("contacts")
