"""create crm automation tables

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


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "crm_tenant",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("smtp_config", sa.JSON(), nullable=True),
        sa.Column("whatsapp_instance_name", sa.Text(), nullable=True),
        sa.Column("whatsapp_api_url", sa.Text(), nullable=True),
        sa.Column("whatsapp_api_key", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_tenant_id", "crm_pipeline", ["tenant_id"], unique=False)

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_stage_tenant_id", "crm_pipeline_stage", ["tenant_id"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phones", sa.JSON(), nullable=False),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_tenant_id", "crm_contact", ["tenant_id"], unique=False)

    op.create_table(
        "crm_custom_field_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_custom_field_definition_tenant_entity",
        "crm_custom_field_definition",
        ["tenant_id", "entity_type"],
        unique=False,
    )

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("observation", sa.Text(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        *_timestamps(updated=True),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_tenant_id", "crm_deal", ["tenant_id"], unique=False)

    for table_name, extra_columns in [
        ("crm_deal_note", [sa.Column("content", sa.Text(), nullable=False)]),
        (
            "crm_deal_history",
            [
                sa.Column("action", sa.Text(), nullable=False),
                sa.Column("details_json", sa.JSON(), nullable=True),
            ],
        ),
    ]:
        op.create_table(
            table_name,
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("deal_id", sa.Uuid(), nullable=False),
            *extra_columns,
            *_timestamps(),
            sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table_name}_deal_id", table_name, ["deal_id"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_task_tenant_id", "crm_task", ["tenant_id"], unique=False)

    op.create_table(
        "crm_calendar_note",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("note_date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_calendar_note_tenant_id", "crm_calendar_note", ["tenant_id"], unique=False)

    op.create_table(
        "crm_email_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_email_template_tenant_id", "crm_email_template", ["tenant_id"], unique=False)

    op.create_table(
        "crm_automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("trigger_type", sa.String(length=64), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=False),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_automation_tenant_trigger", "crm_automation", ["tenant_id", "trigger_type"], unique=False)

    op.create_table(
        "crm_automation_continuation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("remaining_steps", sa.JSON(), nullable=False),
        sa.Column("execute_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("condition_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["automation_id"], ["crm_automation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_continuation_execute_at",
        "crm_automation_continuation",
        ["execute_at"],
        unique=False,
    )
    op.create_index(
        "ix_crm_automation_continuation_tenant_deal",
        "crm_automation_continuation",
        ["tenant_id", "deal_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_automation_continuation_tenant_deal", table_name="crm_automation_continuation")
    op.drop_index("ix_crm_automation_continuation_execute_at", table_name="crm_automation_continuation")
    op.drop_table("crm_automation_continuation")
    op.drop_index("ix_crm_automation_tenant_trigger", table_name="crm_automation")
    op.drop_table("crm_automation")
    op.drop_index("ix_crm_email_template_tenant_id", table_name="crm_email_template")
    op.drop_table("crm_email_template")
    op.drop_index("ix_crm_calendar_note_tenant_id", table_name="crm_calendar_note")
    op.drop_table("crm_calendar_note")
    op.drop_index("ix_crm_task_tenant_id", table_name="crm_task")
    op.drop_table("crm_task")
    for table_name in ["crm_deal_history", "crm_deal_note"]:
        op.drop_index(f"ix_{table_name}_deal_id", table_name=table_name)
        op.drop_table(table_name)
    op.drop_index("ix_crm_deal_tenant_id", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_index("ix_crm_custom_field_definition_tenant_entity", table_name="crm_custom_field_definition")
    op.drop_table("crm_custom_field_definition")
    op.drop_index("ix_crm_contact_tenant_id", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_pipeline_stage_tenant_id", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")
    op.drop_index("ix_crm_pipeline_tenant_id", table_name="crm_pipeline")
    op.drop_table("crm_pipeline")
    op.drop_table("crm_tenant")
