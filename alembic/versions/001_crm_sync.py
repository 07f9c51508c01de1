"""CRM sync schema: integrations, stage mappings, deal links, webhook log, contacts.

Revision ID: 001_crm_sync
Revises:
Create Date: 2026-10-16

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_crm_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "crm_integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("account_name", sa.String(300), nullable=True),
        sa.Column("account_identifier", sa.String(300), nullable=True),
        sa.Column("account_metadata", sa.JSON(), nullable=True),
        sa.Column("sync_config", sa.JSON(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "provider", name="uq_crm_integration_user_provider"),
    )
    op.create_index("ix_crm_integrations_user_id", "crm_integrations", ["user_id"])
    op.create_index(
        "ix_crm_integration_account", "crm_integrations", ["provider", "account_identifier"]
    )

    op.create_table(
        "crm_stage_mappings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "integration_id",
            sa.Uuid(),
            sa.ForeignKey("crm_integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("internal_status", sa.String(30), nullable=False),
        sa.Column("crm_stage_id", sa.String(200), nullable=True),
        sa.Column("crm_stage_name", sa.String(300), nullable=True),
        sa.UniqueConstraint(
            "integration_id", "internal_status", name="uq_crm_stage_mapping_status"
        ),
    )

    op.create_table(
        "crm_deal_links",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("crm_integrations.id"), nullable=False
        ),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("proposal_id", sa.String(100), nullable=False),
        sa.Column("external_deal_id", sa.String(200), nullable=False),
        sa.Column(
            "sync_direction",
            sa.String(20),
            server_default=sa.text("'bidirectional'"),
            nullable=True,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "integration_id", "proposal_id", name="uq_crm_deal_link_integration_proposal"
        ),
    )
    op.create_index("ix_crm_deal_links_proposal_id", "crm_deal_links", ["proposal_id"])
    op.create_index(
        "ix_crm_deal_link_external", "crm_deal_links", ["provider", "external_deal_id"]
    )

    op.create_table(
        "crm_webhook_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("crm_integrations.id"), nullable=True
        ),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_crm_webhook_logs_integration_id", "crm_webhook_logs", ["integration_id"]
    )

    op.create_table(
        "crm_contacts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("phone", sa.String(100), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "user_id",
            "provider",
            "external_id",
            name="uq_crm_contact_user_provider_external",
        ),
    )


def downgrade() -> None:
    op.drop_table("crm_contacts")
    op.drop_index("ix_crm_webhook_logs_integration_id", table_name="crm_webhook_logs")
    op.drop_table("crm_webhook_logs")
    op.drop_index("ix_crm_deal_link_external", table_name="crm_deal_links")
    op.drop_index("ix_crm_deal_links_proposal_id", table_name="crm_deal_links")
    op.drop_table("crm_deal_links")
    op.drop_table("crm_stage_mappings")
    op.drop_index("ix_crm_integration_account", table_name="crm_integrations")
    op.drop_index("ix_crm_integrations_user_id", table_name="crm_integrations")
    op.drop_table("crm_integrations")
