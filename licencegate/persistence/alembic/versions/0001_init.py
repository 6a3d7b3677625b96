"""initial compliance schema

Revision ID: 0001_init
Revises:
Create Date: 2026-03-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Reference data mirrored from master-data systems.
    op.create_table(
        "licence_types",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("permitted_activities", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "licences",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("licence_number", sa.String(), nullable=False, unique=True),
        sa.Column("licence_type_id", sa.String(), sa.ForeignKey("licence_types.id"), nullable=False),
        sa.Column("holder_kind", sa.String(), nullable=False),
        sa.Column("holder_id", sa.String(), nullable=False),
        sa.Column("issuing_authority", sa.String(), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("grace_period_end", sa.Date(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="Valid"),
        sa.Column("permitted_activities", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_licences_holder", "licences", ["holder_kind", "holder_id"], unique=False)
    op.create_index("ix_licences_expiry_date", "licences", ["expiry_date"], unique=False)

    op.create_table(
        "controlled_substances",
        sa.Column("code", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("opium_act_list", sa.String(), nullable=False, server_default="None"),
        sa.Column("precursor_category", sa.String(), nullable=False, server_default="None"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("classification_effective_date", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_table(
        "licence_substance_mappings",
        sa.Column("licence_id", sa.String(), sa.ForeignKey("licences.id"), primary_key=True),
        sa.Column("substance_code", sa.String(), sa.ForeignKey("controlled_substances.code"), primary_key=True),
        sa.Column("effective_date", sa.Date(), primary_key=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
    )
    op.create_index(
        "ix_licence_substance_mappings_substance_code",
        "licence_substance_mappings",
        ["substance_code"],
        unique=False,
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account", sa.String(), nullable=False),
        sa.Column("data_area", sa.String(), nullable=False),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("business_category", sa.String(), nullable=False),
        sa.Column("approval_status", sa.String(), nullable=False),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        sa.Column("gdp_qualification_status", sa.String(), nullable=False),
        sa.Column("reverification_due", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("account", "data_area", name="uq_customers_account_data_area"),
    )
    op.create_index("ix_customers_reverification_due", "customers", ["reverification_due"], unique=False)

    op.create_table(
        "thresholds",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("customer_id", sa.String(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("substance_code", sa.String(), sa.ForeignKey("controlled_substances.code"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("limit", sa.Numeric(18, 4), nullable=False),
        sa.Column("window_days", sa.Integer(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
    )
    op.create_index("ix_thresholds_customer_id", "thresholds", ["customer_id"], unique=False)

    # Decision records and their threshold aggregation lines.
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("customer_account", sa.String(), nullable=False),
        sa.Column("customer_data_area", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("destination_country", sa.String(), nullable=True),
        sa.Column("calling_system", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("lines_json", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("violations_json", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("approver_id", sa.String(), nullable=True),
        sa.Column("reason_code", sa.String(), nullable=True),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column("authority_ref", sa.String(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_transactions_external_id", "transactions", ["external_id"], unique=False)
    op.create_index("ix_transactions_customer_id", "transactions", ["customer_id"], unique=False)
    op.create_index("ix_transactions_status", "transactions", ["status"], unique=False)
    op.create_table(
        "transaction_lines",
        sa.Column("transaction_id", sa.String(), sa.ForeignKey("transactions.id"), primary_key=True),
        sa.Column("line_number", sa.Integer(), primary_key=True),
        sa.Column("substance_code", sa.String(), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
    )
    op.create_index("ix_transaction_lines_substance", "transaction_lines", ["substance_code"], unique=False)

    op.create_table(
        "substance_reclassifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "substance_code", sa.String(), sa.ForeignKey("controlled_substances.code"), nullable=False
        ),
        sa.Column("previous_opium_act_list", sa.String(), nullable=False),
        sa.Column("new_opium_act_list", sa.String(), nullable=False),
        sa.Column("previous_precursor_category", sa.String(), nullable=False),
        sa.Column("new_precursor_category", sa.String(), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("regulatory_reference", sa.String(), nullable=False),
        sa.Column("regulatory_authority", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("affected_customer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flagged_customer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "ix_substance_reclassifications_substance_code",
        "substance_reclassifications",
        ["substance_code"],
        unique=False,
    )
    op.create_table(
        "customer_impacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "reclassification_id",
            sa.String(),
            sa.ForeignKey("substance_reclassifications.id"),
            nullable=False,
        ),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("substance_code", sa.String(), nullable=False),
        sa.Column("has_sufficient_licence", sa.Boolean(), nullable=False),
        sa.Column("requires_requalification", sa.Boolean(), nullable=False),
        sa.Column("gap_summary", sa.Text(), nullable=True),
        sa.Column("relevant_licence_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("requalified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "ix_customer_impacts_reclassification_id", "customer_impacts", ["reclassification_id"], unique=False
    )
    op.create_index("ix_customer_impacts_customer_id", "customer_impacts", ["customer_id"], unique=False)

    # Outbound webhook subscriptions, events and per-subscription deliveries.
    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("callback_url", sa.Text(), nullable=False),
        sa.Column("event_types", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("secret_sealed", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_healthy", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("new_status", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"], unique=False)
    op.create_index("ix_webhook_events_occurred_at", "webhook_events", ["occurred_at"], unique=False)
    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "subscription_id", sa.String(), sa.ForeignKey("webhook_subscriptions.id"), nullable=False
        ),
        sa.Column("event_id", sa.String(), sa.ForeignKey("webhook_events.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint(
            "subscription_id", "event_id", name="uq_webhook_deliveries_subscription_event"
        ),
    )
    op.create_index(
        "ix_webhook_deliveries_due", "webhook_deliveries", ["status", "next_attempt_at"], unique=False
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("audience", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_alerts_alert_type", "alerts", ["alert_type"], unique=False)
    op.create_index("ix_alerts_audience", "alerts", ["audience"], unique=False)
    op.create_index("ix_alerts_target", "alerts", ["target_kind", "target_id"], unique=False)

    # Append-only audit trail for decisions and record mutations.
    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("before_json", postgresql.JSONB(), nullable=True),
        sa.Column("after_json", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_target", "audit_events", ["target_kind", "target_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_target", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_alerts_target", table_name="alerts")
    op.drop_index("ix_alerts_audience", table_name="alerts")
    op.drop_index("ix_alerts_alert_type", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_webhook_deliveries_due", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_index("ix_webhook_events_occurred_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("webhook_subscriptions")
    op.drop_index("ix_customer_impacts_customer_id", table_name="customer_impacts")
    op.drop_index("ix_customer_impacts_reclassification_id", table_name="customer_impacts")
    op.drop_table("customer_impacts")
    op.drop_index("ix_substance_reclassifications_substance_code", table_name="substance_reclassifications")
    op.drop_table("substance_reclassifications")
    op.drop_index("ix_transaction_lines_substance", table_name="transaction_lines")
    op.drop_table("transaction_lines")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_customer_id", table_name="transactions")
    op.drop_index("ix_transactions_external_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_thresholds_customer_id", table_name="thresholds")
    op.drop_table("thresholds")
    op.drop_index("ix_customers_reverification_due", table_name="customers")
    op.drop_table("customers")
    op.drop_index("ix_licence_substance_mappings_substance_code", table_name="licence_substance_mappings")
    op.drop_table("licence_substance_mappings")
    op.drop_table("controlled_substances")
    op.drop_index("ix_licences_expiry_date", table_name="licences")
    op.drop_index("ix_licences_holder", table_name="licences")
    op.drop_table("licences")
    op.drop_table("licence_types")
