from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class LicenceTypeRow(Base):
    __tablename__ = "licence_types"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    permitted_activities: Mapped[list[str]] = mapped_column(JSONB, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class LicenceRow(Base):
    __tablename__ = "licences"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    licence_number: Mapped[str] = mapped_column(String, unique=True)
    licence_type_id: Mapped[str] = mapped_column(String, ForeignKey("licence_types.id"))
    # Tagged holder reference: "company" or "customer" plus the holder id.
    holder_kind: Mapped[str] = mapped_column(String)
    holder_id: Mapped[str] = mapped_column(String)
    issuing_authority: Mapped[str] = mapped_column(String)
    issue_date: Mapped[date] = mapped_column(Date)
    expiry_date: Mapped[date] = mapped_column(Date, index=True)
    grace_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Stored status only; expiry is derived on read.
    status: Mapped[str] = mapped_column(String, default="Valid")
    permitted_activities: Mapped[list[str]] = mapped_column(JSONB, default=list)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (Index("ix_licences_holder", "holder_kind", "holder_id"),)


class ControlledSubstanceRow(Base):
    __tablename__ = "controlled_substances"

    code: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    opium_act_list: Mapped[str] = mapped_column(String, default="None")
    precursor_category: Mapped[str] = mapped_column(String, default="None")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    classification_effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class LicenceSubstanceMappingRow(Base):
    __tablename__ = "licence_substance_mappings"

    # (licence, substance, effective_date) is unique so historical scope changes coexist.
    licence_id: Mapped[str] = mapped_column(String, ForeignKey("licences.id"), primary_key=True)
    substance_code: Mapped[str] = mapped_column(
        String, ForeignKey("controlled_substances.code"), primary_key=True, index=True
    )
    effective_date: Mapped[date] = mapped_column(Date, primary_key=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account: Mapped[str] = mapped_column(String)
    data_area: Mapped[str] = mapped_column(String)
    business_name: Mapped[str] = mapped_column(String)
    business_category: Mapped[str] = mapped_column(String)
    approval_status: Mapped[str] = mapped_column(String)
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gdp_qualification_status: Mapped[str] = mapped_column(String)
    reverification_due: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (UniqueConstraint("account", "data_area", name="uq_customers_account_data_area"),)


class ThresholdRow(Base):
    __tablename__ = "thresholds"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    customer_id: Mapped[str] = mapped_column(String, ForeignKey("customers.id"), index=True)
    substance_code: Mapped[str] = mapped_column(String, ForeignKey("controlled_substances.code"))
    kind: Mapped[str] = mapped_column(String)
    limit: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    window_days: Mapped[int] = mapped_column(Integer)
    unit: Mapped[str | None] = mapped_column(String, nullable=True)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    external_id: Mapped[str] = mapped_column(String, index=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_account: Mapped[str] = mapped_column(String)
    customer_data_area: Mapped[str] = mapped_column(String)
    transaction_type: Mapped[str] = mapped_column(String)
    transaction_date: Mapped[date] = mapped_column(Date)
    destination_country: Mapped[str | None] = mapped_column(String, nullable=True)
    calling_system: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    lines_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list)
    violations_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list)
    approver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason_code: Mapped[str | None] = mapped_column(String, nullable=True)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    authority_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    version: Mapped[int] = mapped_column(Integer, default=1)


class TransactionLineRow(Base):
    __tablename__ = "transaction_lines"

    # Denormalized line rows back threshold aggregation queries.
    transaction_id: Mapped[str] = mapped_column(String, ForeignKey("transactions.id"), primary_key=True)
    line_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    substance_code: Mapped[str] = mapped_column(String)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    unit: Mapped[str] = mapped_column(String)

    __table_args__ = (Index("ix_transaction_lines_substance", "substance_code"),)


class SubstanceReclassificationRow(Base):
    __tablename__ = "substance_reclassifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    substance_code: Mapped[str] = mapped_column(String, ForeignKey("controlled_substances.code"), index=True)
    previous_opium_act_list: Mapped[str] = mapped_column(String)
    new_opium_act_list: Mapped[str] = mapped_column(String)
    previous_precursor_category: Mapped[str] = mapped_column(String)
    new_precursor_category: Mapped[str] = mapped_column(String)
    effective_date: Mapped[date] = mapped_column(Date)
    regulatory_reference: Mapped[str] = mapped_column(String)
    regulatory_authority: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    affected_customer_count: Mapped[int] = mapped_column(Integer, default=0)
    flagged_customer_count: Mapped[int] = mapped_column(Integer, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    version: Mapped[int] = mapped_column(Integer, default=1)


class CustomerImpactRow(Base):
    __tablename__ = "customer_impacts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    reclassification_id: Mapped[str] = mapped_column(
        String, ForeignKey("substance_reclassifications.id"), index=True
    )
    customer_id: Mapped[str] = mapped_column(String, index=True)
    substance_code: Mapped[str] = mapped_column(String)
    has_sufficient_licence: Mapped[bool] = mapped_column(Boolean)
    requires_requalification: Mapped[bool] = mapped_column(Boolean)
    gap_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    relevant_licence_ids: Mapped[list[str]] = mapped_column(JSONB, default=list)
    requalified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class WebhookSubscriptionRow(Base):
    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    callback_url: Mapped[str] = mapped_column(Text)
    event_types: Mapped[list[str]] = mapped_column(JSONB, default=list)
    # Fernet-sealed shared secret; plaintext is never persisted.
    secret_sealed: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_healthy: Mapped[bool] = mapped_column(Boolean, default=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    version: Mapped[int] = mapped_column(Integer, default=1)


class WebhookEventRow(Base):
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class WebhookDeliveryRow(Base):
    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String, ForeignKey("webhook_subscriptions.id"))
    event_id: Mapped[str] = mapped_column(String, ForeignKey("webhook_events.id"))
    status: Mapped[str] = mapped_column(String)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_webhook_deliveries_subscription_event"),
        Index("ix_webhook_deliveries_due", "status", "next_attempt_at"),
    )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    alert_type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String)
    target_kind: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    audience: Mapped[str] = mapped_column(String, index=True)
    message: Mapped[str] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_alerts_target", "target_kind", "target_id"),)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_kind: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    after_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    # Keep metadata sanitized and JSONB for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_audit_events_target", "target_kind", "target_id"),)
