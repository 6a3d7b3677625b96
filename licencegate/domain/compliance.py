from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from licencegate.core.errors import StructuralValidationError


# Permitted activities carried by licences and licence types.
ACTIVITY_POSSESS = "Possess"
ACTIVITY_STORE = "Store"
ACTIVITY_DISTRIBUTE = "Distribute"
ACTIVITY_IMPORT = "Import"
ACTIVITY_EXPORT = "Export"
ACTIVITY_MANUFACTURE = "Manufacture"
ACTIVITY_HANDLE_PRECURSORS = "HandlePrecursors"
ALL_ACTIVITIES = frozenset(
    {
        ACTIVITY_POSSESS,
        ACTIVITY_STORE,
        ACTIVITY_DISTRIBUTE,
        ACTIVITY_IMPORT,
        ACTIVITY_EXPORT,
        ACTIVITY_MANUFACTURE,
        ACTIVITY_HANDLE_PRECURSORS,
    }
)

LICENCE_VALID = "Valid"
LICENCE_EXPIRED = "Expired"
LICENCE_SUSPENDED = "Suspended"
LICENCE_REVOKED = "Revoked"
LICENCE_STATUSES = frozenset({LICENCE_VALID, LICENCE_EXPIRED, LICENCE_SUSPENDED, LICENCE_REVOKED})

OPIUM_NONE = "None"
OPIUM_LIST_I = "ListI"
OPIUM_LIST_II = "ListII"
PRECURSOR_NONE = "None"
PRECURSOR_CATEGORY_1 = "Category1"
PRECURSOR_CATEGORY_2 = "Category2"
PRECURSOR_CATEGORY_3 = "Category3"

# Regulatory strictness, not declaration order: List I is stricter than List II.
OPIUM_SEVERITY = {OPIUM_NONE: 0, OPIUM_LIST_II: 1, OPIUM_LIST_I: 2}
PRECURSOR_SEVERITY = {
    PRECURSOR_NONE: 0,
    PRECURSOR_CATEGORY_3: 1,
    PRECURSOR_CATEGORY_2: 2,
    PRECURSOR_CATEGORY_1: 3,
}

TX_DOMESTIC = "Domestic"
TX_EU_CROSS_BORDER = "EUCrossBorder"
TX_NON_EU_INTERNATIONAL = "NonEUInternational"
TRANSACTION_TYPES = frozenset({TX_DOMESTIC, TX_EU_CROSS_BORDER, TX_NON_EU_INTERNATIONAL})

STATUS_PASS = "Pass"
STATUS_PENDING = "Pending"
STATUS_FAILED = "Failed"
STATUS_OVERRIDE_APPROVED = "OverrideApproved"
STATUS_REJECTED = "Rejected"

RECLASS_PENDING = "Pending"
RECLASS_PROCESSING = "Processing"
RECLASS_COMPLETED = "Completed"

APPROVAL_APPROVED = "Approved"
GDP_APPROVED = "Approved"
GDP_CONDITIONALLY_APPROVED = "ConditionallyApproved"
GDP_RELEVANT_CATEGORIES = frozenset(
    {"WholesalerEU", "WholesalerNonEU", "HospitalPharmacy", "CommunityPharmacy"}
)

THRESHOLD_MONTHLY_QUANTITY = "monthly_quantity"
THRESHOLD_ANNUAL_FREQUENCY = "annual_frequency"

OVERRIDE_REASON_CODES = frozenset(
    {"EmergencyMedicalSupply", "LicenceRenewalInProgress", "AuthorityPreApproval", "Other"}
)

# Machine-readable violation codes returned to calling systems.
CODE_LICENCE_EXPIRED = "LICENCE_EXPIRED"
CODE_LICENCE_MISSING = "LICENCE_MISSING"
CODE_LICENCE_SUSPENDED = "LICENCE_SUSPENDED"
CODE_LICENCE_REVOKED = "LICENCE_REVOKED"
CODE_SUBSTANCE_NOT_AUTHORIZED = "SUBSTANCE_NOT_AUTHORIZED"
CODE_THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"
CODE_CUSTOMER_SUSPENDED = "CUSTOMER_SUSPENDED"
CODE_CUSTOMER_NOT_APPROVED = "CUSTOMER_NOT_APPROVED"
CODE_GDP_QUALIFICATION_INVALID = "GDP_QUALIFICATION_INVALID"
CODE_REQUIRES_REQUALIFICATION = "REQUIRES_REQUALIFICATION"
CODE_EXPORT_PERMIT_REQUIRED = "EXPORT_PERMIT_REQUIRED"
CODE_IMPORT_PERMIT_REQUIRED = "IMPORT_PERMIT_REQUIRED"
CODE_COMPANY_LICENCE_MISSING = "COMPANY_LICENCE_MISSING"
CODE_COMPANY_LICENCE_EXPIRED = "COMPANY_LICENCE_EXPIRED"
CODE_CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
CODE_SUBSTANCE_NOT_FOUND = "SUBSTANCE_NOT_FOUND"
CODE_UNIT_MISMATCH = "UNIT_MISMATCH"

VIOLATION_TYPES = {
    CODE_LICENCE_EXPIRED: "ExpiredLicence",
    CODE_LICENCE_MISSING: "NoLicence",
    CODE_LICENCE_SUSPENDED: "LicenceSuspended",
    CODE_LICENCE_REVOKED: "LicenceRevoked",
    CODE_SUBSTANCE_NOT_AUTHORIZED: "SubstanceNotAuthorized",
    CODE_THRESHOLD_EXCEEDED: "ThresholdExceeded",
    CODE_CUSTOMER_SUSPENDED: "CustomerSuspended",
    CODE_CUSTOMER_NOT_APPROVED: "CustomerNotQualified",
    CODE_GDP_QUALIFICATION_INVALID: "CustomerNotQualified",
    CODE_REQUIRES_REQUALIFICATION: "RequiresReQualification",
    CODE_EXPORT_PERMIT_REQUIRED: "MissingPermit",
    CODE_IMPORT_PERMIT_REQUIRED: "MissingPermit",
    CODE_COMPANY_LICENCE_MISSING: "CompanyLicenceMissing",
    CODE_COMPANY_LICENCE_EXPIRED: "CompanyLicenceExpired",
    CODE_CUSTOMER_NOT_FOUND: "CustomerNotFound",
    CODE_SUBSTANCE_NOT_FOUND: "SubstanceNotFound",
    CODE_UNIT_MISMATCH: "UnitMismatch",
}
STRUCTURAL_CODES = frozenset({CODE_CUSTOMER_NOT_FOUND, CODE_SUBSTANCE_NOT_FOUND, CODE_UNIT_MISMATCH})
ADVISORY_CODES = frozenset({CODE_THRESHOLD_EXCEEDED})

HolderKind = Literal["company", "customer"]


@dataclass(frozen=True)
class HolderRef:
    """Tagged reference to a licence holder; resolved by dispatching on ``kind``."""

    kind: HolderKind
    id: str

    def __post_init__(self) -> None:
        if self.kind not in ("company", "customer"):
            raise StructuralValidationError(f"unknown holder kind '{self.kind}'")


@dataclass(frozen=True)
class TargetRef:
    # Tagged pointer used by alerts and audit events (licence, customer, transaction, ...).
    kind: str
    id: str


@dataclass(frozen=True)
class LicenceType:
    id: str
    name: str
    permitted_activities: frozenset[str]
    is_active: bool = True


@dataclass(frozen=True)
class Licence:
    id: str
    licence_number: str
    licence_type_id: str
    holder: HolderRef
    issuing_authority: str
    issue_date: date
    expiry_date: date
    status: str = LICENCE_VALID
    permitted_activities: frozenset[str] = frozenset()
    grace_period_end: date | None = None

    def effective_status(self, today: date) -> str:
        """Status as of ``today``.

        Expiry is derived on read: a licence past its expiry date reports
        ``Expired`` unless a grace period covering ``today`` is recorded. Any
        other status (suspension, revocation) is only ever set explicitly.
        """
        if self.status != LICENCE_VALID:
            return self.status
        if self.expiry_date < today:
            if self.grace_period_end is not None and self.grace_period_end >= today:
                return LICENCE_VALID
            return LICENCE_EXPIRED
        return LICENCE_VALID

    def is_valid_on(self, today: date) -> bool:
        return self.effective_status(today) == LICENCE_VALID


@dataclass(frozen=True)
class ControlledSubstance:
    code: str
    name: str
    opium_act_list: str = OPIUM_NONE
    precursor_category: str = PRECURSOR_NONE
    is_active: bool = True
    classification_effective_date: date | None = None

    def __post_init__(self) -> None:
        if self.opium_act_list not in OPIUM_SEVERITY:
            raise StructuralValidationError(f"unknown opium act list '{self.opium_act_list}'")
        if self.precursor_category not in PRECURSOR_SEVERITY:
            raise StructuralValidationError(f"unknown precursor category '{self.precursor_category}'")
        if self.opium_act_list == OPIUM_NONE and self.precursor_category == PRECURSOR_NONE:
            raise StructuralValidationError(
                f"substance '{self.code}' must carry an opium act list or a precursor category"
            )


@dataclass(frozen=True)
class LicenceSubstanceMapping:
    licence_id: str
    substance_code: str
    effective_date: date
    expiry_date: date | None = None

    def covers(self, on_date: date) -> bool:
        if self.effective_date > on_date:
            return False
        return self.expiry_date is None or on_date <= self.expiry_date

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.licence_id, self.substance_code, self.effective_date)


def validate_mapping(mapping: LicenceSubstanceMapping, licence: Licence) -> None:
    # A mapping may never outlive the licence that owns it.
    if mapping.expiry_date is not None and mapping.expiry_date > licence.expiry_date:
        raise StructuralValidationError(
            f"mapping for '{mapping.substance_code}' expires after licence '{licence.licence_number}'"
        )
    if mapping.licence_id != licence.id:
        raise StructuralValidationError("mapping does not belong to the licence")


@dataclass(frozen=True)
class Customer:
    id: str
    account: str
    data_area: str
    business_name: str
    business_category: str
    approval_status: str = APPROVAL_APPROVED
    is_suspended: bool = False
    suspension_reason: str | None = None
    gdp_qualification_status: str = GDP_APPROVED
    reverification_due: date | None = None

    @property
    def holder(self) -> HolderRef:
        return HolderRef(kind="customer", id=self.id)


@dataclass(frozen=True)
class Threshold:
    id: str
    customer_id: str
    substance_code: str
    kind: str
    limit: Decimal
    window_days: int
    unit: str | None = None


@dataclass(frozen=True)
class TransactionLine:
    substance_code: str
    quantity: Decimal
    unit: str


@dataclass(frozen=True)
class TransactionRequest:
    external_id: str
    customer_account: str
    customer_data_area: str
    transaction_type: str
    transaction_date: date
    lines: tuple[TransactionLine, ...]
    destination_country: str | None = None
    calling_system: str | None = None

    @property
    def is_cross_border(self) -> bool:
        return self.transaction_type in (TX_EU_CROSS_BORDER, TX_NON_EU_INTERNATIONAL)


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    substance_code: str | None = None
    licence_type_required: str | None = None
    line_number: int | None = None

    @property
    def violation_type(self) -> str:
        return VIOLATION_TYPES.get(self.code, "Unknown")

    @property
    def blocking(self) -> bool:
        return self.code not in ADVISORY_CODES

    @property
    def structural(self) -> bool:
        return self.code in STRUCTURAL_CODES

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation_type": self.violation_type,
            "code": self.code,
            "substance_code": self.substance_code,
            "licence_type_required": self.licence_type_required,
            "line_number": self.line_number,
            "message": self.message,
            "blocking": self.blocking,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Violation:
        return cls(
            code=str(raw["code"]),
            message=str(raw.get("message") or ""),
            substance_code=raw.get("substance_code"),
            licence_type_required=raw.get("licence_type_required"),
            line_number=raw.get("line_number"),
        )


@dataclass(frozen=True)
class Verdict:
    status: str
    violations: tuple[Violation, ...] = ()

    @property
    def codes(self) -> list[str]:
        return sorted({violation.code for violation in self.violations})


@dataclass(frozen=True)
class Transaction:
    id: str
    external_id: str
    customer_id: str | None
    customer_account: str
    customer_data_area: str
    transaction_type: str
    transaction_date: date
    lines: tuple[TransactionLine, ...]
    status: str
    violations: tuple[Violation, ...] = ()
    destination_country: str | None = None
    calling_system: str | None = None
    approver_id: str | None = None
    reason_code: str | None = None
    justification: str | None = None
    authority_ref: str | None = None
    decided_at: datetime | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status == STATUS_OVERRIDE_APPROVED:
            if not self.approver_id or not self.reason_code:
                raise StructuralValidationError("override approval requires an approver and reason code")
            if not self.justification or len(self.justification.strip()) < 20:
                raise StructuralValidationError("override approval requires a justification of 20+ characters")


@dataclass(frozen=True)
class SubstanceReclassification:
    id: str
    substance_code: str
    previous_opium_act_list: str
    new_opium_act_list: str
    previous_precursor_category: str
    new_precursor_category: str
    effective_date: date
    regulatory_reference: str
    regulatory_authority: str
    status: str = RECLASS_PENDING
    affected_customer_count: int = 0
    flagged_customer_count: int = 0
    processed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_opium_upgrade(self) -> bool:
        return OPIUM_SEVERITY[self.new_opium_act_list] > OPIUM_SEVERITY[self.previous_opium_act_list]

    @property
    def is_precursor_upgrade(self) -> bool:
        return PRECURSOR_SEVERITY[self.new_precursor_category] > PRECURSOR_SEVERITY[self.previous_precursor_category]

    @property
    def is_upgrade(self) -> bool:
        return self.is_opium_upgrade or self.is_precursor_upgrade


@dataclass(frozen=True)
class CustomerImpact:
    id: str
    reclassification_id: str
    customer_id: str
    substance_code: str
    has_sufficient_licence: bool
    requires_requalification: bool
    gap_summary: str | None = None
    relevant_licence_ids: tuple[str, ...] = ()
    requalified_at: datetime | None = None


@dataclass(frozen=True)
class Classification:
    substance_code: str
    as_of: date
    opium_act_list: str
    precursor_category: str
    source_reclassification_id: str | None = None


@dataclass(frozen=True)
class WebhookSubscription:
    id: str
    callback_url: str
    event_types: frozenset[str]
    secret_sealed: str
    is_active: bool = True
    is_healthy: bool = True
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    description: str | None = None

    def matches(self, event_type: str) -> bool:
        return "*" in self.event_types or event_type in self.event_types


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    event_type: str
    entity_type: str
    entity_id: str
    new_status: str | None
    payload: dict[str, Any]
    occurred_at: datetime


@dataclass(frozen=True)
class WebhookDelivery:
    id: str
    subscription_id: str
    event_id: str
    status: str
    attempt_count: int
    next_attempt_at: datetime
    last_error: str | None = None
    delivered_at: datetime | None = None


@dataclass(frozen=True)
class Alert:
    id: str
    alert_type: str
    severity: str
    target: TargetRef
    audience: str
    message: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    acknowledged_at: datetime | None = None


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    actor_id: str | None
    target: TargetRef
    outcome: str
    occurred_at: datetime
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

# Webhook event types published to subscribers.
EVENT_COMPLIANCE_STATUS_CHANGED = "ComplianceStatusChanged"
EVENT_ORDER_APPROVED = "OrderApproved"
EVENT_ORDER_REJECTED = "OrderRejected"
EVENT_OVERRIDE_APPROVED = "OverrideApproved"
EVENT_LICENCE_EXPIRING = "LicenceExpiring"
EVENT_RECLASSIFICATION_PROCESSED = "ReclassificationProcessed"
WEBHOOK_EVENT_TYPES = frozenset(
    {
        EVENT_COMPLIANCE_STATUS_CHANGED,
        EVENT_ORDER_APPROVED,
        EVENT_ORDER_REJECTED,
        EVENT_OVERRIDE_APPROVED,
        EVENT_LICENCE_EXPIRING,
        EVENT_RECLASSIFICATION_PROCESSED,
    }
)

DELIVERY_QUEUED = "queued"
DELIVERY_DELIVERING = "delivering"
DELIVERY_RETRYING = "retrying"
DELIVERY_DELIVERED = "delivered"
DELIVERY_EXHAUSTED = "exhausted"
DELIVERY_CANCELLED = "cancelled"
# In-flight rows carry a lease in next_attempt_at and become due again once it lapses.
DELIVERY_READY_STATUSES = (DELIVERY_QUEUED, DELIVERY_RETRYING, DELIVERY_DELIVERING)

AUDIENCE_SYSTEM_ADMIN = "SystemAdmin"
AUDIENCE_COMPLIANCE_TEAM = "ComplianceTeam"
