from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from licencegate.domain.compliance import (
    ACTIVITY_DISTRIBUTE,
    ACTIVITY_EXPORT,
    ACTIVITY_IMPORT,
    APPROVAL_APPROVED,
    CODE_COMPANY_LICENCE_EXPIRED,
    CODE_COMPANY_LICENCE_MISSING,
    CODE_CUSTOMER_NOT_APPROVED,
    CODE_CUSTOMER_NOT_FOUND,
    CODE_CUSTOMER_SUSPENDED,
    CODE_EXPORT_PERMIT_REQUIRED,
    CODE_GDP_QUALIFICATION_INVALID,
    CODE_IMPORT_PERMIT_REQUIRED,
    CODE_LICENCE_EXPIRED,
    CODE_LICENCE_MISSING,
    CODE_LICENCE_REVOKED,
    CODE_LICENCE_SUSPENDED,
    CODE_REQUIRES_REQUALIFICATION,
    CODE_SUBSTANCE_NOT_AUTHORIZED,
    CODE_SUBSTANCE_NOT_FOUND,
    CODE_THRESHOLD_EXCEEDED,
    CODE_UNIT_MISMATCH,
    ControlledSubstance,
    Customer,
    GDP_APPROVED,
    GDP_CONDITIONALLY_APPROVED,
    GDP_RELEVANT_CATEGORIES,
    LICENCE_EXPIRED,
    LICENCE_REVOKED,
    LICENCE_SUSPENDED,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    STATUS_FAILED,
    STATUS_PASS,
    STATUS_PENDING,
    THRESHOLD_ANNUAL_FREQUENCY,
    THRESHOLD_MONTHLY_QUANTITY,
    Threshold,
    TransactionLine,
    TransactionRequest,
    Verdict,
    Violation,
)


# Outcomes of a coverage check for one (holder, substance, activity).
COVERED = "covered"
NOT_MAPPED = "not_mapped"
NOT_PERMITTED = "not_permitted"

# When no mapped licence is valid, report the most severe stored reason first.
_INVALID_STATUS_ORDER = (LICENCE_REVOKED, LICENCE_SUSPENDED, LICENCE_EXPIRED)
_INVALID_STATUS_CODES = {
    LICENCE_REVOKED: CODE_LICENCE_REVOKED,
    LICENCE_SUSPENDED: CODE_LICENCE_SUSPENDED,
    LICENCE_EXPIRED: CODE_LICENCE_EXPIRED,
}


@dataclass(frozen=True)
class EvaluationSnapshot:
    """Reference data read for one evaluation; the evaluator never writes back."""

    today: date
    customer: Customer | None
    customer_licences: tuple[Licence, ...] = ()
    company_licences: tuple[Licence, ...] = ()
    mappings: tuple[LicenceSubstanceMapping, ...] = ()
    licence_types: dict[str, LicenceType] = field(default_factory=dict)
    substances: dict[str, ControlledSubstance] = field(default_factory=dict)
    thresholds: tuple[Threshold, ...] = ()
    # Prior usage per threshold id: summed quantity or transaction count inside its window.
    threshold_usage: dict[str, Decimal] = field(default_factory=dict)
    # Substance codes held by an open reclassification impact for this customer.
    open_holds: frozenset[str] = frozenset()


def licence_activities(licence: Licence, licence_types: dict[str, LicenceType]) -> frozenset[str]:
    # Licences without an explicit activity set inherit their type's activities.
    if licence.permitted_activities:
        return licence.permitted_activities
    licence_type = licence_types.get(licence.licence_type_id)
    return licence_type.permitted_activities if licence_type is not None else frozenset()


def _mapping_in_scope(mapping: LicenceSubstanceMapping, licence: Licence, on_date: date) -> bool:
    if mapping.covers(on_date):
        return True
    # A mapping ending with its licence follows the licence, so expiry and grace are judged on the licence.
    return (
        mapping.effective_date <= on_date
        and mapping.expiry_date is not None
        and mapping.expiry_date >= licence.expiry_date
    )


def check_coverage(
    licences: tuple[Licence, ...],
    mappings: tuple[LicenceSubstanceMapping, ...],
    licence_types: dict[str, LicenceType],
    *,
    substance_code: str,
    activity: str,
    on_date: date,
    today: date,
) -> str:
    """Return ``COVERED``, ``NOT_MAPPED``, ``NOT_PERMITTED`` or the invalid licence status.

    The covering licence is found first and its status reported afterwards, so
    a lapsed licence reads as expired rather than missing.
    """
    by_id = {licence.id: licence for licence in licences}
    mapped_ids = {
        mapping.licence_id
        for mapping in mappings
        if mapping.substance_code == substance_code
        and mapping.licence_id in by_id
        and _mapping_in_scope(mapping, by_id[mapping.licence_id], on_date)
    }
    mapped = [licence for licence in licences if licence.id in mapped_ids]
    if not mapped:
        return NOT_MAPPED
    valid = [licence for licence in mapped if licence.is_valid_on(today)]
    if not valid:
        statuses = {licence.effective_status(today) for licence in mapped}
        for status in _INVALID_STATUS_ORDER:
            if status in statuses:
                return status
        return LICENCE_EXPIRED
    # Any one valid licence permitting the activity suffices.
    if any(activity in licence_activities(licence, licence_types) for licence in valid):
        return COVERED
    return NOT_PERMITTED


def _customer_checks(customer: Customer) -> list[Violation]:
    violations: list[Violation] = []
    if customer.approval_status != APPROVAL_APPROVED:
        violations.append(
            Violation(
                code=CODE_CUSTOMER_NOT_APPROVED,
                message=f"Customer {customer.account} is not approved (status: {customer.approval_status}).",
            )
        )
    if customer.business_category in GDP_RELEVANT_CATEGORIES and customer.gdp_qualification_status not in (
        GDP_APPROVED,
        GDP_CONDITIONALLY_APPROVED,
    ):
        violations.append(
            Violation(
                code=CODE_GDP_QUALIFICATION_INVALID,
                message=(
                    f"Customer {customer.account} requires GDP qualification for category "
                    f"{customer.business_category} (status: {customer.gdp_qualification_status})."
                ),
            )
        )
    return violations


def _customer_licence_violation(outcome: str, code: str, line_number: int) -> Violation | None:
    if outcome == COVERED:
        return None
    if outcome == NOT_MAPPED:
        return Violation(
            code=CODE_LICENCE_MISSING,
            message=f"Customer holds no licence covering substance {code}.",
            substance_code=code,
            licence_type_required=ACTIVITY_DISTRIBUTE,
            line_number=line_number,
        )
    if outcome == NOT_PERMITTED:
        return Violation(
            code=CODE_SUBSTANCE_NOT_AUTHORIZED,
            message=f"No valid customer licence permits {ACTIVITY_DISTRIBUTE} for substance {code}.",
            substance_code=code,
            licence_type_required=ACTIVITY_DISTRIBUTE,
            line_number=line_number,
        )
    return Violation(
        code=_INVALID_STATUS_CODES[outcome],
        message=f"Customer licence covering substance {code} is {outcome}.",
        substance_code=code,
        licence_type_required=ACTIVITY_DISTRIBUTE,
        line_number=line_number,
    )


def _unit_mismatches(lines: tuple[TransactionLine, ...]) -> dict[int, Violation]:
    first_unit: dict[str, str] = {}
    found: dict[int, Violation] = {}
    for index, line in enumerate(lines, start=1):
        unit = first_unit.setdefault(line.substance_code, line.unit)
        if unit != line.unit:
            found[index] = Violation(
                code=CODE_UNIT_MISMATCH,
                message=f"Line {index} uses unit {line.unit} but substance {line.substance_code} was given in {unit}.",
                substance_code=line.substance_code,
                line_number=index,
            )
    return found


def _threshold_violations(request: TransactionRequest, snapshot: EvaluationSnapshot) -> list[Violation]:
    totals: dict[str, Decimal] = defaultdict(Decimal)
    first_line: dict[str, int] = {}
    units: dict[str, set[str]] = defaultdict(set)
    for index, line in enumerate(request.lines, start=1):
        totals[line.substance_code] += line.quantity
        first_line.setdefault(line.substance_code, index)
        units[line.substance_code].add(line.unit)

    violations: list[Violation] = []
    for threshold in sorted(snapshot.thresholds, key=lambda item: (item.substance_code, item.kind, item.id)):
        code = threshold.substance_code
        if code not in totals:
            continue
        prior = snapshot.threshold_usage.get(threshold.id, Decimal("0"))
        if threshold.kind == THRESHOLD_MONTHLY_QUANTITY:
            if threshold.unit is not None and units[code] != {threshold.unit}:
                violations.append(
                    Violation(
                        code=CODE_UNIT_MISMATCH,
                        message=f"Threshold for {code} is expressed in {threshold.unit}.",
                        substance_code=code,
                        line_number=first_line[code],
                    )
                )
                continue
            observed = prior + totals[code]
            label = f"{observed} {threshold.unit or ''}".strip()
        elif threshold.kind == THRESHOLD_ANNUAL_FREQUENCY:
            observed = prior + 1
            label = f"{observed} transactions"
        else:
            continue
        if observed > threshold.limit:
            violations.append(
                Violation(
                    code=CODE_THRESHOLD_EXCEEDED,
                    message=(
                        f"{threshold.kind} threshold for {code} exceeded: {label} "
                        f"over {threshold.window_days} days (limit {threshold.limit})."
                    ),
                    substance_code=code,
                    line_number=first_line[code],
                )
            )
    return violations


def aggregate(violations: list[Violation]) -> str:
    if any(violation.structural for violation in violations):
        return STATUS_FAILED
    if any(violation.blocking for violation in violations):
        return STATUS_PENDING
    return STATUS_PASS


def evaluate(request: TransactionRequest, snapshot: EvaluationSnapshot) -> Verdict:
    """Evaluate one validation request against a read-only snapshot.

    Every line is checked and every violation reported; the only short circuit
    is an unknown customer, which fails the whole request.
    """
    customer = snapshot.customer
    if customer is None:
        return Verdict(
            status=STATUS_FAILED,
            violations=(
                Violation(
                    code=CODE_CUSTOMER_NOT_FOUND,
                    message=(
                        f"Customer {request.customer_account} in data area "
                        f"{request.customer_data_area} is not known."
                    ),
                ),
            ),
        )

    violations = _customer_checks(customer)
    mismatched = _unit_mismatches(request.lines)

    def coverage(licences: tuple[Licence, ...], code: str, activity: str) -> str:
        return check_coverage(
            licences,
            snapshot.mappings,
            snapshot.licence_types,
            substance_code=code,
            activity=activity,
            on_date=request.transaction_date,
            today=snapshot.today,
        )

    for line_number, line in enumerate(request.lines, start=1):
        code = line.substance_code
        # Suspension flags every line, including lines that fail structurally.
        if customer.is_suspended:
            reason = f" ({customer.suspension_reason})" if customer.suspension_reason else ""
            violations.append(
                Violation(
                    code=CODE_CUSTOMER_SUSPENDED,
                    message=f"Customer {customer.account} is suspended{reason}.",
                    substance_code=code,
                    line_number=line_number,
                )
            )
        substance = snapshot.substances.get(code)
        if substance is None:
            violations.append(
                Violation(
                    code=CODE_SUBSTANCE_NOT_FOUND,
                    message=f"Substance {code} is not a known controlled substance.",
                    substance_code=code,
                    line_number=line_number,
                )
            )
            continue
        if line_number in mismatched:
            violations.append(mismatched[line_number])

        if not substance.is_active:
            violations.append(
                Violation(
                    code=CODE_SUBSTANCE_NOT_AUTHORIZED,
                    message=f"Substance {code} is inactive and cannot be traded.",
                    substance_code=code,
                    line_number=line_number,
                )
            )

        found = _customer_licence_violation(
            coverage(snapshot.customer_licences, code, ACTIVITY_DISTRIBUTE), code, line_number
        )
        if found is not None:
            violations.append(found)

        if request.is_cross_border:
            if coverage(snapshot.company_licences, code, ACTIVITY_EXPORT) != COVERED:
                violations.append(
                    Violation(
                        code=CODE_EXPORT_PERMIT_REQUIRED,
                        message=f"No valid company licence permits {ACTIVITY_EXPORT} of substance {code}.",
                        substance_code=code,
                        licence_type_required=ACTIVITY_EXPORT,
                        line_number=line_number,
                    )
                )
            if coverage(snapshot.customer_licences, code, ACTIVITY_IMPORT) != COVERED:
                destination = request.destination_country or "the destination"
                violations.append(
                    Violation(
                        code=CODE_IMPORT_PERMIT_REQUIRED,
                        message=f"No valid licence permits {ACTIVITY_IMPORT} of substance {code} into {destination}.",
                        substance_code=code,
                        licence_type_required=ACTIVITY_IMPORT,
                        line_number=line_number,
                    )
                )

        company_outcome = coverage(snapshot.company_licences, code, ACTIVITY_DISTRIBUTE)
        if company_outcome in (NOT_MAPPED, NOT_PERMITTED):
            violations.append(
                Violation(
                    code=CODE_COMPANY_LICENCE_MISSING,
                    message=f"Company holds no valid licence permitting {ACTIVITY_DISTRIBUTE} of substance {code}.",
                    substance_code=code,
                    licence_type_required=ACTIVITY_DISTRIBUTE,
                    line_number=line_number,
                )
            )
        elif company_outcome != COVERED:
            violations.append(
                Violation(
                    code=CODE_COMPANY_LICENCE_EXPIRED,
                    message=f"Company licence covering substance {code} is {company_outcome}.",
                    substance_code=code,
                    licence_type_required=ACTIVITY_DISTRIBUTE,
                    line_number=line_number,
                )
            )

        if code in snapshot.open_holds:
            violations.append(
                Violation(
                    code=CODE_REQUIRES_REQUALIFICATION,
                    message=(
                        f"Substance {code} was reclassified and customer {customer.account} "
                        "must be re-qualified before trading it."
                    ),
                    substance_code=code,
                    line_number=line_number,
                )
            )

    violations.extend(_threshold_violations(request, snapshot))
    return Verdict(status=aggregate(violations), violations=tuple(violations))
