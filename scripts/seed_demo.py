from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
import sys

from licencegate.core.config import get_settings
from licencegate.domain.compliance import (
    ControlledSubstance,
    Customer,
    HolderRef,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    THRESHOLD_MONTHLY_QUANTITY,
    Threshold,
)
from licencegate.persistence.db import SessionLocal
from licencegate.persistence.sql_store import SqlComplianceStore
from licencegate.persistence.store import KIND_CUSTOMER, KIND_LICENCE, KIND_SUBSTANCE


DEMO_MAPPED_FROM = date(2024, 1, 1)


def build_demo_licence_types() -> tuple[LicenceType, ...]:
    return (
        LicenceType(
            id="lt-opium-wholesale",
            name="Opium Act wholesale licence",
            permitted_activities=frozenset({"Possess", "Store", "Distribute", "Import", "Export"}),
        ),
        LicenceType(
            id="lt-pharmacy",
            name="Pharmacy Opium Act exemption",
            permitted_activities=frozenset({"Possess", "Store", "Distribute"}),
        ),
        LicenceType(
            id="lt-precursor",
            name="Precursor licence",
            permitted_activities=frozenset({"HandlePrecursors"}),
        ),
    )


def build_demo_substances() -> tuple[ControlledSubstance, ...]:
    return (
        ControlledSubstance(code="MORPH", name="Morphine", opium_act_list="ListI"),
        ControlledSubstance(code="FENT", name="Fentanyl", opium_act_list="ListI"),
        ControlledSubstance(code="CODE", name="Codeine", opium_act_list="ListII"),
        ControlledSubstance(code="EPHED", name="Ephedrine", precursor_category="Category1"),
    )


def build_demo_licences(company_holder_id: str) -> tuple[Licence, ...]:
    return (
        Licence(
            id="lic-wholesale-nl",
            licence_number="NL-OW-2024-001",
            licence_type_id="lt-opium-wholesale",
            holder=HolderRef(kind="company", id=company_holder_id),
            issuing_authority="Farmatec",
            issue_date=date(2024, 1, 1),
            expiry_date=date(2029, 12, 31),
            permitted_activities=frozenset({"Possess", "Store", "Distribute", "Import", "Export", "HandlePrecursors"}),
        ),
        Licence(
            id="lic-apotheek-linde",
            licence_number="NL-APO-2023-117",
            licence_type_id="lt-pharmacy",
            holder=HolderRef(kind="customer", id="cust-linde"),
            issuing_authority="CIBG",
            issue_date=date(2023, 6, 1),
            expiry_date=date(2027, 5, 31),
        ),
    )


def build_demo_customers() -> tuple[Customer, ...]:
    return (
        Customer(
            id="cust-linde",
            account="C001",
            data_area="nlpd",
            business_name="Apotheek De Linde",
            business_category="CommunityPharmacy",
        ),
    )


async def seed_demo() -> int:
    store = SqlComplianceStore(SessionLocal)
    company_holder_id = get_settings().company_holder_id
    if await store.load(KIND_CUSTOMER, "cust-linde") is not None:
        print("Demo reference data already seeded; skipping.")
        return 0

    for licence_type in build_demo_licence_types():
        await store.put_licence_type(licence_type)
    for substance in build_demo_substances():
        await store.insert(KIND_SUBSTANCE, substance)
    for customer in build_demo_customers():
        await store.insert(KIND_CUSTOMER, customer)
    licences = build_demo_licences(company_holder_id)
    for licence in licences:
        await store.insert(KIND_LICENCE, licence)

    company, pharmacy = licences
    for code in ("MORPH", "FENT", "CODE", "EPHED"):
        await store.put_mapping(
            LicenceSubstanceMapping(licence_id=company.id, substance_code=code, effective_date=DEMO_MAPPED_FROM)
        )
    for code in ("MORPH", "CODE"):
        await store.put_mapping(
            LicenceSubstanceMapping(
                licence_id=pharmacy.id,
                substance_code=code,
                effective_date=DEMO_MAPPED_FROM,
                expiry_date=pharmacy.expiry_date,
            )
        )
    await store.put_threshold(
        Threshold(
            id="thr-linde-morph",
            customer_id="cust-linde",
            substance_code="MORPH",
            kind=THRESHOLD_MONTHLY_QUANTITY,
            limit=Decimal("500"),
            window_days=30,
            unit="g",
        )
    )
    print(f"Seeded {len(licences)} licences for holder {company_holder_id} and customer C001/nlpd.")
    return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
