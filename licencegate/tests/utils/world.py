from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from licencegate.domain.compliance import (
    ControlledSubstance,
    Customer,
    HolderRef,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    TX_DOMESTIC,
    TransactionLine,
    TransactionRequest,
)
from licencegate.persistence.store import KIND_CUSTOMER, KIND_LICENCE, KIND_SUBSTANCE, InMemoryComplianceStore


TODAY = date(2026, 3, 1)
FAR_EXPIRY = date(2030, 12, 31)
MAPPED_FROM = date(2020, 1, 1)


@dataclass
class RecordingEnqueue:
    # Stand-in for the ARQ enqueue call; records what would have been queued.
    calls: list[tuple[str, int]] = field(default_factory=list)
    fail: bool = False

    async def __call__(self, *, delivery_id: str, defer_s: int = 0) -> bool:
        self.calls.append((delivery_id, defer_s))
        return not self.fail


@dataclass
class FakeClock:
    now: datetime = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class SlowStore(InMemoryComplianceStore):
    # Customer lookup stalls like an overloaded database.
    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self.delay_s = delay_s

    async def get_customer_by_account(self, account: str, data_area: str):
        await asyncio.sleep(self.delay_s)
        return await super().get_customer_by_account(account, data_area)


async def seed_world(store: InMemoryComplianceStore) -> None:
    """Company and one community pharmacy licensed for morphine and codeine."""
    await store.put_licence_type(
        LicenceType(id="lt-opium", name="Opium Act licence", permitted_activities=frozenset({"Possess", "Store", "Distribute"}))
    )
    await store.put_licence_type(
        LicenceType(id="lt-precursor", name="Precursor licence", permitted_activities=frozenset({"HandlePrecursors"}))
    )
    await store.put_licence_type(
        LicenceType(id="lt-import", name="Import permit", permitted_activities=frozenset({"Import"}))
    )
    for substance in (
        ControlledSubstance(code="MORPH", name="Morphine", opium_act_list="ListI"),
        ControlledSubstance(code="CODE", name="Codeine", opium_act_list="ListII"),
        ControlledSubstance(code="EPHED", name="Ephedrine", precursor_category="Category1"),
    ):
        await store.insert(KIND_SUBSTANCE, substance)

    company = Licence(
        id="lic-company",
        licence_number="NL-WH-0001",
        licence_type_id="lt-opium",
        holder=HolderRef(kind="company", id="company"),
        issuing_authority="Farmatec",
        issue_date=date(2019, 1, 1),
        expiry_date=FAR_EXPIRY,
        permitted_activities=frozenset({"Possess", "Store", "Distribute", "Export", "HandlePrecursors"}),
    )
    await store.insert(KIND_LICENCE, company)
    for code in ("MORPH", "CODE", "EPHED"):
        await store.put_mapping(
            LicenceSubstanceMapping(licence_id=company.id, substance_code=code, effective_date=MAPPED_FROM)
        )

    await store.insert(
        KIND_CUSTOMER,
        Customer(
            id="cust-1",
            account="C001",
            data_area="nlpd",
            business_name="Apotheek De Linde",
            business_category="CommunityPharmacy",
        ),
    )
    await add_customer_licence(store, "lic-cust-1", "cust-1", ("MORPH", "CODE"))


async def add_customer_licence(
    store: InMemoryComplianceStore,
    licence_id: str,
    customer_id: str,
    codes: tuple[str, ...],
    *,
    expiry_date: date = FAR_EXPIRY,
    licence_type_id: str = "lt-opium",
    activities: frozenset[str] = frozenset(),
    grace_period_end: date | None = None,
) -> Licence:
    licence = Licence(
        id=licence_id,
        licence_number=f"NL-{licence_id.upper()}",
        licence_type_id=licence_type_id,
        holder=HolderRef(kind="customer", id=customer_id),
        issuing_authority="Farmatec",
        issue_date=date(2020, 1, 1),
        expiry_date=expiry_date,
        permitted_activities=activities,
        grace_period_end=grace_period_end,
    )
    await store.insert(KIND_LICENCE, licence)
    for code in codes:
        await store.put_mapping(
            LicenceSubstanceMapping(
                licence_id=licence_id,
                substance_code=code,
                effective_date=MAPPED_FROM,
                expiry_date=expiry_date,
            )
        )
    return licence


def order(*lines: tuple[str, str, str], account: str = "C001", external_id: str = "SO-1000", **extra) -> TransactionRequest:
    return TransactionRequest(
        external_id=external_id,
        customer_account=account,
        customer_data_area="nlpd",
        transaction_type=extra.pop("transaction_type", TX_DOMESTIC),
        transaction_date=extra.pop("transaction_date", TODAY),
        lines=tuple(
            TransactionLine(substance_code=code, quantity=Decimal(quantity), unit=unit) for code, quantity, unit in lines
        ),
        **extra,
    )
