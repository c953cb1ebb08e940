from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from estimate_acts.database import Base, TenantSession, enable_sqlite_savepoints
from estimate_acts.orm_models import EstimateItemORM, EstimateORM, ProjectORM, WorkORM
from estimate_acts.tenant_scoping import setup_tenant_events

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"


def _make_session_factory():
    engine = create_engine("sqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    TestingSession = type("TestingSession", (TenantSession,), {})
    setup_tenant_events(TestingSession)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        future=True,
        class_=TestingSession,
    )


@pytest.fixture()
def session():
    factory = _make_session_factory()
    with factory() as session:
        session.info["tenant_id"] = TENANT_ID
        yield session


def add_estimate(session, *, tenant_id: str = TENANT_ID, suffix: str = "1", line_count: int = 0):
    """Project with one estimate; ``line_count`` adds extra uniform lines after the three base ones."""
    project = ProjectORM(
        id=f"proj-{suffix}",
        tenant_id=tenant_id,
        name="ЖК Северный",
        object_name="Корпус 1",
        address="г. Казань, ул. Новая, 5",
        client="ООО «Заказчик»",
        contractor="ООО «Подрядчик»",
        contract_number="15/24",
    )
    estimate = EstimateORM(id=f"est-{suffix}", tenant_id=tenant_id, project=project, name="Смета на общестроительные работы")
    work = WorkORM(id=f"work-{suffix}", name="Разработка грунта", unit="м3", base_price=Decimal("80.00"))
    items = [
        EstimateItemORM(
            id=f"item-{suffix}-1",
            tenant_id=tenant_id,
            estimate=estimate,
            work=work,
            code="01-01-001",
            name="Разработка грунта экскаватором",
            unit="м3",
            quantity=Decimal("100"),
            unit_price=Decimal("100.00"),
            position_number=1,
            section="Земляные работы",
        ),
        EstimateItemORM(
            id=f"item-{suffix}-2",
            tenant_id=tenant_id,
            estimate=estimate,
            code="01-02-010",
            name="Обратная засыпка пазух",
            unit="м3",
            quantity=Decimal("50"),
            unit_price=Decimal("200.00"),
            position_number=2,
            section="Земляные работы",
        ),
        EstimateItemORM(
            id=f"item-{suffix}-3",
            tenant_id=tenant_id,
            estimate=estimate,
            code="27-04-001",
            name="Вывоз строительного мусора",
            unit="т",
            quantity=Decimal("10"),
            unit_price=Decimal("1500.00"),
            position_number=3,
        ),
    ]
    for index in range(line_count):
        items.append(
            EstimateItemORM(
                id=f"item-{suffix}-x{index + 1:02d}",
                tenant_id=tenant_id,
                estimate=estimate,
                code=f"15-01-{index + 1:03d}",
                name=f"Отделочные работы, захватка {index + 1}",
                unit="м2",
                quantity=Decimal("10"),
                unit_price=Decimal("10.00"),
                position_number=10 + index,
                section="Отделка",
            )
        )
    session.add_all([project, estimate, work, *items])
    session.flush()
    return SimpleNamespace(project=project, estimate=estimate, items=items, work=work)


@pytest.fixture()
def estimate_ctx(session):
    return add_estimate(session)


@pytest.fixture()
def make_estimate(session):
    def _make(**kwargs):
        return add_estimate(session, **kwargs)

    return _make


@pytest.fixture()
def seed_estimate():
    return add_estimate
