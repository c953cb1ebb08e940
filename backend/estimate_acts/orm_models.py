from __future__ import annotations

import uuid
from datetime import datetime

from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from .database import Base


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class ActType(str, PyEnum):
    CLIENT = "client"
    SPECIALIST = "specialist"


class ActStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class SignatoryRole(str, PyEnum):
    CONTRACTOR_CHIEF = "contractor_chief"
    CONTRACTOR_ACCOUNTANT = "contractor_accountant"
    CUSTOMER_CHIEF = "customer_chief"
    CUSTOMER_INSPECTOR = "customer_inspector"
    TECHNICAL_SUPERVISOR = "technical_supervisor"


class ProjectORM(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=lambda: generate_id("proj"))
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    object_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    client = Column(String, nullable=True)
    contractor = Column(String, nullable=True)
    contract_number = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    estimates = relationship("EstimateORM", back_populates="project")


class EstimateORM(Base):
    __tablename__ = "estimates"

    id = Column(String, primary_key=True, default=lambda: generate_id("est"))
    tenant_id = Column(String, nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    project = relationship("ProjectORM", back_populates="estimates")
    items = relationship(
        "EstimateItemORM",
        back_populates="estimate",
        cascade="all, delete-orphan",
        order_by="EstimateItemORM.position_number",
    )


class WorkORM(Base):
    """Catalog work; ``base_price`` is what specialists are paid."""

    __tablename__ = "works"

    id = Column(String, primary_key=True, default=lambda: generate_id("work"))
    tenant_id = Column(String, nullable=True, index=True)
    code = Column(String, nullable=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=True)
    base_price = Column(Numeric(14, 2), nullable=True)


class EstimateItemORM(Base):
    __tablename__ = "estimate_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("item"))
    tenant_id = Column(String, nullable=False, index=True)
    estimate_id = Column(String, ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    work_id = Column(String, ForeignKey("works.id", ondelete="SET NULL"), nullable=True)
    item_type = Column(String, nullable=False, default="work")  # work | material
    code = Column(String, nullable=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=True)
    quantity = Column(Numeric(14, 4), nullable=False, default=0)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    position_number = Column(Integer, nullable=False, default=0)
    section = Column(String, nullable=True)
    subsection = Column(String, nullable=True)

    estimate = relationship("EstimateORM", back_populates="items")
    work = relationship("WorkORM")


class WorkCompletionORM(Base):
    __tablename__ = "work_completions"
    __table_args__ = (
        UniqueConstraint("estimate_id", "estimate_item_id", "tenant_id", name="uq_work_completion_item"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("wc"))
    tenant_id = Column(String, nullable=False, index=True)
    estimate_id = Column(String, ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    estimate_item_id = Column(String, ForeignKey("estimate_items.id", ondelete="CASCADE"), nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    actual_quantity = Column(Numeric(14, 4), nullable=False, default=0)
    actual_total = Column(Numeric(16, 2), nullable=False, default=0)
    completion_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    last_act_id = Column(String, ForeignKey("work_completion_acts.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    estimate_item = relationship("EstimateItemORM")
    last_act = relationship("WorkCompletionActORM", foreign_keys=[last_act_id])


class WorkCompletionActORM(Base):
    __tablename__ = "work_completion_acts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "act_type", "act_number", name="uq_work_completion_act_number"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("act"))
    tenant_id = Column(String, nullable=False, index=True)
    estimate_id = Column(String, ForeignKey("estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    act_type = Column(String, nullable=False)
    act_number = Column(String, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    act_date = Column(Date, nullable=False)
    period_from = Column(Date, nullable=True)
    period_to = Column(Date, nullable=True)
    total_amount = Column(Numeric(16, 2), nullable=False, default=0)
    total_quantity = Column(Numeric(16, 4), nullable=False, default=0)
    work_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=ActStatus.DRAFT.value)
    notes = Column(Text, nullable=True)
    form_type = Column(String, nullable=False, default="КС-2")

    contractor_name = Column(String, nullable=True)
    contractor_inn = Column(String, nullable=True)
    contractor_kpp = Column(String, nullable=True)
    contractor_ogrn = Column(String, nullable=True)
    contractor_address = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_inn = Column(String, nullable=True)
    customer_kpp = Column(String, nullable=True)
    customer_ogrn = Column(String, nullable=True)
    customer_address = Column(String, nullable=True)
    contract_number = Column(String, nullable=True)
    contract_date = Column(Date, nullable=True)
    contract_subject = Column(String, nullable=True)
    construction_object = Column(String, nullable=True)
    construction_address = Column(String, nullable=True)
    construction_okpd = Column(String, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    estimate = relationship("EstimateORM")
    project = relationship("ProjectORM")
    items = relationship(
        "WorkCompletionActItemORM",
        back_populates="act",
        cascade="all, delete-orphan",
        order_by="WorkCompletionActItemORM.line_number",
    )
    signatories = relationship(
        "ActSignatoryORM",
        back_populates="act",
        cascade="all, delete-orphan",
        order_by="ActSignatoryORM.sort_order",
    )


class WorkCompletionActItemORM(Base):
    __tablename__ = "work_completion_act_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("acti"))
    tenant_id = Column(String, nullable=False, index=True)
    act_id = Column(String, ForeignKey("work_completion_acts.id", ondelete="CASCADE"), nullable=False, index=True)
    estimate_item_id = Column(String, ForeignKey("estimate_items.id", ondelete="SET NULL"), nullable=True, index=True)
    work_code = Column(String, nullable=True)
    work_name = Column(String, nullable=False)
    unit = Column(String, nullable=True)
    section = Column(String, nullable=True)
    subsection = Column(String, nullable=True)
    planned_quantity = Column(Numeric(14, 4), nullable=False, default=0)
    actual_quantity = Column(Numeric(14, 4), nullable=False, default=0)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    total_price = Column(Numeric(16, 2), nullable=False, default=0)
    position_number = Column(Integer, nullable=False, default=0)
    line_number = Column(Integer, nullable=False, default=0)

    act = relationship("WorkCompletionActORM", back_populates="items")


class ActSignatoryORM(Base):
    __tablename__ = "act_signatories"

    id = Column(String, primary_key=True, default=lambda: generate_id("sign"))
    tenant_id = Column(String, nullable=False, index=True)
    act_id = Column(String, ForeignKey("work_completion_acts.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    position = Column(String, nullable=True)
    basis_document = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    act = relationship("WorkCompletionActORM", back_populates="signatories")


class ActNumberCounterORM(Base):
    """Last issued act sequence per (tenant, kind, year)."""

    __tablename__ = "act_number_counters"

    tenant_id = Column(String, primary_key=True)
    act_type = Column(String, primary_key=True)
    year = Column(Integer, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


@event.listens_for(WorkCompletionActItemORM, "before_update")
def _reject_act_item_update(mapper, connection, target):  # type: ignore[unused-variable]
    raise ValueError("Позиции акта не редактируются после создания")
