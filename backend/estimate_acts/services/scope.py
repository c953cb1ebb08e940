from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import orm_models
from .errors import NotFoundError, ValidationError


def resolve_tenant_id(session: Session, tenant_id: Optional[str] = None) -> str:
    resolved = tenant_id or session.info.get("tenant_id")
    if not resolved:
        raise ValidationError("Не определена организация пользователя")
    return resolved


def get_estimate(session: Session, estimate_id: Optional[str], tenant_id: str) -> orm_models.EstimateORM:
    if not estimate_id:
        raise ValidationError("ID сметы обязателен", {"field": "estimateId"})
    estimate = session.execute(
        select(orm_models.EstimateORM)
        .where(orm_models.EstimateORM.id == estimate_id)
        .where(orm_models.EstimateORM.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if estimate is None:
        raise NotFoundError("Смета не найдена", {"estimateId": estimate_id})
    return estimate


def get_project(session: Session, project_id: Optional[str], tenant_id: str) -> orm_models.ProjectORM:
    if not project_id:
        raise ValidationError("ID проекта обязателен", {"field": "projectId"})
    project = session.execute(
        select(orm_models.ProjectORM)
        .where(orm_models.ProjectORM.id == project_id)
        .where(orm_models.ProjectORM.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if project is None:
        raise NotFoundError("Проект не найден", {"projectId": project_id})
    return project


def get_act(session: Session, act_id: str, tenant_id: str) -> orm_models.WorkCompletionActORM:
    act = session.execute(
        select(orm_models.WorkCompletionActORM)
        .where(orm_models.WorkCompletionActORM.id == act_id)
        .where(orm_models.WorkCompletionActORM.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if act is None:
        raise NotFoundError("Акт не найден", {"actId": act_id})
    return act
