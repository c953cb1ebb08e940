from __future__ import annotations

from typing import Tuple, Type

from sqlalchemy import event
from sqlalchemy.orm import Session, with_loader_criteria

from . import orm_models

TARGET_MODELS: Tuple[Type[object], ...] = (
    orm_models.ProjectORM,
    orm_models.EstimateORM,
    orm_models.EstimateItemORM,
    orm_models.WorkCompletionORM,
    orm_models.WorkCompletionActORM,
    orm_models.WorkCompletionActItemORM,
    orm_models.ActSignatoryORM,
)


def setup_tenant_events(session_cls: Type[Session]) -> None:
    @event.listens_for(session_cls, "do_orm_execute")
    def _add_tenant_filter(execute_state):  # type: ignore[unused-variable]
        if not execute_state.is_select:
            return
        tenant_id = execute_state.session.info.get("tenant_id")
        if not tenant_id:
            return

        statement = execute_state.statement
        for model in TARGET_MODELS:
            statement = statement.options(
                with_loader_criteria(
                    model,
                    lambda cls, tid=tenant_id: cls.tenant_id == tid,
                    include_aliases=True,
                )
            )
        execute_state.statement = statement

    @event.listens_for(session_cls, "before_flush")
    def _inject_tenant(session, flush_context, instances):  # type: ignore[unused-variable]
        tenant_id = session.info.get("tenant_id")
        if not tenant_id:
            return
        for obj in session.new:
            if hasattr(obj, "tenant_id") and not getattr(obj, "tenant_id", None):
                setattr(obj, "tenant_id", tenant_id)

    @event.listens_for(session_cls, "loaded_as_persistent")
    def _validate_tenant(session, obj):  # type: ignore[unused-variable]
        tenant_id = session.info.get("tenant_id")
        if tenant_id is None or not hasattr(obj, "tenant_id"):
            return
        current = getattr(obj, "tenant_id", None)
        if current and current != tenant_id:
            session.expunge(obj)
