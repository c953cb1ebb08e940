from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from . import __version__
from .config import settings
from .database import get_session, init_db
from .reference_cache import (
    InMemoryReferenceCache,
    ReferenceCache,
    act_list_key,
    estimate_prefix,
    tenant_prefix,
)
from .schemas import (
    ActDetail,
    ActDetailsUpdate,
    ActGenerateRequest,
    ActGenerateResponse,
    ActList,
    ActStatusUpdate,
    ActSummary,
    CompletionImportResult,
    Ks2Form,
    Ks3Form,
    SignatoriesUpdate,
    Signatory,
    WorkCompletion,
    WorkCompletionBatch,
    WorkCompletionList,
    WorkCompletionUpsert,
)
from .services.acts import (
    delete_act,
    generate_acts,
    get_act_detail,
    list_acts,
    replace_signatories,
    update_act_details,
    update_act_status,
)
from .services.auth import TenantContext, tenant_context_from_token
from .services.completions import (
    batch_upsert_completions,
    export_completions_csv,
    import_completions_csv,
    list_completions,
    remove_completion,
    upsert_completion,
)
from .services.documents import build_ks2_document, build_ks3_document, content_disposition
from .services.errors import ServiceError
from .services.forms import get_ks2_form, get_ks3_form

logger = logging.getLogger(__name__)

app = FastAPI(title="Estimate Acts Backend", version=__version__)

bearer_scheme = HTTPBearer(auto_error=False)
reference_cache = InMemoryReferenceCache()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.on_event("startup")
def startup_event() -> None:  # pragma: no cover - side effect
    configure_logging(settings.log_level)
    init_db()


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


def get_reference_cache() -> ReferenceCache:
    return reference_cache


def get_tenant_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> TenantContext:
    context = tenant_context_from_token(credentials.credentials if credentials else None)
    session.info["tenant_id"] = context.tenant_id
    return context


def _raise_service_error(error: ServiceError) -> None:
    status_map = {
        "validation_failed": status.HTTP_400_BAD_REQUEST,
        "no_completed_works": status.HTTP_400_BAD_REQUEST,
        "not_found": status.HTTP_404_NOT_FOUND,
        "conflict": status.HTTP_409_CONFLICT,
    }
    http_status = status_map.get(error.code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=http_status, detail=error.to_dict())


def _commit_and_invalidate(session: Session, cache: ReferenceCache, prefix: str) -> None:
    # Readers may only repopulate the cache from committed rows.
    session.commit()
    dropped = cache.invalidate(prefix)
    logger.debug("Dropped %s cached entries under %s", dropped, prefix)


def _invalidate_estimate(session: Session, cache: ReferenceCache, context: TenantContext, estimate_id: str) -> None:
    _commit_and_invalidate(session, cache, estimate_prefix(context.tenant_id, estimate_id))


def _invalidate_tenant(session: Session, cache: ReferenceCache, context: TenantContext) -> None:
    _commit_and_invalidate(session, cache, tenant_prefix(context.tenant_id))


@app.get("/health", tags=["system"])
def api_health() -> dict:
    return {"status": "ok", "version": __version__}


# Work completion acts --------------------------------------------------------

@app.post(
    "/work-completion-acts/generate",
    response_model=ActGenerateResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["acts"],
)
def api_generate_acts(
    payload: ActGenerateRequest,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> ActGenerateResponse:
    try:
        result = generate_acts(session, payload, tenant_id=context.tenant_id, user_id=context.user_id)
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, payload.estimateId or "")
    return result


@app.get("/work-completion-acts/estimate/{estimate_id}", response_model=ActList, tags=["acts"])
def api_list_acts(
    estimate_id: str,
    act_type: Optional[str] = Query(default=None, alias="actType"),
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> ActList:
    key = act_list_key(context.tenant_id, estimate_id, act_type)
    cached = cache.get(key)
    if cached is not None:
        return cached
    try:
        acts = list_acts(session, estimate_id, act_type, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    result = ActList(acts=acts, count=len(acts))
    cache.set(key, result)
    return result


@app.get("/work-completion-acts/{act_id}", response_model=ActDetail, tags=["acts"])
def api_get_act(
    act_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> ActDetail:
    try:
        return get_act_detail(session, act_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.delete("/work-completion-acts/{act_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["acts"])
def api_delete_act(
    act_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> Response:
    try:
        estimate_id = delete_act(session, act_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, estimate_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.patch("/work-completion-acts/{act_id}/status", response_model=ActSummary, tags=["acts"])
def api_update_act_status(
    act_id: str,
    payload: ActStatusUpdate,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> ActSummary:
    try:
        result = update_act_status(session, act_id, payload.status, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_tenant(session, cache, context)
    return result


@app.patch("/work-completion-acts/{act_id}/details", response_model=ActDetail, tags=["acts"])
def api_update_act_details(
    act_id: str,
    payload: ActDetailsUpdate,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> ActDetail:
    try:
        result = update_act_details(session, act_id, payload, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, result.estimateId)
    return result


@app.post("/work-completion-acts/{act_id}/signatories", response_model=list[Signatory], tags=["acts"])
def api_replace_signatories(
    act_id: str,
    payload: SignatoriesUpdate,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> list[Signatory]:
    try:
        return replace_signatories(session, act_id, payload.signatories, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)


# Forms ------------------------------------------------------------------------

@app.get("/work-completion-acts/{act_id}/forms/ks2", response_model=Ks2Form, tags=["forms"])
def api_get_ks2(
    act_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> Ks2Form:
    try:
        return get_ks2_form(session, act_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/work-completion-acts/{act_id}/forms/ks3", response_model=Ks3Form, tags=["forms"])
def api_get_ks3(
    act_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> Ks3Form:
    try:
        return get_ks3_form(session, act_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)


@app.get("/work-completion-acts/{act_id}/forms/ks2/xlsx", tags=["forms"])
def api_download_ks2(
    act_id: str,
    include_vat: bool = Query(default=False, alias="includeVat"),
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> Response:
    try:
        document = build_ks2_document(session, act_id, tenant_id=context.tenant_id, include_vat=include_vat)
    except ServiceError as error:
        _raise_service_error(error)
    return Response(
        content=document.content,
        media_type=document.media_type,
        headers={"Content-Disposition": content_disposition(document.filename)},
    )


@app.get("/work-completion-acts/{act_id}/forms/ks3/xlsx", tags=["forms"])
def api_download_ks3(
    act_id: str,
    include_vat: bool = Query(default=False, alias="includeVat"),
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> Response:
    try:
        document = build_ks3_document(session, act_id, tenant_id=context.tenant_id, include_vat=include_vat)
    except ServiceError as error:
        _raise_service_error(error)
    return Response(
        content=document.content,
        media_type=document.media_type,
        headers={"Content-Disposition": content_disposition(document.filename)},
    )


# Work completions ---------------------------------------------------------------

@app.get("/estimates/{estimate_id}/work-completions", response_model=WorkCompletionList, tags=["completions"])
def api_list_completions(
    estimate_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> WorkCompletionList:
    try:
        completions = list_completions(session, estimate_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    return WorkCompletionList(completions=completions, count=len(completions))


@app.post("/estimates/{estimate_id}/work-completions", response_model=WorkCompletion, tags=["completions"])
def api_upsert_completion(
    estimate_id: str,
    payload: WorkCompletionUpsert,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> WorkCompletion:
    try:
        result = upsert_completion(
            session, estimate_id, payload, tenant_id=context.tenant_id, user_id=context.user_id
        )
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, estimate_id)
    return result


@app.post(
    "/estimates/{estimate_id}/work-completions/batch",
    response_model=WorkCompletionList,
    tags=["completions"],
)
def api_batch_upsert_completions(
    estimate_id: str,
    payload: WorkCompletionBatch,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> WorkCompletionList:
    try:
        completions = batch_upsert_completions(
            session, estimate_id, payload.completions, tenant_id=context.tenant_id, user_id=context.user_id
        )
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, estimate_id)
    return WorkCompletionList(completions=completions, count=len(completions))


@app.get("/estimates/{estimate_id}/work-completions/export", tags=["completions"])
def api_export_completions(
    estimate_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
) -> Response:
    try:
        content = export_completions_csv(session, estimate_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    return Response(
        content="\ufeff" + content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": content_disposition(f"completions_{estimate_id}.csv")},
    )


@app.post(
    "/estimates/{estimate_id}/work-completions/import",
    response_model=CompletionImportResult,
    tags=["completions"],
)
async def api_import_completions(
    estimate_id: str,
    request: Request,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> CompletionImportResult:
    raw = await request.body()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("CSV import for estimate %s rejected: body is not UTF-8", estimate_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "validation_failed", "message": "Файл должен быть в кодировке UTF-8"},
        )
    try:
        result = import_completions_csv(
            session, estimate_id, content, tenant_id=context.tenant_id, user_id=context.user_id
        )
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, estimate_id)
    return result


@app.delete(
    "/estimates/{estimate_id}/work-completions/{estimate_item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["completions"],
)
def api_remove_completion(
    estimate_id: str,
    estimate_item_id: str,
    session: Session = Depends(get_session),
    context: TenantContext = Depends(get_tenant_context),
    cache: ReferenceCache = Depends(get_reference_cache),
) -> Response:
    try:
        remove_completion(session, estimate_id, estimate_item_id, tenant_id=context.tenant_id)
    except ServiceError as error:
        _raise_service_error(error)
    _invalidate_estimate(session, cache, context, estimate_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
