"""Spreadsheet rendering of the KS-2 and KS-3 forms of an act."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import quote

from sqlalchemy.orm import Session

from .. import ks2_layout, ks3_layout
from ..config import settings
from ..document_layout import render_workbook
from ..schemas import Ks2Form, Ks3Form
from .forms import get_ks2_form, get_ks3_form

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class RenderedDocument:
    filename: str
    content: bytes
    media_type: str = XLSX_MEDIA_TYPE


def document_filename(form_label: str, act_number: str, act_date) -> str:
    stamp = act_date.strftime("%d-%m-%Y") if act_date else "без-даты"
    number = (act_number or "").replace("/", "-").replace("\\", "-")
    return f"{form_label}_{number}_{stamp}.xlsx"


def content_disposition(filename: str) -> str:
    """``attachment`` header with an ASCII fallback and an RFC 5987 ``filename*``."""
    fallback = filename.encode("ascii", "ignore").decode("ascii").strip() or "document.xlsx"
    fallback = fallback.replace('"', "")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def render_ks2(form: Ks2Form, *, include_vat: bool = False, vat_rate: Optional[Decimal] = None) -> bytes:
    layout = ks2_layout.layout_for_lines(len(form.works))
    values = ks2_layout.ks2_values(
        form,
        layout,
        include_vat=include_vat,
        vat_rate=settings.vat_rate if vat_rate is None else vat_rate,
    )
    return render_workbook(layout, values)


def render_ks3(form: Ks3Form, *, include_vat: bool = False, vat_rate: Optional[Decimal] = None) -> bytes:
    layout = ks3_layout.layout_for_lines(len(form.works))
    values = ks3_layout.ks3_values(
        form,
        layout,
        include_vat=include_vat,
        vat_rate=settings.vat_rate if vat_rate is None else vat_rate,
    )
    return render_workbook(layout, values)


def build_ks2_document(
    session: Session,
    act_id: str,
    *,
    tenant_id: str | None = None,
    include_vat: bool = False,
) -> RenderedDocument:
    form = get_ks2_form(session, act_id, tenant_id=tenant_id)
    content = render_ks2(form, include_vat=include_vat)
    logger.info("Rendered KS-2 for act %s (%s lines)", form.actNumber, len(form.works))
    return RenderedDocument(filename=document_filename("КС-2", form.actNumber, form.actDate), content=content)


def build_ks3_document(
    session: Session,
    act_id: str,
    *,
    tenant_id: str | None = None,
    include_vat: bool = False,
) -> RenderedDocument:
    form = get_ks3_form(session, act_id, tenant_id=tenant_id)
    content = render_ks3(form, include_vat=include_vat)
    logger.info("Rendered KS-3 for act %s (%s lines)", form.actNumber, len(form.works))
    return RenderedDocument(filename=document_filename("КС-3", form.actNumber, form.actDate), content=content)
