"""Unified form KS-2 (act of acceptance of completed works), ОКУД 0322005."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

from .document_layout import (
    BOX,
    BOX_MEDIUM,
    CAPTION,
    CELL_CENTER,
    CELL_NUMBER,
    CELL_TEXT,
    CODE,
    HEADER,
    LABEL,
    LABEL_RIGHT,
    TITLE,
    TOTAL_LABEL,
    TOTAL_NUMBER,
    UNDERLINE,
    VALUE,
    VALUE_CENTER,
    Region,
    RowHeightRule,
    SheetLayout,
    SheetValues,
    TablePage,
    TextStyle,
    page_count_for,
    paginate,
)
from .formatting import amount_to_words, format_amount, format_date, quantize_money
from .schemas import Ks2Form, Ks2Work, Organization, Signatory

FIRST_PAGE_ROWS = 8
CONTINUATION_ROWS = 13
FIRST_DATA_ROW = 32
CONTINUATION_START = 42
CONTINUATION_HEIGHT = 20

SMALL = TextStyle(size=7)
SMALL_RIGHT = TextStyle(size=7, horizontal="right")
WORDS = TextStyle(size=9, italic=True, wrap=True)

ROW_HEIGHT_RULE = RowHeightRule(chars_per_line=50, min_height=20, line_height=15, padding=5)

COLUMN_WIDTHS: Dict[str, float] = {
    "A": 1.28515625,
    "B": 6.28515625,
    "C": 0.85546875,
    "D": 8.43,
    "E": 7.42578125,
    "F": 5.0,
    "G": 1.7109375,
    "H": 8.43,
    "I": 10.28515625,
    "J": 1.85546875,
    "K": 8.85546875,
    "L": 8.28515625,
    "M": 2.0,
    "N": 2.28515625,
    "O": 5.7109375,
    "P": 7.140625,
    "Q": 5.0,
    "R": 5.0,
    "S": 8.0,
    "T": 2.5,
    "U": 3.7109375,
    "V": 2.0,
    "W": 3.5703125,
    "X": 4.42578125,
    "Y": 2.42578125,
    "Z": 3.140625,
    "AA": 1.42578125,
    "AB": 8.43,
    "AC": 8.28515625,
    "AD": 1.7109375,
    "AE": 4.42578125,
    "AF": 6.42578125,
    "AG": 6.7109375,
}

# (slot suffix, first column, last column, style) of the work table.
TABLE_COLUMNS: Tuple[Tuple[str, str, str, TextStyle], ...] = (
    ("line", "A", "B", CELL_CENTER),
    ("position", "C", "E", CELL_CENTER),
    ("name", "F", "N", CELL_TEXT),
    ("code", "O", "P", CELL_CENTER),
    ("unit", "Q", "T", CELL_CENTER),
    ("quantity", "U", "X", CELL_NUMBER),
    ("price", "Y", "AC", CELL_NUMBER),
    ("amount", "AD", "AG", CELL_NUMBER),
)


def _header_regions() -> List[Region]:
    return [
        Region("Y1", "Унифицированная форма № КС-2", style=SMALL),
        Region("Y2", "Утверждена постановлением Госкомстата России", style=SMALL),
        Region("Y3", "от 11.11.99 № 100", style=SMALL),
        Region("AD4:AG4", "Код", style=CODE, border=BOX),
        Region("Y5:AC5", "Форма по ОКУД", style=LABEL_RIGHT),
        Region("AD5:AG5", "0322005", style=CODE, border=BOX_MEDIUM),
        Region("B7", "Инвестор"),
        Region("E7:AA7", slot="investor", style=VALUE, border=UNDERLINE),
        Region("AC7", "по ОКПО", style=LABEL_RIGHT),
        Region("AD6:AG7", slot="investor_okpo", style=CODE, border=BOX_MEDIUM),
        Region("J8:AA8", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("B9", "Заказчик (Генподрядчик)"),
        Region("G9:AA9", slot="customer", style=VALUE, border=UNDERLINE),
        Region("AC9", "по ОКПО", style=LABEL_RIGHT),
        Region("AD8:AG9", slot="customer_okpo", style=CODE, border=BOX_MEDIUM),
        Region("J10:AA10", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("B11", "Подрядчик (Субподрядчик)"),
        Region("H11:AA11", slot="contractor", style=VALUE, border=UNDERLINE),
        Region("AC11", "по ОКПО", style=LABEL_RIGHT),
        Region("AD10:AG11", slot="contractor_okpo", style=CODE, border=BOX_MEDIUM),
        Region("J12:AA12", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("B13", "Стройка"),
        Region("E13:AA13", slot="construction_site", style=VALUE, border=UNDERLINE),
        Region("AD12:AG13", style=CODE, border=BOX_MEDIUM),
        Region("J14:AA14", "(наименование, адрес)", style=CAPTION),
        Region("B15", "Объект"),
        Region("C15:AA15", slot="construction_object", style=VALUE, border=UNDERLINE),
        Region("AD14:AG15", style=CODE, border=BOX_MEDIUM),
        Region("J16:S16", "(наименование)", style=CAPTION),
        Region("X16:AC17", "Вид деятельности по ОКДП", style=TextStyle(horizontal="right", wrap=True)),
        Region("AD16:AG17", slot="okpd", style=CODE, border=BOX_MEDIUM),
        Region("T18:AB18", "Договор подряда (контракт)", style=LABEL_RIGHT),
        Region("AC18", "номер", style=LABEL_RIGHT),
        Region("AD18:AG18", slot="contract_number", style=CODE, border=BOX_MEDIUM),
        Region("AC19", "дата", style=LABEL_RIGHT),
        Region("AD19:AG19", slot="contract_date", style=CODE, border=BOX_MEDIUM),
        Region("Z20:AC20", "Вид операции", style=LABEL_RIGHT),
        Region("AD20:AG20", style=CODE, border=BOX_MEDIUM),
        Region("N22:P23", "Номер документа", style=HEADER, border=BOX),
        Region("Q22:U23", "Дата составления", style=HEADER, border=BOX),
        Region("W22:AD22", "Отчетный период", style=HEADER, border=BOX),
        Region("W23:Z23", "с", style=HEADER, border=BOX),
        Region("AA23:AD23", "по", style=HEADER, border=BOX),
        Region("L24:M24", "АКТ", style=TITLE),
        Region("N24:P24", slot="act_number", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("Q24:U24", slot="act_date", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("W24:Z24", slot="period_from", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("AA24:AD24", slot="period_to", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("J25:U25", "О ПРИЕМКЕ ВЫПОЛНЕННЫХ РАБОТ", style=TITLE),
        Region(
            "B27:N27",
            "Сметная (договорная) стоимость в соответствии с договором подряда (субподряда)",
            style=TextStyle(wrap=True),
        ),
        Region("O27:AD27", slot="amount_words", style=WORDS, border=UNDERLINE),
    ]


def _table_header_regions(row: int) -> List[Region]:
    second = row + 1
    numbers = row + 2
    regions = [
        Region(f"A{row}:E{row}", "Номер", style=HEADER, border=BOX),
        Region(f"F{row}:N{second}", "Наименование работ", style=HEADER, border=BOX),
        Region(f"O{row}:P{second}", "Номер единичной расценки", style=HEADER, border=BOX),
        Region(f"Q{row}:T{second}", "Единица измерения", style=HEADER, border=BOX),
        Region(f"U{row}:AG{row}", "Выполнено работ", style=HEADER, border=BOX),
        Region(f"A{second}:B{second}", "по порядку", style=HEADER, border=BOX),
        Region(f"C{second}:E{second}", "позиции по смете", style=HEADER, border=BOX),
        Region(f"U{second}:X{second}", "количество", style=HEADER, border=BOX),
        Region(f"Y{second}:AC{second}", "цена за единицу, руб.", style=HEADER, border=BOX),
        Region(f"AD{second}:AG{second}", "стоимость, руб.", style=HEADER, border=BOX),
    ]
    for index, (_, first, last, _style) in enumerate(TABLE_COLUMNS, start=1):
        regions.append(Region(f"{first}{numbers}:{last}{numbers}", str(index), style=CODE, border=BOX))
    return regions


def _data_row_regions(row: int) -> List[Region]:
    return [
        Region(f"{first}{row}:{last}{row}", slot=f"line:{row}:{key}", style=style, border=BOX)
        for key, first, last, style in TABLE_COLUMNS
    ]


def _page_total_regions(row: int) -> List[Region]:
    return [
        Region(f"O{row}:T{row}", "Итого", style=TOTAL_LABEL),
        Region(f"U{row}:X{row}", slot=f"total:{row}:quantity", style=TOTAL_NUMBER, border=BOX),
        Region(f"Y{row}:AC{row}", "Х", style=CODE, border=BOX),
        Region(f"AD{row}:AG{row}", slot=f"total:{row}:amount", style=TOTAL_NUMBER, border=BOX),
    ]


def _signature_regions(row: int, title: str, prefix: str) -> List[Region]:
    captions = row + 1
    return [
        Region(f"C{row}:E{row}", title, style=TextStyle(bold=True)),
        Region(f"F{row}:I{row}", slot=f"{prefix}_position", style=VALUE_CENTER, border=UNDERLINE),
        Region(f"K{row}:L{row}", border=UNDERLINE),
        Region(f"N{row}:AG{row}", slot=f"{prefix}_signer", style=VALUE_CENTER, border=UNDERLINE),
        Region(f"F{captions}:I{captions}", "(должность)", style=CAPTION),
        Region(f"K{captions}:L{captions}", "(подпись)", style=CAPTION),
        Region(f"N{captions}:AG{captions}", "(расшифровка подписи)", style=CAPTION),
        Region(f"G{row + 3}", "М.П.", style=LABEL),
    ]


def _footer_regions(row: int) -> List[Region]:
    signatures = row + 4
    return [
        Region(f"O{row}:AC{row}", "Всего по акту", style=TOTAL_LABEL),
        Region(f"AD{row}:AG{row}", slot="grand_total", style=TOTAL_NUMBER, border=BOX_MEDIUM),
        Region(f"O{row + 1}:AC{row + 1}", slot="vat_label", style=TOTAL_LABEL),
        Region(f"AD{row + 1}:AG{row + 1}", slot="vat_amount", style=TOTAL_NUMBER, border=BOX),
        Region(f"O{row + 2}:AC{row + 2}", slot="total_with_vat_label", style=TOTAL_LABEL),
        Region(f"AD{row + 2}:AG{row + 2}", slot="total_with_vat", style=TOTAL_NUMBER, border=BOX),
        *_signature_regions(signatures, "Сдал", "contractor"),
        *_signature_regions(signatures + 5, "Принял", "customer"),
    ]


@lru_cache(maxsize=None)
def ks2_layout(page_count: int = 1) -> SheetLayout:
    """Grid of a KS-2 with ``page_count`` table pages (first page plus continuations)."""
    if page_count < 1:
        raise ValueError("page_count must be positive")

    regions = _header_regions() + _table_header_regions(29)
    first_rows = tuple(range(FIRST_DATA_ROW, FIRST_DATA_ROW + FIRST_PAGE_ROWS))
    for row in first_rows:
        regions += _data_row_regions(row)
    first_total = FIRST_DATA_ROW + FIRST_PAGE_ROWS
    regions += _page_total_regions(first_total)
    pages = [TablePage(data_rows=first_rows, total_row=first_total)]

    row_heights: Dict[int, float] = {22: 12.75, 23: 12.75, 24: 15.0, 25: 15.0, 27: 24.0, 29: 15.0, 30: 36.0}
    page_breaks: List[int] = []
    for block in range(page_count - 1):
        start = CONTINUATION_START + block * CONTINUATION_HEIGHT
        page_breaks.append(start - 1)
        regions.append(Region(f"AA{start}:AG{start}", f"{block + 2}-я страница формы № КС-2", style=SMALL_RIGHT))
        regions += _table_header_regions(start + 1)
        row_heights[start + 1] = 15.0
        row_heights[start + 2] = 36.0
        data_start = start + 4
        rows = tuple(range(data_start, data_start + CONTINUATION_ROWS))
        for row in rows:
            regions += _data_row_regions(row)
        total_row = data_start + CONTINUATION_ROWS
        regions += _page_total_regions(total_row)
        pages.append(TablePage(data_rows=rows, total_row=total_row))

    footer_row = pages[-1].total_row + 2
    regions += _footer_regions(footer_row)
    return SheetLayout(
        title="КС-2",
        column_widths=dict(COLUMN_WIDTHS),
        row_heights=row_heights,
        regions=regions,
        pages=pages,
        footer_row=footer_row,
        row_height_rule=ROW_HEIGHT_RULE,
        page_breaks=page_breaks,
    )


def layout_for_lines(line_count: int) -> SheetLayout:
    return ks2_layout(page_count_for(line_count, FIRST_PAGE_ROWS, CONTINUATION_ROWS))


# === Values =================================================================

def organization_line(organization: Organization) -> str:
    parts = [organization.name]
    if organization.inn:
        parts.append(f"ИНН {organization.inn}")
    if organization.kpp:
        parts.append(f"КПП {organization.kpp}")
    if organization.address:
        parts.append(organization.address)
    return ", ".join(part for part in parts if part)


def pick_signatory(signatories: Sequence[Signatory], roles: Sequence[str]) -> Optional[Signatory]:
    for role in roles:
        for signatory in signatories:
            if signatory.role == role:
                return signatory
    return None


def vat_rows(total: Decimal, vat: Decimal, vat_rate: Decimal) -> Dict[str, str]:
    percent = f"{(vat_rate * 100).normalize():f}"
    return {
        "vat_label": f"НДС {percent}%",
        "vat_amount": format_amount(vat),
        "total_with_vat_label": "Всего с НДС",
        "total_with_vat": format_amount(total + vat),
    }


def ks2_values(
    form: Ks2Form,
    layout: SheetLayout,
    *,
    include_vat: bool = False,
    vat_rate: Decimal = Decimal("0.20"),
) -> SheetValues:
    total = quantize_money(form.totals.amount)
    vat = quantize_money(total * vat_rate) if include_vat else Decimal("0.00")

    values = SheetValues()
    cells = values.cells
    cells.update(
        {
            "investor": organization_line(form.investor),
            "customer": organization_line(form.customer),
            "contractor": organization_line(form.contractor),
            "construction_site": form.constructionObject.address,
            "construction_object": form.constructionObject.name,
            "okpd": form.constructionObject.okpd,
            "contract_number": form.contract.number,
            "contract_date": format_date(form.contract.date),
            "act_number": form.actNumber,
            "act_date": format_date(form.actDate),
            "period_from": format_date(form.period.from_),
            "period_to": format_date(form.period.to),
            "amount_words": amount_to_words(total),
            "grand_total": format_amount(total),
        }
    )
    if include_vat:
        cells.update(vat_rows(total, vat, vat_rate))

    pages = paginate(form.works, FIRST_PAGE_ROWS, CONTINUATION_ROWS)
    if len(pages) != len(layout.pages):
        raise ValueError(f"layout has {len(layout.pages)} pages, data needs {len(pages)}")
    for page, works in zip(layout.pages, pages):
        _fill_page(values, layout, page.data_rows, page.total_row, works)

    contractor = pick_signatory(form.signatories, ("contractor_chief", "contractor_accountant"))
    customer = pick_signatory(form.signatories, ("customer_chief", "customer_inspector", "technical_supervisor"))
    if contractor:
        cells["contractor_position"] = contractor.position or ""
        cells["contractor_signer"] = contractor.fullName
    if customer:
        cells["customer_position"] = customer.position or ""
        cells["customer_signer"] = customer.fullName
    return values


def _fill_page(
    values: SheetValues,
    layout: SheetLayout,
    rows: Sequence[int],
    total_row: int,
    works: Sequence[Ks2Work],
) -> None:
    for row, work in zip(rows, works):
        values.cells.update(
            {
                f"line:{row}:line": str(work.lineNumber),
                f"line:{row}:position": str(work.positionNumber) if work.positionNumber else "",
                f"line:{row}:name": work.workName,
                f"line:{row}:code": work.workCode,
                f"line:{row}:unit": work.unit,
                f"line:{row}:quantity": format_amount(work.quantity),
                f"line:{row}:price": format_amount(work.unitPrice),
                f"line:{row}:amount": format_amount(work.totalPrice),
            }
        )
        values.row_heights[row] = layout.row_height_rule.height_for(work.workName)
    if works:
        values.cells[f"total:{total_row}:quantity"] = format_amount(sum((work.quantity for work in works), Decimal("0")))
        values.cells[f"total:{total_row}:amount"] = format_amount(sum((work.totalPrice for work in works), Decimal("0")))
