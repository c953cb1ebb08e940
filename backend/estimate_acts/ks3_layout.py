"""Unified form KS-3 (certificate of the cost of works and expenses), ОКУД 0322001."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Sequence, Tuple

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
    TextStyle,
    TablePage,
    column_range,
    page_count_for,
    paginate,
)
from .formatting import format_amount, format_date, quantize_money
from .ks2_layout import organization_line, pick_signatory, vat_rows
from .schemas import Ks3Form, Ks3Work

FIRST_PAGE_ROWS = 8
CONTINUATION_ROWS = 13
FIRST_DATA_ROW = 31
CONTINUATION_START = 41
CONTINUATION_HEIGHT = 20

SMALL = TextStyle(size=7)
SMALL_RIGHT = TextStyle(size=7, horizontal="right")
TOTAL_TEXT = TextStyle(size=9, bold=True, wrap=True)

ROW_HEIGHT_RULE = RowHeightRule(chars_per_line=80, min_height=15, line_height=14, padding=2)

_NARROW: Dict[str, float] = {
    "A": 1.75, "B": 1.625, "D": 1.5, "E": 0.75, "F": 1.625, "M": 1.125, "N": 1.5,
    "O": 1.625, "P": 1.25, "Q": 0.875, "R": 1.625, "W": 1.75, "X": 1.625, "AC": 1.875,
    "AD": 1.625, "AJ": 1.0, "AK": 2.125, "AL": 1.625, "AM": 1.75, "AO": 0.375,
    "AP": 1.625, "AQ": 1.75, "AR": 1.5, "AS": 1.375, "AT": 1.625, "AU": 1.375,
    "AW": 1.75, "AX": 1.375, "BA": 1.75,
}
COLUMN_WIDTHS: Dict[str, float] = {letter: _NARROW.get(letter, 8.43) for letter in column_range("A", "BA")}

HEADER_ROW_HEIGHTS: Dict[int, float] = {
    1: 11.1, 2: 11.1, 3: 11.1, 4: 13.5, 6: 9.75, 7: 12.75, 8: 9.75, 10: 9.75, 12: 9.75,
    14: 9.75, 15: 4.5, 18: 15, 21: 13.5, 22: 13.5, 25: 27.75, 26: 42, 27: 14.25,
}

# (slot suffix, first column, last column, style) of the cost table.
TABLE_COLUMNS: Tuple[Tuple[str, str, str, TextStyle], ...] = (
    ("line", "A", "C", CELL_CENTER),
    ("name", "D", "Z", CELL_TEXT),
    ("code", "AA", "AD", CELL_CENTER),
    ("since_project_start", "AE", "AK", CELL_NUMBER),
    ("since_year_start", "AL", "AS", CELL_NUMBER),
    ("current_period", "AT", "BA", CELL_NUMBER),
)
MONEY_COLUMNS = TABLE_COLUMNS[3:]


def _header_regions() -> List[Region]:
    return [
        Region("AG1", "Унифицированная форма № КС-3", style=SMALL),
        Region("AG2", "Утверждена постановлением Госкомстата России", style=SMALL),
        Region("AG3", "от 11.11.99 № 100", style=SMALL),
        Region("AP4:BA4", "Код", style=CODE, border=BOX),
        Region("AG5:AO5", "Форма по ОКУД", style=LABEL_RIGHT),
        Region("AP5:BA5", "0322001", style=CODE, border=BOX_MEDIUM),
        Region("A7:L7", "Инвестор"),
        Region("M7:AM7", slot="investor", style=VALUE, border=UNDERLINE),
        Region("AN7:AO7", "по ОКПО", style=LABEL_RIGHT),
        Region("AP6:BA7", slot="investor_okpo", style=CODE, border=BOX_MEDIUM),
        Region("M8:AM8", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("A9:L9", "Заказчик (Генподрядчик)"),
        Region("M9:AM9", slot="customer", style=VALUE, border=UNDERLINE),
        Region("AN9:AO9", "по ОКПО", style=LABEL_RIGHT),
        Region("AP8:BA9", slot="customer_okpo", style=CODE, border=BOX_MEDIUM),
        Region("M10:AM10", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("A11:L11", "Подрядчик (Субподрядчик)"),
        Region("M11:AM11", slot="contractor", style=VALUE, border=UNDERLINE),
        Region("AN11:AO11", "по ОКПО", style=LABEL_RIGHT),
        Region("AP10:BA11", slot="contractor_okpo", style=CODE, border=BOX_MEDIUM),
        Region("M12:AM12", "(организация, адрес, телефон, факс)", style=CAPTION),
        Region("A13:L13", "Стройка"),
        Region("M13:AM13", slot="construction", style=VALUE, border=UNDERLINE),
        Region("AP12:BA13", style=CODE, border=BOX_MEDIUM),
        Region("M14:AB14", "(наименование, адрес)", style=CAPTION),
        Region("AC14:AO15", "Вид деятельности по ОКДП", style=TextStyle(horizontal="right", wrap=True)),
        Region("AP14:BA15", slot="okpd", style=CODE, border=BOX_MEDIUM),
        Region("X16:AJ16", "Договор подряда (контракт)", style=LABEL_RIGHT),
        Region("AK16:AO16", "номер", style=LABEL_RIGHT),
        Region("AP16:BA16", slot="contract_number", style=CODE, border=BOX_MEDIUM),
        Region("AK17:AO17", "дата", style=LABEL_RIGHT),
        Region("AP17:BA17", slot="contract_date", style=CODE, border=BOX_MEDIUM),
        Region("AC18:AO18", "Вид операции", style=LABEL_RIGHT),
        Region("AP18:BA18", style=CODE, border=BOX_MEDIUM),
        Region("X20:AF21", "Номер документа", style=HEADER, border=BOX),
        Region("AG20:AP21", "Дата составления", style=HEADER, border=BOX),
        Region("AR20:BA20", "Отчетный период", style=HEADER, border=BOX),
        Region("AR21:AV21", "с", style=HEADER, border=BOX),
        Region("AW21:BA21", "по", style=HEADER, border=BOX),
        Region("R22:W22", "СПРАВКА", style=TITLE),
        Region("X22:AF22", slot="doc_number", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("AG22:AP22", slot="doc_date", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("AR22:AV22", slot="period_from", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("AW22:BA22", slot="period_to", style=VALUE_CENTER, border=BOX_MEDIUM),
        Region("K23:AO23", "О СТОИМОСТИ ВЫПОЛНЕННЫХ РАБОТ И ЗАТРАТ", style=TITLE),
    ]


def _table_header_regions(row: int) -> List[Region]:
    second = row + 1
    numbers = row + 2
    regions = [
        Region(f"A{row}:C{second}", "Номер по порядку", style=HEADER, border=BOX),
        Region(
            f"D{row}:Z{second}",
            "Наименование пусковых комплексов, этапов, объектов, видов выполненных работ, оборудования, затрат",
            style=HEADER,
            border=BOX,
        ),
        Region(f"AA{row}:AD{second}", "Код", style=HEADER, border=BOX),
        Region(f"AE{row}:BA{row}", "Стоимость выполненных работ и затрат, руб.", style=HEADER, border=BOX),
        Region(f"AE{second}:AK{second}", "с начала проведения работ", style=HEADER, border=BOX),
        Region(f"AL{second}:AS{second}", "с начала года", style=HEADER, border=BOX),
        Region(f"AT{second}:BA{second}", "в том числе за отчетный период", style=HEADER, border=BOX),
    ]
    for index, (_, first, last, _style) in enumerate(TABLE_COLUMNS, start=1):
        regions.append(Region(f"{first}{numbers}:{last}{numbers}", str(index), style=CODE, border=BOX))
    return regions


def _grand_total_regions() -> List[Region]:
    regions = [
        Region("A28:C29", border=BOX),
        Region("D28:Z29", "Всего работ и затрат, включаемых в стоимость работ", style=TOTAL_TEXT, border=BOX),
        Region("AA28:AD29", border=BOX),
    ]
    for key, first, last, _style in MONEY_COLUMNS:
        regions.append(Region(f"{first}28:{last}29", slot=f"grand:{key}", style=TOTAL_NUMBER, border=BOX_MEDIUM))
    regions += [
        Region("A30:C30", border=BOX),
        Region("D30:Z30", "в том числе:", style=CELL_TEXT, border=BOX),
        Region("AA30:AD30", border=BOX),
    ]
    for _key, first, last, _style in MONEY_COLUMNS:
        regions.append(Region(f"{first}30:{last}30", border=BOX))
    return regions


def _data_row_regions(row: int) -> List[Region]:
    return [
        Region(f"{first}{row}:{last}{row}", slot=f"line:{row}:{key}", style=style, border=BOX)
        for key, first, last, style in TABLE_COLUMNS
    ]


def _page_total_regions(row: int) -> List[Region]:
    regions = [Region(f"D{row}:AD{row}", "Итого по странице", style=TOTAL_LABEL)]
    for key, first, last, _style in MONEY_COLUMNS:
        regions.append(Region(f"{first}{row}:{last}{row}", slot=f"total:{row}:{key}", style=TOTAL_NUMBER, border=BOX))
    return regions


def _signature_regions(row: int, title: str, prefix: str) -> List[Region]:
    captions = row + 1
    return [
        Region(f"A{row}:M{row}", title, style=TextStyle(bold=True)),
        Region(f"N{row}:W{row}", slot=f"{prefix}_position", style=VALUE_CENTER, border=UNDERLINE),
        Region(f"Y{row}:AH{row}", border=UNDERLINE),
        Region(f"AJ{row}:BA{row}", slot=f"{prefix}_signer", style=VALUE_CENTER, border=UNDERLINE),
        Region(f"N{captions}:W{captions}", "(должность)", style=CAPTION),
        Region(f"Y{captions}:AH{captions}", "(подпись)", style=CAPTION),
        Region(f"AJ{captions}:BA{captions}", "(расшифровка подписи)", style=CAPTION),
        Region(f"A{row + 3}:F{row + 3}", "М.П.", style=LABEL),
    ]


def _footer_regions(row: int) -> List[Region]:
    signatures = row + 4
    return [
        Region(f"AE{row}:AS{row}", "Итого", style=TOTAL_LABEL),
        Region(f"AT{row}:BA{row}", slot="footer_total", style=TOTAL_NUMBER, border=BOX_MEDIUM),
        Region(f"AE{row + 1}:AS{row + 1}", slot="vat_label", style=TOTAL_LABEL),
        Region(f"AT{row + 1}:BA{row + 1}", slot="vat_amount", style=TOTAL_NUMBER, border=BOX),
        Region(f"AE{row + 2}:AS{row + 2}", slot="total_with_vat_label", style=TOTAL_LABEL),
        Region(f"AT{row + 2}:BA{row + 2}", slot="total_with_vat", style=TOTAL_NUMBER, border=BOX),
        *_signature_regions(signatures, "Заказчик (Генподрядчик)", "customer"),
        *_signature_regions(signatures + 5, "Подрядчик (Субподрядчик)", "contractor"),
    ]


@lru_cache(maxsize=None)
def ks3_layout(page_count: int = 1) -> SheetLayout:
    """Grid of a KS-3 with ``page_count`` table pages (first page plus continuations)."""
    if page_count < 1:
        raise ValueError("page_count must be positive")

    regions = _header_regions() + _table_header_regions(25) + _grand_total_regions()
    first_rows = tuple(range(FIRST_DATA_ROW, FIRST_DATA_ROW + FIRST_PAGE_ROWS))
    for row in first_rows:
        regions += _data_row_regions(row)
    first_total = FIRST_DATA_ROW + FIRST_PAGE_ROWS
    regions += _page_total_regions(first_total)
    pages = [TablePage(data_rows=first_rows, total_row=first_total)]

    row_heights = dict(HEADER_ROW_HEIGHTS)
    page_breaks: List[int] = []
    for block in range(page_count - 1):
        start = CONTINUATION_START + block * CONTINUATION_HEIGHT
        page_breaks.append(start - 1)
        regions.append(Region(f"AN{start}:BA{start}", f"{block + 2}-я страница формы № КС-3", style=SMALL_RIGHT))
        regions += _table_header_regions(start + 1)
        row_heights[start + 1] = 27.75
        row_heights[start + 2] = 42.0
        row_heights[start + 3] = 14.25
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
        title="КС-3",
        column_widths=COLUMN_WIDTHS,
        row_heights=row_heights,
        regions=regions,
        pages=pages,
        footer_row=footer_row,
        row_height_rule=ROW_HEIGHT_RULE,
        page_breaks=page_breaks,
    )


def layout_for_lines(line_count: int) -> SheetLayout:
    return ks3_layout(page_count_for(line_count, FIRST_PAGE_ROWS, CONTINUATION_ROWS))


# === Values =================================================================

def _money_columns(work: Ks3Work) -> Dict[str, Decimal]:
    return {
        "since_project_start": work.amountPriorPeriods,
        "since_year_start": work.amountYtd - work.amountCurrent,
        "current_period": work.amountCurrent,
    }


def _sum_columns(works: Sequence[Ks3Work]) -> Dict[str, Decimal]:
    totals = {key: Decimal("0.00") for key, *_ in MONEY_COLUMNS}
    for work in works:
        for key, amount in _money_columns(work).items():
            totals[key] += amount
    return totals


def ks3_values(
    form: Ks3Form,
    layout: SheetLayout,
    *,
    include_vat: bool = False,
    vat_rate: Decimal = Decimal("0.20"),
) -> SheetValues:
    values = SheetValues()
    cells = values.cells
    construction = ", ".join(
        part for part in (form.constructionObject.name, form.constructionObject.address) if part
    )
    cells.update(
        {
            "investor": organization_line(form.investor),
            "customer": organization_line(form.customer),
            "contractor": organization_line(form.contractor),
            "construction": construction,
            "okpd": form.constructionObject.okpd,
            "contract_number": form.contract.number,
            "contract_date": format_date(form.contract.date),
            "doc_number": form.actNumber,
            "doc_date": format_date(form.actDate),
            "period_from": format_date(form.period.from_),
            "period_to": format_date(form.period.to),
        }
    )

    for key, amount in _sum_columns(form.works).items():
        cells[f"grand:{key}"] = format_amount(amount)

    pages = paginate(form.works, FIRST_PAGE_ROWS, CONTINUATION_ROWS)
    if len(pages) != len(layout.pages):
        raise ValueError(f"layout has {len(layout.pages)} pages, data needs {len(pages)}")
    for page, works in zip(layout.pages, pages):
        for row, work in zip(page.data_rows, works):
            cells[f"line:{row}:line"] = str(work.lineNumber)
            cells[f"line:{row}:name"] = work.workName
            cells[f"line:{row}:code"] = work.workCode
            for key, amount in _money_columns(work).items():
                cells[f"line:{row}:{key}"] = format_amount(amount)
            values.row_heights[row] = layout.row_height_rule.height_for(work.workName)
        if works:
            for key, amount in _sum_columns(works).items():
                cells[f"total:{page.total_row}:{key}"] = format_amount(amount)

    current = quantize_money(form.totals.amountCurrent)
    cells["footer_total"] = format_amount(current)
    if include_vat:
        vat = quantize_money(current * vat_rate)
        cells.update(vat_rows(current, vat, vat_rate))

    customer = pick_signatory(form.signatories, ("customer_chief", "customer_inspector", "technical_supervisor"))
    contractor = pick_signatory(form.signatories, ("contractor_chief", "contractor_accountant"))
    if customer:
        cells["customer_position"] = customer.position or ""
        cells["customer_signer"] = customer.fullName
    if contractor:
        cells["contractor_position"] = contractor.position or ""
        cells["contractor_signer"] = contractor.fullName
    return values
