"""Declarative spreadsheet grids for the unified KS forms.

A form layout is plain data: column widths, fixed row heights and a list of
regions. A region is a cell or merged range that carries either a static label
or a named slot for a bound value, a text style and a border kind. The merge
list and the per-cell border table are derived from the regions, so for a given
page count the grid is identical for every act; data only fills slots and
stretches the rows holding work names.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from functools import cached_property
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, Side
from openpyxl.utils import get_column_letter, range_boundaries
from openpyxl.worksheet.page import PageMargins
from openpyxl.worksheet.pagebreak import Break

FONT_NAME = "Times New Roman"

BOX = "box"
BOX_MEDIUM = "box_medium"
UNDERLINE = "underline"

T = TypeVar("T")


@dataclass(frozen=True)
class TextStyle:
    size: float = 9
    bold: bool = False
    italic: bool = False
    horizontal: str = "left"
    vertical: str = "center"
    wrap: bool = False


LABEL = TextStyle()
LABEL_RIGHT = TextStyle(horizontal="right")
CAPTION = TextStyle(size=7, horizontal="center", vertical="top")
TITLE = TextStyle(size=11, bold=True, horizontal="center")
HEADER = TextStyle(size=8, horizontal="center", wrap=True)
CODE = TextStyle(size=9, horizontal="center")
VALUE = TextStyle(size=9, horizontal="left", wrap=True)
VALUE_CENTER = TextStyle(size=9, horizontal="center", wrap=True)
CELL_TEXT = TextStyle(size=9, horizontal="left", vertical="top", wrap=True)
CELL_CENTER = TextStyle(size=9, horizontal="center", vertical="top")
CELL_NUMBER = TextStyle(size=9, horizontal="right", vertical="top")
TOTAL_LABEL = TextStyle(size=9, bold=True, horizontal="right")
TOTAL_NUMBER = TextStyle(size=9, bold=True, horizontal="right")


@dataclass(frozen=True)
class Region:
    ref: str
    text: Optional[str] = None
    slot: Optional[str] = None
    style: TextStyle = LABEL
    border: Optional[str] = None

    @property
    def anchor(self) -> str:
        return self.ref.split(":", 1)[0]

    @property
    def is_merged(self) -> bool:
        return ":" in self.ref


@dataclass(frozen=True)
class RowHeightRule:
    """Height of a name row: ``ceil(len / chars_per_line)`` lines, never below the floor."""

    chars_per_line: int
    min_height: float
    line_height: float
    padding: float

    def height_for(self, text: Optional[str]) -> float:
        length = len(text or "")
        lines = max(1, math.ceil(length / self.chars_per_line))
        return max(self.min_height, lines * self.line_height + self.padding)


@dataclass(frozen=True)
class TablePage:
    """Rows of one page of the work table."""

    data_rows: Tuple[int, ...]
    total_row: int

    @property
    def capacity(self) -> int:
        return len(self.data_rows)


@dataclass
class SheetLayout:
    title: str
    column_widths: Dict[str, float]
    row_heights: Dict[int, float]
    regions: List[Region]
    pages: List[TablePage]
    footer_row: int
    row_height_rule: RowHeightRule
    page_breaks: List[int] = field(default_factory=list)

    @cached_property
    def merges(self) -> List[str]:
        return [region.ref for region in self.regions if region.is_merged]

    @cached_property
    def slots(self) -> Dict[str, str]:
        return {region.slot: region.anchor for region in self.regions if region.slot}

    @cached_property
    def border_table(self) -> Dict[str, Dict[str, str]]:
        return build_border_table(self.regions)

    @property
    def last_row(self) -> int:
        rows = [range_boundaries(region.ref)[3] for region in self.regions]
        return max(rows) if rows else 1


@dataclass
class SheetValues:
    cells: Dict[str, Any] = field(default_factory=dict)
    row_heights: Dict[int, float] = field(default_factory=dict)


class LayoutError(ValueError):
    pass


def build_border_table(regions: Iterable[Region]) -> Dict[str, Dict[str, str]]:
    """``{"A1": {"top": "thin", ...}}`` for every cell on a bordered region's edge."""
    table: Dict[str, Dict[str, str]] = {}
    for region in regions:
        if not region.border:
            continue
        style = "medium" if region.border == BOX_MEDIUM else "thin"
        min_col, min_row, max_col, max_row = range_boundaries(region.ref)
        for row in range(min_row, max_row + 1):
            for col in range(min_col, max_col + 1):
                sides: Dict[str, str] = {}
                if region.border == UNDERLINE:
                    if row == max_row:
                        sides["bottom"] = style
                else:
                    if row == min_row:
                        sides["top"] = style
                    if row == max_row:
                        sides["bottom"] = style
                    if col == min_col:
                        sides["left"] = style
                    if col == max_col:
                        sides["right"] = style
                if sides:
                    table.setdefault(f"{get_column_letter(col)}{row}", {}).update(sides)
    return table


def paginate(items: Sequence[T], first_capacity: int, next_capacity: int) -> List[List[T]]:
    """Split table lines into pages; there is always at least one page."""
    pages: List[List[T]] = [list(items[:first_capacity])]
    rest = list(items[first_capacity:])
    while rest:
        pages.append(rest[:next_capacity])
        rest = rest[next_capacity:]
    return pages


def page_count_for(line_count: int, first_capacity: int, next_capacity: int) -> int:
    if line_count <= first_capacity:
        return 1
    return 1 + math.ceil((line_count - first_capacity) / next_capacity)


def column_range(first: str, last: str) -> List[str]:
    start = range_boundaries(f"{first}1")[0]
    end = range_boundaries(f"{last}1")[0]
    return [get_column_letter(index) for index in range(start, end + 1)]


def overlapping_regions(regions: Iterable[Region]) -> List[Tuple[str, str]]:
    """Pairs of region refs that claim the same cell."""
    owners: Dict[Tuple[int, int], str] = {}
    clashes: List[Tuple[str, str]] = []
    for region in regions:
        min_col, min_row, max_col, max_row = range_boundaries(region.ref)
        for row in range(min_row, max_row + 1):
            for col in range(min_col, max_col + 1):
                owner = owners.setdefault((row, col), region.ref)
                if owner != region.ref and (owner, region.ref) not in clashes:
                    clashes.append((owner, region.ref))
    return clashes


def check_layout(layout: SheetLayout) -> None:
    clashes = overlapping_regions(layout.regions)
    if clashes:
        listed = ", ".join(f"{first}/{second}" for first, second in clashes)
        raise LayoutError(f"Области макета пересекаются: {listed}")


def check_values(layout: SheetLayout, values: SheetValues) -> None:
    unknown = sorted(set(values.cells) - set(layout.slots))
    if unknown:
        raise LayoutError(f"Ячейки отсутствуют в макете: {', '.join(unknown)}")


# === Rendering ==============================================================

def _font(style: TextStyle) -> Font:
    return Font(name=FONT_NAME, size=style.size, bold=style.bold, italic=style.italic)


def _alignment(style: TextStyle) -> Alignment:
    return Alignment(horizontal=style.horizontal, vertical=style.vertical, wrap_text=style.wrap)


def render_workbook(layout: SheetLayout, values: SheetValues) -> bytes:
    """Build the whole workbook in memory and return the ``.xlsx`` bytes."""
    check_layout(layout)
    check_values(layout, values)

    workbook = Workbook()
    ws = workbook.active
    ws.title = layout.title

    ws.page_setup.orientation = "landscape"
    ws.page_setup.paperSize = ws.PAPERSIZE_A4
    ws.page_margins = PageMargins(left=0.4, right=0.4, top=0.4, bottom=0.4, header=0.3, footer=0.3)

    for letter, width in layout.column_widths.items():
        ws.column_dimensions[letter].width = width
    for row, height in {**layout.row_heights, **values.row_heights}.items():
        ws.row_dimensions[row].height = height

    for ref in layout.merges:
        ws.merge_cells(ref)

    for region in layout.regions:
        value = region.text if region.text is not None else values.cells.get(region.slot)
        cell = ws[region.anchor]
        if value is not None and value != "":
            cell.value = value
        cell.font = _font(region.style)
        cell.alignment = _alignment(region.style)

    for coordinate, sides in layout.border_table.items():
        ws[coordinate].border = Border(
            **{side: Side(style=sides.get(side)) for side in ("left", "right", "top", "bottom")}
        )

    for row in layout.page_breaks:
        ws.row_breaks.append(Break(id=row))
    ws.print_area = f"A1:{get_column_letter(len(layout.column_widths))}{layout.last_row}"

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
