import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from sheetcalc.formula import (
    evaluate_formula,
    format_address,
    parse_address,
    resolve_cell_for_display,
)
from sheetcalc.models import Cell, CellAddress, Sheet

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _canonical_ref(ref: str) -> str:
    address = parse_address(ref.strip())
    if address is None:
        raise ValueError(f"Invalid cell reference: {ref!r}")
    return format_address(address)


class SheetCellStore:
    """Read-only view of one sheet's cells for the formula engine.

    Holds its own copy of the cell map so edits made while an evaluation
    is running cannot change what that evaluation sees.
    """

    def __init__(self, cells: Dict[str, Cell]):
        self._cells = {key: cell.content for key, cell in cells.items()}

    def get(self, address: Union[CellAddress, str]) -> Optional[str]:
        if isinstance(address, CellAddress):
            address = format_address(address)
        return self._cells.get(address)

    def __len__(self) -> int:
        return len(self._cells)


class SheetRepository:
    def __init__(self):
        self._sheets: Dict[str, Sheet] = {}
        self._lock = threading.RLock()

    def create(self, title: str = "Untitled Sheet", cells: Dict[str, str] = None) -> Sheet:
        sheet_id = str(uuid.uuid4())
        now = _now()
        sheet = Sheet(id=sheet_id, title=title, created_at=now, updated_at=now)
        for ref, raw in (cells or {}).items():
            key = _canonical_ref(ref)
            sheet.cells[key] = self._cell_from_raw(raw)
        with self._lock:
            self._sheets[sheet_id] = sheet
        logger.info("Created sheet %s (%r, %d cells)", sheet_id, title, len(sheet.cells))
        return sheet.model_copy(deep=True)

    def get_by_id(self, sheet_id: str) -> Optional[Sheet]:
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            return sheet.model_copy(deep=True) if sheet else None

    def get_all(self) -> List[Sheet]:
        with self._lock:
            sheets = sorted(self._sheets.values(), key=lambda s: s.updated_at or "", reverse=True)
            return [s.model_copy(deep=True) for s in sheets]

    def delete(self, sheet_id: str) -> bool:
        with self._lock:
            removed = self._sheets.pop(sheet_id, None)
        if removed:
            logger.info("Deleted sheet %s", sheet_id)
        return removed is not None

    # ── Cell editing ──────────────────────────────────────────────

    @staticmethod
    def _cell_from_raw(raw: str) -> Cell:
        stripped = raw.strip()
        if stripped.startswith("="):
            return Cell(value="", formula=stripped)
        return Cell(value=raw)

    def _put(self, sheet_id: str, ref: str, cell: Optional[Cell]) -> Optional[Sheet]:
        key = _canonical_ref(ref)
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            if not sheet:
                return None
            if cell is None or (not cell.formula and cell.value == ""):
                sheet.cells.pop(key, None)
            else:
                sheet.cells[key] = cell
            sheet.updated_at = _now()
            logger.info("Sheet %s: %s <- %r", sheet_id, key, cell.content if cell else None)
            return sheet.model_copy(deep=True)

    def set_cell_value(self, sheet_id: str, ref: str, value: str) -> Optional[Sheet]:
        """Store a literal; any formula previously in the cell is dropped.

        The engine reads any content starting with "=" as a formula, so
        such text is refused here; use set_cell_formula for formulas.
        """
        if value.startswith("="):
            raise ValueError("Literal values cannot start with '='; use set_cell_formula")
        return self._put(sheet_id, ref, Cell(value=value))

    def set_cell_formula(self, sheet_id: str, ref: str, formula: str) -> Optional[Sheet]:
        formula = formula.strip()
        if not formula.startswith("="):
            raise ValueError("Formula must start with '='")
        return self._put(sheet_id, ref, Cell(value="", formula=formula))

    def set_cell(self, sheet_id: str, ref: str, raw: str) -> Optional[Sheet]:
        return self._put(sheet_id, ref, self._cell_from_raw(raw))

    def clear_cell(self, sheet_id: str, ref: str) -> Optional[Sheet]:
        return self._put(sheet_id, ref, None)

    # ── Evaluation ────────────────────────────────────────────────

    def snapshot(self, sheet_id: str) -> Optional[SheetCellStore]:
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            return SheetCellStore(sheet.cells) if sheet else None

    def display_value(self, sheet_id: str, ref: str):
        store = self.snapshot(sheet_id)
        if store is None:
            return None
        return resolve_cell_for_display(_canonical_ref(ref), store)

    def evaluate(self, sheet_id: str, formula: str):
        store = self.snapshot(sheet_id)
        if store is None:
            return None
        return evaluate_formula(formula, store)

    def display_grid(self, sheet_id: str, rows: int, cols: int,
                     show_formulas: bool = False) -> Optional[List[list]]:
        """Values as the grid shows them; raw formula text when show_formulas."""
        store = self.snapshot(sheet_id)
        if store is None:
            return None
        grid = []
        for r in range(rows):
            line = []
            for c in range(cols):
                address = CellAddress(row=r, col=c)
                content = store.get(address) or ""
                if show_formulas or not content.startswith("="):
                    line.append(content)
                else:
                    line.append(resolve_cell_for_display(address, store))
            grid.append(line)
        return grid

    # ── Demo data ─────────────────────────────────────────────────

    def seed_demo(self) -> Sheet:
        """Quarterly budget with SUM totals per row and per column."""
        cells = {
            "A1": "Category", "B1": "Q1", "C1": "Q2", "D1": "Q3", "E1": "Q4", "F1": "Total",
            "A2": "Marketing", "B2": "12000", "C2": "15000", "D2": "18000", "E2": "21000",
            "A3": "Engineering", "B3": "45000", "C3": "47000", "D3": "52000", "E3": "55000",
            "A4": "Operations", "B4": "8000", "C4": "8500", "D4": "9000", "E4": "9500",
            "A5": "Total",
        }
        for row in (2, 3, 4):
            cells[f"F{row}"] = f"=SUM(B{row}:E{row})"
        for col in "BCDEF":
            cells[f"{col}5"] = f"=SUM({col}2:{col}4)"
        return self.create(title="Budget", cells=cells)
