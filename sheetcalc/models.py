from typing import Dict, Iterator, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

class CellAddress(BaseModel):
    """Zero-based (row, col) position. Hashable so it can live in sets."""
    model_config = ConfigDict(frozen=True)

    row: int = Field(ge=0)
    col: int = Field(ge=0)

class CellRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: CellAddress
    end: CellAddress

    @property
    def top(self) -> int:
        return min(self.start.row, self.end.row)

    @property
    def bottom(self) -> int:
        return max(self.start.row, self.end.row)

    @property
    def left(self) -> int:
        return min(self.start.col, self.end.col)

    @property
    def right(self) -> int:
        return max(self.start.col, self.end.col)

    def addresses(self) -> Iterator[CellAddress]:
        """Walk the rectangle row-major, whichever corners were given."""
        for r in range(self.top, self.bottom + 1):
            for c in range(self.left, self.right + 1):
                yield CellAddress(row=r, col=c)

class Cell(BaseModel):
    value: str = ""
    formula: Optional[str] = None

    @property
    def content(self) -> str:
        return self.formula if self.formula else self.value

class Sheet(BaseModel):
    id: Optional[str] = Field(default=None)
    title: str = "Untitled Sheet"
    cells: Dict[str, Cell] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class SheetCreate(BaseModel):
    title: str = "Untitled Sheet"
    # Raw contents keyed by address; "=..." entries become formulas
    cells: Dict[str, str] = Field(default_factory=dict)

class SheetUpdateCell(BaseModel):
    ref: str
    value: str

class CellView(BaseModel):
    ref: str
    row: int
    col: int
    content: str
    display: Union[float, str]
    is_formula: bool = False
    precedents: List[str] = Field(default_factory=list)

class FormulaEvaluateRequest(BaseModel):
    formula: str
    # Only used by /formula/evaluate; sheet-bound evaluation ignores it
    cells: Dict[str, str] = Field(default_factory=dict)

class FormulaEvaluateResponse(BaseModel):
    formula: str
    result: Union[float, str]
    is_error: bool = False
    precedents: List[str] = Field(default_factory=list)

class SheetGrid(BaseModel):
    sheet_id: str
    show_formulas: bool = False
    rows: List[List[Union[float, str]]] = Field(default_factory=list)
