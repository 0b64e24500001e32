import os
import logging
from contextlib import asynccontextmanager
from typing import List
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load .env from CWD (dev)
load_dotenv()

from sheetcalc.formula import (
    MAX_REFERENCE_DEPTH,
    evaluate_formula,
    extract_refs,
    format_address,
    is_error,
    parse_address,
)
from sheetcalc.models import (
    CellView,
    FormulaEvaluateRequest,
    FormulaEvaluateResponse,
    Sheet,
    SheetCreate,
    SheetGrid,
    SheetUpdateCell,
)
from sheetcalc.storage import SheetRepository

HOST = os.getenv("SHEETCALC_HOST", "127.0.0.1")
PORT = int(os.getenv("SHEETCALC_PORT", "8000"))
SEED_DEMO = os.getenv("SHEETCALC_SEED_DEMO", "false").lower() == "true"
CORS_ORIGINS = [o.strip() for o in os.getenv("SHEETCALC_CORS_ORIGINS", "*").split(",") if o.strip()]

# Grid requests larger than this are rejected
MAX_GRID_ROWS = 1000
MAX_GRID_COLS = 702

sheet_repo = SheetRepository()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if SEED_DEMO and not sheet_repo.get_all():
        sheet = sheet_repo.seed_demo()
        print(f"[STARTUP] Seeded demo sheet {sheet.id}")
    yield


app = FastAPI(title="sheetcalc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_sheet_or_404(sheet_id: str) -> Sheet:
    sheet = sheet_repo.get_by_id(sheet_id)
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet


def _canonical_or_422(ref: str) -> str:
    address = parse_address(ref.strip())
    if address is None:
        raise HTTPException(status_code=422, detail=f"Invalid cell reference: {ref}")
    return format_address(address)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/address/{ref}")
async def parse_cell_address(ref: str):
    address = parse_address(ref)
    if address is None:
        raise HTTPException(status_code=422, detail=f"Invalid cell reference: {ref}")
    return {"row": address.row, "col": address.col, "address": format_address(address)}


@app.post("/formula/evaluate", response_model=FormulaEvaluateResponse)
async def evaluate_inline(req: FormulaEvaluateRequest):
    """Evaluate a formula against cells supplied in the request body."""
    cells = {_canonical_or_422(ref): raw for ref, raw in req.cells.items()}
    result = evaluate_formula(req.formula, cells)
    return FormulaEvaluateResponse(
        formula=req.formula,
        result=result,
        is_error=is_error(result),
        precedents=sorted(extract_refs(req.formula)),
    )


# ── Sheets ────────────────────────────────────────────────────────

@app.post("/sheets", response_model=Sheet)
async def create_sheet(req: SheetCreate):
    try:
        return sheet_repo.create(title=req.title, cells=req.cells)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

@app.get("/sheets", response_model=List[Sheet])
async def list_sheets():
    return sheet_repo.get_all()

@app.get("/sheets/{sheet_id}", response_model=Sheet)
async def get_sheet(sheet_id: str):
    return _get_sheet_or_404(sheet_id)

@app.delete("/sheets/{sheet_id}")
async def delete_sheet(sheet_id: str):
    if not sheet_repo.delete(sheet_id):
        raise HTTPException(status_code=404, detail="Sheet not found")
    return {"ok": True}

@app.put("/sheets/{sheet_id}/cell", response_model=Sheet)
async def update_sheet_cell(sheet_id: str, req: SheetUpdateCell):
    try:
        sheet = sheet_repo.set_cell(sheet_id, req.ref, req.value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet

@app.delete("/sheets/{sheet_id}/cell/{ref}", response_model=Sheet)
async def clear_sheet_cell(sheet_id: str, ref: str):
    key = _canonical_or_422(ref)
    sheet = sheet_repo.clear_cell(sheet_id, key)
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet

@app.get("/sheets/{sheet_id}/cell/{ref}", response_model=CellView)
async def get_sheet_cell(sheet_id: str, ref: str):
    key = _canonical_or_422(ref)
    sheet = _get_sheet_or_404(sheet_id)
    cell = sheet.cells.get(key)
    content = cell.content if cell else ""
    address = parse_address(key)
    return CellView(
        ref=key,
        row=address.row,
        col=address.col,
        content=content,
        display=sheet_repo.display_value(sheet_id, key),
        is_formula=bool(cell and cell.formula),
        precedents=sorted(extract_refs(content)),
    )

@app.get("/sheets/{sheet_id}/grid", response_model=SheetGrid)
async def get_sheet_grid(
    sheet_id: str,
    rows: int = Query(10, ge=1, le=MAX_GRID_ROWS),
    cols: int = Query(6, ge=1, le=MAX_GRID_COLS),
    show_formulas: bool = False,
):
    grid = sheet_repo.display_grid(sheet_id, rows, cols, show_formulas=show_formulas)
    if grid is None:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return SheetGrid(sheet_id=sheet_id, show_formulas=show_formulas, rows=grid)

@app.post("/sheets/{sheet_id}/evaluate", response_model=FormulaEvaluateResponse)
async def evaluate_in_sheet(sheet_id: str, req: FormulaEvaluateRequest):
    """Evaluate an ad-hoc formula against the sheet without storing it."""
    result = sheet_repo.evaluate(sheet_id, req.formula)
    if result is None:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return FormulaEvaluateResponse(
        formula=req.formula,
        result=result,
        is_error=is_error(result),
        precedents=sorted(extract_refs(req.formula)),
    )


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("SHEETCALC_LOG_LEVEL", "INFO").upper())
    print(f"[STARTUP] sheetcalc on {HOST}:{PORT} (max reference depth {MAX_REFERENCE_DEPTH})")
    uvicorn.run(app, host=HOST, port=PORT, timeout_keep_alive=5)
