"""Formula engine for sheetcalc sheets.

Supports: =, +, -, *, /, parentheses, unary signs, cell refs (A1),
SUM(range) and AVERAGE(range) over a single A1:B3 style range.

Error tokens returned in place of a value:
  #ERROR!     — syntax error, bad reference or range, disallowed
                character, non-finite result, reference chain too deep
  #CIRCULAR!  — a cell was reached again while resolving its own refs

The store is any object with ``get(address) -> str | None`` keyed by
canonical address text ("A1"). Nothing here mutates it.
"""

import logging
import math
import os
import re
from decimal import Decimal
from typing import Iterable, Optional, Protocol, Union

from sheetcalc.models import CellAddress, CellRange

logger = logging.getLogger(__name__)

ERROR = "#ERROR!"
CIRCULAR = "#CIRCULAR!"
ERROR_TOKENS = frozenset({ERROR, CIRCULAR})

# Longest reference chain followed before giving up with #ERROR!
MAX_REFERENCE_DEPTH = int(os.getenv("SHEETCALC_MAX_DEPTH", "100"))

EvaluationResult = Union[float, str]


class CellStore(Protocol):
    def get(self, address: str) -> Optional[str]: ...


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Raised while evaluating; `code` is the token shown in the cell."""
    code: str = ERROR

class FormulaSyntaxError(FormulaError):
    code = ERROR

class CircularReferenceError(FormulaError):
    code = CIRCULAR

class ReferenceDepthError(FormulaError):
    code = ERROR


def is_error(value) -> bool:
    return isinstance(value, str) and value in ERROR_TOKENS


# ── Addresses ─────────────────────────────────────────────────────

_ADDRESS_RE = re.compile(r'([A-Za-z]+)([0-9]+)')
_LETTERS_RE = re.compile(r'[A-Za-z]+')
_REF_RE = re.compile(r'[A-Z]+[0-9]+')
_AGGREGATE_RE = re.compile(r'(SUM|AVERAGE)\(([^()]*)\)')
_VALID_ARITH_RE = re.compile(r'[0-9.+\-*/()\s]*')
_NUMBER_RE = re.compile(r'[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)([eE][+-]?[0-9]+)?')


def column_to_letters(col: int) -> str:
    """0->A, 25->Z, 26->AA, 701->ZZ, 702->AAA."""
    if col < 0:
        raise ValueError(f"Column index must be >= 0: {col}")
    letters = ""
    while col >= 0:
        letters = chr(ord('A') + col % 26) + letters
        col = col // 26 - 1
    return letters


def letters_to_column(letters: str) -> int:
    """A->0, Z->25, AA->26. Case-insensitive."""
    if not _LETTERS_RE.fullmatch(letters):
        raise ValueError(f"Bad column letters: {letters!r}")
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def parse_address(text: str) -> Optional[CellAddress]:
    """'A1' -> CellAddress(row=0, col=0). None on any other shape, spaces included."""
    m = _ADDRESS_RE.fullmatch(text)
    if not m:
        return None
    row = int(m.group(2)) - 1
    if row < 0:
        return None
    return CellAddress(row=row, col=letters_to_column(m.group(1)))


def format_address(addr: CellAddress) -> str:
    return f"{column_to_letters(addr.col)}{addr.row + 1}"


def parse_range(text: str) -> Optional[CellRange]:
    """'A1:B3' -> CellRange. Corners are kept as given, not normalized."""
    parts = text.split(':')
    if len(parts) != 2:
        return None
    start = parse_address(parts[0].strip())
    end = parse_address(parts[1].strip())
    if start is None or end is None:
        return None
    return CellRange(start=start, end=end)


def _key(address: Union[CellAddress, str]) -> str:
    if isinstance(address, CellAddress):
        return format_address(address)
    parsed = parse_address(address)
    if parsed is None:
        raise ValueError(f"Bad cell reference: {address!r}")
    return format_address(parsed)


# ── Arithmetic parser (recursive descent, no eval()) ──────────────

class _Parser:
    """Parses and evaluates: +, -, *, /, unary +/-, parentheses, numbers.

    Grammar:
        expr   := term (('+' | '-') term)*
        term   := factor (('*' | '/') factor)*
        factor := '(' expr ')' | ('+' | '-') factor | number
        number := digits ('.' digits)?
    """
    __slots__ = ('text', 'pos')

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _skip_space(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self):
        self._skip_space()
        return self.text[self.pos] if self.pos < len(self.text) else None

    def _eat(self, expected=None):
        ch = self._peek()
        if ch is None:
            raise FormulaSyntaxError("Unexpected end of expression")
        if expected and ch != expected:
            raise FormulaSyntaxError(f"Expected '{expected}', got '{ch}'")
        self.pos += 1
        return ch

    def _digits(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] in '0123456789':
            self.pos += 1
        return self.text[start:self.pos]

    def _number(self) -> float:
        self._skip_space()
        start = self.pos
        if not self._digits():
            raise FormulaSyntaxError(
                f"Expected number at pos {self.pos}"
                + (f", got '{self.text[self.pos]}'" if self.pos < len(self.text) else "")
            )
        if self.pos < len(self.text) and self.text[self.pos] == '.':
            self.pos += 1
            if not self._digits():
                raise FormulaSyntaxError(f"Invalid number at pos {start}")
        return float(self.text[start:self.pos])

    def _factor(self) -> float:
        ch = self._peek()
        if ch == '(':
            self._eat('(')
            val = self._expr()
            self._eat(')')
            return val
        if ch == '-':
            self._eat()
            return -self._factor()
        if ch == '+':
            self._eat()
            return self._factor()
        return self._number()

    def _term(self) -> float:
        left = self._factor()
        while self._peek() in ('*', '/'):
            op = self._eat()
            right = self._factor()
            left = left * right if op == '*' else _divide(left, right)
        return left

    def _expr(self) -> float:
        left = self._term()
        while self._peek() in ('+', '-'):
            op = self._eat()
            right = self._term()
            left = left + right if op == '+' else left - right
        return left

    def parse(self) -> float:
        if self._peek() is None:
            raise FormulaSyntaxError("Empty expression")
        result = self._expr()
        if self._peek() is not None:
            raise FormulaSyntaxError(f"Unexpected '{self.text[self.pos]}' at pos {self.pos}")
        return result


def _divide(left: float, right: float) -> float:
    """IEEE-754 division: x/0 is ±inf, 0/0 is nan."""
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


# ── Cell resolution ───────────────────────────────────────────────

def _content(store: CellStore, key: str) -> str:
    raw = store.get(key)
    return "" if raw is None else str(raw)


def _to_number(value) -> Optional[float]:
    """Finite float for numbers or text that starts with a number, else None.

    Text is read like a leading-number parse: "12abc" -> 12.0, "3px" -> 3.0.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        m = _NUMBER_RE.match(value.strip())
        if not m:
            return None
        number = float(m.group(0))
    else:
        return None
    return number if math.isfinite(number) else None


def _resolve_value(key: str, store: CellStore, visited: frozenset) -> Optional[float]:
    """Numeric value of a cell, or None when it holds nothing numeric.

    Nested #ERROR! results count as non-numeric. Cycles and the depth
    guard raise through so the whole chain reports them.
    """
    content = _content(store, key)
    if not content.startswith('='):
        return _to_number(content)
    if len(visited) >= MAX_REFERENCE_DEPTH:
        raise ReferenceDepthError(f"Reference chain deeper than {MAX_REFERENCE_DEPTH} at {key}")
    try:
        result = _evaluate(content, store, visited | {key})
    except FormulaSyntaxError as e:
        logger.debug("%s evaluates to %s; treated as non-numeric", key, e.code)
        return None
    return _to_number(result)


def resolve_as_number(address: Union[CellAddress, str], store: CellStore,
                      visited: frozenset = frozenset()) -> float:
    """Arithmetic view of a cell: anything non-numeric counts as 0.

    Unlike evaluate_formula this does not turn failures into tokens: a
    cycle raises CircularReferenceError, an over-long chain raises
    ReferenceDepthError, and a chain deep enough to exhaust the Python
    stack raises RecursionError.
    """
    value = _resolve_value(_key(address), store, visited)
    return 0.0 if value is None else value


def resolve_for_display(address: Union[CellAddress, str], store: CellStore,
                        visited: frozenset = frozenset()) -> EvaluationResult:
    """Display view of a cell: literal text as-is, formulas evaluated."""
    key = _key(address)
    content = _content(store, key)
    if not content.startswith('='):
        return content
    return evaluate_formula(content, store, visited | {key})


def resolve_cell_for_display(address: Union[CellAddress, str], store: CellStore) -> EvaluationResult:
    return resolve_for_display(address, store, frozenset())


# ── Formula evaluation ────────────────────────────────────────────

def _format_operand(value: float) -> str:
    # Positional notation keeps exponents out of the substituted text
    return f"({format(Decimal(repr(value)), 'f')})"


def _aggregate(name: str, range_text: str, store: CellStore, visited: frozenset) -> float:
    cell_range = parse_range(range_text)
    if cell_range is None:
        raise FormulaSyntaxError(f"Bad range: {range_text}")
    total = 0.0
    count = 0
    for address in cell_range.addresses():
        key = format_address(address)
        if key in visited:
            raise CircularReferenceError(f"Circular reference to {key}")
        value = _resolve_value(key, store, visited)
        if value is None:
            continue
        total += value
        count += 1
    if name == 'SUM':
        return total
    return total / count if count else 0.0


def _arithmetic(body: str, store: CellStore, visited: frozenset) -> float:
    parts = []
    last = 0
    for m in _REF_RE.finditer(body):
        address = parse_address(m.group(0))
        if address is None:
            raise FormulaSyntaxError(f"Bad cell reference: {m.group(0)}")
        key = format_address(address)
        if key in visited:
            raise CircularReferenceError(f"Circular reference to {key}")
        parts.append(body[last:m.start()])
        parts.append(_format_operand(resolve_as_number(key, store, visited)))
        last = m.end()
    parts.append(body[last:])
    expr = "".join(parts)

    if not _VALID_ARITH_RE.fullmatch(expr):
        raise FormulaSyntaxError(f"Disallowed characters in {expr!r}")
    return _Parser(expr).parse()


def _evaluate(formula: str, store: CellStore, visited: frozenset) -> EvaluationResult:
    if not formula.startswith('='):
        return formula
    # Refs and function names are case-insensitive
    body = formula[1:].upper().strip()

    m = _AGGREGATE_RE.fullmatch(body)
    if m:
        result = _aggregate(m.group(1), m.group(2), store, visited)
    else:
        result = _arithmetic(body, store, visited)

    if not math.isfinite(result):
        raise FormulaSyntaxError(f"Non-finite result: {result}")
    return result


def evaluate_formula(formula_text: str, store: CellStore,
                     visited: Iterable[Union[CellAddress, str]] = frozenset()) -> EvaluationResult:
    """Evaluate a formula string (starting with =) against *store*.

    Returns a float, the text unchanged when it is not a formula, or one
    of the error tokens. Never raises for bad formulas.
    """
    chain = frozenset(_key(v) for v in visited)
    try:
        return _evaluate(formula_text, store, chain)
    except FormulaError as e:
        logger.debug("Formula %r -> %s (%s)", formula_text, e.code, e)
        return e.code
    except RecursionError:
        logger.warning("Recursion limit reached evaluating %r", formula_text)
        return ERROR


# ── Reference extraction ─────────────────────────────────────────

def extract_refs(formula: str) -> set[str]:
    """Canonical addresses a formula reads, range members expanded."""
    if not formula or not formula.startswith('='):
        return set()
    body = formula[1:].upper().strip()

    m = _AGGREGATE_RE.fullmatch(body)
    if m:
        cell_range = parse_range(m.group(2))
        if cell_range is None:
            return set()
        return {format_address(a) for a in cell_range.addresses()}

    refs: set[str] = set()
    for m in _REF_RE.finditer(body):
        address = parse_address(m.group(0))
        if address is not None:
            refs.add(format_address(address))
    return refs
