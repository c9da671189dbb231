"""Calculated fields: ``[Field]`` formulas evaluated row-wise over a frame.

Referenced fields are coerced to numbers (values that do not coerce count
as 0) and bound to placeholder columns, then the rewritten expression is
evaluated by ``DataFrame.eval``. Fields are applied in order, so a formula
may reference a calculated field defined before it.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from bi_core.errors import FormulaError
from bi_core.fields import resolve_column, to_number
from bi_core.models import CalculatedField, normalize_calculated_field

logger = logging.getLogger(__name__)

_FIELD_REF = re.compile(r"\[(.*?)\]")


def formula_fields(formula: str) -> List[str]:
    return list(dict.fromkeys(_FIELD_REF.findall(formula or "")))


def validate_formula(formula: str, available_fields: Optional[Iterable[str]] = None) -> Optional[str]:
    """Error message for an invalid formula, ``None`` when it is usable.

    Field references are only checked when ``available_fields`` is given.
    """
    depth = 0
    for char in formula or "":
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
    if depth != 0:
        return "Unbalanced brackets"
    if available_fields is None:
        return None
    known = set(available_fields)
    for name in formula_fields(formula):
        if name not in known:
            return f"Field [{name}] not found"
    return None


def rewrite_formula(formula: str) -> tuple[str, Dict[str, str]]:
    """``[a] * [b]`` -> (``f0 * f1``, placeholder -> field)."""
    bindings: Dict[str, str] = {}
    for index, name in enumerate(formula_fields(formula)):
        bindings[f"f{index}"] = name

    by_field = {name: placeholder for placeholder, name in bindings.items()}
    expression = _FIELD_REF.sub(lambda m: by_field[m.group(1)], formula)
    return expression, bindings


def evaluate_formula(rows: pd.DataFrame, formula: str) -> pd.Series:
    expression, bindings = rewrite_formula(formula)
    if not expression.strip():
        raise FormulaError("Empty formula")
    scope = pd.DataFrame(
        {p: resolve_column(rows, name).map(to_number).astype(float).fillna(0.0) for p, name in bindings.items()},
        index=rows.index,
    )
    try:
        result = scope.eval(expression, engine="python")
    except Exception as exc:
        raise FormulaError(f"Cannot evaluate {formula!r}: {exc}") from exc
    if isinstance(result, pd.Series):
        return result
    return pd.Series([result] * len(rows), index=rows.index)


def apply_calculated_fields(rows: pd.DataFrame, fields: Sequence[CalculatedField | dict]) -> pd.DataFrame:
    if rows.empty or not fields:
        return rows
    out = rows.copy()
    for raw in fields:
        calc = normalize_calculated_field(raw)
        try:
            out[calc.name] = evaluate_formula(out, calc.formula)
        except FormulaError:
            logger.warning("calculated field %s skipped", calc.name, exc_info=True)
    return out
