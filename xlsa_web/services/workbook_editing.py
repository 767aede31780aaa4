from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import openpyxl
from openpyxl.utils.exceptions import IllegalCharacterError

from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

logger = logging.getLogger(__name__)

_CELL_ADDRESS = re.compile(r"^\$?[A-Z]{1,3}\$?[1-9]\d{0,6}$")
_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class EditResult:
    content: bytes
    applied: list
    skipped: list


def _formula_is_plausible(formula) -> bool:
    if not isinstance(formula, str) or not formula.startswith("=") or len(formula) < 2:
        return False
    depth = 0
    for ch in formula:
        depth += ch == "("
        depth -= ch == ")"
        if depth < 0:
            return False
    return depth == 0


def apply_modifications(path: Path, modifications: list) -> Outcome[EditResult]:
    """
    Apply value/formula edits to a copy of the workbook.
    Edits naming an unknown sheet or a bad address are skipped with a reason, as
    are implausible formulas and values a cell cannot hold.
    """
    keep_vba = path.suffix.lower() in (".xlsm", ".xltm")
    try:
        wb = openpyxl.load_workbook(str(path), keep_vba=keep_vba)
    except Exception as e:
        logger.warning("Could not open %s for editing: %s", path, e)
        return Err(AppError.file_processing(path.name, "Could not open workbook for editing"))

    try:
        applied, skipped = _apply_all(wb, modifications)
        out = BytesIO()
        try:
            wb.save(out)
        except Exception as e:
            logger.warning("Could not save edited copy of %s: %s", path, e)
            return Err(AppError.file_processing(path.name, "Could not save modified workbook"))
    finally:
        wb.close()

    logger.info("Applied %d modifications to %s (%d skipped)", len(applied), path.name, len(skipped))
    return Ok(EditResult(content=out.getvalue(), applied=applied, skipped=skipped))


def _apply_all(wb, modifications: list):
    applied, skipped = [], []
    for mod in modifications:
        sheet_name = mod.get("sheet") or wb.active.title
        cell_ref = str(mod.get("cell") or "").strip().upper()

        if sheet_name not in wb.sheetnames or not _CELL_ADDRESS.match(cell_ref):
            skipped.append({**mod, "reason": "unknown sheet or cell"})
            continue

        kind = mod.get("type", "value")
        if kind == "formula":
            if not _formula_is_plausible(mod.get("formula")):
                skipped.append({**mod, "reason": "invalid formula"})
                continue
            value = mod["formula"]
        elif kind == "value":
            value = mod.get("new_value")
            if not isinstance(value, _SCALAR_TYPES):
                value = str(value)
        else:
            skipped.append({**mod, "reason": f"unsupported type {kind}"})
            continue

        try:
            wb[sheet_name][cell_ref.replace("$", "")] = value
        except (IllegalCharacterError, ValueError, TypeError):
            skipped.append({**mod, "reason": "value cannot be stored in a cell"})
            continue
        applied.append(mod)
    return applied, skipped
