"""
Sub-analyzers used by the Analyzer variants.

Each one does a single pass over an already-loaded WorkbookScan (or a VBA
module) and returns an Outcome. None of them raise across the boundary.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from statistics import mean

import openpyxl
from oletools.olevba import VBA_Parser
from openpyxl.utils.cell import column_index_from_string, coordinate_from_string

from xlsa_web.domain.models import ErrorFinding
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

logger = logging.getLogger(__name__)

ERROR_SEVERITY = {
    "#REF!": "critical",
    "#NAME?": "critical",
    "#DIV/0!": "high",
    "#VALUE!": "high",
    "#NUM!": "medium",
    "#N/A": "medium",
    "#NULL!": "medium",
}

VOLATILE_FUNCTIONS = frozenset({"NOW", "TODAY", "RAND", "RANDBETWEEN", "OFFSET", "INDIRECT", "INFO", "CELL"})

LONG_FORMULA_CHARS = 255

_STRING_LITERAL = re.compile(r'"[^"]*"')
_FUNCTION_CALL = re.compile(r"([A-Z][A-Z0-9\.]*)\s*\(")
_RANGE_REF = re.compile(r"(?<![A-Za-z_!\$])\$?([A-Z]{1,3})\$?(\d+):\$?([A-Z]{1,3})\$?(\d+)")
_CELL_REF = re.compile(r"(?<![A-Za-z_!:\$])\$?([A-Z]{1,3})\$?(\d+)(?![\d(:])")
_WHOLE_COLUMN_REF = re.compile(r"(?<![A-Za-z0-9_])\$?[A-Z]{1,3}:\$?[A-Z]{1,3}(?![A-Za-z0-9_])")
_DIVIDE_BY_ZERO = re.compile(r"/\s*0(?![\d.])")


@dataclass(frozen=True)
class CellInfo:
    sheet: str
    coordinate: str
    value: object
    data_type: str

    @property
    def is_formula(self) -> bool:
        return isinstance(self.value, str) and self.value.startswith("=")


@dataclass
class WorkbookScan:
    path: Path
    structure: dict
    cells: list = field(default_factory=list)

    @property
    def formula_cells(self) -> list:
        return [c for c in self.cells if c.is_formula]


def _strip_literals(formula: str) -> str:
    return _STRING_LITERAL.sub('""', formula)


def _nesting_depth(formula: str) -> int:
    depth = deepest = 0
    for ch in formula:
        if ch == "(":
            depth += 1
            deepest = max(deepest, depth)
        elif ch == ")":
            depth = max(depth - 1, 0)
    return deepest


def _references_self(formula: str, coordinate: str) -> bool:
    col_letter, row = coordinate_from_string(coordinate)
    col = column_index_from_string(col_letter)
    body = _strip_literals(formula)

    for c1, r1, c2, r2 in _RANGE_REF.findall(body):
        lo_c, hi_c = sorted((column_index_from_string(c1), column_index_from_string(c2)))
        lo_r, hi_r = sorted((int(r1), int(r2)))
        if lo_c <= col <= hi_c and lo_r <= row <= hi_r:
            return True

    for c, r in _CELL_REF.findall(body):
        if column_index_from_string(c) == col and int(r) == row:
            return True
    return False


class StructureAnalyzer:
    """Loads the workbook once and records sheet layout plus every non-empty cell."""

    def analyze(self, path: Path) -> Outcome[WorkbookScan]:
        try:
            wb = openpyxl.load_workbook(str(path), read_only=True, data_only=False)
        except Exception as e:
            logger.warning("Could not open workbook %s: %s", path, e)
            return Err(AppError.file_processing(path.name, "Could not read workbook"))

        try:
            sheets = []
            cells: list[CellInfo] = []
            for ws in wb.worksheets:
                non_empty = formulas = 0
                max_row = max_col = 0
                for row in ws.iter_rows():
                    for cell in row:
                        if cell.value is None:
                            continue
                        info = CellInfo(ws.title, cell.coordinate, cell.value, cell.data_type)
                        cells.append(info)
                        non_empty += 1
                        formulas += 1 if info.is_formula else 0
                        max_row = max(max_row, cell.row)
                        max_col = max(max_col, cell.column)
                sheets.append({
                    "name": ws.title,
                    "max_row": max_row,
                    "max_column": max_col,
                    "cell_count": non_empty,
                    "formula_count": formulas,
                })
        except Exception as e:
            logger.warning("Failed while scanning %s: %s", path, e)
            return Err(AppError.file_processing(path.name, "Could not scan workbook"))
        finally:
            wb.close()

        structure = {
            "sheet_count": len(sheets),
            "sheets": sheets,
            "total_cells": sum(s["cell_count"] for s in sheets),
            "total_formulas": sum(s["formula_count"] for s in sheets),
        }
        return Ok(WorkbookScan(path=path, structure=structure, cells=cells))


class ErrorDetector:
    def detect(self, scan: WorkbookScan) -> Outcome[list]:
        found: list[ErrorFinding] = []

        for cell in scan.cells:
            if cell.data_type == "e" or (isinstance(cell.value, str) and cell.value in ERROR_SEVERITY):
                code = str(cell.value)
                found.append(ErrorFinding(
                    sheet=cell.sheet,
                    cell=cell.coordinate,
                    error_type="error_value",
                    severity=ERROR_SEVERITY.get(code, "medium"),
                    message=f"Cell shows error value {code}",
                ))
                continue

            if not cell.is_formula:
                continue

            formula = str(cell.value)
            body = _strip_literals(formula)
            if "#REF!" in body:
                found.append(ErrorFinding(cell.sheet, cell.coordinate, "broken_reference", "critical",
                                          "Formula references a deleted range (#REF!)"))
            if _references_self(formula, cell.coordinate):
                found.append(ErrorFinding(cell.sheet, cell.coordinate, "circular_reference", "critical",
                                          "Formula refers to its own cell"))
            if _DIVIDE_BY_ZERO.search(body):
                found.append(ErrorFinding(cell.sheet, cell.coordinate, "division_by_zero", "high",
                                          "Formula divides by a literal zero"))
            if len(formula) > LONG_FORMULA_CHARS:
                found.append(ErrorFinding(cell.sheet, cell.coordinate, "long_formula", "low",
                                          f"Formula is longer than {LONG_FORMULA_CHARS} characters"))

        return Ok([f.to_dict() for f in found])


class FormulaAnalyzer:
    def analyze(self, scan: WorkbookScan) -> Outcome[dict]:
        formula_cells = scan.formula_cells
        if not formula_cells:
            return Ok({
                "formula_count": 0,
                "function_usage": {},
                "unique_functions": 0,
                "max_nesting_depth": 0,
                "average_length": 0.0,
                "volatile_count": 0,
                "complexity_score": 0,
            })

        usage: Counter = Counter()
        per_formula_scores = []
        depths = []
        lengths = []
        volatile = 0

        for cell in formula_cells:
            formula = str(cell.value)
            body = _strip_literals(formula).upper()
            functions = _FUNCTION_CALL.findall(body)
            usage.update(functions)
            volatile += sum(1 for f in functions if f in VOLATILE_FUNCTIONS)

            depth = _nesting_depth(body)
            depths.append(depth)
            lengths.append(len(formula))
            per_formula_scores.append(min(100, depth * 12 + len(functions) * 6 + len(formula) // 8))

        return Ok({
            "formula_count": len(formula_cells),
            "function_usage": dict(usage.most_common()),
            "unique_functions": len(usage),
            "max_nesting_depth": max(depths),
            "average_length": round(mean(lengths), 1),
            "volatile_count": volatile,
            "complexity_score": round(mean(per_formula_scores)),
        })


class PerformanceScanner:
    """Workbook-level performance heuristics (volatile functions, whole-column references, size)."""

    LARGE_USED_CELLS = 1_000_000

    def scan(self, scan: WorkbookScan, formulas: dict) -> Outcome[dict]:
        issues = []
        score = 100

        volatile = formulas.get("volatile_count", 0)
        if volatile:
            issues.append({
                "type": "volatile_functions",
                "count": volatile,
                "message": f"{volatile} volatile function calls recalculate on every change",
            })
            score -= min(30, volatile * 3)

        whole_columns = sum(len(_WHOLE_COLUMN_REF.findall(_strip_literals(str(c.value)))) for c in scan.formula_cells)
        if whole_columns:
            issues.append({
                "type": "whole_column_references",
                "count": whole_columns,
                "message": f"{whole_columns} whole-column references widen the calculation range",
            })
            score -= min(25, whole_columns * 5)

        total_cells = scan.structure.get("total_cells", 0)
        if total_cells > self.LARGE_USED_CELLS:
            issues.append({
                "type": "large_used_range",
                "count": total_cells,
                "message": "Used range exceeds one million cells",
            })
            score -= 20

        if formulas.get("max_nesting_depth", 0) > 7:
            issues.append({
                "type": "deep_nesting",
                "count": formulas["max_nesting_depth"],
                "message": "Deeply nested formulas are slow to evaluate and hard to audit",
            })
            score -= 10

        return Ok({"score": max(score, 0), "issues": issues})


class VbaExtractor:
    def extract_modules(self, path: Path) -> Outcome[list]:
        try:
            parser = VBA_Parser(str(path))
        except Exception as e:
            logger.warning("VBA parser could not open %s: %s", path, e)
            return Err(AppError.file_processing(path.name, "Could not read VBA project"))

        try:
            if not parser.detect_vba_macros():
                return Ok([])

            modules = []
            for _filename, _stream_path, vba_filename, vba_code in parser.extract_macros():
                code = vba_code or ""
                name = vba_filename.rsplit(".", 1)[0] if vba_filename else "Module"
                modules.append({
                    "name": name,
                    "type": "document" if name == "ThisWorkbook" or name.startswith("Sheet") else "standard",
                    "code": code,
                    "line_count": len(code.splitlines()),
                })
            return Ok(modules)
        except Exception as e:
            logger.warning("VBA extraction failed for %s: %s", path, e)
            return Err(AppError.file_processing(path.name, "Could not extract VBA modules"))
        finally:
            parser.close()


class VbaSecurityScanner:
    # pattern -> weight; risk score is the capped sum of weights that matched
    RISKY_PATTERNS = {
        r"\bShell\s*\(?": 4,
        r"WScript\.Shell": 4,
        r"URLDownloadToFile": 5,
        r"\bCreateObject\s*\(": 2,
        r"\bKill\s+": 3,
        r"\b(Auto_?Open|Workbook_Open|Document_Open)\b": 2,
        r"\bDeclare\s+(PtrSafe\s+)?(Function|Sub)\b": 2,
        r"\bEnviron\s*\(": 1,
        r"\bFileCopy\b": 1,
        r"\bOpen\s+.+\s+For\s+(Output|Append|Binary)\b": 2,
    }

    def scan_module(self, module: dict) -> Outcome[dict]:
        code = module.get("code") or ""
        matched = []
        score = 0
        for pattern, weight in self.RISKY_PATTERNS.items():
            if re.search(pattern, code, flags=re.IGNORECASE):
                matched.append(pattern)
                score += weight
        return Ok({"risk_score": min(score, 10), "matched_patterns": matched})


class VbaPerformanceScanner:
    def analyze_module(self, module: dict) -> Outcome[dict]:
        code = module.get("code") or ""
        issues = []
        score = 100

        selects = len(re.findall(r"\.Select\b", code))
        if selects:
            issues.append(f"{selects} .Select calls")
            score -= min(30, selects * 10)

        activates = len(re.findall(r"\.Activate\b", code))
        if activates:
            issues.append(f"{activates} .Activate calls")
            score -= min(20, activates * 5)

        has_loops = bool(re.search(r"^\s*(For|Do)\b", code, flags=re.IGNORECASE | re.MULTILINE))
        if has_loops and not re.search(r"ScreenUpdating\s*=\s*False", code, flags=re.IGNORECASE):
            issues.append("loops run with screen updating enabled")
            score -= 15
        if has_loops and not re.search(r"Calculation\s*=\s*xlCalculationManual", code, flags=re.IGNORECASE):
            issues.append("loops run with automatic calculation")
            score -= 10

        gotos = len(re.findall(r"\bGoTo\b", code, flags=re.IGNORECASE))
        if gotos:
            issues.append(f"{gotos} GoTo jumps")
            score -= min(10, gotos * 5)

        return Ok({"score": max(score, 0), "issues": issues})
