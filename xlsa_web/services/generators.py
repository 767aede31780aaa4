from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Optional

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from xlsa_web.config.ini_config import GenerationThresholds
from xlsa_web.domain.models import (
    XLSX_CONTENT_TYPE,
    GeneratedFile,
    GenerationMetrics,
    WorkbookDesign,
)
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

logger = logging.getLogger(__name__)

FAST = "fast"
STREAMING = "streaming"
HYBRID = "hybrid"
FALLBACK = "fallback"

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(fill_type="solid", fgColor="1F4E78")

_INVALID_TITLE_CHARS = re.compile(r"[\\*?:/\[\]]")


@dataclass(frozen=True)
class GeneratorDeps:
    thresholds: GenerationThresholds = field(default_factory=GenerationThresholds)


def select_strategy(size_measure: float, thresholds: GenerationThresholds) -> str:
    """Size measure is in thousands of rows."""
    if size_measure < thresholds.small:
        return FAST
    if size_measure < thresholds.medium:
        return STREAMING
    return HYBRID


class Generator(ABC):
    """Strategy interface: generate(design, filename) -> Outcome[GeneratedFile]."""

    strategy = ""

    def __init__(self, deps: Optional[GeneratorDeps] = None):
        self.deps = deps or GeneratorDeps()

    @abstractmethod
    def write(self, design: WorkbookDesign, out: BytesIO, cancel_token=None) -> None:
        raise NotImplementedError

    def generate(self, design: WorkbookDesign, filename: str, cancel_token=None) -> Outcome[GeneratedFile]:
        started = time.perf_counter()
        out = BytesIO()
        try:
            self.write(design, out, cancel_token)
        except GenerationCancelled:
            return Err(AppError.cancelled())
        except Exception as e:
            logger.warning("%s generator failed for %s: %s", self.strategy, filename, e)
            return Err(AppError.file_processing(filename, f"{self.strategy} generation failed"))

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        metrics = GenerationMetrics(strategy=self.strategy, elapsed_ms=elapsed_ms, rows_written=design.total_rows)
        return Ok(GeneratedFile(
            content=out.getvalue(),
            content_type=XLSX_CONTENT_TYPE,
            filename=filename,
            generation_time_ms=elapsed_ms,
            strategy_used=self.strategy,
            sheets_written=len(design.sheets),
            metrics=metrics,
        ))


class GenerationCancelled(Exception):
    pass


def _check_cancel(cancel_token) -> None:
    if cancel_token is not None and cancel_token.is_set():
        raise GenerationCancelled()


def _column_widths(headers: list) -> list:
    return [min(max(len(str(h)) + 4, 10), 50) for h in headers]


class FastGenerator(Generator):
    """Whole workbook in memory: styled header, frozen header row, sized columns."""

    strategy = FAST

    def write(self, design: WorkbookDesign, out: BytesIO, cancel_token=None) -> None:
        wb = Workbook()
        wb.remove(wb.active)
        wb.properties.title = design.title

        for sheet in design.sheets:
            _check_cancel(cancel_token)
            ws = wb.create_sheet(title=sheet.name)
            if sheet.headers:
                ws.append(sheet.headers)
                for cell in ws[1]:
                    cell.font = HEADER_FONT
                    cell.fill = HEADER_FILL
                ws.freeze_panes = "A2"
                for idx, width in enumerate(_column_widths(sheet.headers), start=1):
                    ws.column_dimensions[get_column_letter(idx)].width = width
            for row in sheet.rows:
                ws.append(row)

        wb.save(out)


class StreamingGenerator(Generator):
    """openpyxl write-only mode; rows go out in chunks with a cancellation check between chunks."""

    strategy = STREAMING

    def _write_sheet(self, wb: Workbook, sheet, cancel_token) -> None:
        ws = wb.create_sheet(title=sheet.name)
        if sheet.headers:
            for idx, width in enumerate(_column_widths(sheet.headers), start=1):
                ws.column_dimensions[get_column_letter(idx)].width = width
            ws.freeze_panes = "A2"
            header = []
            for h in sheet.headers:
                cell = WriteOnlyCell(ws, value=h)
                cell.font = HEADER_FONT
                cell.fill = HEADER_FILL
                header.append(cell)
            ws.append(header)

        chunk = max(self.deps.thresholds.stream_chunk_rows, 1)
        for start in range(0, len(sheet.rows), chunk):
            _check_cancel(cancel_token)
            for row in sheet.rows[start:start + chunk]:
                ws.append(row)

    def write(self, design: WorkbookDesign, out: BytesIO, cancel_token=None) -> None:
        wb = Workbook(write_only=True)
        wb.properties.title = design.title
        for sheet in design.sheets:
            self._write_sheet(wb, sheet, cancel_token)
        wb.save(out)


class HybridGenerator(StreamingGenerator):
    """Large outputs: an overview sheet with per-sheet row counts, then streamed data sheets."""

    strategy = HYBRID

    def write(self, design: WorkbookDesign, out: BytesIO, cancel_token=None) -> None:
        wb = Workbook(write_only=True)
        wb.properties.title = design.title

        overview = wb.create_sheet(title="Overview")
        overview.append(["Sheet", "Rows", "Columns"])
        for sheet in design.sheets:
            overview.append([sheet.name, len(sheet.rows), len(sheet.headers)])

        for sheet in design.sheets:
            self._write_sheet(wb, sheet, cancel_token)
        wb.save(out)


def _safe_title(name: str, index: int) -> str:
    return _INVALID_TITLE_CHARS.sub("_", str(name or ""))[:31] or f"Sheet{index}"


def _plain(value):
    if value is None or isinstance(value, (bool, int, float, datetime, date)):
        return value
    text = str(value)
    return ILLEGAL_CHARACTERS_RE.sub("", text)


class FallbackGenerator(Generator):
    """Values only, no styling; anything that is not a plain scalar is written as text."""

    strategy = FALLBACK

    def write(self, design: WorkbookDesign, out: BytesIO, cancel_token=None) -> None:
        wb = Workbook()
        wb.remove(wb.active)
        for index, sheet in enumerate(design.sheets, start=1):
            _check_cancel(cancel_token)
            ws = wb.create_sheet(title=_safe_title(sheet.name, index))
            if sheet.headers:
                ws.append([_plain(h) for h in sheet.headers])
            for row in sheet.rows:
                ws.append([_plain(v) for v in row])
        wb.save(out)


DEFAULT_GENERATORS = {
    FAST: FastGenerator,
    STREAMING: StreamingGenerator,
    HYBRID: HybridGenerator,
    FALLBACK: FallbackGenerator,
}
