from __future__ import annotations

import threading
from io import BytesIO

import pytest
from openpyxl import load_workbook

from xlsa_web.config.ini_config import GenerationThresholds
from xlsa_web.domain.models import SheetDesign, WorkbookDesign
from xlsa_web.domain.outcome import ErrorKind
from xlsa_web.services.generators import (
    DEFAULT_GENERATORS,
    FallbackGenerator,
    FastGenerator,
    GeneratorDeps,
    HybridGenerator,
    StreamingGenerator,
    select_strategy,
)


def make_design(rows: int = 3, name: str = "Sales") -> WorkbookDesign:
    return WorkbookDesign(
        title="Quarterly",
        sheets=[SheetDesign(name=name, headers=["Region", "Units"], rows=[[f"R{i}", i] for i in range(rows)])],
    )


def read_back(content: bytes):
    return load_workbook(BytesIO(content))


@pytest.mark.parametrize(
    "size,expected",
    [(0.0, "fast"), (0.999, "fast"), (1.0, "streaming"), (9.99, "streaming"), (10.0, "hybrid"), (250.0, "hybrid")],
)
def test_select_strategy_by_thousand_rows(size, expected):
    assert select_strategy(size, GenerationThresholds()) == expected


def test_design_size_measure_is_thousands_of_rows():
    assert make_design(rows=2500).size_measure == 2.5


@pytest.mark.parametrize("key", ["fast", "streaming", "hybrid", "fallback"])
def test_every_generator_writes_readable_workbook(key):
    generator = DEFAULT_GENERATORS[key]()
    generated = generator.generate(make_design(), "q.xlsx").unwrap()

    wb = read_back(generated.content)
    ws = wb["Sales"]
    assert [c.value for c in ws[1]] == ["Region", "Units"]
    assert ws.max_row == 4
    assert generated.strategy_used == key
    assert generated.sheets_written == 1
    assert generated.metrics.rows_written == 3


def test_fast_generator_styles_header():
    generated = FastGenerator().generate(make_design(), "q.xlsx").unwrap()
    ws = read_back(generated.content)["Sales"]
    assert ws["A1"].font.bold
    assert ws.freeze_panes == "A2"


def test_hybrid_adds_overview_sheet():
    generated = HybridGenerator().generate(make_design(rows=5), "q.xlsx").unwrap()
    wb = read_back(generated.content)
    assert wb.sheetnames == ["Overview", "Sales"]
    assert [c.value for c in wb["Overview"][2]] == ["Sales", 5, 2]


def test_streaming_writes_every_chunk():
    deps = GeneratorDeps(thresholds=GenerationThresholds(stream_chunk_rows=7))
    generated = StreamingGenerator(deps).generate(make_design(rows=50), "big.xlsx").unwrap()
    assert read_back(generated.content)["Sales"].max_row == 51


def test_cancelled_generation_is_execution_error():
    token = threading.Event()
    token.set()
    got = StreamingGenerator().generate(make_design(), "q.xlsx", cancel_token=token)
    assert got.kind == ErrorKind.EXECUTION
    assert got.error.details["cancelled"] is True


def test_fallback_honours_cancellation():
    token = threading.Event()
    token.set()
    got = FallbackGenerator().generate(make_design(), "q.xlsx", cancel_token=token)
    assert got.error.details["cancelled"] is True


def test_unwritable_value_fails_primary_but_not_fallback():
    design = WorkbookDesign(
        title="Odd",
        sheets=[SheetDesign(name="Data", headers=["k", "v"], rows=[["a", {"nested": [1, 2]}]])],
    )

    primary = FastGenerator().generate(design, "odd.xlsx")
    assert primary.kind == ErrorKind.FILE_PROCESSING
    assert primary.error.details["file_name"] == "odd.xlsx"

    fallback = FallbackGenerator().generate(design, "odd.xlsx").unwrap()
    ws = read_back(fallback.content)["Data"]
    assert ws["B2"].value == "{'nested': [1, 2]}"


def test_fallback_repairs_sheet_titles():
    design = WorkbookDesign(title="t", sheets=[SheetDesign(name="Q1/Q2: [draft]", headers=["a"], rows=[])])
    generated = FallbackGenerator().generate(design, "t.xlsx").unwrap()
    assert read_back(generated.content).sheetnames == ["Q1_Q2_ _draft_"]
