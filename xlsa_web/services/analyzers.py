from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from statistics import mean
from typing import Callable, Optional

from xlsa_web.domain.models import Findings
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome
from xlsa_web.services.workbook_inspection import (
    ErrorDetector,
    FormulaAnalyzer,
    PerformanceScanner,
    StructureAnalyzer,
    VbaExtractor,
    VbaPerformanceScanner,
    VbaSecurityScanner,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".xlsx", ".xlsm", ".xltx", ".xltm"})


@dataclass(frozen=True)
class AnalyzerDeps:
    structure_analyzer: StructureAnalyzer = field(default_factory=StructureAnalyzer)
    error_detector: ErrorDetector = field(default_factory=ErrorDetector)
    formula_analyzer: FormulaAnalyzer = field(default_factory=FormulaAnalyzer)
    performance_scanner: PerformanceScanner = field(default_factory=PerformanceScanner)
    vba_extractor: VbaExtractor = field(default_factory=VbaExtractor)
    vba_security_scanner: VbaSecurityScanner = field(default_factory=VbaSecurityScanner)
    vba_performance_scanner: VbaPerformanceScanner = field(default_factory=VbaPerformanceScanner)
    ai_enhancer: Optional[object] = None      # AnalysisEnhancer
    complexity_threshold: int = 80


class Analyzer(ABC):
    """Strategy interface: analyze(path, options) -> Outcome[Findings]."""

    @abstractmethod
    def analyze(self, path: Path, options: Optional[dict] = None) -> Outcome[Findings]:
        raise NotImplementedError


def validate_workbook_path(path) -> Outcome[Path]:
    p = Path(path) if path else None
    if p is None or not p.exists() or not p.is_file():
        return Err(AppError.invalid_input(f"File not found: {p.name if p else path}"))
    if p.suffix.lower() not in SUPPORTED_EXTENSIONS:
        return Err(AppError.invalid_input("Invalid file format", extension=p.suffix.lower()))
    return Ok(p)


def is_cancelled(options: dict) -> bool:
    token = options.get("cancel_token")
    return bool(token is not None and token.is_set())


def run_guarded(label: str, path, options: Optional[dict], body: Callable[[Path, dict], Outcome[Findings]]) -> Outcome[Findings]:
    """Validate the path, then run body; anything it raises becomes an ExecutionError."""
    options = dict(options or {})
    checked = validate_workbook_path(path)
    if checked.is_err():
        return checked
    try:
        return body(checked.value, options)
    except Exception:
        logger.exception("%s analysis failed for %s", label, path)
        return Err(AppError.execution(f"{label} analysis failed"))


def severity_distribution(errors: list) -> dict:
    return dict(Counter(e.get("severity") for e in errors or []))


def error_recommendations(errors: list) -> list:
    critical = [e for e in errors or [] if e.get("severity") == "critical"]
    if critical:
        return [f"Fix {len(critical)} critical errors immediately"]
    return []


class ComprehensiveAnalyzer(Analyzer):
    """
    Structure -> error detection -> formula analysis, strictly in order.
    The first failing stage ends the run and its Err is returned unchanged.
    AI enhancement (options["use_ai"]) is best effort and never fails the run.
    """

    def __init__(self, deps: Optional[AnalyzerDeps] = None):
        self.deps = deps or AnalyzerDeps()

    def analyze(self, path: Path, options: Optional[dict] = None) -> Outcome[Findings]:
        return run_guarded("Comprehensive", path, options, self._perform)

    def _perform(self, path: Path, options: dict) -> Outcome[Findings]:
        findings = Findings()

        scanned = self.deps.structure_analyzer.analyze(path)
        if scanned.is_err():
            return scanned
        scan = scanned.value
        findings.structure = scan.structure

        if is_cancelled(options):
            return Err(AppError.cancelled())

        errors = self.deps.error_detector.detect(scan)
        if errors.is_err():
            return errors
        findings.errors = errors.value

        if is_cancelled(options):
            return Err(AppError.cancelled())

        formulas = self.deps.formula_analyzer.analyze(scan)
        if formulas.is_err():
            return formulas
        findings.formulas = formulas.value

        if options.get("use_ai") and findings.errors and self.deps.ai_enhancer is not None:
            if is_cancelled(options):
                return Err(AppError.cancelled())
            findings.ai_insights = self._enhance(path, findings, options)

        findings.summary = self.summarize(findings)
        return Ok(findings)

    def _enhance(self, path: Path, findings: Findings, options: dict) -> Optional[dict]:
        """Optional step: any failure is logged and the insights are left out."""
        try:
            enhanced = self.deps.ai_enhancer.enhance(findings, options.get("tier_profile"))
        except Exception:
            logger.warning("AI enhancement raised for %s; insights omitted", path.name, exc_info=True)
            return None
        if enhanced.is_err():
            logger.warning("AI enhancement skipped for %s: %s", path.name, enhanced.error.kind.value)
            return None
        return enhanced.value

    def summarize(self, findings: Findings) -> dict:
        formulas = findings.formulas or {}
        structure = findings.structure or {}
        complexity = formulas.get("complexity_score", "unknown")

        recommendations = error_recommendations(findings.errors)
        if isinstance(complexity, (int, float)) and complexity > self.deps.complexity_threshold:
            recommendations.append("Consider simplifying complex formulas for better maintainability")

        return {
            "total_errors": len(findings.errors or []),
            "error_severity_distribution": severity_distribution(findings.errors),
            "formula_complexity": complexity,
            "sheets_analyzed": structure.get("sheet_count", 0),
            "recommendations": recommendations,
        }


class ErrorDetectionAnalyzer(Analyzer):
    def __init__(self, deps: Optional[AnalyzerDeps] = None):
        self.deps = deps or AnalyzerDeps()

    def analyze(self, path: Path, options: Optional[dict] = None) -> Outcome[Findings]:
        return run_guarded("Error detection", path, options, self._perform)

    def _perform(self, path: Path, options: dict) -> Outcome[Findings]:
        scanned = self.deps.structure_analyzer.analyze(path)
        if scanned.is_err():
            return scanned

        if is_cancelled(options):
            return Err(AppError.cancelled())

        errors = self.deps.error_detector.detect(scanned.value)
        if errors.is_err():
            return errors

        findings = Findings(structure=scanned.value.structure, errors=errors.value)
        findings.summary = {
            "total_errors": len(findings.errors),
            "error_severity_distribution": severity_distribution(findings.errors),
            "sheets_analyzed": findings.structure.get("sheet_count", 0),
            "recommendations": error_recommendations(findings.errors),
        }
        return Ok(findings)


class PerformanceAnalyzer(Analyzer):
    def __init__(self, deps: Optional[AnalyzerDeps] = None):
        self.deps = deps or AnalyzerDeps()

    def analyze(self, path: Path, options: Optional[dict] = None) -> Outcome[Findings]:
        return run_guarded("Performance", path, options, self._perform)

    def _perform(self, path: Path, options: dict) -> Outcome[Findings]:
        scanned = self.deps.structure_analyzer.analyze(path)
        if scanned.is_err():
            return scanned
        scan = scanned.value

        if is_cancelled(options):
            return Err(AppError.cancelled())

        formulas = self.deps.formula_analyzer.analyze(scan)
        if formulas.is_err():
            return formulas

        if is_cancelled(options):
            return Err(AppError.cancelled())

        performance = self.deps.performance_scanner.scan(scan, formulas.value)
        if performance.is_err():
            return performance

        findings = Findings(structure=scan.structure, formulas=formulas.value, performance=performance.value)
        findings.summary = {
            "performance_score": performance.value["score"],
            "issue_count": len(performance.value["issues"]),
            "sheets_analyzed": scan.structure.get("sheet_count", 0),
            "recommendations": [issue["message"] for issue in performance.value["issues"]],
        }
        return Ok(findings)


def risk_level(scores: list) -> str:
    if not scores:
        return "unknown"
    avg = mean(scores)
    if avg <= 3:
        return "low"
    if avg <= 7:
        return "medium"
    return "high"


class VbaAnalyzer(Analyzer):
    """
    Macro analysis. A workbook without macros is a successful, empty result.
    Options: security_scan (default on), performance_analysis (default off).
    """

    HIGH_RISK = 7
    LOW_PERFORMANCE = 60

    def __init__(self, deps: Optional[AnalyzerDeps] = None):
        self.deps = deps or AnalyzerDeps()

    def analyze(self, path: Path, options: Optional[dict] = None) -> Outcome[Findings]:
        return run_guarded("VBA", path, options, self._perform)

    def _perform(self, path: Path, options: dict) -> Outcome[Findings]:
        extracted = self.deps.vba_extractor.extract_modules(path)
        if extracted.is_err():
            return extracted

        modules = extracted.value
        if not modules:
            return Ok(Findings(summary={
                "total_modules": 0,
                "security_risk_level": "unknown",
                "performance_score": None,
                "recommendations": [],
                "message": "No VBA code found",
            }))

        analysed = []
        for module in modules:
            if is_cancelled(options):
                return Err(AppError.cancelled())
            analysed.append(self._analyze_module(module, options))

        findings = Findings(vba_modules=analysed)
        findings.summary = self.summarize(analysed)
        return Ok(findings)

    def _analyze_module(self, module: dict, options: dict) -> dict:
        result = {
            "name": module.get("name"),
            "type": module.get("type"),
            "line_count": module.get("line_count", 0),
        }

        if options.get("security_scan") is not False:
            security = self.deps.vba_security_scanner.scan_module(module)
            if security.is_ok():
                result["security"] = security.value

        if options.get("performance_analysis") is True:
            performance = self.deps.vba_performance_scanner.analyze_module(module)
            if performance.is_ok():
                result["performance"] = performance.value

        return result

    def summarize(self, modules: list) -> dict:
        risk_scores = [m["security"]["risk_score"] for m in modules if "security" in m]
        perf_scores = [m["performance"]["score"] for m in modules if "performance" in m]

        recommendations = []
        high_risk = [s for s in risk_scores if s > self.HIGH_RISK]
        if high_risk:
            recommendations.append(f"Review {len(high_risk)} high-risk VBA modules for security issues")
        slow = [s for s in perf_scores if s < self.LOW_PERFORMANCE]
        if slow:
            recommendations.append(f"Optimize {len(slow)} VBA modules for better performance")

        return {
            "total_modules": len(modules),
            "security_risk_level": risk_level(risk_scores),
            "performance_score": round(mean(perf_scores), 1) if perf_scores else None,
            "recommendations": recommendations,
        }


DEFAULT_ANALYZERS = {
    "comprehensive": ComprehensiveAnalyzer,
    "error_detection": ErrorDetectionAnalyzer,
    "vba": VbaAnalyzer,
    "performance": PerformanceAnalyzer,
}
