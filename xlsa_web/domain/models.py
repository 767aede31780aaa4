######## models.py
########

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

SPEED = "speed"
BALANCED = "balanced"
QUALITY = "quality"

ANALYSIS_KINDS = ("comprehensive", "error_detection", "vba", "performance")

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass(frozen=True)
class TierProfile:
    tier_id: str                # "speed" | "balanced" | "quality"
    model_id: str
    price_per_million_tokens: float
    capabilities: frozenset = frozenset()

    def cost_for(self, tokens_used: int) -> float:
        return tokens_used * self.price_per_million_tokens / 1_000_000


@dataclass(frozen=True)
class CreditAccount:
    owner_id: int
    balance: int
    entitlement_tier: str = "free"    # "free" | "basic" | "pro" | "enterprise"


@dataclass(frozen=True)
class FileRecord:
    file_id: int
    owner_id: int
    original_name: str
    path: Path
    size_bytes: int
    status: str = "uploaded"

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)


@dataclass(frozen=True)
class AnalysisRecord:
    record_id: int
    file_id: int
    owner_id: int
    findings: dict
    tier_used: str
    credits_used: int
    created_at: str


@dataclass(frozen=True)
class AnalysisRequest:
    file_id: int
    owner_id: int
    analysis_kind: str = "comprehensive"
    options: dict = field(default_factory=dict)
    tier: Optional[str] = None
    request_text: str = ""


@dataclass(frozen=True)
class ModificationRequest:
    file_id: int
    owner_id: int
    request_text: str
    tier: Optional[str] = None


@dataclass(frozen=True)
class GenerationSpec:
    source_kind: str            # "template" | "conversation"
    payload: dict
    size_hint: Optional[float] = None     # thousands of rows


@dataclass(frozen=True)
class GenerationRequest:
    owner_id: int
    spec: GenerationSpec
    filename: str = ""
    tier: Optional[str] = None


@dataclass(frozen=True)
class ErrorFinding:
    sheet: str
    cell: str
    error_type: str
    severity: str               # "critical" | "high" | "medium" | "low"
    message: str

    def to_dict(self) -> dict:
        return {
            "sheet": self.sheet,
            "cell": self.cell,
            "type": self.error_type,
            "severity": self.severity,
            "message": self.message,
        }


@dataclass
class Findings:
    """
    Result bag filled stage by stage by the analyzers.
    Only the sections a variant actually ran are populated.
    """
    structure: Optional[dict] = None
    errors: list = field(default_factory=list)
    formulas: Optional[dict] = None
    vba_modules: list = field(default_factory=list)
    performance: Optional[dict] = None
    summary: dict = field(default_factory=dict)
    ai_insights: Optional[dict] = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "structure": self.structure,
            "errors": list(self.errors),
            "formulas": self.formulas,
            "vba_modules": list(self.vba_modules),
            "summary": dict(self.summary),
        }
        if self.performance is not None:
            out["performance"] = self.performance
        if self.ai_insights is not None:
            out["ai_insights"] = self.ai_insights
        return out


@dataclass(frozen=True)
class SheetDesign:
    name: str
    headers: list
    rows: list = field(default_factory=list)


@dataclass(frozen=True)
class WorkbookDesign:
    title: str
    sheets: list                # list[SheetDesign]

    @property
    def total_rows(self) -> int:
        return sum(len(s.rows) for s in self.sheets)

    @property
    def size_measure(self) -> float:
        """Thousands of rows; the unit the generation thresholds are expressed in."""
        return self.total_rows / 1000.0


@dataclass(frozen=True)
class GenerationMetrics:
    strategy: str
    elapsed_ms: int
    rows_written: int

    @property
    def rows_per_second(self) -> float:
        if self.elapsed_ms <= 0:
            return float(self.rows_written)
        return round(self.rows_written * 1000.0 / self.elapsed_ms, 1)


@dataclass(frozen=True)
class GeneratedFile:
    content: bytes
    content_type: str
    filename: str
    generation_time_ms: int
    strategy_used: str
    sheets_written: int = 0
    metrics: Optional[GenerationMetrics] = None


@dataclass(frozen=True)
class AiReply:
    content: str
    tokens_used: int
    model_id: str = ""
