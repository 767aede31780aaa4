from .admission import AdmissionController
from .orchestrator import (
    AnalyzeSpreadsheetCommand,
    GenerateSpreadsheetCommand,
    ModifySpreadsheetCommand,
    Orchestrator,
)
from .provider_router import ProviderRouter
from .registry import StrategyRegistry

__all__ = [
    "AdmissionController",
    "AnalyzeSpreadsheetCommand",
    "GenerateSpreadsheetCommand",
    "ModifySpreadsheetCommand",
    "Orchestrator",
    "ProviderRouter",
    "StrategyRegistry",
]
