from .memory_store import InMemoryAnalysisStore, InMemoryCreditLedger, InMemoryFileStore

__all__ = [
    "InMemoryAnalysisStore",
    "InMemoryCreditLedger",
    "InMemoryFileStore",
]
