"""
Interfaces for the collaborators the services depend on.
Implementations live in xlsa_web.adapters (and in test doubles).
"""
from __future__ import annotations

from typing import Optional, Protocol

from xlsa_web.domain.models import AiReply, AnalysisRecord, CreditAccount, FileRecord
from xlsa_web.domain.outcome import Outcome


class AiBackend(Protocol):
    provider_name: str

    def send(self, model_id: str, messages: list, options: Optional[dict] = None) -> Outcome[AiReply]:
        ...


class FileStore(Protocol):
    def find_owned(self, file_id: int, owner_id: int) -> Optional[FileRecord]:
        ...

    def find(self, file_id: int) -> Optional[FileRecord]:
        ...

    def add(self, owner_id: int, original_name: str, path, size_bytes: int, status: str = "uploaded") -> FileRecord:
        ...

    def update_status(self, file_id: int, status: str) -> None:
        ...


class AnalysisStore(Protocol):
    def record_result(self, file_id: int, owner_id: int, findings: dict, tier: str, credits_used: int) -> int:
        ...

    def latest_for(self, file_id: int) -> Optional[AnalysisRecord]:
        ...


class CreditLedger(Protocol):
    """
    Balance mutations are atomic per owner:
    reserve() is a compare-and-hold, settle() converts a hold into a debit.
    """

    def get(self, owner_id: int) -> Optional[CreditAccount]:
        ...

    def available(self, owner_id: int) -> int:
        ...

    def reserve(self, owner_id: int, amount: int) -> bool:
        ...

    def settle(self, owner_id: int, reserved: int, billed: int) -> int:
        ...

    def release(self, owner_id: int, reserved: int) -> None:
        ...


class NotificationChannel(Protocol):
    def publish(self, topic: str, event: dict) -> None:
        ...
