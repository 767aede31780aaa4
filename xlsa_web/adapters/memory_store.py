from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from xlsa_web.domain.models import AnalysisRecord, CreditAccount, FileRecord


class InMemoryFileStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._files: Dict[int, FileRecord] = {}

    def add(self, owner_id: int, original_name: str, path: Path, size_bytes: int, status: str = "uploaded") -> FileRecord:
        with self._lock:
            record = FileRecord(
                file_id=next(self._ids),
                owner_id=owner_id,
                original_name=original_name,
                path=Path(path),
                size_bytes=size_bytes,
                status=status,
            )
            self._files[record.file_id] = record
            return record

    def find(self, file_id: int) -> Optional[FileRecord]:
        return self._files.get(file_id)

    def find_owned(self, file_id: int, owner_id: int) -> Optional[FileRecord]:
        record = self._files.get(file_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def update_status(self, file_id: int, status: str) -> None:
        with self._lock:
            record = self._files.get(file_id)
            if record is not None:
                self._files[file_id] = replace(record, status=status)


class InMemoryAnalysisStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._records: list[AnalysisRecord] = []

    def record_result(self, file_id: int, owner_id: int, findings: dict, tier: str, credits_used: int) -> int:
        with self._lock:
            record = AnalysisRecord(
                record_id=next(self._ids),
                file_id=file_id,
                owner_id=owner_id,
                findings=findings,
                tier_used=tier,
                credits_used=credits_used,
                created_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            )
            self._records.append(record)
            return record.record_id

    def latest_for(self, file_id: int) -> Optional[AnalysisRecord]:
        matches = [r for r in self._records if r.file_id == file_id]
        return max(matches, key=lambda r: r.record_id) if matches else None


class InMemoryCreditLedger:
    """
    Balances and holds per owner, all guarded by one lock so every
    check-and-mutate below is atomic.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: Dict[int, CreditAccount] = {}
        self._held: Dict[int, int] = {}

    def open_account(self, owner_id: int, balance: int, entitlement_tier: str = "free") -> CreditAccount:
        with self._lock:
            account = CreditAccount(owner_id=owner_id, balance=balance, entitlement_tier=entitlement_tier)
            self._accounts[owner_id] = account
            self._held.setdefault(owner_id, 0)
            return account

    def add_credits(self, owner_id: int, amount: int) -> CreditAccount:
        with self._lock:
            account = self._accounts[owner_id]
            account = replace(account, balance=account.balance + amount)
            self._accounts[owner_id] = account
            return account

    def get(self, owner_id: int) -> Optional[CreditAccount]:
        return self._accounts.get(owner_id)

    def available(self, owner_id: int) -> int:
        with self._lock:
            account = self._accounts.get(owner_id)
            return account.balance - self._held.get(owner_id, 0) if account else 0

    def held(self, owner_id: int) -> int:
        return self._held.get(owner_id, 0)

    def reserve(self, owner_id: int, amount: int) -> bool:
        with self._lock:
            account = self._accounts.get(owner_id)
            if account is None:
                return False
            held = self._held.get(owner_id, 0)
            if account.balance - held < amount:
                return False
            self._held[owner_id] = held + amount
            return True

    def settle(self, owner_id: int, reserved: int, billed: int) -> int:
        with self._lock:
            account = self._accounts[owner_id]
            other_held = max(self._held.get(owner_id, 0) - reserved, 0)
            self._held[owner_id] = other_held
            # holds of other in-flight requests stay covered; `reserved` always is
            charge = billed if account.balance - other_held >= billed else reserved
            self._accounts[owner_id] = replace(account, balance=account.balance - charge)
            return charge

    def release(self, owner_id: int, reserved: int) -> None:
        with self._lock:
            self._held[owner_id] = max(self._held.get(owner_id, 0) - reserved, 0)
