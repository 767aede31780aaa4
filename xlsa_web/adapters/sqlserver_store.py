from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import pyodbc

from xlsa_web.config.ini_config import SqlServerSettings
from xlsa_web.domain.models import AnalysisRecord, CreditAccount, FileRecord


class SqlServerConnector:
    """Builds the ODBC connection string from the [sqlserver] INI section."""

    def __init__(self, settings: SqlServerSettings):
        self._settings = settings

    def connect(self):
        s = self._settings
        parts = [
            f"DRIVER={{{s.driver}}}",
            f"SERVER={s.server}",
            f"DATABASE={s.database}",
        ]

        if s.username:
            parts.append(f"UID={s.username}")
            parts.append(f"PWD={s.password}")
        else:
            parts.append("Trusted_Connection=yes")

        if s.trust_cert:
            parts.append("TrustServerCertificate=yes")

        conn_str = ";".join(parts) + ";"
        return pyodbc.connect(conn_str)


class SqlServerFileStore:
    def __init__(self, connector: SqlServerConnector, table_name: str = "dbo.XlsaFiles"):
        self._connector = connector
        self.table_name = table_name

    @staticmethod
    def _row_to_record(r) -> FileRecord:
        return FileRecord(
            file_id=int(r.file_id),
            owner_id=int(r.owner_id),
            original_name=str(r.original_name or ""),
            path=Path(str(r.path or "")),
            size_bytes=int(r.size_bytes or 0),
            status=str(r.status or ""),
        )

    def add(self, owner_id: int, original_name: str, path: Path, size_bytes: int, status: str = "uploaded") -> FileRecord:
        q = f"""
        INSERT INTO {self.table_name} (owner_id, original_name, path, size_bytes, status)
        OUTPUT INSERTED.file_id
        VALUES (?, ?, ?, ?, ?)
        """
        with self._connector.connect() as conn:
            cur = conn.cursor()
            file_id = int(cur.execute(q, owner_id, original_name, str(path), size_bytes, status).fetchone()[0])
            conn.commit()

        return FileRecord(file_id, owner_id, original_name, Path(path), size_bytes, status)

    def find(self, file_id: int) -> Optional[FileRecord]:
        q = f"""
        SELECT file_id, owner_id, original_name, path, size_bytes, status
        FROM {self.table_name}
        WHERE file_id = ?
        """
        with self._connector.connect() as conn:
            r = conn.cursor().execute(q, file_id).fetchone()
        return self._row_to_record(r) if r else None

    def find_owned(self, file_id: int, owner_id: int) -> Optional[FileRecord]:
        q = f"""
        SELECT file_id, owner_id, original_name, path, size_bytes, status
        FROM {self.table_name}
        WHERE file_id = ?
          AND owner_id = ?
        """
        with self._connector.connect() as conn:
            r = conn.cursor().execute(q, file_id, owner_id).fetchone()
        return self._row_to_record(r) if r else None

    def update_status(self, file_id: int, status: str) -> None:
        q = f"UPDATE {self.table_name} SET status = ? WHERE file_id = ?"
        with self._connector.connect() as conn:
            conn.cursor().execute(q, status, file_id)
            conn.commit()


class SqlServerAnalysisStore:
    def __init__(self, connector: SqlServerConnector, table_name: str = "dbo.XlsaAnalyses"):
        self._connector = connector
        self.table_name = table_name

    def record_result(self, file_id: int, owner_id: int, findings: dict, tier: str, credits_used: int) -> int:
        q = f"""
        INSERT INTO {self.table_name} (file_id, owner_id, findings_json, tier_used, credits_used)
        OUTPUT INSERTED.record_id
        VALUES (?, ?, ?, ?, ?)
        """
        with self._connector.connect() as conn:
            cur = conn.cursor()
            record_id = int(cur.execute(q, file_id, owner_id, json.dumps(findings, default=str), tier, credits_used).fetchone()[0])
            conn.commit()
        return record_id

    def latest_for(self, file_id: int) -> Optional[AnalysisRecord]:
        q = f"""
        SELECT TOP 1 record_id, file_id, owner_id, findings_json, tier_used, credits_used, created_at
        FROM {self.table_name}
        WHERE file_id = ?
        ORDER BY created_at DESC, record_id DESC
        """
        with self._connector.connect() as conn:
            r = conn.cursor().execute(q, file_id).fetchone()

        if not r:
            return None

        return AnalysisRecord(
            record_id=int(r.record_id),
            file_id=int(r.file_id),
            owner_id=int(r.owner_id),
            findings=json.loads(r.findings_json or "{}"),
            tier_used=str(r.tier_used or ""),
            credits_used=int(r.credits_used or 0),
            created_at=str(r.created_at),
        )


class SqlServerCreditLedger:
    """
    Every mutation is a single conditional UPDATE, so concurrent requests
    for one owner are serialized by the database row lock.
    """

    def __init__(self, connector: SqlServerConnector, table_name: str = "dbo.XlsaCreditAccounts"):
        self._connector = connector
        self.table_name = table_name

    def get(self, owner_id: int) -> Optional[CreditAccount]:
        q = f"SELECT owner_id, balance, entitlement_tier FROM {self.table_name} WHERE owner_id = ?"
        with self._connector.connect() as conn:
            r = conn.cursor().execute(q, owner_id).fetchone()
        if not r:
            return None
        return CreditAccount(owner_id=int(r.owner_id), balance=int(r.balance), entitlement_tier=str(r.entitlement_tier or "free"))

    def available(self, owner_id: int) -> int:
        q = f"SELECT balance - held FROM {self.table_name} WHERE owner_id = ?"
        with self._connector.connect() as conn:
            r = conn.cursor().execute(q, owner_id).fetchone()
        return int(r[0]) if r else 0

    def reserve(self, owner_id: int, amount: int) -> bool:
        q = f"""
        UPDATE {self.table_name}
        SET held = held + ?
        WHERE owner_id = ?
          AND balance - held >= ?
        """
        with self._connector.connect() as conn:
            cur = conn.cursor()
            cur.execute(q, amount, owner_id, amount)
            conn.commit()
            return cur.rowcount == 1

    def settle(self, owner_id: int, reserved: int, billed: int) -> int:
        q = f"""
        UPDATE {self.table_name}
        SET balance = balance - CASE WHEN balance - (held - ?) >= ? THEN ? ELSE ? END,
            held = CASE WHEN held >= ? THEN held - ? ELSE 0 END
        OUTPUT DELETED.balance - INSERTED.balance
        WHERE owner_id = ?
        """
        with self._connector.connect() as conn:
            cur = conn.cursor()
            r = cur.execute(q, reserved, billed, billed, reserved, reserved, reserved, owner_id).fetchone()
            conn.commit()
        return int(r[0]) if r else 0

    def release(self, owner_id: int, reserved: int) -> None:
        q = f"""
        UPDATE {self.table_name}
        SET held = CASE WHEN held >= ? THEN held - ? ELSE 0 END
        WHERE owner_id = ?
        """
        with self._connector.connect() as conn:
            conn.cursor().execute(q, reserved, reserved, owner_id)
            conn.commit()
