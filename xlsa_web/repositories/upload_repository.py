from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Optional
from uuid import uuid4

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def safe_filename(name: str, default: str = "workbook.xlsx") -> str:
    base = Path(str(name or "")).name
    base = _UNSAFE_NAME_CHARS.sub("_", base).strip(" .")
    return base[:120] or default


@dataclass
class UploadRepository:
    """
    Repository pattern: encapsulates where uploaded workbooks and generated
    results live on disk.

    Layout:
      <storage_dir>/uploads/<owner_id>/<stamp>_<name>
      <storage_dir>/results/<owner_id>/<stamp>_<name>
    """
    storage_dir: Path

    def _owner_dir(self, kind: str, owner_id: int) -> Path:
        d = self.storage_dir / kind / str(int(owner_id))
        d.mkdir(parents=True, exist_ok=True)
        return d

    @staticmethod
    def _stamped(name: str) -> str:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{stamp}_{uuid4().hex[:8]}_{safe_filename(name)}"

    def save_upload(self, owner_id: int, original_name: str, stream: BinaryIO) -> Path:
        target = self._owner_dir("uploads", owner_id) / self._stamped(original_name)
        with target.open("wb") as fh:
            while True:
                chunk = stream.read(1024 * 1024)
                if not chunk:
                    break
                fh.write(chunk)
        return target

    def save_result(self, owner_id: int, filename: str, content: bytes) -> Path:
        target = self._owner_dir("results", owner_id) / self._stamped(filename)
        target.write_bytes(content)
        return target

    def resolve(self, path: Path) -> Optional[Path]:
        """Returns the path only if it is an existing file inside the storage folder."""
        full = Path(path).resolve()
        if self.storage_dir.resolve() not in full.parents:
            return None
        if not full.exists() or not full.is_file():
            return None
        return full
