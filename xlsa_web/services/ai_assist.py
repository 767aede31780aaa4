from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from xlsa_web.domain.models import SheetDesign, TierProfile, WorkbookDesign
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome
from xlsa_web.ports import AiBackend

logger = logging.getLogger(__name__)

MAX_ERRORS_IN_PROMPT = 20
MAX_DESIGN_ROWS = 5000

_JSON_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json(text: str) -> Optional[dict]:
    """Pull the first JSON object out of a model reply (fenced block first, then bare braces)."""
    text = text or ""
    candidates = [m.group(1) for m in _JSON_FENCE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for raw in candidates:
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


@dataclass
class AnalysisEnhancer:
    backend: AiBackend
    default_profile: TierProfile

    def enhance(self, findings, profile: Optional[TierProfile] = None) -> Outcome[dict]:
        profile = profile or self.default_profile
        errors = findings.errors[:MAX_ERRORS_IN_PROMPT]
        lines = [f"- {e['sheet']}!{e['cell']} [{e['severity']}] {e['message']}" for e in errors]

        messages = [
            {"role": "system", "content": "You are a spreadsheet auditor. Explain errors and propose concrete fixes."},
            {"role": "user", "content": (
                f"The workbook has {len(findings.errors)} detected problems "
                f"across {(findings.structure or {}).get('sheet_count', 0)} sheets.\n"
                + "\n".join(lines)
                + "\nFor each problem give the likely cause and a corrected formula where relevant."
            )},
        ]

        reply = self.backend.send(profile.model_id, messages, {"temperature": 0.2})
        if reply.is_err():
            return reply

        return Ok({
            "content": reply.value.content,
            "tokens_used": reply.value.tokens_used,
            "model": reply.value.model_id or profile.model_id,
            "tier": profile.tier_id,
        })


@dataclass
class ConversationDesigner:
    """Turns a chat transcript into a WorkbookDesign by asking the AI backend for a JSON layout."""

    backend: AiBackend

    SYSTEM_PROMPT = (
        "Design a spreadsheet from the conversation. Reply with JSON only: "
        '{"title": str, "sheets": [{"name": str, "headers": [str], "rows": [[value]]}]}'
    )

    def design(self, messages: list, profile: TierProfile) -> Outcome[WorkbookDesign]:
        chat = [{"role": "system", "content": self.SYSTEM_PROMPT}]
        chat += [{"role": m.get("role", "user"), "content": str(m.get("content", ""))} for m in messages]

        reply = self.backend.send(profile.model_id, chat, {"temperature": 0.3})
        if reply.is_err():
            return reply

        data = extract_json(reply.value.content)
        if data is None:
            return Err(AppError.provider(self.backend.provider_name, "Reply did not contain a workbook design"))
        return design_from_dict(data, provider=self.backend.provider_name)


def design_from_dict(data: dict, provider: str = "internal") -> Outcome[WorkbookDesign]:
    sheets_raw = data.get("sheets")
    if not isinstance(sheets_raw, list) or not sheets_raw:
        return Err(AppError.provider(provider, "Workbook design has no sheets"))

    sheets = []
    for i, s in enumerate(sheets_raw, start=1):
        if not isinstance(s, dict):
            return Err(AppError.provider(provider, f"Sheet {i} is not an object"))
        headers_raw = s.get("headers") or []
        rows_raw = s.get("rows") or []
        if not isinstance(headers_raw, (list, tuple)) or not isinstance(rows_raw, (list, tuple)):
            return Err(AppError.provider(provider, f"Sheet {i} headers and rows must be lists"))
        headers = [str(h) for h in headers_raw]
        rows = [list(r) for r in rows_raw if isinstance(r, (list, tuple))][:MAX_DESIGN_ROWS]
        name = (str(s.get("name") or f"Sheet{i}")).strip()[:31] or f"Sheet{i}"
        sheets.append(SheetDesign(name=name, headers=headers, rows=rows))

    return Ok(WorkbookDesign(title=str(data.get("title") or "Generated workbook"), sheets=sheets))


@dataclass
class ModificationPlanner:
    backend: AiBackend

    def plan(self, request_text: str, file_context: dict, profile: TierProfile) -> Outcome[list]:
        prompt = (
            f'The user wants to modify an Excel file.\n\nRequest: "{request_text}"\n\n'
            f"File: {file_context.get('filename')}\n"
            f"Sheets: {', '.join(file_context.get('sheet_names', [])) or 'unknown'}\n"
            f"Contains formulas: {'yes' if file_context.get('has_formulas') else 'no'}\n\n"
            "Reply with JSON:\n"
            '{"modifications": [{"type": "formula|value", "sheet": str, "cell": "A1", '
            '"new_value": any, "formula": "=...", "explanation": str}], "summary": str}\n'
            "Use exact cell addresses and English function names."
        )
        messages = [
            {"role": "system", "content": "You edit spreadsheets precisely."},
            {"role": "user", "content": prompt},
        ]

        reply = self.backend.send(profile.model_id, messages, {"temperature": 0.2})
        if reply.is_err():
            return reply

        data = extract_json(reply.value.content)
        modifications: Any = (data or {}).get("modifications")
        if not isinstance(modifications, list):
            logger.warning("Could not parse modifications from model %s", profile.model_id)
            return Err(AppError.provider(self.backend.provider_name, "Reply did not contain modifications"))

        return Ok([m for m in modifications if isinstance(m, dict)])
