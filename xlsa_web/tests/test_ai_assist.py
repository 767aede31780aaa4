from __future__ import annotations

import json

import pytest

from xlsa_web.domain.models import AiReply, TierProfile
from xlsa_web.domain.outcome import ErrorKind, Ok
from xlsa_web.services.ai_assist import ConversationDesigner, ModificationPlanner, extract_json
from xlsa_web.services.templates import TemplateCatalog

PROFILE = TierProfile("balanced", "m-balanced", 0.25)


class FakeAiBackend:
    provider_name = "fake"

    def __init__(self, content: str):
        self.content = content
        self.calls = []

    def send(self, model_id, messages, options=None):
        self.calls.append((model_id, messages))
        return Ok(AiReply(content=self.content, tokens_used=10, model_id=model_id))


# -----------------------------
# extract_json
# -----------------------------
@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1}',
        'Here you go:\n```json\n{"a": 1}\n```\nThanks',
        'Sure! {"a": 1} Let me know.',
    ],
)
def test_extract_json_variants(text):
    assert extract_json(text) == {"a": 1}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{broken"])
def test_extract_json_none_when_absent(text):
    assert extract_json(text) is None


# -----------------------------
# ConversationDesigner
# -----------------------------
def test_designer_builds_workbook_design():
    reply = json.dumps({
        "title": "Team budget",
        "sheets": [{"name": "Budget", "headers": ["Item", "Cost"], "rows": [["Laptop", 1200], ["Desk", 300]]}],
    })
    backend = FakeAiBackend(f"```json\n{reply}\n```")

    design = ConversationDesigner(backend).design([{"role": "user", "content": "a budget please"}], PROFILE).unwrap()

    assert design.title == "Team budget"
    assert design.sheets[0].headers == ["Item", "Cost"]
    assert design.total_rows == 2
    model_id, messages = backend.calls[0]
    assert model_id == "m-balanced"
    assert messages[0]["role"] == "system"


@pytest.mark.parametrize(
    "content",
    [
        "I cannot help with that",
        '{"title": "x", "sheets": []}',
        '{"title": "x", "sheets": [{"name": "A", "headers": 5}]}',
        '{"title": "x", "sheets": [{"name": "A", "headers": ["h"], "rows": "many"}]}',
    ],
)
def test_designer_malformed_reply_is_provider_error(content):
    got = ConversationDesigner(FakeAiBackend(content)).design([{"role": "user", "content": "hi"}], PROFILE)
    assert got.kind == ErrorKind.PROVIDER


# -----------------------------
# ModificationPlanner
# -----------------------------
def test_planner_returns_modifications():
    content = json.dumps({
        "modifications": [
            {"type": "formula", "sheet": "Data", "cell": "C2", "formula": "=A2*B2"},
            "garbage",
        ],
        "summary": "added a product column",
    })
    planner = ModificationPlanner(FakeAiBackend(content))

    mods = planner.plan("multiply A by B", {"filename": "a.xlsx", "sheet_names": ["Data"], "has_formulas": False}, PROFILE)

    assert mods.unwrap() == [{"type": "formula", "sheet": "Data", "cell": "C2", "formula": "=A2*B2"}]


def test_planner_unparseable_reply_is_provider_error():
    planner = ModificationPlanner(FakeAiBackend("Sorry, I changed it for you."))
    got = planner.plan("fix it", {"filename": "a.xlsx"}, PROFILE)
    assert got.kind == ErrorKind.PROVIDER


# -----------------------------
# TemplateCatalog
# -----------------------------
def test_template_render_fills_rows_and_title():
    payload = {
        "template_name": "inventory",
        "data": {"Items": [["SKU-1", "Bolt", 100, 0.1, 20]]},
        "customizations": {"title": "Warehouse"},
    }
    design = TemplateCatalog().render(payload).unwrap()
    assert design.title == "Warehouse"
    assert [s.name for s in design.sheets] == ["Items", "Suppliers"]
    assert design.sheets[0].rows == [["SKU-1", "Bolt", 100, 0.1, 20]]
    assert design.sheets[1].rows == []


@pytest.mark.parametrize(
    "payload",
    [
        {"template_name": "horoscope"},
        {"template_name": "budget", "data": ["not", "a", "dict"]},
        {"template_name": "budget", "data": {"Budget": "rows"}},
        {"template_name": "budget", "data": {"Budget": [[1, 2, 3, 4, 5, 6]]}},
    ],
)
def test_template_render_invalid_payload(payload):
    got = TemplateCatalog().render(payload)
    assert got.kind == ErrorKind.INVALID_INPUT


def test_template_names():
    assert TemplateCatalog().names() == ["budget", "expense_tracker", "inventory", "sales_report"]
