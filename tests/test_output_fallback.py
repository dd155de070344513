from __future__ import annotations

import allure

from agent_bridge.orchestrator.output_fallback import (
    OBJECT_INSTRUCTION,
    recover_json_object,
    with_object_instruction,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Structured Output"),
]


def test_recover_json_object_from_fenced_json() -> None:
    text = """
Some text before.
```json
{
  "blocks": [
    {"text": "Recovered block", "source_ids": ["article:1"]}
  ]
}
```
Some text after.
""".strip()
    recovered = recover_json_object(text)
    assert recovered == {"blocks": [{"text": "Recovered block", "source_ids": ["article:1"]}]}


def test_recover_json_object_direct_and_embedded() -> None:
    assert recover_json_object('  {"ok": true}  ') == {"ok": True}
    assert recover_json_object('Here you go: {"answer": 42} hope that helps') == {"answer": 42}


def test_recover_json_object_rejects_non_objects() -> None:
    assert recover_json_object("") is None
    assert recover_json_object("[1, 2, 3]") is None
    assert recover_json_object("no json here") is None
    assert recover_json_object("{broken json}") is None


def test_with_object_instruction_appends_instruction() -> None:
    prompt = with_object_instruction("List three colors.  \n")
    assert prompt == f"List three colors.\n\n{OBJECT_INSTRUCTION}"
