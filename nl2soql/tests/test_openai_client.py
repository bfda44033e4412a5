from types import SimpleNamespace

import pytest

from nl2soql.pipeline import openai_client
from nl2soql.pipeline.openai_client import (
    OpenAICompletion,
    chat_complete,
    record_usage,
    reset_usage_log,
    usage_totals,
)


class StubCompletions:
    def __init__(self):
        self.calls = []

    def create(self, **params):
        self.calls.append(params)
        usage = SimpleNamespace(prompt_tokens=7, completion_tokens=3, total_tokens=10)
        message = SimpleNamespace(content="  ```soql\nSELECT Id FROM Account\n```  ")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


@pytest.fixture
def stub_client(monkeypatch):
    completions = StubCompletions()
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    monkeypatch.setattr(openai_client, "_client", lambda: client)
    reset_usage_log()
    return completions


def test_usage_log_accumulates_per_thread():
    reset_usage_log()
    record_usage({"prompt_tokens": 5, "completion_tokens": 2})
    record_usage({"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2})
    assert usage_totals() == {"prompt_tokens": 6, "completion_tokens": 3, "total_tokens": 9}
    reset_usage_log()
    assert usage_totals() == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def test_chat_complete_params_for_chat_models(stub_client):
    text, usage = chat_complete("gpt-4o-mini", "sys", "user", force_json=True, timeout=5.0)

    assert text == "```soql\nSELECT Id FROM Account\n```"
    assert usage["total_tokens"] == 10
    params = stub_client.calls[0]
    assert params["max_tokens"] == 1200
    assert params["temperature"] == 0.0
    assert params["response_format"] == {"type": "json_object"}
    assert params["timeout"] == 5.0
    assert params["messages"][1]["content"].endswith("Return JSON only.")


def test_reasoning_models_use_completion_tokens(stub_client):
    chat_complete("o3-mini", "sys", "user")
    params = stub_client.calls[0]
    assert "max_completion_tokens" in params
    assert "max_tokens" not in params
    assert "temperature" not in params


@pytest.mark.asyncio
async def test_completion_routes_roles_to_models(monkeypatch):
    seen = []

    def fake_chat_complete(model, system, user, **kwargs):
        seen.append((model, kwargs["force_json"]))
        return "{}", None

    monkeypatch.setattr(openai_client, "chat_complete", fake_chat_complete)
    completion = OpenAICompletion(plan_model="planner-model", code_model="coder-model")

    await completion.complete("plan", {"system": "s", "user": "u"})
    await completion.complete("code", {"system": "s", "user": "u"})

    assert seen == [("planner-model", True), ("coder-model", False)]
