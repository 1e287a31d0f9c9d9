from __future__ import annotations

import asyncio
import json

import pytest

from planexec.engine.runner import LLMToolRunner, ToolRunOutput
from planexec.errors import ToolInvocationError
from planexec.models.gpt5 import GPT5Client
from planexec.models.llm_client import LLMRequest, LLMRetryError


def _make_response_payload(output: str) -> str:
    payload = {"output": output, "succeeded": True, "files_changed": ["src/a.py"]}
    response = {
        "id": "resp_mock",
        "object": "response",
        "status": "completed",
        "output": [
            {
                "id": "msg_mock",
                "type": "message",
                "role": "assistant",
                "content": [
                    {
                        "type": "output_text",
                        "text": json.dumps(payload),
                    }
                ],
            }
        ],
    }
    return json.dumps(response)


def test_gpt5_client_extracts_json_from_responses_api() -> None:
    def transport(_: dict[str, str]) -> str:
        return _make_response_payload("Created src/a.py\nVERIFY: PASS")

    client = GPT5Client(model="gpt-5-mini", transport=transport)
    request = LLMRequest(prompt="Task 1: Add parser", response_model=ToolRunOutput)

    result = client.invoke(request)
    assert result.output.endswith("VERIFY: PASS")
    assert result.files_changed == ["src/a.py"]


def test_gpt5_client_extracts_from_output_json_block() -> None:
    def transport(_: dict[str, str]) -> str:
        response = {
            "output": [
                {
                    "id": "msg_json",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_json", "json": {"output": "done"}}],
                }
            ]
        }
        return json.dumps(response)

    client = GPT5Client(model="gpt-5-mini", transport=transport)

    result = client.invoke(LLMRequest(prompt="{}", response_model=ToolRunOutput))
    assert result.output == "done"
    assert result.succeeded is True


def test_gpt5_client_retries_then_gives_up() -> None:
    calls = []

    def transport(payload: dict) -> str:
        calls.append(payload["model"])
        return "not json at all"

    client = GPT5Client(model="gpt-5-mini", transport=transport, max_attempts=2, retry_delay=0.0)

    with pytest.raises(LLMRetryError):
        client.invoke(LLMRequest(prompt="{}", response_model=ToolRunOutput))
    assert calls == ["gpt-5-mini", "gpt-5-mini"]


def test_gpt5_client_requires_api_key_without_transport(monkeypatch) -> None:
    monkeypatch.delenv("PLANEXEC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        GPT5Client(model="gpt-5-mini")


def test_request_payload_carries_schema_and_metadata() -> None:
    request = LLMRequest(
        prompt="Task 1",
        response_model=ToolRunOutput,
        system_prompt="system",
        metadata={"phase": "tool-run", "files": ["src/a.py"]},
    )

    payload = request.to_payload("gpt-5-mini")

    schema = payload["text"]["format"]["schema"]
    assert schema["additionalProperties"] is False
    assert sorted(schema["required"]) == ["files_changed", "output", "succeeded"]
    assert [message["role"] for message in payload["input"]] == ["system", "user"]
    assert payload["metadata"] == {"phase": "tool-run", "files": '["src/a.py"]'}


def test_tool_runner_wraps_client_failures() -> None:
    def transport(_: dict) -> str:
        raise OSError("connection reset")

    runner = LLMToolRunner(GPT5Client(model="gpt-5-mini", transport=transport, max_attempts=1))

    with pytest.raises(ToolInvocationError, match="Model call failed"):
        asyncio.run(runner.run("Task 1: Add parser", ["src/a.py"]))


def test_tool_runner_reports_changed_files() -> None:
    runner = LLMToolRunner(
        GPT5Client(model="gpt-5-mini", transport=lambda _: _make_response_payload("Created the parser."))
    )

    run = asyncio.run(runner.run("Task 1: Add parser", ["src/a.py"]))

    assert run.succeeded
    assert run.output == "Created the parser.\n\nFiles changed: src/a.py"
