import json
from urllib import error

import pytest

from plan_engine.errors import PlanningOracleError
from plan_engine.planning import oracle as oracle_module
from plan_engine.planning.oracle import OpenAIPlanningOracle


class _Response:
    def __init__(self, payload: dict) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def test_oracle_returns_message_content(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _Response({"choices": [{"message": {"content": '  {"intent": "x"}  '}}]})

    monkeypatch.setattr(oracle_module.request, "urlopen", fake_urlopen)
    oracle = OpenAIPlanningOracle(api_key="sk-test", base_url="http://oracle.test/v1/")

    text = oracle.complete("plan this", timeout_s=3)

    assert text == '{"intent": "x"}'
    assert captured["url"] == "http://oracle.test/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["messages"] == [{"role": "user", "content": "plan this"}]


def test_oracle_retries_then_raises(monkeypatch) -> None:
    calls = {"count": 0}

    def failing_urlopen(req, timeout):
        calls["count"] += 1
        raise error.URLError("connection refused")

    monkeypatch.setattr(oracle_module.request, "urlopen", failing_urlopen)
    oracle = OpenAIPlanningOracle(api_key="sk-test", max_retries=2, backoff_s=0.0)

    with pytest.raises(PlanningOracleError):
        oracle.complete("plan this", timeout_s=1)
    assert calls["count"] == 3


def test_oracle_rejects_empty_content(monkeypatch) -> None:
    monkeypatch.setattr(
        oracle_module.request,
        "urlopen",
        lambda req, timeout: _Response({"choices": [{"message": {"content": "   "}}]}),
    )
    oracle = OpenAIPlanningOracle(api_key="sk-test", max_retries=0)

    with pytest.raises(PlanningOracleError):
        oracle.complete("plan this", timeout_s=1)


def test_oracle_requires_api_key() -> None:
    with pytest.raises(PlanningOracleError):
        OpenAIPlanningOracle(api_key="")
