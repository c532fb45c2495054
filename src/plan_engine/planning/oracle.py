"""Planning-oracle adapters: send a prompt, get free text back."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from plan_engine.config.settings import Settings
from plan_engine.errors import PlanningOracleError

logger = logging.getLogger(__name__)


class PlanningOracle(Protocol):
    """Black-box planner: natural-language prompt in, free text out."""

    def complete(self, prompt: str, *, timeout_s: float) -> str: ...


class OpenAIPlanningOracle:
    """Chat-completions backed oracle using the REST API directly."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        max_tokens: int = 2048,
        trace: bool = False,
    ) -> None:
        if not api_key:
            raise PlanningOracleError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.max_tokens = max_tokens
        self.trace = trace

    def complete(self, prompt: str, *, timeout_s: float) -> str:
        payload = {
            "model": self.model,
            "temperature": 0,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        response_json = self._request_with_retry(payload, timeout_s=timeout_s)
        return _extract_content(response_json)

    def _request_with_retry(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request_once(payload, timeout_s=timeout_s)
            except PlanningOracleError as exc:
                last_error = exc
                logger.warning(
                    "Planning oracle request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)

        if last_error is None:
            raise PlanningOracleError("Planning oracle request failed")
        raise last_error

    def _request_once(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if self.trace:
            logger.warning(
                "Oracle trace request model=%s url=%s timeout_s=%s", self.model, url, timeout_s
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            raise PlanningOracleError(
                f"Planning oracle request failed with status {exc.code}: {raw[:400]}"
            ) from exc
        except error.URLError as exc:
            raise PlanningOracleError(f"Planning oracle request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise PlanningOracleError(
                f"Planning oracle timed out after {timeout_s:.2f}s"
            ) from exc

        if self.trace:
            logger.warning("Oracle trace response model=%s status=ok", self.model)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise PlanningOracleError("Planning oracle returned non-JSON envelope") from exc


def build_oracle(settings: Settings) -> PlanningOracle | None:
    provider = settings.oracle_provider.lower().strip()
    if provider != "openai":
        logger.warning("Unsupported planning oracle provider=%s", settings.oracle_provider)
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIPlanningOracle(
        api_key=api_key,
        model=settings.oracle_model,
        base_url=settings.oracle_base_url,
        max_retries=settings.oracle_max_retries,
        backoff_s=settings.oracle_backoff_s,
        trace=settings.oracle_trace,
    )


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices", [])
    if not choices:
        raise PlanningOracleError("Planning oracle response missing choices")

    message = choices[0].get("message", {})
    content = message.get("content")

    if isinstance(content, str):
        text = content.strip()
    elif isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        text = "".join(parts).strip()
    else:
        text = ""

    if not text:
        raise PlanningOracleError("Planning oracle response had empty content")
    return text
