"""Remote tool invocation with timeout, retry, and exponential backoff."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from pydantic import ValidationError

from plan_engine.errors import RemoteInvocationError, RemoteToolError, TransportError
from plan_engine.models import Tool
from plan_engine.tools.schemas import ToolCallRequest, ToolCallResponse

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

CompletionHandler = Callable[[Tool, dict[str, Any]], Any]


class ToolTransport(Protocol):
    """Sends one request to a tool service and returns the decoded envelope.

    Implementations raise `TransportError` for failures that are safe to retry.
    """

    def send(self, endpoint: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]: ...


class HttpToolTransport:
    """JSON-over-HTTP transport using the standard library client."""

    def __init__(self, *, headers: dict[str, str] | None = None) -> None:
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    def send(self, endpoint: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=endpoint,
            data=json.dumps(payload, default=str).encode("utf-8"),
            method="POST",
            headers=self.headers,
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            if exc.code in RETRYABLE_HTTP_STATUSES:
                raise TransportError(
                    f"Tool service returned status {exc.code}: {raw[:400]}"
                ) from exc
            return _failed_envelope_from_http(exc.code, raw)
        except error.URLError as exc:
            raise TransportError(f"Tool service unreachable: {exc.reason}") from exc
        except (TimeoutError, ConnectionError) as exc:
            raise TransportError(f"Tool service request failed: {exc}") from exc

        try:
            decoded = json.loads(body)
        except json.JSONDecodeError:
            return {
                "status": "failed",
                "error": {"message": "Tool service returned non-JSON response", "code": "invalid_response"},
            }
        if not isinstance(decoded, dict):
            return {
                "status": "failed",
                "error": {"message": "Tool service response must be a JSON object", "code": "invalid_response"},
            }
        return decoded


@dataclass(frozen=True)
class InvocationResult:
    output: Any
    attempts: int
    duration_ms: float


class RemoteInvoker:
    """Invoke catalog tools over a transport, retrying only transport failures."""

    def __init__(
        self,
        *,
        transport: ToolTransport | None = None,
        timeout_s: float = 10.0,
        max_attempts: int = 3,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 8.0,
        completion_handler: CompletionHandler | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport or HttpToolTransport()
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.completion_handler = completion_handler
        self._sleep = sleep

    def invoke(self, tool: Tool, params: dict[str, Any]) -> Any:
        return self.call(tool, params).output

    def call(self, tool: Tool, params: dict[str, Any]) -> InvocationResult:
        if not tool.endpoint:
            raise RemoteInvocationError(
                f"No endpoint configured for {tool.qualified_name}",
                tool=tool.qualified_name,
                attempts=0,
            )

        started_at = time.perf_counter()
        payload = ToolCallRequest(tool=tool.tool_name, params=params).model_dump(mode="json")
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                envelope = self.transport.send(tool.endpoint, payload, timeout_s=self.timeout_s)
            except (TransportError, TimeoutError, ConnectionError) as exc:
                last_error = exc
                logger.warning(
                    "Remote call failed tool=%s attempt=%d/%d reason=%s",
                    tool.qualified_name,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt)
                    if delay > 0:
                        self._sleep(delay)
                continue

            output = self._interpret(tool, envelope, attempts=attempt)
            return InvocationResult(
                output=output,
                attempts=attempt,
                duration_ms=_duration_ms(started_at),
            )

        raise RemoteInvocationError(
            f"Tool '{tool.qualified_name}' failed after {self.max_attempts} attempts: {last_error}",
            tool=tool.qualified_name,
            attempts=self.max_attempts,
            cause=last_error,
        ) from last_error

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.backoff_base_s * (2 ** (attempt - 1)), self.backoff_max_s)

    def _interpret(self, tool: Tool, envelope: dict[str, Any], *, attempts: int) -> Any:
        try:
            response = ToolCallResponse.model_validate(envelope)
        except ValidationError as exc:
            raise RemoteToolError(
                f"Tool '{tool.qualified_name}' returned a malformed response",
                tool=tool.qualified_name,
                code="invalid_response",
                details=str(exc),
                attempts=attempts,
            ) from exc

        if response.status == "completed":
            return response.result

        if response.status == "failed":
            payload = response.error
            message = payload.message if payload else "tool reported failure without details"
            raise RemoteToolError(
                f"Tool '{tool.qualified_name}' failed: {message}",
                tool=tool.qualified_name,
                code=payload.code if payload else None,
                details=payload.details if payload else None,
                attempts=attempts,
            )

        # Accepted for asynchronous completion; the side effect has already started.
        if self.completion_handler is None:
            raise RemoteInvocationError(
                f"Tool '{tool.qualified_name}' accepted the call asynchronously "
                "and no completion handler is configured",
                tool=tool.qualified_name,
                attempts=attempts,
            )
        logger.info("Awaiting asynchronous completion tool=%s", tool.qualified_name)
        return self.completion_handler(tool, envelope)


def _failed_envelope_from_http(status: int, raw: str) -> dict[str, Any]:
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, dict) and decoded.get("status") == "failed":
        return decoded
    message = raw[:400] if raw else f"HTTP {status}"
    if isinstance(decoded, dict) and isinstance(decoded.get("error"), str):
        message = decoded["error"]
    return {"status": "failed", "error": {"message": message, "code": f"http_{status}"}}


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
