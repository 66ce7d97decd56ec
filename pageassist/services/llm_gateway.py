"""
LLM Gateway - Anthropic Messages API client.

(system prompt, history, new user turn) -> (answer text, input tokens, output tokens).
Failures and timeouts surface as UpstreamError and are never retried.
"""

import time
from typing import Protocol

import httpx
from structlog import get_logger

from pageassist.config import Settings
from pageassist.exceptions import UpstreamError
from pageassist.models.domain import HistoryTurn, LLMReply
from pageassist.observability.metrics import metrics

logger = get_logger(__name__)


class ChatCompletionGateway(Protocol):
    """Anything that can answer a chat turn."""

    async def complete(
        self, system_prompt: str, history: list[HistoryTurn], user_turn: str
    ) -> LLMReply: ...


class AnthropicGateway:
    """Calls the hosted model over HTTP."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.api_url = settings.llm_api_url
        self.api_key = settings.llm_api_key
        self.api_version = settings.llm_api_version
        self.model = settings.llm_model
        self.max_tokens = settings.llm_max_tokens
        self.timeout_seconds = settings.llm_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _build_payload(
        self, system_prompt: str, history: list[HistoryTurn], user_turn: str
    ) -> dict[str, object]:
        messages = [{"role": turn.role.value, "content": turn.content} for turn in history]
        messages.append({"role": "user", "content": user_turn})
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": messages,
        }

    async def complete(
        self, system_prompt: str, history: list[HistoryTurn], user_turn: str
    ) -> LLMReply:
        """
        Send one turn to the model.

        Raises:
            UpstreamError: On timeout, transport error, non-2xx status, or an
                unparseable response body
        """
        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                self.api_url,
                json=self._build_payload(system_prompt, history, user_turn),
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": self.api_version,
                    "content-type": "application/json",
                },
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            reply = self._parse_reply(response.json())
        except httpx.TimeoutException as e:
            metrics.record_llm_call(False, time.perf_counter() - started)
            logger.warning("llm_request_timeout", timeout_seconds=self.timeout_seconds)
            raise UpstreamError("LLM request timed out") from e
        except httpx.HTTPStatusError as e:
            metrics.record_llm_call(False, time.perf_counter() - started)
            logger.error(
                "llm_request_failed",
                status=e.response.status_code,
                body=e.response.text[:500],
            )
            raise UpstreamError(f"LLM returned status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            metrics.record_llm_call(False, time.perf_counter() - started)
            logger.error("llm_transport_error", error=str(e))
            raise UpstreamError("LLM request failed") from e
        except (ValueError, KeyError, TypeError) as e:
            metrics.record_llm_call(False, time.perf_counter() - started)
            logger.error("llm_response_malformed", error=str(e))
            raise UpstreamError("LLM returned a malformed response") from e

        duration = time.perf_counter() - started
        metrics.record_llm_call(True, duration, reply.input_tokens, reply.output_tokens)
        logger.info(
            "llm_request_completed",
            model=self.model,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
            duration_ms=round(duration * 1000, 2),
        )
        return reply

    @staticmethod
    def _parse_reply(body: dict) -> LLMReply:
        """Take the first text block and the usage counters."""
        text = next(
            (block["text"] for block in body.get("content", []) if block.get("type") == "text"),
            "",
        )
        usage = body["usage"]
        return LLMReply(
            text=text,
            input_tokens=int(usage["input_tokens"]),
            output_tokens=int(usage["output_tokens"]),
        )
