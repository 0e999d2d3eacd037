"""Unified OpenAI-compatible clients for chat completions and embeddings."""

from __future__ import annotations

import logging
import os
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, MutableMapping, Sequence

import openai
from openai import OpenAI

from .schemas import CallUsage

logger = logging.getLogger(__name__)


DEFAULT_EXTRA_BODY: Mapping[str, Any] = {
    "extra_body": {"chat_template_kwargs": {"enable_thinking": False}}
}


class LLMClientError(Exception):
    """Raised when the upstream model endpoint fails or times out."""


class EmbeddingError(LLMClientError):
    """Raised when an embedding request cannot be served."""


@dataclass
class ChatReply:
    """Text returned by a chat completion together with its usage."""

    content: str
    usage: CallUsage


class LLMClient:
    """Thin wrapper over :class:`openai.OpenAI` with provider defaults."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        provider: str = "vllm",
        api_key: str | None = None,
        api_key_env: str | None = None,
        timeout: float | None = None,
        default_extra_body: Mapping[str, Any] | None = None,
    ) -> None:
        provider_key = provider.lower()
        if provider_key not in {"vllm", "deepseek", "openai"}:
            raise ValueError(f"Unsupported provider '{provider}'")

        if api_key is None:
            env_name = api_key_env or (
                "DEEPSEEK_API_KEY" if provider_key == "deepseek" else "OPENAI_API_KEY"
            )
            # the openai client refuses an empty key even for local servers
            api_key = os.environ.get(env_name) or "EMPTY"

        extra = default_extra_body
        if extra is None and provider_key == "vllm":
            extra = DEFAULT_EXTRA_BODY

        self._client = OpenAI(base_url=base_url, api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.provider = provider_key
        self.timeout = timeout
        self.default_extra_body = dict(extra or {})

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------
    def chat(
        self,
        messages: Sequence[Mapping[str, object]],
        *,
        purpose: str = "chat",
        extra_body: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ChatReply:
        payload: MutableMapping[str, Any] = {"model": self.model, "messages": list(messages)}
        merged = self._merge_extra(extra_body)
        if merged:
            payload.update(merged)
        if timeout is not None:
            payload["timeout"] = timeout

        logger.debug("Dispatching chat request: %s", payload)
        started = time.monotonic()
        try:
            response = self._client.chat.completions.create(**payload)
        except openai.APITimeoutError as exc:
            raise LLMClientError(f"{purpose} call timed out after {timeout or self.timeout}s") from exc
        except openai.OpenAIError as exc:
            raise LLMClientError(f"{purpose} call failed: {exc}") from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug("Chat raw response: %s", response)

        if not response.choices:
            raise LLMClientError(f"{purpose} call returned no choices")
        choice = response.choices[0].message
        usage = getattr(response, "usage", None)
        return ChatReply(
            content=getattr(choice, "content", "") or "",
            usage=CallUsage(
                purpose=purpose,
                model=self.model,
                input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
                elapsed_ms=elapsed_ms,
            ),
        )

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = list(texts)
        if not items:
            return []

        payload: MutableMapping[str, Any] = {"model": self.model, "input": items}
        logger.debug("Dispatching embedding request: %s", payload)
        try:
            response = self._client.embeddings.create(**payload)
        except openai.OpenAIError as exc:
            raise EmbeddingError(f"embedding call failed: {exc}") from exc
        # entries may arrive out of order; ``index`` ties them to the inputs
        entries = sorted(response.data, key=lambda entry: getattr(entry, "index", 0) or 0)
        vectors = [
            [float(x) for x in entry.embedding]
            for entry in entries
            if getattr(entry, "embedding", None) is not None
        ]
        if len(vectors) != len(items):
            raise EmbeddingError(
                f"Embedding count mismatch: expected {len(items)}, received {len(vectors)}"
            )
        return vectors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _merge_extra(
        self, extra_body: Mapping[str, Any] | None
    ) -> MutableMapping[str, Any] | None:
        if not self.default_extra_body and not extra_body:
            return None
        merged: MutableMapping[str, Any] = deepcopy(self.default_extra_body)
        if extra_body:
            for key, value in extra_body.items():
                if (
                    key in merged
                    and isinstance(merged[key], MutableMapping)
                    and isinstance(value, Mapping)
                ):
                    merged[key].update(value)  # type: ignore[arg-type]
                else:
                    merged[key] = deepcopy(value) if isinstance(value, Mapping) else value
        return merged


__all__ = ["ChatReply", "EmbeddingError", "LLMClient", "LLMClientError"]
