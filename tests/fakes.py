"""Fake chat and embedding clients shared by the test-suite."""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from contextroute.clients import ChatReply, EmbeddingError, LLMClientError
from contextroute.schemas import CallUsage

Reply = Union[str, Exception]


class FakeLLMClient:
    """Chat client answering from queues keyed by system prompt prefix."""

    def __init__(self, responses: Optional[Mapping[str, List[Reply]]] = None, *, delay: float = 0.0) -> None:
        self.responses = {key: list(queue) for key, queue in (responses or {}).items()}
        self.calls: List[Mapping[str, Any]] = []
        self.delay = delay
        self._lock = threading.Lock()

    def chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        purpose: str = "chat",
        extra_body: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ChatReply:
        system_prompt = next(msg["content"] for msg in messages if msg["role"] == "system")
        with self._lock:
            self.calls.append({"purpose": purpose, "system": system_prompt, "messages": list(messages)})
            queue = next(
                (queue for key, queue in self.responses.items() if system_prompt.startswith(key)),
                None,
            )
            if not queue:
                raise LLMClientError(f"No response queued for purpose {purpose!r}")
            reply = queue.pop(0)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(reply, Exception):
            raise reply
        return ChatReply(
            content=reply,
            usage=CallUsage(purpose=purpose, model="fake", input_tokens=10, output_tokens=5),
        )

    def calls_for(self, purpose: str) -> List[Mapping[str, Any]]:
        return [call for call in self.calls if call["purpose"] == purpose]


class FakeEmbeddingClient:
    """Return configured vectors; unknown texts map to the zero vector."""

    def __init__(self, vectors: Optional[Mapping[str, List[float]]] = None, *, fail: bool = False) -> None:
        self.vectors: Dict[str, List[float]] = dict(vectors or {})
        self.fail = fail
        self.calls: List[List[str]] = []

    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = list(texts)
        self.calls.append(items)
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        return [list(self.vectors.get(text, [0.0, 0.0, 0.0])) for text in items]


def queue_json(data: Mapping[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False)
