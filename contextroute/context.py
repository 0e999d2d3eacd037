"""Bounded context assembly for the final generation call."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, TypeVar

from .config import ContextConfig
from .memory import MemoryStore
from .schemas import (
    AssembledContext,
    ContextMessage,
    MemoryItem,
    MemoryStrategy,
    Message,
    PermanentInstruction,
    TopicDecision,
)
from .storage import ConversationDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ----------------------------------------------------------------------
# Truncation helpers
# ----------------------------------------------------------------------
def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    return math.ceil(len(text) / max(1, chars_per_token))


def truncate_content(role: str, content: str, config: Optional[ContextConfig] = None) -> str:
    """User text keeps its head and tail, assistant text only its head."""

    config = config or ContextConfig()
    if role == "user":
        if len(content) <= config.user_head + config.user_tail:
            return content
        tail = content[-config.user_tail :] if config.user_tail else ""
        return f"{content[: config.user_head]} ... {tail}".rstrip()
    if len(content) <= config.assistant_head:
        return content
    return f"{content[: config.assistant_head]}..."


def _evict_oldest(items: Sequence[T], token_cap: int, measure: Callable[[T], int]) -> List[T]:
    kept = list(items)
    total = sum(measure(item) for item in kept)
    while len(kept) > 1 and total > token_cap:
        total -= measure(kept.pop(0))
    return kept


def cap_history_lines(
    lines: Sequence[str], token_cap: int, chars_per_token: int = 4
) -> List[str]:
    """Drop the oldest lines until the estimate fits ``token_cap`` (keeps one)."""

    return _evict_oldest(lines, token_cap, lambda line: estimate_tokens(line, chars_per_token))


def truncate_history(
    messages: Sequence[Message],
    token_cap: int,
    config: Optional[ContextConfig] = None,
) -> List[str]:
    """Render ``messages`` as ``Role: text`` lines bounded by ``token_cap``."""

    config = config or ContextConfig()
    lines = [
        f"{'User' if message.role == 'user' else 'Assistant'}: "
        f"{truncate_content(message.role, message.content, config)}"
        for message in messages
    ]
    return cap_history_lines(lines, token_cap, config.chars_per_token)


def format_memory_excerpt(memories: Sequence[MemoryItem]) -> str:
    return "\n".join(
        f"- [{memory.type}] {memory.title}: {memory.content} (id: {memory.id})" for memory in memories
    )


def format_standing_instructions(instructions: Sequence[PermanentInstruction]) -> str:
    lines = []
    for instruction in instructions:
        line = f"- {instruction.title or 'Instruction'}: {instruction.content}"
        if instruction.scope == "conversation":
            line += " (this conversation)"
        lines.append(line)
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Assembler
# ----------------------------------------------------------------------
@dataclass
class ContextAssembler:
    db: ConversationDatabase
    memory_store: MemoryStore
    config: ContextConfig = field(default_factory=ContextConfig)

    def assemble(
        self,
        context_strategy: str,
        topic_decision: TopicDecision,
        conversation_id: str,
        *,
        user_id: str,
        memory_strategy: Optional[MemoryStrategy] = None,
        query: Optional[str] = None,
        exclude_message_id: Optional[str] = None,
    ) -> AssembledContext:
        topic_ids = self._topic_ids(topic_decision)
        history = self._load_history(
            context_strategy, topic_decision, conversation_id, exclude_message_id
        )

        messages: List[ContextMessage] = []
        if context_strategy != "minimal":
            messages.extend(self._reference_notes(topic_decision))
            messages.extend(self._artifact_messages(topic_decision))
        reserved = sum(self._measure(message) for message in messages)

        truncated = [
            ContextMessage(
                role=message.role,
                content=truncate_content(message.role, message.content, self.config),
            )
            for message in history
        ]
        if truncated:
            budget = max(0, self.config.token_cap - reserved)
            truncated = _evict_oldest(truncated, budget, self._measure)
        messages.extend(truncated)

        memories = self._load_memories(user_id, memory_strategy, query)
        instructions = self.db.list_instructions(user_id, conversation_id)

        return AssembledContext(
            strategy=context_strategy,
            messages=messages,
            memory_excerpt=format_memory_excerpt(memories),
            standing_instructions_text=format_standing_instructions(instructions),
            included_topic_ids=topic_ids,
            estimated_tokens=sum(self._measure(message) for message in messages),
            memories=memories,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    @staticmethod
    def _topic_ids(decision: TopicDecision) -> List[str]:
        if not decision.primary_topic_id:
            return []
        return [decision.primary_topic_id] + [
            topic_id for topic_id in decision.secondary_topic_ids if topic_id != decision.primary_topic_id
        ]

    def _load_history(
        self,
        context_strategy: str,
        decision: TopicDecision,
        conversation_id: str,
        exclude_message_id: Optional[str],
    ) -> List[Message]:
        if context_strategy == "minimal":
            return []
        if context_strategy == "full":
            return self.db.list_messages(conversation_id, exclude_id=exclude_message_id)

        window = self.config.recent_window
        primary = decision.primary_topic_id
        if primary and self.db.list_topic_messages(
            [primary], limit=1, exclude_id=exclude_message_id
        ):
            return self.db.list_topic_messages(
                self._topic_ids(decision), limit=window, exclude_id=exclude_message_id
            )
        return self.db.list_recent_messages(
            conversation_id, limit=window, exclude_id=exclude_message_id
        )

    def _reference_notes(self, decision: TopicDecision) -> List[ContextMessage]:
        notes: List[ContextMessage] = []
        for topic in self.db.get_topics(decision.secondary_topic_ids):
            text = topic.summary or topic.description
            if not text:
                continue
            notes.append(
                ContextMessage(role="system", content=f"[Reference summary: {topic.label}] {text}")
            )
        return notes

    def _artifact_messages(self, decision: TopicDecision) -> List[ContextMessage]:
        budget = int(self.config.token_cap * self.config.artifact_budget_ratio)
        used = 0
        messages: List[ContextMessage] = []
        for artifact in self.db.get_artifacts(decision.artifact_ids_to_load):
            message = ContextMessage(
                role="system", content=f"[Artifact: {artifact.title}]\n{artifact.content}"
            )
            cost = self._measure(message)
            if used + cost > budget:
                logger.debug("Skipping artifact %s, over the artifact budget", artifact.id)
                continue
            used += cost
            messages.append(message)
        return messages

    def _measure(self, message: ContextMessage) -> int:
        return estimate_tokens(message.content, self.config.chars_per_token)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------
    def _load_memories(
        self, user_id: str, strategy: Optional[MemoryStrategy], query: Optional[str]
    ) -> List[MemoryItem]:
        if strategy is None or not strategy.wants_memories:
            return []
        # the raw message is used as an embedding query only
        if not strategy.query and not strategy.use_semantic_search:
            query = None
        return self.memory_store.fetch(
            user_id,
            strategy.categories,
            use_semantic_search=strategy.use_semantic_search,
            query=strategy.query or query,
            limit=strategy.limit,
        )


__all__ = [
    "ContextAssembler",
    "cap_history_lines",
    "estimate_tokens",
    "format_memory_excerpt",
    "format_standing_instructions",
    "truncate_content",
    "truncate_history",
]
