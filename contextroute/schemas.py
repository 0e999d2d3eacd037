"""Typed data structures used by the routing pipeline."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Union


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------
# Persisted records
# ----------------------------------------------------------------------
@dataclass
class Conversation:
    id: str
    user_id: str
    title: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class ConversationTopic:
    """A labeled thread inside one conversation, nested at most one level."""

    id: str
    conversation_id: str
    label: str
    parent_topic_id: Optional[str] = None
    description: Optional[str] = None
    summary: Optional[str] = None
    token_estimate: int = 0
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    @property
    def is_top_level(self) -> bool:
        return self.parent_topic_id is None

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: str = field(default_factory=utc_timestamp)
    topic_id: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class MemoryItem:
    """A durable fact about a user, deduplicated by embedding similarity."""

    id: str
    user_id: str
    type: str
    title: str
    content: str
    embedding: Optional[List[float]] = None
    enabled: bool = True
    importance: int = 50
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)
    similarity: Optional[float] = None

    def to_payload(self) -> Mapping[str, Any]:
        payload = asdict(self)
        payload.pop("embedding", None)
        if self.similarity is None:
            payload.pop("similarity", None)
        return payload


@dataclass
class PermanentInstruction:
    id: str
    scope: str
    user_id: str
    content: str
    title: Optional[str] = None
    conversation_id: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class Artifact:
    id: str
    conversation_id: str
    type: str
    title: str
    content: str
    topic_id: Optional[str] = None
    summary: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)

    def to_payload(self) -> Mapping[str, Any]:
        payload = asdict(self)
        payload.pop("content", None)
        return payload


# ----------------------------------------------------------------------
# Router decision
# ----------------------------------------------------------------------
@dataclass
class MemoryStrategy:
    categories: Union[List[str], str] = field(default_factory=list)
    use_semantic_search: bool = False
    query: Optional[str] = None
    limit: int = 8

    @property
    def loads_all(self) -> bool:
        return self.categories == "all"

    @property
    def wants_memories(self) -> bool:
        return self.loads_all or bool(self.categories)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "categories": self.categories if self.loads_all else list(self.categories),
            "useSemanticSearch": self.use_semantic_search,
            "query": self.query,
            "limit": self.limit,
        }


@dataclass
class MemoryToWrite:
    type: str
    title: str
    content: str

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class MemoryToDelete:
    id: str
    reason: str

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class InstructionToWrite:
    scope: str
    content: str
    title: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class InstructionToDelete:
    id: str
    reason: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class RouterDecision:
    """Per-message generation request; never persisted as its own row."""

    model_tier: str
    reasoning_effort: str
    context_strategy: str = "recent"
    web_search_strategy: str = "optional"
    memory_strategy: MemoryStrategy = field(default_factory=MemoryStrategy)
    memories_to_write: List[MemoryToWrite] = field(default_factory=list)
    memories_to_delete: List[MemoryToDelete] = field(default_factory=list)
    next_turn_prediction: str = "unknown"
    instructions_to_write: List[InstructionToWrite] = field(default_factory=list)
    instructions_to_delete: List[InstructionToDelete] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "modelTier": self.model_tier,
            "reasoningEffort": self.reasoning_effort,
            "contextStrategy": self.context_strategy,
            "webSearchStrategy": self.web_search_strategy,
            "memoryStrategy": self.memory_strategy.to_payload(),
            "memoriesToWrite": [item.to_payload() for item in self.memories_to_write],
            "memoriesToDelete": [item.to_payload() for item in self.memories_to_delete],
            "nextTurnPrediction": self.next_turn_prediction,
            "instructionsToWrite": [item.to_payload() for item in self.instructions_to_write],
            "instructionsToDelete": [item.to_payload() for item in self.instructions_to_delete],
        }


@dataclass
class OperatorHints:
    """Caller supplied overrides: forced tier, speed preference, usage level."""

    forced_tier: Optional[str] = None
    speed: str = "auto"
    usage_percentage: float = 0.0

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> "OperatorHints":
        data = data or {}
        forced = data.get("forced_tier") or data.get("forcedTier")
        speed = str(data.get("speed") or "auto").lower()
        if speed not in {"instant", "auto", "thinking"}:
            speed = "auto"
        try:
            usage = float(data.get("usage_percentage", data.get("usagePercentage", 0.0)) or 0.0)
        except (TypeError, ValueError):
            usage = 0.0
        return cls(forced_tier=str(forced) if forced else None, speed=speed, usage_percentage=usage)


# ----------------------------------------------------------------------
# Topic decision
# ----------------------------------------------------------------------
@dataclass
class TopicDecision:
    action: str
    primary_topic_id: Optional[str] = None
    secondary_topic_ids: List[str] = field(default_factory=list)
    new_label: Optional[str] = None
    new_description: Optional[str] = None
    new_summary: Optional[str] = None
    new_parent_topic_id: Optional[str] = None
    artifact_ids_to_load: List[str] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "action": self.action,
            "primaryTopicId": self.primary_topic_id,
            "secondaryTopicIds": list(self.secondary_topic_ids),
            "newLabel": self.new_label,
            "newDescription": self.new_description,
            "newSummary": self.new_summary,
            "newParentTopicId": self.new_parent_topic_id,
            "artifactIdsToLoad": list(self.artifact_ids_to_load),
        }


# ----------------------------------------------------------------------
# Tagged outcomes
# ----------------------------------------------------------------------
@dataclass
class CallUsage:
    """Token usage of one auxiliary model call, returned to the caller."""

    purpose: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    elapsed_ms: int = 0

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class RouterOutcome:
    decision: RouterDecision
    status: str = "ok"
    usage: List[CallUsage] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "status": self.status,
            "decision": self.decision.to_payload(),
            "usage": [item.to_payload() for item in self.usage],
            "error": self.error,
        }


@dataclass
class TopicOutcome:
    decision: TopicDecision
    status: str = "ok"
    usage: List[CallUsage] = field(default_factory=list)
    error: Optional[str] = None
    created_topic: Optional[ConversationTopic] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "status": self.status,
            "decision": self.decision.to_payload(),
            "usage": [item.to_payload() for item in self.usage],
            "error": self.error,
            "createdTopic": self.created_topic.to_payload() if self.created_topic else None,
        }


# ----------------------------------------------------------------------
# Context and turn envelopes
# ----------------------------------------------------------------------
@dataclass
class ContextMessage:
    role: str
    content: str

    def to_payload(self) -> Mapping[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class AssembledContext:
    strategy: str
    messages: List[ContextMessage] = field(default_factory=list)
    memory_excerpt: str = ""
    standing_instructions_text: str = ""
    included_topic_ids: List[str] = field(default_factory=list)
    estimated_tokens: int = 0
    memories: List[MemoryItem] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "strategy": self.strategy,
            "messages": [message.to_payload() for message in self.messages],
            "memoryExcerpt": self.memory_excerpt,
            "standingInstructionsText": self.standing_instructions_text,
            "includedTopicIds": list(self.included_topic_ids),
            "estimatedTokens": self.estimated_tokens,
        }


@dataclass
class Turn:
    user_id: str
    conversation_id: str
    message_text: str
    hints: OperatorHints = field(default_factory=OperatorHints)
    message_id: Optional[str] = None


@dataclass
class SideEffects:
    """Durable writes committed for one turn."""

    memories_written: List[str] = field(default_factory=list)
    memories_deleted: List[str] = field(default_factory=list)
    instructions_written: List[str] = field(default_factory=list)
    instructions_deleted: List[str] = field(default_factory=list)
    tagged_message_id: Optional[str] = None
    failures: List[str] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class TurnResult:
    decision: RouterOutcome
    topic: TopicOutcome
    context: AssembledContext
    side_effects: SideEffects = field(default_factory=SideEffects)
    degraded: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def usage(self) -> List[CallUsage]:
        return [*self.decision.usage, *self.topic.usage]

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "decision": self.decision.to_payload(),
            "topic": self.topic.to_payload(),
            "context": self.context.to_payload(),
            "sideEffects": self.side_effects.to_payload(),
            "usage": [item.to_payload() for item in self.usage],
            "degraded": self.degraded,
            "errors": list(self.errors),
        }


def dumps_payload(data: Mapping[str, Any]) -> str:
    """Render ``data`` as formatted JSON for prompt injection."""

    return json.dumps(data, ensure_ascii=False, indent=2)


__all__ = [
    "Artifact",
    "AssembledContext",
    "CallUsage",
    "ContextMessage",
    "Conversation",
    "ConversationTopic",
    "InstructionToDelete",
    "InstructionToWrite",
    "MemoryItem",
    "MemoryStrategy",
    "MemoryToDelete",
    "MemoryToWrite",
    "Message",
    "OperatorHints",
    "PermanentInstruction",
    "RouterDecision",
    "RouterOutcome",
    "SideEffects",
    "TopicDecision",
    "TopicOutcome",
    "Turn",
    "TurnResult",
    "dumps_payload",
    "utc_timestamp",
]
