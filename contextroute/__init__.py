"""Adaptive routing and context assembly for conversational turns.

Each inbound user message is turned into a generation request.  The package
wires together

* a router decision engine choosing model tier, effort, context and memory plan,
* a topic classifier maintaining a two-level topic tree per conversation,
* a semantic memory store that deduplicates writes by embedding similarity, and
* a context assembler that merges all of the above into a bounded prompt.
"""

from .clients import EmbeddingError, LLMClient, LLMClientError
from .config import PipelineConfig, load_config
from .context import ContextAssembler, truncate_history
from .memory import MemoryStore
from .pipeline import RoutingPipeline
from .router import RouterDecisionEngine
from .runtime import PipelineRuntime, main as runtime_main
from .schemas import (
    AssembledContext,
    ConversationTopic,
    MemoryItem,
    OperatorHints,
    RouterDecision,
    RouterOutcome,
    TopicDecision,
    TopicOutcome,
    Turn,
    TurnResult,
)
from .storage import ConversationDatabase
from .topics import TopicClassifier

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "ConversationDatabase",
    "ConversationTopic",
    "EmbeddingError",
    "LLMClient",
    "LLMClientError",
    "MemoryItem",
    "MemoryStore",
    "OperatorHints",
    "PipelineConfig",
    "PipelineRuntime",
    "RouterDecision",
    "RouterDecisionEngine",
    "RouterOutcome",
    "RoutingPipeline",
    "TopicClassifier",
    "TopicDecision",
    "TopicOutcome",
    "Turn",
    "TurnResult",
    "load_config",
    "runtime_main",
    "truncate_history",
]
