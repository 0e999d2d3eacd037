"""Environment-driven configuration for the routing pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()


MODEL_TIERS: Tuple[str, ...] = ("compact", "balanced", "flagship")

# Ordered from least to most deliberation.
EFFORT_LEVELS: Tuple[str, ...] = ("none", "minimal", "low", "medium", "high", "xhigh")

DEFAULT_TIER_EFFORTS: Dict[str, Tuple[str, ...]] = {
    "compact": ("minimal", "low", "medium", "high"),
    "balanced": ("minimal", "low", "medium", "high"),
    "flagship": ("none", "minimal", "low", "medium", "high", "xhigh"),
}


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    values = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    unknown = [value for value in values if value not in EFFORT_LEVELS]
    if unknown or not values:
        raise ValueError(f"{name} contains unknown effort levels: {unknown or raw!r}")
    return values


@dataclass
class LLMConfig:
    """Auxiliary chat model used by the router and the topic classifier."""

    base_url: str = "http://localhost:1109/v1"
    model: str = "Qwen3-8B"
    provider: str = "vllm"
    api_key_env: str | None = None
    timeout: float = 15.0


@dataclass
class EmbeddingConfig:
    base_url: str = "http://localhost:1108/v1"
    model: str = "Qwen3-Embedding-8B"
    provider: str = "vllm"
    api_key_env: str | None = None
    timeout: float = 10.0


@dataclass
class RouterConfig:
    tier_efforts: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_TIER_EFFORTS)
    )
    usage_downgrade_pct: float = 90.0
    usage_force_compact_pct: float = 95.0
    history_messages: int = 10
    history_token_cap: int = 1500
    max_attempts: int = 2
    max_memory_writes: int = 2
    max_categories: int = 3
    default_memory_limit: int = 8

    def legal_efforts(self, tier: str) -> List[str]:
        allowed = set(self.tier_efforts.get(tier, ()))
        return [level for level in EFFORT_LEVELS if level in allowed]


@dataclass
class TopicConfig:
    recent_messages: int = 10
    cross_token_limit: int = 200_000
    cross_max_conversations: int = 12
    cross_max_topics: int = 50
    label_max_length: int = 120
    max_attempts: int = 2
    max_secondary_topics: int = 3
    max_artifacts: int = 3


@dataclass
class MemoryConfig:
    duplicate_threshold: float = 0.90
    refine_threshold: float = 0.85
    relevance_threshold: float = 0.3
    default_limit: int = 8


@dataclass
class ContextConfig:
    recent_window: int = 15
    token_cap: int = 100_000
    chars_per_token: int = 4
    user_head: int = 200
    user_tail: int = 100
    assistant_head: int = 300
    artifact_budget_ratio: float = 0.2


@dataclass
class PipelineConfig:
    """Top level configuration object handed to the runtime."""

    database_path: str = "contextroute.sqlite"
    log_level: str = "INFO"
    call_timeout: float = 20.0
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    context: ContextConfig = field(default_factory=ContextConfig)


def load_config() -> PipelineConfig:
    """Load configuration from environment variables with defaults."""

    llm = LLMConfig(
        base_url=os.getenv("ROUTER_LLM_BASE_URL", "http://localhost:1109/v1"),
        model=os.getenv("ROUTER_LLM_MODEL", "Qwen3-8B"),
        provider=os.getenv("ROUTER_LLM_PROVIDER", "vllm"),
        api_key_env=os.getenv("ROUTER_LLM_API_KEY_ENV") or None,
        timeout=float(os.getenv("ROUTER_LLM_TIMEOUT", "15")),
    )

    embedding = EmbeddingConfig(
        base_url=os.getenv("EMBEDDING_BASE_URL", "http://localhost:1108/v1"),
        model=os.getenv("EMBEDDING_MODEL", "Qwen3-Embedding-8B"),
        provider=os.getenv("EMBEDDING_PROVIDER", "vllm"),
        api_key_env=os.getenv("EMBEDDING_API_KEY_ENV") or None,
        timeout=float(os.getenv("EMBEDDING_TIMEOUT", "10")),
    )

    router = RouterConfig(
        tier_efforts={
            "compact": _env_list("ROUTER_EFFORTS_COMPACT", DEFAULT_TIER_EFFORTS["compact"]),
            "balanced": _env_list("ROUTER_EFFORTS_BALANCED", DEFAULT_TIER_EFFORTS["balanced"]),
            "flagship": _env_list("ROUTER_EFFORTS_FLAGSHIP", DEFAULT_TIER_EFFORTS["flagship"]),
        },
        usage_downgrade_pct=float(os.getenv("ROUTER_USAGE_DOWNGRADE_PCT", "90")),
        usage_force_compact_pct=float(os.getenv("ROUTER_USAGE_FORCE_COMPACT_PCT", "95")),
        history_messages=int(os.getenv("ROUTER_HISTORY_MESSAGES", "10")),
        history_token_cap=int(os.getenv("ROUTER_HISTORY_TOKEN_CAP", "1500")),
        max_attempts=int(os.getenv("ROUTER_MAX_ATTEMPTS", "2")),
        default_memory_limit=int(os.getenv("MEMORY_DEFAULT_LIMIT", "8")),
    )

    topics = TopicConfig(
        recent_messages=int(os.getenv("TOPIC_RECENT_MESSAGES", "10")),
        cross_token_limit=int(os.getenv("TOPIC_CROSS_TOKEN_LIMIT", "200000")),
        cross_max_conversations=int(os.getenv("TOPIC_CROSS_MAX_CONVERSATIONS", "12")),
        cross_max_topics=int(os.getenv("TOPIC_CROSS_MAX_TOPICS", "50")),
        label_max_length=int(os.getenv("TOPIC_LABEL_MAX_LENGTH", "120")),
        max_attempts=int(os.getenv("TOPIC_MAX_ATTEMPTS", "2")),
    )

    memory = MemoryConfig(
        duplicate_threshold=float(os.getenv("MEMORY_DUPLICATE_THRESHOLD", "0.90")),
        refine_threshold=float(os.getenv("MEMORY_REFINE_THRESHOLD", "0.85")),
        relevance_threshold=float(os.getenv("MEMORY_RELEVANCE_THRESHOLD", "0.3")),
        default_limit=int(os.getenv("MEMORY_DEFAULT_LIMIT", "8")),
    )

    context = ContextConfig(
        recent_window=int(os.getenv("CONTEXT_RECENT_WINDOW", "15")),
        token_cap=int(os.getenv("CONTEXT_TOKEN_CAP", "100000")),
        chars_per_token=int(os.getenv("CONTEXT_CHARS_PER_TOKEN", "4")),
        user_head=int(os.getenv("CONTEXT_USER_HEAD", "200")),
        user_tail=int(os.getenv("CONTEXT_USER_TAIL", "100")),
        assistant_head=int(os.getenv("CONTEXT_ASSISTANT_HEAD", "300")),
    )

    return PipelineConfig(
        database_path=os.getenv("DATABASE_PATH", "contextroute.sqlite"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        call_timeout=float(os.getenv("PIPELINE_CALL_TIMEOUT", "20")),
        llm=llm,
        embedding=embedding,
        router=router,
        topics=topics,
        memory=memory,
        context=context,
    )


__all__ = [
    "ContextConfig",
    "DEFAULT_TIER_EFFORTS",
    "EFFORT_LEVELS",
    "EmbeddingConfig",
    "LLMConfig",
    "MODEL_TIERS",
    "MemoryConfig",
    "PipelineConfig",
    "RouterConfig",
    "TopicConfig",
    "load_config",
]
