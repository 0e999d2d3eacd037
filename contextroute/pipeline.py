"""Per-turn orchestration: classify, route, assemble and commit."""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple, TypeVar

from .clients import LLMClient, LLMClientError
from .config import PipelineConfig
from .context import ContextAssembler, truncate_history
from .memory import MemoryStore
from .router import RouterDecisionEngine, fallback_decision
from .schemas import (
    Artifact,
    AssembledContext,
    ConversationTopic,
    Message,
    PermanentInstruction,
    RouterDecision,
    RouterOutcome,
    SideEffects,
    TopicDecision,
    TopicOutcome,
    Turn,
    TurnResult,
)
from .storage import ConversationDatabase
from .tools import ArtifactLookupTool, TopicRefreshTool, TopicSnapshotTool
from .topics import TopicClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TurnState:
    """Persisted state loaded before the auxiliary calls."""

    recent_messages: List[Message] = field(default_factory=list)
    topics: List[ConversationTopic] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    known_categories: List[str] = field(default_factory=list)
    instructions: List[PermanentInstruction] = field(default_factory=list)


@dataclass
class RoutingPipeline:
    """Turn an inbound user message into a routed, context-complete request."""

    db: ConversationDatabase
    llm_client: LLMClient
    embedding_client: LLMClient
    config: PipelineConfig = field(default_factory=PipelineConfig)
    refresh_topics: bool = False
    max_workers: int = 4

    def __post_init__(self) -> None:
        self.memory_store = MemoryStore(
            db=self.db, embedding_client=self.embedding_client, config=self.config.memory
        )
        self.router = RouterDecisionEngine(
            llm_client=self.llm_client, config=self.config.router, timeout=self.config.llm.timeout
        )
        self.classifier = TopicClassifier(
            db=self.db, llm_client=self.llm_client, config=self.config.topics, timeout=self.config.llm.timeout
        )
        self.assembler = ContextAssembler(
            db=self.db, memory_store=self.memory_store, config=self.config.context
        )
        self.snapshot_tool = TopicSnapshotTool(db=self.db, chars_per_token=self.config.context.chars_per_token)
        self.refresh_tool = TopicRefreshTool(
            db=self.db, llm_client=self.llm_client, timeout=self.config.llm.timeout
        )
        self.artifact_tool = ArtifactLookupTool(db=self.db)
        self.executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="contextroute")

    def close(self) -> None:
        self.executor.shutdown(wait=True)

    def __enter__(self) -> "RoutingPipeline":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def route(self, turn: Turn) -> TurnResult:
        errors: List[str] = []
        degraded = False

        try:
            state = self._load_state(turn)
        except sqlite3.Error as exc:
            logger.warning("Loading conversation %s failed: %s", turn.conversation_id, exc)
            errors.append(f"state load failed: {exc}")
            degraded = True
            state = TurnState()

        history_lines = truncate_history(
            state.recent_messages[-self.config.router.history_messages :],
            self.config.router.history_token_cap,
            self.config.context,
        )
        topic_future = self.executor.submit(
            self.classifier.decide_topic,
            turn.message_text,
            state.recent_messages,
            state.topics,
            state.artifacts,
            turn.conversation_id,
        )
        router_future = self.executor.submit(
            self.router.decide,
            turn.message_text,
            history_lines,
            state.known_categories,
            state.instructions,
            turn.hints,
        )
        # both decisions share one deadline
        deadline = time.monotonic() + self.config.call_timeout
        router_outcome = self._await(
            router_future, "router", deadline, lambda error: self._router_fallback_outcome(turn, error)
        )
        topic_outcome = self._await(
            topic_future,
            "topic",
            deadline,
            lambda error: TopicOutcome(
                decision=self.classifier.fallback_decision(state.recent_messages),
                status="fallback",
                error=error,
            ),
        )

        try:
            topic_outcome = self.classifier.ensure_assignment(
                topic_outcome, user_message=turn.message_text, conversation_id=turn.conversation_id
            )
        except sqlite3.Error as exc:
            logger.warning("Topic assignment failed for %s: %s", turn.conversation_id, exc)
            errors.append(f"topic assignment failed: {exc}")
            degraded = True

        decision = router_outcome.decision
        try:
            context = self.assembler.assemble(
                decision.context_strategy,
                topic_outcome.decision,
                turn.conversation_id,
                user_id=turn.user_id,
                memory_strategy=decision.memory_strategy,
                query=turn.message_text,
                exclude_message_id=turn.message_id,
            )
        except sqlite3.Error as exc:
            logger.warning("Context assembly failed for %s: %s", turn.conversation_id, exc)
            errors.append(f"context assembly failed: {exc}")
            degraded = True
            context = AssembledContext(strategy=decision.context_strategy)

        side_effects = self.commit_side_effects(turn, decision, topic_outcome.decision)
        logger.info(
            "Routed turn in %s: tier=%s effort=%s context=%s topic=%s (%s)",
            turn.conversation_id,
            decision.model_tier,
            decision.reasoning_effort,
            decision.context_strategy,
            topic_outcome.decision.primary_topic_id,
            topic_outcome.decision.action,
        )
        return TurnResult(
            decision=router_outcome,
            topic=topic_outcome,
            context=context,
            side_effects=side_effects,
            degraded=degraded,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    def commit_side_effects(
        self, turn: Turn, decision: RouterDecision, topic_decision: TopicDecision
    ) -> SideEffects:
        """Persist memory, instruction and topic writes; failures are collected, not raised."""

        effects = SideEffects()

        pending: Dict[Future, Tuple[str, str]] = {}
        for item in decision.memories_to_write:
            future = self.executor.submit(
                self.memory_store.write, turn.user_id, item.type, item.title, item.content
            )
            pending[future] = ("write", item.title)
        for item in decision.memories_to_delete:
            future = self.executor.submit(self.memory_store.delete, item.id, turn.user_id)
            pending[future] = ("delete", item.id)

        for future, (kind, label) in pending.items():
            try:
                result = future.result()
            except (LLMClientError, sqlite3.Error) as exc:
                logger.warning("Memory %s for %r failed: %s", kind, label, exc)
                effects.failures.append(f"memory {kind} {label}: {exc}")
                continue
            if kind == "write":
                effects.memories_written.append(result.id)
            else:
                effects.memories_deleted.append(label)

        for instruction in decision.instructions_to_write:
            try:
                stored = self.db.add_instruction(
                    user_id=turn.user_id,
                    content=instruction.content,
                    scope=instruction.scope,
                    title=instruction.title,
                    conversation_id=turn.conversation_id,
                )
            except sqlite3.Error as exc:
                logger.warning("Instruction write failed: %s", exc)
                effects.failures.append(f"instruction write: {exc}")
            else:
                effects.instructions_written.append(stored.id)

        for removal in decision.instructions_to_delete:
            try:
                removed = self.db.delete_instruction(removal.id, turn.user_id)
            except sqlite3.Error as exc:
                logger.warning("Instruction delete failed: %s", exc)
                effects.failures.append(f"instruction delete {removal.id}: {exc}")
            else:
                if removed:
                    effects.instructions_deleted.append(removal.id)

        topic_id = topic_decision.primary_topic_id
        if turn.message_id and topic_id:
            try:
                self._tag_message(turn.message_id, topic_id)
            except sqlite3.Error as exc:
                logger.warning("Tagging message %s failed: %s", turn.message_id, exc)
                effects.failures.append(f"message tag: {exc}")
            else:
                effects.tagged_message_id = turn.message_id

        return effects

    def _tag_message(self, message_id: str, topic_id: str) -> None:
        if not self.db.set_message_topic(message_id, topic_id):
            return
        message = self.db.get_message(message_id)
        if message is None:
            return
        self.snapshot_tool(topic_id, message)
        if self.refresh_topics:
            self.refresh_tool(topic_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _load_state(self, turn: Turn) -> TurnState:
        self.db.upsert_conversation(turn.conversation_id, turn.user_id)
        window = max(self.config.router.history_messages, self.config.topics.recent_messages)
        return TurnState(
            recent_messages=self.db.list_recent_messages(
                turn.conversation_id, limit=window, exclude_id=turn.message_id
            ),
            topics=self.classifier.candidate_topics(turn.user_id, turn.conversation_id),
            artifacts=self.artifact_tool(turn.conversation_id, turn.message_text),
            known_categories=self.memory_store.list_types(turn.user_id),
            instructions=self.db.list_instructions(turn.user_id, turn.conversation_id),
        )

    def _router_fallback_outcome(self, turn: Turn, error: str) -> RouterOutcome:
        decision = self.router.apply_overrides(
            fallback_decision(self.config.router), turn.hints, turn.message_text
        )
        return RouterOutcome(decision=decision, status="fallback", error=error)

    def _await(
        self, future: "Future[T]", name: str, deadline: float, fallback: Callable[[str], T]
    ) -> T:
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            logger.warning("%s decision timed out after %ss", name, self.config.call_timeout)
            future.cancel()
            return fallback(f"{name} call timed out")
        except Exception as exc:
            logger.warning("%s decision failed: %s", name, exc, exc_info=True)
            return fallback(f"{name} decision failed: {exc}")


__all__ = ["RoutingPipeline", "TurnState"]
