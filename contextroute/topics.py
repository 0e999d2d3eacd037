"""Topic classification and the per-conversation topic tree."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set

from .clients import LLMClient
from .config import TopicConfig
from .parsing import extract_json
from .prompts import JSON_ONLY_REMINDER, RETRY_NUDGE, TOPIC_ROUTER_SYSTEM_PROMPT
from .schemas import (
    Artifact,
    CallUsage,
    ConversationTopic,
    Message,
    TopicDecision,
    TopicOutcome,
)
from .storage import ConversationDatabase, TopicHierarchyError

logger = logging.getLogger(__name__)


TOPIC_ACTIONS = ("continue_active", "new", "reopen_existing")
PENDING_LABEL = "Pending Topic"
AUTO_DESCRIPTION_CHARS = 280
METADATA_MAX_CHARS = 500

LABEL_STOP_WORDS = frozenset(
    {
        "hey",
        "hi",
        "hello",
        "i",
        "im",
        "need",
        "please",
        "can",
        "could",
        "should",
        "would",
        "you",
        "your",
        "me",
        "my",
        "the",
        "and",
        "about",
        "for",
        "with",
        "what",
        "how",
        "want",
        "idea",
        "help",
    }
)


# ----------------------------------------------------------------------
# Label helpers
# ----------------------------------------------------------------------
def format_topic_label(raw: Optional[str]) -> str:
    """Title-case the first five meaningful words of ``raw``."""

    if not raw:
        return PENDING_LABEL
    words = re.sub(r"[^a-z0-9\s]", " ", raw.lower()).split()
    filtered = [word for word in words if word not in LABEL_STOP_WORDS]
    source = (filtered or words)[:5]
    label = " ".join(word[:1].upper() + word[1:] for word in source).strip()
    return label or PENDING_LABEL


def build_auto_description(message: str) -> Optional[str]:
    clean = " ".join(message.split())
    if not clean:
        return None
    sentence = clean[:AUTO_DESCRIPTION_CHARS]
    return sentence if sentence.endswith(".") else f"{sentence}."


def active_topic_id(messages: Sequence[Message]) -> Optional[str]:
    """Topic id carried by the most recent tagged message."""

    for message in reversed(messages):
        if message.topic_id:
            return message.topic_id
    return None


def _clean_text(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _filter_ids(raw: object, allowed: Set[str], exclude: Optional[str], limit: int) -> List[str]:
    if not isinstance(raw, list):
        return []
    selected: List[str] = []
    for item in raw:
        if not isinstance(item, str) or item not in allowed or item == exclude or item in selected:
            continue
        selected.append(item)
        if len(selected) >= limit:
            break
    return selected


# ----------------------------------------------------------------------
# Classifier
# ----------------------------------------------------------------------
@dataclass
class TopicClassifier:
    """Decide which topic a message belongs to and persist the assignment."""

    db: ConversationDatabase
    llm_client: LLMClient
    config: TopicConfig = field(default_factory=TopicConfig)
    timeout: Optional[float] = None

    def candidate_topics(self, user_id: str, conversation_id: str) -> List[ConversationTopic]:
        """This conversation's topics followed by the bounded cross-conversation pool."""

        current = self.db.list_topics(conversation_id)
        others = self.db.list_cross_conversation_topics(
            user_id=user_id,
            conversation_id=conversation_id,
            max_conversations=self.config.cross_max_conversations,
            token_limit=self.config.cross_token_limit,
            max_topics=self.config.cross_max_topics,
        )
        return current + others

    def classify(
        self,
        user_message: str,
        recent_messages: Sequence[Message],
        topics: Sequence[ConversationTopic],
        artifacts: Sequence[Artifact],
        conversation_id: str,
    ) -> TopicOutcome:
        outcome = self.decide_topic(user_message, recent_messages, topics, artifacts, conversation_id)
        return self.ensure_assignment(
            outcome, user_message=user_message, conversation_id=conversation_id
        )

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------
    def fallback_decision(self, recent_messages: Sequence[Message]) -> TopicDecision:
        return TopicDecision(action="continue_active", primary_topic_id=active_topic_id(recent_messages))

    def decide_topic(
        self,
        user_message: str,
        recent_messages: Sequence[Message],
        topics: Sequence[ConversationTopic],
        artifacts: Sequence[Artifact],
        conversation_id: str,
    ) -> TopicOutcome:
        """Ask the auxiliary model for a topic decision; never raises, never writes."""

        user_payload = self._build_payload(
            user_message, recent_messages, topics, artifacts, conversation_id
        )
        usage: List[CallUsage] = []
        error: Optional[str] = None
        candidate_ids = {topic.id for topic in topics}

        for attempt in range(max(1, self.config.max_attempts)):
            system_prompt = f"{TOPIC_ROUTER_SYSTEM_PROMPT}\n\n{JSON_ONLY_REMINDER}"
            if attempt:
                system_prompt = f"{system_prompt}\n\n{RETRY_NUDGE}"
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_payload},
            ]
            try:
                reply = self.llm_client.chat(messages, purpose="topic_router", timeout=self.timeout)
            except Exception as exc:
                error = f"topic call failed: {exc}"
                logger.warning("Topic attempt %s failed: %s", attempt + 1, exc)
                continue
            usage.append(reply.usage)

            payload = extract_json(reply.content)
            if payload is None:
                error = "topic reply was not a JSON object"
                logger.warning("Topic attempt %s returned unparseable output: %s", attempt + 1, reply.content)
                continue
            action = str(payload.get("topicAction") or "").strip().lower()
            if action not in TOPIC_ACTIONS:
                error = f"topic reply has unknown topicAction: {payload.get('topicAction')!r}"
                logger.warning("Topic attempt %s rejected: %s", attempt + 1, error)
                continue
            target = payload.get("primaryTopicId")
            if action == "reopen_existing" and (not isinstance(target, str) or target not in candidate_ids):
                error = f"reopen target {payload.get('primaryTopicId')!r} is not a candidate topic"
                logger.warning("Topic decision coerced to continue_active: %s", error)
                return TopicOutcome(
                    decision=self.fallback_decision(recent_messages),
                    status="fallback",
                    usage=usage,
                    error=error,
                )
            decision = self.validate(
                payload,
                user_message=user_message,
                recent_messages=recent_messages,
                topics=topics,
                artifacts=artifacts,
                conversation_id=conversation_id,
            )
            if decision is not None:
                return TopicOutcome(decision=decision, status="ok", usage=usage)

        logger.warning("Topic classifier falling back to continue_active: %s", error)
        return TopicOutcome(
            decision=self.fallback_decision(recent_messages),
            status="fallback",
            usage=usage,
            error=error,
        )

    def validate(
        self,
        payload: Mapping[str, Any],
        *,
        user_message: str,
        recent_messages: Sequence[Message],
        topics: Sequence[ConversationTopic],
        artifacts: Sequence[Artifact],
        conversation_id: str,
    ) -> Optional[TopicDecision]:
        """Enforce the action invariants on a raw classifier object.

        ``None`` means the action itself is unusable.  A reopen target
        outside ``topics`` turns the whole decision into the fallback.
        """

        action = str(payload.get("topicAction") or "").strip().lower()
        if action not in TOPIC_ACTIONS:
            return None

        candidate_ids = {topic.id for topic in topics}
        artifact_ids = {artifact.id for artifact in artifacts}
        active = active_topic_id(recent_messages)

        if action == "continue_active":
            decision = TopicDecision(action=action, primary_topic_id=active)
        elif action == "new":
            description = _clean_text(payload.get("newTopicDescription")) or build_auto_description(
                user_message
            )
            parent = _clean_text(payload.get("newParentTopicId"))
            top_level = {
                topic.id
                for topic in topics
                if topic.conversation_id == conversation_id and topic.is_top_level
            }
            if parent is not None and parent not in top_level:
                logger.debug("Dropping invalid parent topic %s", parent)
                parent = None
            decision = TopicDecision(
                action=action,
                primary_topic_id=None,
                new_label=_clean_text(payload.get("newTopicLabel")) or format_topic_label(user_message),
                new_description=description,
                new_summary=_clean_text(payload.get("newTopicSummary")) or description,
                new_parent_topic_id=parent,
            )
        else:
            primary = payload.get("primaryTopicId")
            if not isinstance(primary, str) or primary not in candidate_ids:
                return self.fallback_decision(recent_messages)
            decision = TopicDecision(
                action=action,
                primary_topic_id=primary,
                new_label=_clean_text(payload.get("newTopicLabel")),
                new_description=_clean_text(payload.get("newTopicDescription")),
                new_summary=_clean_text(payload.get("newTopicSummary")),
            )

        decision.secondary_topic_ids = _filter_ids(
            payload.get("secondaryTopicIds"),
            candidate_ids,
            decision.primary_topic_id,
            self.config.max_secondary_topics,
        )
        decision.artifact_ids_to_load = _filter_ids(
            payload.get("artifactsToLoad"), artifact_ids, None, self.config.max_artifacts
        )
        return decision

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def ensure_assignment(
        self, outcome: TopicOutcome, *, user_message: str, conversation_id: str
    ) -> TopicOutcome:
        """Create the topic for ``new`` (or first) messages, refresh reopened ones."""

        decision = outcome.decision
        if decision.action == "new" or decision.primary_topic_id is None:
            return self._create_topic(outcome, user_message=user_message, conversation_id=conversation_id)

        if decision.action == "reopen_existing":
            try:
                self.db.update_topic(
                    decision.primary_topic_id,
                    label=format_topic_label(decision.new_label) if decision.new_label else None,
                    description=_truncate(decision.new_description, METADATA_MAX_CHARS),
                    summary=_truncate(decision.new_summary, METADATA_MAX_CHARS),
                )
            except sqlite3.Error as exc:
                logger.warning("Failed to refresh topic %s metadata: %s", decision.primary_topic_id, exc)
        return outcome

    def _create_topic(
        self, outcome: TopicOutcome, *, user_message: str, conversation_id: str
    ) -> TopicOutcome:
        decision = outcome.decision
        label = format_topic_label(decision.new_label or user_message)[: self.config.label_max_length]
        description = decision.new_description or build_auto_description(user_message)
        summary = decision.new_summary or description
        try:
            topic = self.db.insert_topic(
                conversation_id=conversation_id,
                label=label,
                description=description,
                summary=summary,
                parent_topic_id=decision.new_parent_topic_id,
            )
        except TopicHierarchyError as exc:
            logger.warning("Creating topic without parent: %s", exc)
            topic = self.db.insert_topic(
                conversation_id=conversation_id,
                label=label,
                description=description,
                summary=summary,
            )
        logger.info("Created topic %s (%s) in conversation %s", topic.id, topic.label, conversation_id)

        updated = replace(
            decision,
            action="new",
            primary_topic_id=topic.id,
            new_label=label,
            new_description=description,
            new_summary=summary,
            new_parent_topic_id=topic.parent_topic_id,
        )
        return replace(outcome, decision=updated, created_topic=topic)

    # ------------------------------------------------------------------
    # Prompt helpers
    # ------------------------------------------------------------------
    def _build_payload(
        self,
        user_message: str,
        recent_messages: Sequence[Message],
        topics: Sequence[ConversationTopic],
        artifacts: Sequence[Artifact],
        conversation_id: str,
    ) -> str:
        window = list(recent_messages)[-self.config.recent_messages :]
        payload = {
            "activeTopicId": active_topic_id(recent_messages),
            "recentMessages": [
                {
                    "role": message.role,
                    "topicId": message.topic_id,
                    "content": _preview(message.content, 240),
                }
                for message in window
            ],
            "topics": list(self._topic_entries(topics, conversation_id)),
            "artifacts": [
                {
                    "id": artifact.id,
                    "type": artifact.type,
                    "title": artifact.title,
                    "summary": _preview(artifact.summary, 180) or "No summary.",
                }
                for artifact in artifacts
            ],
            "message": user_message,
        }
        return json.dumps(payload, ensure_ascii=False)

    @staticmethod
    def _topic_entries(
        topics: Iterable[ConversationTopic], conversation_id: str
    ) -> Iterable[Mapping[str, object]]:
        for topic in topics:
            yield {
                "id": topic.id,
                "label": topic.label,
                "parentTopicId": topic.parent_topic_id,
                "description": _preview(topic.description, 200) or "No description yet.",
                "summary": _preview(topic.summary, 180) or "No summary yet.",
                "conversation": "current" if topic.conversation_id == conversation_id else "other",
                "tokenEstimate": topic.token_estimate,
            }


def _preview(text: Optional[str], limit: int) -> str:
    return " ".join((text or "").split())[:limit]


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    return text[:limit] if text else None


__all__ = [
    "LABEL_STOP_WORDS",
    "TopicClassifier",
    "active_topic_id",
    "build_auto_description",
    "format_topic_label",
]
