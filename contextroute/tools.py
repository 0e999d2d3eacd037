from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .clients import LLMClient, LLMClientError
from .context import estimate_tokens
from .parsing import extract_json
from .prompts import TOPIC_REFRESH_PROMPT
from .schemas import Artifact, ConversationTopic, Message
from .storage import ConversationDatabase

logger = logging.getLogger(__name__)


def build_keyword_list(message: str, *, max_keywords: int = 8) -> List[str]:
    tokens = re.split(r"[^a-z0-9]+", message.lower())
    return [token for token in tokens if 4 <= len(token) <= 32][:max_keywords]


def build_rolling_summary(
    messages: Sequence[Message], *, per_message: int = 220, max_chars: int = 900
) -> str:
    parts = []
    for message in messages:
        text = " ".join(message.content.split())[:per_message]
        if text:
            parts.append(f"{message.role.capitalize()}: {text}")
    return " | ".join(parts)[:max_chars]


@dataclass
class TopicSnapshotTool:
    """Account a tagged message against its topic and refresh the rolling summary."""

    db: ConversationDatabase
    chars_per_token: int = 4
    summary_messages: int = 8

    def __call__(self, topic_id: str, message: Message) -> Optional[ConversationTopic]:
        topic = self.db.get_topic(topic_id)
        if topic is None:
            logger.debug("Snapshot skipped, topic %s not found", topic_id)
            return None

        recent = self.db.list_topic_messages([topic_id], limit=self.summary_messages)
        summary = build_rolling_summary(recent)
        self.db.update_topic(
            topic_id,
            token_estimate=topic.token_estimate + estimate_tokens(message.content, self.chars_per_token),
            summary=summary or None,
        )
        return self.db.get_topic(topic_id)


@dataclass
class TopicRefreshTool:
    """Rewrite a topic's description and summary with the auxiliary model."""

    db: ConversationDatabase
    llm_client: LLMClient
    history_messages: int = 40
    timeout: Optional[float] = None

    def __call__(self, topic_id: str) -> bool:
        topic = self.db.get_topic(topic_id)
        if topic is None:
            return False
        history = self.db.list_topic_messages([topic_id], limit=self.history_messages)
        if not history:
            return False

        payload = {
            "label": topic.label,
            "description": topic.description or "",
            "summary": topic.summary or "",
            "messages": [{"role": message.role, "content": message.content} for message in history],
        }
        messages = [
            {"role": "system", "content": TOPIC_REFRESH_PROMPT},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]
        try:
            reply = self.llm_client.chat(messages, purpose="topic_refresh", timeout=self.timeout)
        except LLMClientError as exc:
            logger.warning("Topic refresh for %s failed: %s", topic_id, exc)
            return False

        parsed = extract_json(reply.content)
        if parsed is None:
            logger.warning("Topic refresh for %s returned unparseable output: %s", topic_id, reply.content)
            return False
        description = parsed.get("description")
        summary = parsed.get("summary")
        try:
            return self.db.update_topic(
                topic_id,
                description=description.strip()[:500] if isinstance(description, str) and description.strip() else None,
                summary=summary.strip()[:500] if isinstance(summary, str) and summary.strip() else None,
            )
        except sqlite3.Error as exc:
            logger.warning("Failed to store refreshed topic %s: %s", topic_id, exc)
            return False


@dataclass
class ArtifactLookupTool:
    """Candidate artifacts of a conversation matching the message keywords."""

    db: ConversationDatabase
    max_artifacts: int = 10
    scan_limit: int = 60

    def __call__(self, conversation_id: str, message: str) -> List[Artifact]:
        artifacts = self.db.list_artifacts(conversation_id, limit=self.scan_limit)
        keywords = build_keyword_list(message)
        if keywords:
            artifacts = [artifact for artifact in artifacts if self._matches(artifact, keywords)]
        return artifacts[: self.max_artifacts]

    @staticmethod
    def _matches(artifact: Artifact, keywords: Sequence[str]) -> bool:
        haystack = f"{artifact.title} {artifact.summary or ''}".lower()
        tags = {keyword.lower() for keyword in artifact.keywords}
        return any(keyword in haystack or keyword in tags for keyword in keywords)


__all__ = [
    "ArtifactLookupTool",
    "TopicRefreshTool",
    "TopicSnapshotTool",
    "build_keyword_list",
    "build_rolling_summary",
]
