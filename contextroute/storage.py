"""Persistent storage for conversations, topics, memories and instructions."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence

from .schemas import (
    Artifact,
    Conversation,
    ConversationTopic,
    MemoryItem,
    Message,
    PermanentInstruction,
    utc_timestamp,
)


class TopicHierarchyError(ValueError):
    """Raised when a topic would be nested below a subtopic."""


@dataclass
class MemorySearchResult:
    memory: MemoryItem
    score: float


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    if not vec1 or not vec2:
        return 0.0
    dot = sum(a * b for a, b in zip(vec1, vec2))
    norm1 = sum(a * a for a in vec1) ** 0.5
    norm2 = sum(b * b for b in vec2) ** 0.5
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (norm1 * norm2)


class ConversationDatabase:
    """Small SQLite wrapper backing every component of the pipeline."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            cur = self.connection.cursor()
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_user
                ON conversations(user_id, updated_at);

                CREATE TABLE IF NOT EXISTS topics (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    parent_topic_id TEXT,
                    label TEXT NOT NULL,
                    description TEXT,
                    summary TEXT,
                    token_estimate INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(parent_topic_id) REFERENCES topics(id)
                );
                CREATE INDEX IF NOT EXISTS idx_topics_conversation
                ON topics(conversation_id, created_at);

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, created_at);

                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    embedding BLOB,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    importance INTEGER NOT NULL DEFAULT 50,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_memories_user_type
                ON memories(user_id, type, enabled);

                CREATE TABLE IF NOT EXISTS permanent_instructions (
                    id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    conversation_id TEXT,
                    title TEXT,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    topic_id TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    summary TEXT,
                    content TEXT NOT NULL,
                    keywords TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_artifacts_conversation
                ON artifacts(conversation_id, created_at);
                """
            )
            self.connection.commit()
            # older databases predate topic tagging
            self._ensure_column("messages", "topic_id", "TEXT")

    def _ensure_column(self, table: str, column: str, definition: str) -> None:
        cur = self.connection.execute(f"PRAGMA table_info({table})")
        columns = {row[1] for row in cur.fetchall()}
        if column not in columns:
            self.connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            self.connection.commit()

    @staticmethod
    def _serialize_vector(vector: Optional[Sequence[float]]) -> Optional[bytes]:
        if vector is None:
            return None
        return json.dumps([float(x) for x in vector]).encode("utf-8")

    @staticmethod
    def _deserialize_vector(blob: Optional[bytes]) -> Optional[List[float]]:
        if blob is None:
            return None
        return [float(x) for x in json.loads(blob.decode("utf-8"))]

    def _fetchall(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def _fetchone(self, sql: str, params: Sequence[object] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchone()

    def _write(self, sql: str, params: Sequence[object] = ()) -> int:
        with self._lock:
            cur = self.connection.execute(sql, tuple(params))
            self.connection.commit()
            return cur.rowcount

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the connection lock across several calls (read-then-write)."""

        with self._lock:
            yield

    @staticmethod
    def _placeholders(values: Sequence[object]) -> str:
        return ", ".join("?" for _ in values)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def upsert_conversation(
        self, conversation_id: str, user_id: str, title: Optional[str] = None
    ) -> Conversation:
        now = utc_timestamp()
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row:
                self.connection.execute(
                    "UPDATE conversations SET title = COALESCE(?, title), updated_at = ? WHERE id = ?",
                    (title, now, conversation_id),
                )
            else:
                self.connection.execute(
                    """
                    INSERT INTO conversations(id, user_id, title, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (conversation_id, user_id, title, now, now),
                )
            self.connection.commit()
        conversation = self.get_conversation(conversation_id)
        assert conversation is not None
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = self._fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if not row:
            return None
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_other_conversations(
        self, user_id: str, exclude_id: str, *, limit: int
    ) -> List[Conversation]:
        rows = self._fetchall(
            """
            SELECT * FROM conversations
            WHERE user_id = ? AND id != ?
            ORDER BY updated_at DESC, rowid DESC
            LIMIT ?
            """,
            (user_id, exclude_id, limit),
        )
        return [
            Conversation(
                id=row["id"],
                user_id=row["user_id"],
                title=row["title"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
            topic_id=row["topic_id"],
        )

    def add_message(
        self,
        *,
        conversation_id: str,
        role: str,
        content: str,
        topic_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Message:
        message = Message(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            topic_id=topic_id,
        )
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO messages(id, conversation_id, role, content, topic_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.role,
                    message.content,
                    message.topic_id,
                    message.created_at,
                ),
            )
            self.connection.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (message.created_at, conversation_id),
            )
            self.connection.commit()
        return message

    def list_recent_messages(
        self,
        conversation_id: str,
        *,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[Message]:
        """Return the newest ``limit`` messages, ordered oldest to newest."""

        rows = self._fetchall(
            """
            SELECT * FROM messages
            WHERE conversation_id = ? AND id != ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (conversation_id, exclude_id or "", limit),
        )
        return [self._message_from_row(row) for row in reversed(rows)]

    def list_messages(
        self, conversation_id: str, *, exclude_id: Optional[str] = None
    ) -> List[Message]:
        rows = self._fetchall(
            """
            SELECT * FROM messages
            WHERE conversation_id = ? AND id != ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (conversation_id, exclude_id or ""),
        )
        return [self._message_from_row(row) for row in rows]

    def list_topic_messages(
        self,
        topic_ids: Sequence[str],
        *,
        limit: Optional[int] = None,
        exclude_id: Optional[str] = None,
    ) -> List[Message]:
        """Messages tagged with any of ``topic_ids``, oldest first (newest ``limit``)."""

        if not topic_ids:
            return []
        sql = f"""
            SELECT * FROM messages
            WHERE topic_id IN ({self._placeholders(topic_ids)}) AND id != ?
            ORDER BY created_at DESC, rowid DESC
        """
        params: List[object] = [*topic_ids, exclude_id or ""]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._fetchall(sql, params)
        return [self._message_from_row(row) for row in reversed(rows)]

    def get_message(self, message_id: str) -> Optional[Message]:
        row = self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._message_from_row(row) if row else None

    def set_message_topic(self, message_id: str, topic_id: Optional[str]) -> bool:
        return self._write(
            "UPDATE messages SET topic_id = ? WHERE id = ?", (topic_id, message_id)
        ) > 0

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------
    @staticmethod
    def _topic_from_row(row: sqlite3.Row) -> ConversationTopic:
        return ConversationTopic(
            id=row["id"],
            conversation_id=row["conversation_id"],
            parent_topic_id=row["parent_topic_id"],
            label=row["label"],
            description=row["description"],
            summary=row["summary"],
            token_estimate=int(row["token_estimate"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_topic(
        self,
        *,
        conversation_id: str,
        label: str,
        description: Optional[str] = None,
        summary: Optional[str] = None,
        parent_topic_id: Optional[str] = None,
    ) -> ConversationTopic:
        """Create a topic, rejecting parents that are themselves subtopics."""

        now = utc_timestamp()
        topic_id = str(uuid.uuid4())
        with self._lock:
            if parent_topic_id is not None:
                parent = self.connection.execute(
                    "SELECT parent_topic_id FROM topics WHERE id = ?", (parent_topic_id,)
                ).fetchone()
                if parent is None:
                    raise TopicHierarchyError(f"Parent topic {parent_topic_id} does not exist")
                if parent["parent_topic_id"] is not None:
                    raise TopicHierarchyError(
                        f"Parent topic {parent_topic_id} is itself a subtopic"
                    )
            self.connection.execute(
                """
                INSERT INTO topics(
                    id, conversation_id, parent_topic_id, label, description, summary,
                    token_estimate, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (topic_id, conversation_id, parent_topic_id, label, description, summary, now, now),
            )
            self.connection.commit()
        topic = self.get_topic(topic_id)
        assert topic is not None
        return topic

    def get_topic(self, topic_id: str) -> Optional[ConversationTopic]:
        row = self._fetchone("SELECT * FROM topics WHERE id = ?", (topic_id,))
        return self._topic_from_row(row) if row else None

    def get_topics(self, topic_ids: Sequence[str]) -> List[ConversationTopic]:
        if not topic_ids:
            return []
        rows = self._fetchall(
            f"SELECT * FROM topics WHERE id IN ({self._placeholders(topic_ids)})",
            list(topic_ids),
        )
        by_id = {row["id"]: self._topic_from_row(row) for row in rows}
        return [by_id[topic_id] for topic_id in topic_ids if topic_id in by_id]

    def list_topics(self, conversation_id: str) -> List[ConversationTopic]:
        rows = self._fetchall(
            "SELECT * FROM topics WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        )
        return [self._topic_from_row(row) for row in rows]

    def list_cross_conversation_topics(
        self,
        *,
        user_id: str,
        conversation_id: str,
        max_conversations: int,
        token_limit: int,
        max_topics: int,
    ) -> List[ConversationTopic]:
        """Topics of the user's most recently updated other conversations."""

        conversations = self.list_other_conversations(
            user_id, conversation_id, limit=max_conversations
        )
        if not conversations:
            return []
        ids = [conversation.id for conversation in conversations]
        rows = self._fetchall(
            f"""
            SELECT * FROM topics
            WHERE conversation_id IN ({self._placeholders(ids)}) AND token_estimate <= ?
            ORDER BY updated_at DESC, rowid DESC
            LIMIT ?
            """,
            [*ids, token_limit, max_topics],
        )
        return [self._topic_from_row(row) for row in rows]

    def update_topic(
        self,
        topic_id: str,
        *,
        label: Optional[str] = None,
        description: Optional[str] = None,
        summary: Optional[str] = None,
        token_estimate: Optional[int] = None,
    ) -> bool:
        """Merge-update the supplied fields only."""

        assignments: List[str] = []
        params: List[object] = []
        for column, value in (
            ("label", label),
            ("description", description),
            ("summary", summary),
            ("token_estimate", token_estimate),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)
        if not assignments:
            return False
        assignments.append("updated_at = ?")
        params.extend([utc_timestamp(), topic_id])
        return self._write(
            f"UPDATE topics SET {', '.join(assignments)} WHERE id = ?", params
        ) > 0

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------
    def _memory_from_row(self, row: sqlite3.Row) -> MemoryItem:
        return MemoryItem(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            content=row["content"],
            embedding=self._deserialize_vector(row["embedding"]),
            enabled=bool(row["enabled"]),
            importance=int(row["importance"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_memory(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        content: str,
        embedding: Optional[Sequence[float]] = None,
        enabled: bool = True,
        importance: int = 50,
    ) -> MemoryItem:
        now = utc_timestamp()
        memory_id = str(uuid.uuid4())
        self._write(
            """
            INSERT INTO memories(
                id, user_id, type, title, content, embedding, enabled, importance,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory_id,
                user_id,
                type,
                title,
                content,
                self._serialize_vector(embedding),
                int(enabled),
                importance,
                now,
                now,
            ),
        )
        memory = self.get_memory(memory_id)
        assert memory is not None
        return memory

    def update_memory(
        self,
        *,
        memory_id: str,
        title: str,
        content: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> Optional[MemoryItem]:
        self._write(
            """
            UPDATE memories
            SET title = ?, content = ?, embedding = ?, updated_at = ?
            WHERE id = ?
            """,
            (title, content, self._serialize_vector(embedding), utc_timestamp(), memory_id),
        )
        return self.get_memory(memory_id)

    def get_memory(self, memory_id: str) -> Optional[MemoryItem]:
        row = self._fetchone("SELECT * FROM memories WHERE id = ?", (memory_id,))
        return self._memory_from_row(row) if row else None

    def list_memories(
        self,
        user_id: str,
        *,
        types: Optional[Sequence[str]] = None,
        contains: Optional[str] = None,
        enabled_only: bool = True,
        limit: Optional[int] = None,
    ) -> List[MemoryItem]:
        """Memories of ``user_id``, newest first."""

        clauses = ["user_id = ?"]
        params: List[object] = [user_id]
        if enabled_only:
            clauses.append("enabled = 1")
        if types is not None:
            if not types:
                return []
            clauses.append(f"type IN ({self._placeholders(types)})")
            params.extend(types)
        if contains:
            # LIKE is only case-insensitive for ASCII, so compare lowered text
            clauses.append("instr(lower(content), ?) > 0")
            params.append(contains.lower())
        sql = (
            f"SELECT * FROM memories WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, rowid DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._memory_from_row(row) for row in self._fetchall(sql, params)]

    def search_memories(
        self,
        user_id: str,
        *,
        embedding: Sequence[float],
        types: Optional[Sequence[str]] = None,
        min_score: float = 0.0,
        top_k: Optional[int] = None,
    ) -> List[MemorySearchResult]:
        scored: List[MemorySearchResult] = []
        for memory in self.list_memories(user_id, types=types):
            if memory.embedding is None:
                continue
            score = cosine_similarity(embedding, memory.embedding)
            if score < min_score:
                continue
            scored.append(MemorySearchResult(memory=memory, score=score))
        scored.sort(key=lambda item: item.score, reverse=True)
        if top_k is not None:
            scored = scored[:top_k]
        return scored

    def delete_memory(self, memory_id: str, user_id: str) -> int:
        return self._write(
            "DELETE FROM memories WHERE id = ? AND user_id = ?", (memory_id, user_id)
        )

    def set_memory_enabled(self, memory_id: str, user_id: str, enabled: bool) -> int:
        return self._write(
            "UPDATE memories SET enabled = ?, updated_at = ? WHERE id = ? AND user_id = ?",
            (int(enabled), utc_timestamp(), memory_id, user_id),
        )

    def list_memory_types(self, user_id: str) -> List[str]:
        rows = self._fetchall(
            "SELECT DISTINCT type FROM memories WHERE user_id = ? AND enabled = 1 ORDER BY type",
            (user_id,),
        )
        return [row["type"] for row in rows]

    # ------------------------------------------------------------------
    # Standing instructions
    # ------------------------------------------------------------------
    @staticmethod
    def _instruction_from_row(row: sqlite3.Row) -> PermanentInstruction:
        return PermanentInstruction(
            id=row["id"],
            scope=row["scope"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            title=row["title"],
            content=row["content"],
            created_at=row["created_at"],
        )

    def add_instruction(
        self,
        *,
        user_id: str,
        content: str,
        scope: str = "user",
        title: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> PermanentInstruction:
        instruction = PermanentInstruction(
            id=str(uuid.uuid4()),
            scope=scope,
            user_id=user_id,
            conversation_id=conversation_id if scope == "conversation" else None,
            title=title,
            content=content,
        )
        self._write(
            """
            INSERT INTO permanent_instructions(
                id, scope, user_id, conversation_id, title, content, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instruction.id,
                instruction.scope,
                instruction.user_id,
                instruction.conversation_id,
                instruction.title,
                instruction.content,
                instruction.created_at,
            ),
        )
        return instruction

    def list_instructions(self, user_id: str, conversation_id: str) -> List[PermanentInstruction]:
        rows = self._fetchall(
            """
            SELECT * FROM permanent_instructions
            WHERE user_id = ? AND (conversation_id IS NULL OR conversation_id = ?)
            ORDER BY created_at ASC, rowid ASC
            """,
            (user_id, conversation_id),
        )
        return [self._instruction_from_row(row) for row in rows]

    def delete_instruction(self, instruction_id: str, user_id: str) -> int:
        return self._write(
            "DELETE FROM permanent_instructions WHERE id = ? AND user_id = ?",
            (instruction_id, user_id),
        )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------
    @staticmethod
    def _artifact_from_row(row: sqlite3.Row) -> Artifact:
        return Artifact(
            id=row["id"],
            conversation_id=row["conversation_id"],
            topic_id=row["topic_id"],
            type=row["type"],
            title=row["title"],
            summary=row["summary"],
            content=row["content"],
            keywords=json.loads(row["keywords"]) if row["keywords"] else [],
            created_at=row["created_at"],
        )

    def add_artifact(
        self,
        *,
        conversation_id: str,
        type: str,
        title: str,
        content: str,
        topic_id: Optional[str] = None,
        summary: Optional[str] = None,
        keywords: Iterable[str] = (),
    ) -> Artifact:
        artifact = Artifact(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            topic_id=topic_id,
            type=type,
            title=title,
            summary=summary,
            content=content,
            keywords=[str(keyword) for keyword in keywords],
        )
        self._write(
            """
            INSERT INTO artifacts(
                id, conversation_id, topic_id, type, title, summary, content, keywords, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.id,
                artifact.conversation_id,
                artifact.topic_id,
                artifact.type,
                artifact.title,
                artifact.summary,
                artifact.content,
                json.dumps(artifact.keywords, ensure_ascii=False),
                artifact.created_at,
            ),
        )
        return artifact

    def list_artifacts(self, conversation_id: str, *, limit: int = 60) -> List[Artifact]:
        rows = self._fetchall(
            """
            SELECT * FROM artifacts WHERE conversation_id = ?
            ORDER BY created_at DESC, rowid DESC LIMIT ?
            """,
            (conversation_id, limit),
        )
        return [self._artifact_from_row(row) for row in rows]

    def get_artifacts(self, artifact_ids: Sequence[str]) -> List[Artifact]:
        if not artifact_ids:
            return []
        rows = self._fetchall(
            f"SELECT * FROM artifacts WHERE id IN ({self._placeholders(artifact_ids)})",
            list(artifact_ids),
        )
        by_id = {row["id"]: self._artifact_from_row(row) for row in rows}
        return [by_id[artifact_id] for artifact_id in artifact_ids if artifact_id in by_id]


__all__ = [
    "ConversationDatabase",
    "MemorySearchResult",
    "TopicHierarchyError",
    "cosine_similarity",
]
