"""Per-user semantic memory store with write-time deduplication."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Union

from .clients import EmbeddingError, LLMClient
from .config import MemoryConfig
from .schemas import MemoryItem
from .storage import ConversationDatabase, cosine_similarity

logger = logging.getLogger(__name__)


Categories = Union[Sequence[str], str]


@dataclass
class MemoryStore:
    """Write, fetch and delete durable user facts.

    Writes compare the new content against the enabled items of the same
    ``(user_id, type)``.  A best match above ``duplicate_threshold`` is
    returned untouched, a match inside ``[refine_threshold,
    duplicate_threshold]`` is refined in place (same id), anything else is
    inserted as a new row.
    """

    db: ConversationDatabase
    embedding_client: LLMClient
    config: MemoryConfig = field(default_factory=MemoryConfig)

    # ------------------------------------------------------------------
    # Embedding helpers
    # ------------------------------------------------------------------
    def _embed_one(self, text: str) -> List[float]:
        try:
            vectors = self.embedding_client.embed([text])
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"embedding call failed: {exc}") from exc
        if not vectors:
            raise EmbeddingError("embedding service returned no vectors")
        return vectors[0]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def write(self, user_id: str, type: str, title: str, content: str) -> MemoryItem:
        embedding = self._embed_one(content)
        # concurrent writers must see each other's rows before deciding
        with self.db.exclusive():
            return self._write_embedded(user_id, type, title, content, embedding)

    def _write_embedded(
        self, user_id: str, type: str, title: str, content: str, embedding: List[float]
    ) -> MemoryItem:
        best: Optional[MemoryItem] = None
        best_score = -1.0
        for existing in self.db.list_memories(user_id, types=[type]):
            if existing.embedding is None:
                continue
            score = cosine_similarity(embedding, existing.embedding)
            if score > best_score:
                best, best_score = existing, score

        if best is not None and best_score > self.config.duplicate_threshold:
            logger.info("Skipping duplicate memory for %s/%s (similarity %.3f)", user_id, type, best_score)
            return replace(best, similarity=best_score)

        if best is not None and best_score >= self.config.refine_threshold:
            logger.info("Refining memory %s (similarity %.3f)", best.id, best_score)
            updated = self.db.update_memory(
                memory_id=best.id, title=title, content=content, embedding=embedding
            )
            if updated is not None:
                return replace(updated, similarity=best_score)

        memory = self.db.insert_memory(
            user_id=user_id,
            type=type,
            title=title,
            content=content,
            embedding=embedding,
        )
        logger.info("Stored memory %s for %s/%s", memory.id, user_id, type)
        return memory

    def delete(self, memory_id: str, user_id: str) -> None:
        """Hard delete; ids the user does not own are ignored."""

        removed = self.db.delete_memory(memory_id, user_id)
        if not removed:
            logger.debug("Memory delete for %s matched nothing", memory_id)

    def set_enabled(self, memory_id: str, user_id: str, enabled: bool) -> None:
        self.db.set_memory_enabled(memory_id, user_id, enabled)

    def list_types(self, user_id: str) -> List[str]:
        return self.db.list_memory_types(user_id)

    def list(
        self, user_id: str, categories: Categories = "all", limit: Optional[int] = None
    ) -> List[MemoryItem]:
        return self.db.list_memories(user_id, types=self._type_filter(categories), limit=limit)

    def fetch(
        self,
        user_id: str,
        categories: Categories,
        use_semantic_search: bool = False,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryItem]:
        limit = limit if limit and limit > 0 else self.config.default_limit
        types = self._type_filter(categories)
        query = (query or "").strip() or None

        if use_semantic_search and query:
            try:
                embedding = self._embed_one(query)
            except EmbeddingError as exc:
                logger.warning("Semantic memory search unavailable, using text match: %s", exc)
            else:
                results = self.db.search_memories(
                    user_id,
                    embedding=embedding,
                    types=types,
                    min_score=self.config.relevance_threshold,
                    top_k=limit,
                )
                return [replace(item.memory, similarity=item.score) for item in results]

        return self.db.list_memories(user_id, types=types, contains=query, limit=limit)

    @staticmethod
    def _type_filter(categories: Categories) -> Optional[List[str]]:
        if isinstance(categories, str):
            return None if categories == "all" else [categories]
        return list(categories)


__all__ = ["MemoryStore"]
