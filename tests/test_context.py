from __future__ import annotations

from typing import List

import pytest

from contextroute.config import ContextConfig
from contextroute.context import (
    ContextAssembler,
    cap_history_lines,
    estimate_tokens,
    truncate_content,
    truncate_history,
)
from contextroute.memory import MemoryStore
from contextroute.schemas import MemoryStrategy, Message, TopicDecision
from contextroute.storage import ConversationDatabase

from tests.fakes import FakeEmbeddingClient

CONV = "conv-1"


def _assembler(db: ConversationDatabase, config: ContextConfig | None = None) -> ContextAssembler:
    store = MemoryStore(db=db, embedding_client=FakeEmbeddingClient({"steak": [1.0, 0.0, 0.0]}))
    return ContextAssembler(db=db, memory_store=store, config=config or ContextConfig())


def _fill(db: ConversationDatabase, count: int, *, topic_id: str | None = None, size: int = 20) -> List[Message]:
    messages = []
    for idx in range(count):
        role = "user" if idx % 2 == 0 else "assistant"
        content = f"m{idx:03d} " + "x" * size
        messages.append(db.add_message(conversation_id=CONV, role=role, content=content, topic_id=topic_id))
    return messages


def test_truncate_content_keeps_head_and_tail() -> None:
    text = "H" * 200 + "M" * 500 + "T" * 100
    truncated = truncate_content("user", text)
    assert truncated.startswith("H" * 200)
    assert truncated.endswith("T" * 100)
    assert "M" not in truncated

    assert truncate_content("user", "short") == "short"
    assert truncate_content("assistant", "A" * 400) == "A" * 300 + "..."
    assert truncate_content("assistant", "A" * 300) == "A" * 300


def test_cap_history_lines_evicts_oldest_and_keeps_one() -> None:
    lines = ["a" * 40, "b" * 40, "c" * 40]

    assert cap_history_lines(lines, 20) == ["b" * 40, "c" * 40]
    assert cap_history_lines(lines, 1) == ["c" * 40]
    assert cap_history_lines(lines, 1000) == lines
    assert cap_history_lines([], 10) == []


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcde") == 2


def test_truncate_history_prefixes_roles(db: ConversationDatabase) -> None:
    messages = _fill(db, 3)

    lines = truncate_history(messages, 1500)

    assert lines[0].startswith("User: m000")
    assert lines[1].startswith("Assistant: m001")
    assert len(lines) == 3


def test_minimal_loads_no_messages(db: ConversationDatabase) -> None:
    _fill(db, 5)
    assembler = _assembler(db)

    context = assembler.assemble("minimal", TopicDecision(action="continue_active"), CONV, user_id="u1")

    assert context.messages == []
    assert context.estimated_tokens == 0


def test_recent_is_bounded_and_ordered(db: ConversationDatabase) -> None:
    _fill(db, 30)
    assembler = _assembler(db)

    context = assembler.assemble("recent", TopicDecision(action="continue_active"), CONV, user_id="u1")

    assert len(context.messages) == 15
    assert context.messages[0].content.startswith("m015")
    assert context.messages[-1].content.startswith("m029")


def test_recent_excludes_current_message(db: ConversationDatabase) -> None:
    messages = _fill(db, 4)
    assembler = _assembler(db)

    context = assembler.assemble(
        "recent",
        TopicDecision(action="continue_active"),
        CONV,
        user_id="u1",
        exclude_message_id=messages[-1].id,
    )

    assert [message.content[:4] for message in context.messages] == ["m000", "m001", "m002"]


def test_recent_is_scoped_to_topics_when_tagged(db: ConversationDatabase) -> None:
    cooking = db.insert_topic(conversation_id=CONV, label="Cooking")
    travel = db.insert_topic(conversation_id=CONV, label="Travel", summary="Trip to Lisbon in May")
    db.add_message(conversation_id=CONV, role="user", content="untagged chatter")
    db.add_message(conversation_id=CONV, role="user", content="how long to roast", topic_id=cooking.id)
    db.add_message(conversation_id=CONV, role="user", content="flights to lisbon", topic_id=travel.id)
    assembler = _assembler(db)

    context = assembler.assemble(
        "recent",
        TopicDecision(action="continue_active", primary_topic_id=cooking.id, secondary_topic_ids=[travel.id]),
        CONV,
        user_id="u1",
    )

    contents = [message.content for message in context.messages]
    assert contents[0] == "[Reference summary: Travel] Trip to Lisbon in May"
    assert "how long to roast" in contents
    assert "flights to lisbon" in contents
    assert "untagged chatter" not in contents
    assert context.included_topic_ids == [cooking.id, travel.id]


def test_recent_falls_back_to_conversation_when_topic_is_empty(db: ConversationDatabase) -> None:
    fresh = db.insert_topic(conversation_id=CONV, label="Fresh")
    _fill(db, 3)
    assembler = _assembler(db)

    context = assembler.assemble(
        "recent", TopicDecision(action="new", primary_topic_id=fresh.id), CONV, user_id="u1"
    )

    assert len(context.messages) == 3


def test_full_exceeds_window_but_respects_token_cap(db: ConversationDatabase) -> None:
    _fill(db, 40, size=100)
    assembler = _assembler(db, ContextConfig(token_cap=600))

    context = assembler.assemble("full", TopicDecision(action="continue_active"), CONV, user_id="u1")

    assert len(context.messages) > 15
    assert context.estimated_tokens <= 600
    assert context.messages[-1].content.startswith("m039")

    unbounded = _assembler(db).assemble("full", TopicDecision(action="continue_active"), CONV, user_id="u1")
    assert len(unbounded.messages) == 40


def test_artifacts_are_loaded_within_budget(db: ConversationDatabase) -> None:
    small = db.add_artifact(conversation_id=CONV, type="code", title="Parser", content="def parse(): ...")
    large = db.add_artifact(conversation_id=CONV, type="doc", title="Spec", content="y" * 4000)
    assembler = _assembler(db, ContextConfig(token_cap=1000))

    context = assembler.assemble(
        "recent",
        TopicDecision(action="continue_active", artifact_ids_to_load=[small.id, large.id]),
        CONV,
        user_id="u1",
    )

    contents = [message.content for message in context.messages]
    assert contents == ["[Artifact: Parser]\ndef parse(): ..."]


def test_memory_excerpt_and_instructions(db: ConversationDatabase) -> None:
    assembler = _assembler(db)
    memory = db.insert_memory(
        user_id="u1", type="food_preferences", title="Steak", content="Likes steak", embedding=[1.0, 0.0, 0.0]
    )
    db.add_instruction(user_id="u1", title="Tone", content="Be concise")
    db.add_instruction(
        user_id="u1", scope="conversation", title="Language", content="Reply in French", conversation_id=CONV
    )
    db.add_instruction(
        user_id="u1", scope="conversation", title="Other", content="Ignore me", conversation_id="conv-2"
    )

    context = assembler.assemble(
        "minimal",
        TopicDecision(action="continue_active"),
        CONV,
        user_id="u1",
        memory_strategy=MemoryStrategy(categories=["food_preferences"], use_semantic_search=True, query="steak"),
    )

    assert context.memory_excerpt == f"- [food_preferences] Steak: Likes steak (id: {memory.id})"
    assert context.standing_instructions_text == (
        "- Tone: Be concise\n- Language: Reply in French (this conversation)"
    )


@pytest.mark.parametrize("categories", [[], None])
def test_no_categories_means_no_memories(db: ConversationDatabase, categories: list | None) -> None:
    db.insert_memory(user_id="u1", type="food", title="Steak", content="Likes steak")
    assembler = _assembler(db)
    strategy = MemoryStrategy(categories=categories) if categories is not None else None

    context = assembler.assemble(
        "minimal", TopicDecision(action="continue_active"), CONV, user_id="u1", memory_strategy=strategy
    )

    assert context.memory_excerpt == ""
    assert context.memories == []
