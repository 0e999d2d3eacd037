from __future__ import annotations

from contextroute.clients import LLMClientError
from contextroute.prompts import TOPIC_REFRESH_PROMPT
from contextroute.storage import ConversationDatabase
from contextroute.tools import (
    ArtifactLookupTool,
    TopicRefreshTool,
    TopicSnapshotTool,
    build_keyword_list,
    build_rolling_summary,
)

from tests.fakes import FakeLLMClient, queue_json

CONV = "conv-1"


def test_build_keyword_list() -> None:
    assert build_keyword_list("Fix the parser in main.py, please!") == ["parser", "main", "please"]
    assert build_keyword_list("a b c") == []
    assert len(build_keyword_list(" ".join(f"word{idx}" for idx in range(20)))) == 8


def test_build_rolling_summary(db: ConversationDatabase) -> None:
    messages = [
        db.add_message(conversation_id=CONV, role="user", content="How   do I\nroast garlic?"),
        db.add_message(conversation_id=CONV, role="assistant", content="Wrap it in foil."),
    ]

    assert build_rolling_summary(messages) == "User: How do I roast garlic? | Assistant: Wrap it in foil."
    assert len(build_rolling_summary(messages * 20)) == 900


def test_snapshot_accumulates_token_estimate(db: ConversationDatabase) -> None:
    topic = db.insert_topic(conversation_id=CONV, label="Garlic")
    tool = TopicSnapshotTool(db=db)

    for text in ("abcdefgh", "abcd"):
        message = db.add_message(conversation_id=CONV, role="user", content=text, topic_id=topic.id)
        snapshot = tool(topic.id, message)

    assert snapshot is not None
    assert snapshot.token_estimate == 3
    assert snapshot.summary == "User: abcdefgh | User: abcd"
    assert tool("missing", message) is None


def test_refresh_rewrites_description_and_summary(db: ConversationDatabase) -> None:
    topic = db.insert_topic(conversation_id=CONV, label="Garlic", description="old")
    db.add_message(conversation_id=CONV, role="user", content="roast garlic", topic_id=topic.id)
    llm = FakeLLMClient(
        {TOPIC_REFRESH_PROMPT: [queue_json({"description": "Roasting garlic.", "summary": "Use foil."})]}
    )

    assert TopicRefreshTool(db=db, llm_client=llm)(topic.id) is True

    refreshed = db.get_topic(topic.id)
    assert refreshed is not None
    assert (refreshed.description, refreshed.summary) == ("Roasting garlic.", "Use foil.")
    assert llm.calls[0]["purpose"] == "topic_refresh"


def test_refresh_failures_leave_topic_untouched(db: ConversationDatabase) -> None:
    topic = db.insert_topic(conversation_id=CONV, label="Garlic", description="old")
    db.add_message(conversation_id=CONV, role="user", content="roast garlic", topic_id=topic.id)
    llm = FakeLLMClient({TOPIC_REFRESH_PROMPT: [LLMClientError("down"), "not json"]})
    tool = TopicRefreshTool(db=db, llm_client=llm)

    assert tool(topic.id) is False
    assert tool(topic.id) is False
    assert db.get_topic(topic.id).description == "old"

    empty = db.insert_topic(conversation_id=CONV, label="Empty")
    assert tool(empty.id) is False


def test_artifact_lookup_matches_keywords(db: ConversationDatabase) -> None:
    parser = db.add_artifact(conversation_id=CONV, type="code", title="Parser module", content="...")
    tagged = db.add_artifact(
        conversation_id=CONV, type="doc", title="Notes", content="...", keywords=["deployment"]
    )
    db.add_artifact(conversation_id=CONV, type="doc", title="Recipe", content="...")
    db.add_artifact(conversation_id="conv-2", type="code", title="Parser copy", content="...")
    tool = ArtifactLookupTool(db=db)

    assert [item.id for item in tool(CONV, "update the parser")] == [parser.id]
    assert [item.id for item in tool(CONV, "deployment steps")] == [tagged.id]
    assert len(tool(CONV, "ok")) == 3
