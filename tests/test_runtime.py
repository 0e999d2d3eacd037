from __future__ import annotations

from typing import Iterator

import pytest

from contextroute.config import PipelineConfig
from contextroute.pipeline import RoutingPipeline
from contextroute.prompts import ROUTER_SYSTEM_PROMPT, TOPIC_ROUTER_SYSTEM_PROMPT
from contextroute.runtime import PipelineRuntime, _iter_events

from tests.fakes import FakeEmbeddingClient, FakeLLMClient, queue_json


@pytest.fixture
def runtime() -> Iterator[PipelineRuntime]:
    runtime = PipelineRuntime(config=PipelineConfig(database_path=":memory:"))
    runtime.pipeline.close()
    llm = FakeLLMClient(
        {
            ROUTER_SYSTEM_PROMPT: [
                queue_json({"modelTier": "flagship", "reasoningEffort": "high", "contextStrategy": "recent"})
            ],
            TOPIC_ROUTER_SYSTEM_PROMPT: [
                queue_json({"topicAction": "new", "newTopicLabel": "Greeting"}),
                queue_json({"topicAction": "continue_active"}),
            ],
        }
    )
    runtime.pipeline = RoutingPipeline(
        db=runtime.database, llm_client=llm, embedding_client=FakeEmbeddingClient()
    )
    yield runtime
    runtime.close()


def test_ingest_routes_user_messages_and_tags_replies(runtime: PipelineRuntime) -> None:
    first = runtime.ingest({"user_id": "u1", "conversation_id": "c1", "content": "hello"})
    assert first is not None
    assert first["decision"]["status"] == "heuristic"
    topic_id = first["topic"]["decision"]["primaryTopicId"]
    assert topic_id

    assert runtime.ingest(
        {"user_id": "u1", "conversation_id": "c1", "role": "assistant", "content": "Hi there!"}
    ) is None

    second = runtime.ingest(
        {
            "user_id": "u1",
            "conversation_id": "c1",
            "content": "Design a caching layer",
            "hints": {"forcedTier": "compact"},
        }
    )
    assert second is not None
    assert second["decision"]["decision"]["modelTier"] == "compact"
    assert second["decision"]["decision"]["reasoningEffort"] == "high"
    assert second["topic"]["decision"]["primaryTopicId"] == topic_id
    assert [message["content"] for message in second["context"]["messages"]] == ["hello", "Hi there!"]
    assert [item.topic_id for item in runtime.database.list_messages("c1")] == [topic_id] * 3


def test_iter_events_skips_blank_and_comment_lines() -> None:
    lines = ["", "# comment", '{"content": "hi"}', "   "]

    assert list(_iter_events(lines)) == [{"content": "hi"}]

    with pytest.raises(SystemExit):
        list(_iter_events(['{"role": "user"}']))
