from __future__ import annotations

from typing import Any, List, Mapping, Sequence

import pytest

from contextroute.prompts import TOPIC_ROUTER_SYSTEM_PROMPT
from contextroute.schemas import Artifact, ConversationTopic, Message, TopicDecision, TopicOutcome
from contextroute.storage import ConversationDatabase, TopicHierarchyError
from contextroute.topics import (
    TopicClassifier,
    active_topic_id,
    build_auto_description,
    format_topic_label,
)

from tests.fakes import FakeLLMClient, queue_json

CONV = "conv-1"
PENDING = "Pending Topic"


def _classifier(db: ConversationDatabase, *replies: Any) -> tuple[TopicClassifier, FakeLLMClient]:
    llm = FakeLLMClient({TOPIC_ROUTER_SYSTEM_PROMPT: list(replies)})
    return TopicClassifier(db=db, llm_client=llm), llm


def _topic(db: ConversationDatabase, label: str, *, parent: str | None = None, conversation_id: str = CONV) -> ConversationTopic:
    return db.insert_topic(conversation_id=conversation_id, label=label, parent_topic_id=parent)


def _messages(db: ConversationDatabase, *pairs: tuple[str, str | None]) -> List[Message]:
    return [
        db.add_message(conversation_id=CONV, role="user", content=content, topic_id=topic_id)
        for content, topic_id in pairs
    ]


def _reply(**fields: Any) -> str:
    payload: Mapping[str, Any] = {
        "topicAction": "continue_active",
        "primaryTopicId": None,
        "secondaryTopicIds": [],
        "newTopicLabel": None,
        "newTopicDescription": None,
        "newTopicSummary": None,
        "newParentTopicId": None,
        "artifactsToLoad": [],
        **fields,
    }
    return queue_json(payload)


def _decide(
    classifier: TopicClassifier,
    message: str,
    recent: Sequence[Message],
    topics: Sequence[ConversationTopic],
    artifacts: Sequence[Artifact] = (),
) -> TopicOutcome:
    return classifier.decide_topic(message, recent, topics, artifacts, CONV)


def test_format_topic_label() -> None:
    assert format_topic_label("Hi, can you help me plan a trip to Japan?") == "Plan A Trip To Japan"
    assert format_topic_label("hi") == "Hi"
    assert format_topic_label("") == PENDING
    assert format_topic_label("!!!") == PENDING
    assert format_topic_label("quarterly budget review for marketing team") == "Quarterly Budget Review Marketing Team"


def test_build_auto_description() -> None:
    assert build_auto_description("  plan   the trip ") == "plan the trip."
    assert build_auto_description("Done.") == "Done."
    assert build_auto_description("   ") is None
    long_text = "word " * 100
    description = build_auto_description(long_text)
    assert description is not None
    assert len(description) <= 281
    assert description.endswith(".")


def test_active_topic_is_last_tagged_message(db: ConversationDatabase) -> None:
    first = _topic(db, "First")
    second = _topic(db, "Second")
    recent = _messages(db, ("a", first.id), ("b", second.id), ("c", None))

    assert active_topic_id(recent) == second.id
    assert active_topic_id([]) is None


def test_continue_active_is_forced_to_active_topic(db: ConversationDatabase) -> None:
    active = _topic(db, "Active")
    other = _topic(db, "Other")
    recent = _messages(db, ("earlier", active.id))
    classifier, _ = _classifier(
        db,
        _reply(
            topicAction="continue_active",
            primaryTopicId=other.id,
            newTopicLabel="Should Vanish",
            newParentTopicId=active.id,
        ),
    )

    outcome = _decide(classifier, "and more", recent, [active, other])

    assert outcome.status == "ok"
    assert outcome.decision.action == "continue_active"
    assert outcome.decision.primary_topic_id == active.id
    assert outcome.decision.new_label is None
    assert outcome.decision.new_parent_topic_id is None


def test_new_topic_fills_blank_fields_and_validates_parent(db: ConversationDatabase) -> None:
    root = _topic(db, "Root")
    child = _topic(db, "Child", parent=root.id)
    foreign = _topic(db, "Foreign", conversation_id="conv-2")
    recent = _messages(db, ("earlier", root.id))
    topics = [root, child, foreign]

    for parent, expected in ((root.id, root.id), (child.id, None), (foreign.id, None), ("ghost", None)):
        classifier, _ = _classifier(
            db, _reply(topicAction="new", primaryTopicId=root.id, newParentTopicId=parent)
        )
        decision = _decide(classifier, "Budget the kitchen remodel", recent, topics).decision
        assert decision.action == "new"
        assert decision.primary_topic_id is None
        assert decision.new_parent_topic_id == expected
        assert decision.new_label == "Budget Kitchen Remodel"
        assert decision.new_description == "Budget the kitchen remodel."
        assert decision.new_summary == decision.new_description


def test_scenario_e_unknown_reopen_target_falls_back(db: ConversationDatabase) -> None:
    known = _topic(db, "Known")
    recent = _messages(db, ("earlier", known.id))
    classifier, llm = _classifier(db, _reply(topicAction="reopen_existing", primaryTopicId="invented-id"))

    outcome = _decide(classifier, "back to that other thing", recent, [known])

    assert outcome.status == "fallback"
    assert outcome.decision.action == "continue_active"
    assert outcome.decision.primary_topic_id == known.id
    assert len(llm.calls) == 1


@pytest.mark.parametrize("target", [["x"], {"id": "x"}, 42, None])
def test_non_string_reopen_target_falls_back(db: ConversationDatabase, target: Any) -> None:
    known = _topic(db, "Known")
    recent = _messages(db, ("earlier", known.id))
    classifier, llm = _classifier(db, _reply(topicAction="reopen_existing", primaryTopicId=target))

    outcome = _decide(classifier, "back to that", recent, [known])

    assert outcome.status == "fallback"
    assert outcome.decision == TopicDecision(action="continue_active", primary_topic_id=known.id)
    assert len(llm.calls) == 1


def test_reopen_validation_rejects_unhashable_target(db: ConversationDatabase) -> None:
    known = _topic(db, "Known")
    recent = _messages(db, ("earlier", known.id))
    classifier, _ = _classifier(db)

    decision = classifier.validate(
        {"topicAction": "reopen_existing", "primaryTopicId": [known.id]},
        user_message="back to that",
        recent_messages=recent,
        topics=[known],
        artifacts=[],
        conversation_id=CONV,
    )

    assert decision == TopicDecision(action="continue_active", primary_topic_id=known.id)


@pytest.mark.parametrize(
    "fields",
    [
        {"topicAction": ["new"]},
        {"topicAction": {"value": "new"}},
        {"topicAction": "new", "newTopicLabel": ["Label"], "newParentTopicId": {"id": "p"}},
        {"topicAction": "continue_active", "secondaryTopicIds": "abc", "artifactsToLoad": [["a"], {"b": 1}]},
    ],
)
def test_wrongly_typed_fields_never_raise(db: ConversationDatabase, fields: Mapping[str, Any]) -> None:
    topic = _topic(db, "Ongoing")
    recent = _messages(db, ("earlier", topic.id))
    classifier, _ = _classifier(db, _reply(**fields), _reply(**fields))

    outcome = _decide(classifier, "Plan the garden beds", recent, [topic])

    assert outcome.status in {"ok", "fallback"}
    if outcome.status == "fallback":
        assert outcome.decision.primary_topic_id == topic.id
    else:
        assert outcome.decision.secondary_topic_ids == []
        assert outcome.decision.artifact_ids_to_load == []
        assert outcome.decision.new_parent_topic_id is None


def test_reopen_existing_keeps_candidate(db: ConversationDatabase) -> None:
    old = _topic(db, "Old")
    current = _topic(db, "Current")
    recent = _messages(db, ("earlier", current.id))
    classifier, _ = _classifier(
        db, _reply(topicAction="reopen_existing", primaryTopicId=old.id, newTopicSummary="Back again")
    )

    decision = _decide(classifier, "back to the old thing", recent, [old, current]).decision

    assert decision.action == "reopen_existing"
    assert decision.primary_topic_id == old.id
    assert decision.new_summary == "Back again"


def test_secondary_and_artifact_ids_are_filtered(db: ConversationDatabase) -> None:
    topics = [_topic(db, f"T{idx}") for idx in range(6)]
    recent = _messages(db, ("earlier", topics[0].id))
    artifacts = [
        db.add_artifact(conversation_id=CONV, type="code", title=f"A{idx}", content="x") for idx in range(5)
    ]
    classifier, _ = _classifier(
        db,
        _reply(
            topicAction="continue_active",
            secondaryTopicIds=[topics[0].id, "ghost", topics[1].id, topics[1].id, topics[2].id, topics[3].id, topics[4].id],
            artifactsToLoad=["ghost", artifacts[0].id, artifacts[0].id, artifacts[1].id, artifacts[2].id, artifacts[3].id],
        ),
    )

    decision = _decide(classifier, "compare these", recent, topics, artifacts).decision

    assert decision.secondary_topic_ids == [topics[1].id, topics[2].id, topics[3].id]
    assert decision.artifact_ids_to_load == [artifacts[0].id, artifacts[1].id, artifacts[2].id]


@pytest.mark.parametrize("reply", ["", "not json", '{"topicAction": "merge"}', "[1]"])
def test_malformed_output_falls_back_to_last_topic(db: ConversationDatabase, reply: str) -> None:
    topic = _topic(db, "Ongoing")
    recent = _messages(db, ("earlier", topic.id))
    classifier, llm = _classifier(db, reply, reply)

    outcome = _decide(classifier, "next", recent, [topic])

    assert outcome.status == "fallback"
    assert outcome.decision == TopicDecision(action="continue_active", primary_topic_id=topic.id)
    assert len(llm.calls) == 2


def test_first_message_fallback_creates_topic(db: ConversationDatabase) -> None:
    classifier, _ = _classifier(db, "garbage", "garbage")

    outcome = classifier.classify("hi", [], [], [], CONV)

    assert outcome.status == "fallback"
    assert outcome.decision.action == "new"
    assert outcome.created_topic is not None
    assert outcome.decision.primary_topic_id == outcome.created_topic.id
    assert outcome.created_topic.label == "Hi"
    assert [topic.id for topic in db.list_topics(CONV)] == [outcome.created_topic.id]


def test_new_topic_is_persisted_with_bounded_label(db: ConversationDatabase) -> None:
    root = _topic(db, "Root")
    recent = _messages(db, ("earlier", root.id))
    classifier, _ = _classifier(
        db,
        _reply(
            topicAction="new",
            newTopicLabel="kitchen remodel budget",
            newTopicDescription="Budgeting the remodel.",
            newTopicSummary="Costs so far.",
            newParentTopicId=root.id,
        ),
    )

    outcome = classifier.classify("How much for cabinets?", recent, [root], [], CONV)

    created = outcome.created_topic
    assert created is not None
    assert created.label == "Kitchen Remodel Budget"
    assert created.parent_topic_id == root.id
    assert created.description == "Budgeting the remodel."
    assert created.summary == "Costs so far."
    assert len(created.label) <= 120


def test_reopen_merges_only_supplied_fields(db: ConversationDatabase) -> None:
    old = db.insert_topic(conversation_id=CONV, label="Old Label", description="Old description", summary="Old summary")
    classifier, _ = _classifier(db)
    outcome = TopicOutcome(
        decision=TopicDecision(action="reopen_existing", primary_topic_id=old.id, new_summary="S" * 700)
    )

    classifier.ensure_assignment(outcome, user_message="again", conversation_id=CONV)

    refreshed = db.get_topic(old.id)
    assert refreshed is not None
    assert refreshed.label == "Old Label"
    assert refreshed.description == "Old description"
    assert refreshed.summary == "S" * 500


def test_depth_is_enforced_at_write_time(db: ConversationDatabase) -> None:
    root = _topic(db, "Root")
    child = _topic(db, "Child", parent=root.id)

    with pytest.raises(TopicHierarchyError):
        _topic(db, "Grandchild", parent=child.id)
    with pytest.raises(TopicHierarchyError):
        _topic(db, "Orphan", parent="missing")

    for topic in db.list_topics(CONV):
        if topic.parent_topic_id:
            parent = db.get_topic(topic.parent_topic_id)
            assert parent is not None and parent.parent_topic_id is None


def test_cross_conversation_pool_is_bounded(db: ConversationDatabase) -> None:
    db.upsert_conversation(CONV, "user-1")
    db.upsert_conversation("conv-2", "user-1")
    db.upsert_conversation("conv-3", "someone-else")
    small = _topic(db, "Small", conversation_id="conv-2")
    huge = _topic(db, "Huge", conversation_id="conv-2")
    db.update_topic(huge.id, token_estimate=250_000)
    _topic(db, "Private", conversation_id="conv-3")
    local = _topic(db, "Local")
    classifier, _ = _classifier(db)

    candidates = classifier.candidate_topics("user-1", CONV)

    assert [topic.id for topic in candidates] == [local.id, small.id]


def test_payload_marks_topic_origin(db: ConversationDatabase) -> None:
    local = _topic(db, "Local")
    remote = _topic(db, "Remote", conversation_id="conv-9")
    classifier, llm = _classifier(db, _reply())

    _decide(classifier, "anything", [], [local, remote])

    user_payload = llm.calls[0]["messages"][1]["content"]
    assert '"conversation": "current"' in user_payload
    assert '"conversation": "other"' in user_payload
