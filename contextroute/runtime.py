"""Runtime helpers and command line entry point for the routing pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .clients import LLMClient
from .config import PipelineConfig, load_config
from .pipeline import RoutingPipeline
from .schemas import OperatorHints, Turn, dumps_payload
from .storage import ConversationDatabase

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    """Wire storage, clients and the pipeline together from a config."""

    config: PipelineConfig = field(default_factory=load_config)
    refresh_topics: bool = False

    def __post_init__(self) -> None:
        db_path = self.config.database_path
        if db_path != ":memory:":
            Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
            db_path = str(Path(db_path).expanduser())
        self.database = ConversationDatabase(db_path)

        self.llm_client = LLMClient(
            base_url=self.config.llm.base_url,
            model=self.config.llm.model,
            provider=self.config.llm.provider,
            api_key_env=self.config.llm.api_key_env,
            timeout=self.config.llm.timeout,
        )
        self.embedding_client = LLMClient(
            base_url=self.config.embedding.base_url,
            model=self.config.embedding.model,
            provider=self.config.embedding.provider,
            api_key_env=self.config.embedding.api_key_env,
            timeout=self.config.embedding.timeout,
            default_extra_body={},
        )
        self.pipeline = RoutingPipeline(
            db=self.database,
            llm_client=self.llm_client,
            embedding_client=self.embedding_client,
            config=self.config,
            refresh_topics=self.refresh_topics,
        )
        self._last_topic: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ingest(self, event: Mapping[str, object]) -> Optional[Mapping[str, object]]:
        """Record one message; user messages are routed and their result returned."""

        user_id = str(event.get("user_id") or "user-1")
        conversation_id = str(event.get("conversation_id") or "session-1")
        role = str(event.get("role") or "user")
        content = str(event["content"])

        self.database.upsert_conversation(conversation_id, user_id)
        message = self.database.add_message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            topic_id=self._last_topic.get(conversation_id) if role != "user" else None,
            message_id=str(event["message_id"]) if event.get("message_id") else None,
        )
        if role != "user":
            return None

        hints = event.get("hints")
        turn = Turn(
            user_id=user_id,
            conversation_id=conversation_id,
            message_text=content,
            hints=OperatorHints.from_payload(hints if isinstance(hints, Mapping) else None),
            message_id=message.id,
        )
        result = self.pipeline.route(turn)
        self._last_topic[conversation_id] = result.topic.decision.primary_topic_id
        return result.to_payload()

    def close(self) -> None:
        self.pipeline.close()


def _iter_events(stream: Iterable[str]) -> Iterable[Mapping[str, object]]:
    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:  # pragma: no cover - CLI guard
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(event, Mapping) or "content" not in event:
            logger.error("Each line must include a 'content' field: %s", line)
            raise SystemExit(1)
        yield event


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Route conversation turns and assemble their context")
    parser.add_argument("--db", help="SQLite file for conversations, topics and memories")
    parser.add_argument("--llm-url", help="Base URL of the auxiliary chat model server")
    parser.add_argument("--llm-model", help="Auxiliary chat model name exposed by the server")
    parser.add_argument(
        "--llm-provider",
        choices=["vllm", "deepseek", "openai"],
        help="Auxiliary model provider type",
    )
    parser.add_argument("--embed-url", help="Base URL of the embedding server")
    parser.add_argument("--embed-model", help="Embedding model name exposed by the server")
    parser.add_argument(
        "--embed-provider",
        choices=["vllm", "deepseek", "openai"],
        help="Embedding provider type",
    )
    parser.add_argument(
        "--refresh-topics",
        action="store_true",
        help="Refresh topic descriptions with the auxiliary model after each turn.",
    )
    parser.add_argument(
        "--input",
        type=Path,
        help="Optional path to a JSONL file of turns. Defaults to reading from standard input.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    config = load_config()
    if args.db:
        config.database_path = str(args.db)
    if args.llm_url:
        config.llm.base_url = args.llm_url
    if args.llm_model:
        config.llm.model = args.llm_model
    if args.llm_provider:
        config.llm.provider = args.llm_provider
    if args.embed_url:
        config.embedding.base_url = args.embed_url
    if args.embed_model:
        config.embedding.model = args.embed_model
    if args.embed_provider:
        config.embedding.provider = args.embed_provider

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)

    runtime = PipelineRuntime(config=config, refresh_topics=args.refresh_topics)

    def _run_stream(stream: Iterable[str]) -> List[Mapping[str, object]]:
        results: List[Mapping[str, object]] = []
        for event in _iter_events(stream):
            result = runtime.ingest(event)
            if result is not None:
                results.append(result)
        return results

    try:
        if args.input:
            with args.input.open("r", encoding="utf-8") as fh:
                results = _run_stream(fh)
        else:
            results = _run_stream(sys.stdin)
    finally:
        runtime.close()

    for result in results:
        print(dumps_payload(result))

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
