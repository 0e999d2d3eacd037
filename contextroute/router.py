"""Router decision engine: picks model tier, effort, context and memory plan."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .clients import LLMClient
from .config import EFFORT_LEVELS, MODEL_TIERS, RouterConfig
from .context import cap_history_lines
from .parsing import extract_json
from .prompts import JSON_ONLY_REMINDER, RETRY_NUDGE, ROUTER_SYSTEM_PROMPT
from .schemas import (
    CallUsage,
    InstructionToDelete,
    InstructionToWrite,
    MemoryStrategy,
    MemoryToDelete,
    MemoryToWrite,
    OperatorHints,
    PermanentInstruction,
    RouterDecision,
    RouterOutcome,
)

logger = logging.getLogger(__name__)


CONTEXT_STRATEGIES = ("minimal", "recent", "full")
WEB_SEARCH_STRATEGIES = ("never", "optional", "required")
NEXT_TURN_PREDICTIONS = ("likely", "unlikely", "unknown")
INSTRUCTION_SCOPES = ("user", "conversation")

MEMORY_TITLE_MAX = 60
MEMORY_CONTENT_MAX = 500
MEMORY_LIMIT_MAX = 50
STANDING_INSTRUCTION_PREVIEW = 10

HIGH_COMPLEXITY_KEYWORDS = (
    "research",
    "comprehensive",
    "in-depth",
    "long-form",
    "whitepaper",
    "architecture",
    "roadmap",
    "algorithm",
    "implementation",
    "financial model",
)
HIGH_EFFORT_PROMPT_CHARS = 900
HIGH_EFFORT_SENTENCE_CHARS = 200

_LIVE_DATA_PATTERN = re.compile(
    r"\b("
    r"weather|forecast|temperature|"
    r"search the web|search online|look (?:it |this )?up online|"
    r"latest news|breaking news|headlines|"
    r"stock price|share price|prices?|exchange rate"
    r")\b",
    re.IGNORECASE,
)

_GREETINGS = frozenset(
    {
        "hi",
        "hii",
        "hello",
        "hey",
        "yo",
        "hiya",
        "howdy",
        "sup",
        "whats up",
        "hi there",
        "hello there",
        "hey there",
        "good morning",
        "good afternoon",
        "good evening",
        "thanks",
        "thank you",
        "thanks a lot",
        "thx",
        "ty",
        "ok",
        "okay",
        "cool",
        "nice",
        "bye",
        "goodbye",
    }
)


# ----------------------------------------------------------------------
# Heuristics
# ----------------------------------------------------------------------
def is_trivial_greeting(prompt_text: str) -> bool:
    normalized = re.sub(r"[^\w\s]", "", prompt_text.lower())
    normalized = " ".join(normalized.split())
    return normalized in _GREETINGS


def is_live_data_request(prompt_text: str) -> bool:
    return bool(_LIVE_DATA_PATTERN.search(prompt_text))


def pick_thinking_effort(prompt_text: str) -> str:
    """Return ``"high"`` for long or keyword-flagged prompts, else ``"medium"``."""

    normalized = prompt_text.strip().lower()
    if len(normalized) >= HIGH_EFFORT_PROMPT_CHARS:
        return "high"
    if any(keyword in normalized for keyword in HIGH_COMPLEXITY_KEYWORDS):
        return "high"
    if any(len(segment.strip()) > HIGH_EFFORT_SENTENCE_CHARS for segment in re.split(r"[.!?]", normalized)):
        return "high"
    return "medium"


def clamp_effort(effort: object, tier: str, config: RouterConfig) -> str:
    """Map ``effort`` onto the nearest legal level for ``tier``.

    Levels below every legal one become the lowest legal level, levels above
    become the highest legal level not above them, unknown strings become the
    lowest legal level.
    """

    legal = config.legal_efforts(tier)
    if not legal:
        return "low"
    value = str(effort or "").strip().lower()
    if value in legal:
        return value
    if value not in EFFORT_LEVELS:
        return legal[0]
    rank = EFFORT_LEVELS.index(value)
    not_above = [level for level in legal if EFFORT_LEVELS.index(level) <= rank]
    return not_above[-1] if not_above else legal[0]


def fallback_decision(config: RouterConfig) -> RouterDecision:
    return RouterDecision(
        model_tier="balanced",
        reasoning_effort=clamp_effort("low", "balanced", config),
        context_strategy="recent",
        web_search_strategy="optional",
        memory_strategy=MemoryStrategy(
            categories=[],
            use_semantic_search=False,
            query=None,
            limit=config.default_memory_limit,
        ),
        next_turn_prediction="unknown",
    )


def greeting_decision(config: RouterConfig) -> RouterDecision:
    return RouterDecision(
        model_tier="compact",
        reasoning_effort=clamp_effort("minimal", "compact", config),
        context_strategy="minimal",
        web_search_strategy="never",
        memory_strategy=MemoryStrategy(categories=[], limit=config.default_memory_limit),
        next_turn_prediction="likely",
    )


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------
@dataclass
class RouterDecisionEngine:
    """Ask the compact auxiliary model for a routing decision and validate it."""

    llm_client: LLMClient
    config: RouterConfig = field(default_factory=RouterConfig)
    timeout: Optional[float] = None

    def decide(
        self,
        prompt_text: str,
        context_lines: Sequence[str] = (),
        known_categories: Sequence[str] = (),
        standing_instructions: Sequence[PermanentInstruction] = (),
        hints: Optional[OperatorHints] = None,
    ) -> RouterOutcome:
        hints = hints or OperatorHints()

        if not context_lines and is_trivial_greeting(prompt_text):
            logger.debug("Greeting fast path for prompt %r", prompt_text)
            decision = self.apply_overrides(greeting_decision(self.config), hints, prompt_text)
            return RouterOutcome(decision=decision, status="heuristic")

        user_payload = self._build_payload(
            prompt_text, context_lines, known_categories, standing_instructions, hints
        )
        usage: List[CallUsage] = []
        error: Optional[str] = None
        attempts = max(1, self.config.max_attempts)

        for attempt in range(attempts):
            system_prompt = f"{ROUTER_SYSTEM_PROMPT}\n\n{JSON_ONLY_REMINDER}"
            if attempt:
                system_prompt = f"{system_prompt}\n\n{RETRY_NUDGE}"
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_payload},
            ]
            try:
                reply = self.llm_client.chat(messages, purpose="router", timeout=self.timeout)
            except Exception as exc:
                error = f"router call failed: {exc}"
                logger.warning("Router attempt %s failed: %s", attempt + 1, exc)
                continue
            usage.append(reply.usage)

            payload = extract_json(reply.content)
            if payload is None:
                error = "router reply was not a JSON object"
                logger.warning("Router attempt %s returned unparseable output: %s", attempt + 1, reply.content)
                continue
            decision = self.validate(payload, known_categories)
            if decision is None:
                error = f"router reply has invalid modelTier: {payload.get('modelTier')!r}"
                logger.warning("Router attempt %s rejected: %s", attempt + 1, error)
                continue
            return RouterOutcome(
                decision=self.apply_overrides(decision, hints, prompt_text),
                status="ok",
                usage=usage,
            )

        logger.warning("Router falling back to the default decision: %s", error)
        return RouterOutcome(
            decision=self.apply_overrides(fallback_decision(self.config), hints, prompt_text),
            status="fallback",
            usage=usage,
            error=error,
        )

    # ------------------------------------------------------------------
    # Prompt helpers
    # ------------------------------------------------------------------
    def _build_payload(
        self,
        prompt_text: str,
        context_lines: Sequence[str],
        known_categories: Sequence[str],
        standing_instructions: Sequence[PermanentInstruction],
        hints: OperatorHints,
    ) -> str:
        instructions = [
            f"- [{item.id}] ({item.scope}) {item.title or 'Instruction'}: {item.content}"
            for item in standing_instructions[:STANDING_INSTRUCTION_PREVIEW]
        ]
        hidden = len(standing_instructions) - STANDING_INSTRUCTION_PREVIEW
        if hidden > 0:
            instructions.append(f"...and {hidden} more")

        payload = {
            "operatorNotes": self._hint_notes(hints),
            "knownMemoryCategories": list(known_categories),
            "standingInstructions": instructions,
            "recentConversation": cap_history_lines(context_lines, self.config.history_token_cap),
            "currentMessage": prompt_text,
        }
        return json.dumps(payload, ensure_ascii=False)

    def _hint_notes(self, hints: OperatorHints) -> List[str]:
        notes: List[str] = []
        if hints.forced_tier:
            notes.append(f"The user forced modelTier={hints.forced_tier}; only choose the effort.")
        if hints.speed == "instant":
            notes.append("The user prefers instant replies; keep effort at the minimum.")
        elif hints.speed == "thinking":
            notes.append("The user asked for deliberate thinking; effort at least medium.")
        if hints.usage_percentage >= self.config.usage_downgrade_pct:
            notes.append(
                f"The user has used {hints.usage_percentage:.0f}% of their budget; prefer cheaper tiers."
            )
        return notes

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(
        self, payload: Mapping[str, Any], known_categories: Sequence[str] = ()
    ) -> Optional[RouterDecision]:
        """Repair a raw router object; ``None`` when the tier is unusable."""

        tier = str(payload.get("modelTier") or "").strip().lower()
        if tier not in MODEL_TIERS:
            return None

        context_strategy = str(payload.get("contextStrategy") or "").strip().lower()
        if context_strategy not in CONTEXT_STRATEGIES:
            context_strategy = "recent"
        web_strategy = str(payload.get("webSearchStrategy") or "").strip().lower()
        if web_strategy not in WEB_SEARCH_STRATEGIES:
            web_strategy = "optional"
        prediction = str(payload.get("nextTurnPrediction") or "").strip().lower()
        if prediction not in NEXT_TURN_PREDICTIONS:
            prediction = "unknown"

        return RouterDecision(
            model_tier=tier,
            reasoning_effort=clamp_effort(payload.get("reasoningEffort"), tier, self.config),
            context_strategy=context_strategy,
            web_search_strategy=web_strategy,
            memory_strategy=self._validate_memory_strategy(
                payload.get("memoryStrategy"), known_categories
            ),
            memories_to_write=self._validate_memory_writes(payload.get("memoriesToWrite")),
            memories_to_delete=self._validate_memory_deletes(payload.get("memoriesToDelete")),
            next_turn_prediction=prediction,
            instructions_to_write=self._validate_instruction_writes(
                payload.get("instructionsToWrite")
            ),
            instructions_to_delete=self._validate_instruction_deletes(
                payload.get("instructionsToDelete")
            ),
        )

    def _validate_memory_strategy(
        self, raw: object, known_categories: Sequence[str]
    ) -> MemoryStrategy:
        strategy = MemoryStrategy(limit=self.config.default_memory_limit)
        if not isinstance(raw, Mapping):
            return strategy

        strategy.categories = self._validate_categories(raw.get("categories"), known_categories)
        strategy.use_semantic_search = raw.get("useSemanticSearch") is True
        query = raw.get("query")
        if isinstance(query, str) and query.strip():
            strategy.query = query.strip()
        limit = raw.get("limit")
        # json.loads accepts NaN, Infinity and overflowing literals
        if isinstance(limit, (int, float)) and not isinstance(limit, bool) and math.isfinite(limit):
            strategy.limit = min(MEMORY_LIMIT_MAX, max(1, int(limit)))
        return strategy

    def _validate_categories(
        self, raw: object, known_categories: Sequence[str]
    ) -> Union[List[str], str]:
        if isinstance(raw, str):
            return "all" if raw.strip().lower() == "all" else []
        if not isinstance(raw, list):
            return []

        canonical: Dict[str, str] = {}
        for name in known_categories:
            canonical.setdefault(name.lower(), name)
        selected: List[str] = []
        for item in raw:
            if not isinstance(item, str):
                continue
            key = item.strip().lower()
            if key == "all":
                return "all"
            name = canonical.get(key)
            if name and name not in selected:
                selected.append(name)
        return selected[: self.config.max_categories]

    def _validate_memory_writes(self, raw: object) -> List[MemoryToWrite]:
        if not isinstance(raw, list):
            return []
        writes: List[MemoryToWrite] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            values = [item.get(key) for key in ("type", "title", "content")]
            if not all(isinstance(value, str) and value.strip() for value in values):
                continue
            type_, title, content = (value.strip() for value in values)
            writes.append(
                MemoryToWrite(
                    type=type_,
                    title=title[:MEMORY_TITLE_MAX],
                    content=content[:MEMORY_CONTENT_MAX],
                )
            )
            if len(writes) >= self.config.max_memory_writes:
                break
        return writes

    @staticmethod
    def _validate_memory_deletes(raw: object) -> List[MemoryToDelete]:
        if not isinstance(raw, list):
            return []
        deletes: List[MemoryToDelete] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            memory_id, reason = item.get("id"), item.get("reason")
            if isinstance(memory_id, str) and memory_id.strip() and isinstance(reason, str) and reason.strip():
                deletes.append(MemoryToDelete(id=memory_id.strip(), reason=reason.strip()))
        return deletes

    @staticmethod
    def _validate_instruction_writes(raw: object) -> List[InstructionToWrite]:
        if not isinstance(raw, list):
            return []
        writes: List[InstructionToWrite] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            content = item.get("content")
            if not isinstance(content, str) or not content.strip():
                continue
            scope = str(item.get("scope") or "user").strip().lower()
            title = item.get("title")
            writes.append(
                InstructionToWrite(
                    scope=scope if scope in INSTRUCTION_SCOPES else "user",
                    content=content.strip(),
                    title=title.strip()[:MEMORY_TITLE_MAX] if isinstance(title, str) and title.strip() else None,
                )
            )
        return writes

    @staticmethod
    def _validate_instruction_deletes(raw: object) -> List[InstructionToDelete]:
        if not isinstance(raw, list):
            return []
        deletes: List[InstructionToDelete] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            instruction_id = item.get("id")
            if not isinstance(instruction_id, str) or not instruction_id.strip():
                continue
            reason = item.get("reason")
            deletes.append(
                InstructionToDelete(
                    id=instruction_id.strip(),
                    reason=reason.strip() if isinstance(reason, str) else None,
                )
            )
        return deletes

    # ------------------------------------------------------------------
    # Operator overrides
    # ------------------------------------------------------------------
    def apply_overrides(
        self, decision: RouterDecision, hints: OperatorHints, prompt_text: str
    ) -> RouterDecision:
        """Apply forced tier, usage limits, speed preference and live-data guard."""

        tier = decision.model_tier
        if hints.forced_tier in MODEL_TIERS:
            tier = hints.forced_tier
        elif hints.usage_percentage >= self.config.usage_force_compact_pct:
            tier = "compact"
        elif hints.usage_percentage >= self.config.usage_downgrade_pct and tier == "flagship":
            tier = "balanced"

        effort = clamp_effort(decision.reasoning_effort, tier, self.config)
        if hints.speed == "instant":
            legal = self.config.legal_efforts(tier)
            effort = legal[0] if legal else effort
        elif hints.speed == "thinking":
            target = pick_thinking_effort(prompt_text)
            if EFFORT_LEVELS.index(effort) < EFFORT_LEVELS.index(target):
                effort = clamp_effort(target, tier, self.config)

        web_strategy = decision.web_search_strategy
        if is_live_data_request(prompt_text):
            web_strategy = "required"

        if (tier, effort) != (decision.model_tier, decision.reasoning_effort):
            logger.debug(
                "Operator overrides moved %s/%s to %s/%s",
                decision.model_tier,
                decision.reasoning_effort,
                tier,
                effort,
            )
        return replace(
            decision,
            model_tier=tier,
            reasoning_effort=effort,
            web_search_strategy=web_strategy,
        )


__all__ = [
    "HIGH_COMPLEXITY_KEYWORDS",
    "RouterDecisionEngine",
    "clamp_effort",
    "fallback_decision",
    "greeting_decision",
    "is_live_data_request",
    "is_trivial_greeting",
    "pick_thinking_effort",
]
