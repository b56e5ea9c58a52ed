from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from portflow.core.models.llm_provider import LLMOutputError, LLMUnavailable, PortflowLLM
from portflow.core.models.prompts import classifier_system_prompt, classifier_user_prompt
from portflow.core.observability.trace import Trace
from portflow.core.orchestration import policies
from portflow.core.orchestration.schemas import Entities, IntentClassification, SanitizedInput

logger = logging.getLogger("portflow.classifier")

CLASSIFIER_VERSION = "heuristic-2"
DETECTION_MIN_SCORE = 2

_W = r"[^.?!;]*"

CATEGORY_RULES: dict[str, list[tuple[re.Pattern[str], int]]] = {
    policies.BOOKING_APPROVE: [
        (re.compile(r"\b(approve|approving|approval)\b"), 3),
        (re.compile(r"\bvalidate\b" + _W + r"\bbooking\b"), 3),
    ],
    policies.BOOKING_REJECT: [
        (re.compile(r"\b(reject|decline|refuse)\b"), 3),
    ],
    policies.BOOKING_CANCEL: [
        (re.compile(r"\b(cancel|cancellation|annuler|cancelar)\b"), 3),
        (re.compile(r"\bdelete\b" + _W + r"\b(booking|reservation)\b"), 3),
    ],
    policies.BOOKING_UPDATE: [
        (re.compile(r"\b(reschedule|modify|postpone)\b"), 3),
        (re.compile(r"\b(change|update|move)\b" + _W + r"\b(booking|reservation|appointment)\b"), 3),
    ],
    policies.BOOKING_CREATE: [
        (re.compile(r"\b(book|reserve|create|make|schedule)\b" + _W + r"\b(booking|slot|reservation|appointment|visit)\b"), 3),
        (re.compile(r"\bbook\s+(a|an|me)\b"), 3),
        (re.compile(r"\bnew\s+(booking|reservation)\b"), 3),
        (re.compile(r"\b(réserver|reservar)\b"), 3),
    ],
    policies.BOOKING_STATUS: [
        (re.compile(r"\bstatus\s+of\b"), 3),
        (re.compile(r"\bwhere\s+is\s+my\b"), 3),
        (re.compile(r"\b(track|check|show|see|view|details?\s+of)\b" + _W + r"\b(booking|reservation)\s*#?\s*\d+"), 3),
        (re.compile(r"\bstatus\b"), 1),
        (re.compile(r"\b(booking|reservation)\s*#?\s*([0-9a-f-]{36}|\d+)\b"), 1),
    ],
    policies.BOOKING_LIST: [
        (re.compile(r"\b(list|show|see|view|all|get)\b" + _W + r"\b(bookings|reservations)\b"), 3),
        (re.compile(r"\bmy\s+(bookings|reservations)\b"), 3),
        (re.compile(r"\b(bookings|reservations)\b"), 1),
    ],
    policies.SLOT_QUERY: [
        (re.compile(r"\b(available|availability|free|open)\b" + _W + r"\bslots?\b"), 3),
        (re.compile(r"\bslots?\b"), 2),
        (re.compile(r"\bavailab(le|ility)\b"), 2),
        (re.compile(r"\b(when\s+can\s+i|best\s+time|recommended\s+time)\b"), 2),
        (re.compile(r"\b(créneaux?|disponible)\b"), 2),
    ],
    policies.CAPACITY_QUERY: [
        (re.compile(r"\b(capacity|utili[sz]ation|occupancy|how\s+full)\b"), 3),
    ],
    policies.TERMINAL_QUERY: [
        (re.compile(r"\b(list|show|all|which|get)\b" + _W + r"\bterminals\b"), 3),
        (re.compile(r"\bterminals\b"), 2),
        (re.compile(r"\bterminal\s+(details?|info|information)\b"), 3),
        (re.compile(r"\b(details?|info|information)\s+(about|on|for)\s+terminal\b"), 3),
        (re.compile(r"\bterminal\b"), 1),
    ],
    policies.PEAK_HOURS_QUERY: [
        (re.compile(r"\b(peak|off-peak|busiest|rush\s+hours?)\b"), 3),
        (re.compile(r"\bbusy\b"), 2),
    ],
    policies.GENERAL_HELP: [
        (re.compile(r"\b(help|aide|ayuda)\b"), 3),
        (re.compile(r"\bwhat\s+can\s+you\s+do\b"), 3),
        (re.compile(r"\bhow\s+(do|can)\s+i\s+use\b"), 3),
        (re.compile(r"^(hi|hello|hey|bonjour|salut|hola)\b"), 2),
    ],
}

# A detected category is dropped when another detected category's plan already covers it.
SUBSUMED_BY: dict[str, set[str]] = {
    policies.BOOKING_CREATE: {policies.SLOT_QUERY},
    policies.BOOKING_CANCEL: {policies.BOOKING_STATUS},
    policies.BOOKING_UPDATE: {policies.BOOKING_STATUS, policies.BOOKING_CREATE},
    policies.BOOKING_APPROVE: {policies.BOOKING_STATUS, policies.BOOKING_LIST},
    policies.BOOKING_REJECT: {policies.BOOKING_STATUS, policies.BOOKING_LIST},
    policies.BOOKING_STATUS: {policies.BOOKING_LIST},
    policies.SLOT_QUERY: {policies.TERMINAL_QUERY},
    policies.CAPACITY_QUERY: {policies.TERMINAL_QUERY},
    policies.PEAK_HOURS_QUERY: {policies.TERMINAL_QUERY, policies.SLOT_QUERY},
}

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_BOOKING_ID = re.compile(
    rf"\b(?:booking|reservation|réservation|reserva)\s*(?:#|no\.?|number|id)?\s*:?\s*({_UUID}|\d+)\b",
    re.IGNORECASE,
)
_HASH_ID = re.compile(r"#\s*(\d+)\b")
_TERMINAL = re.compile(r"\b(?:terminal|port)\s+([A-Za-z0-9][\w-]*)", re.IGNORECASE)
_TERMINAL_STOPWORDS = {
    "details", "detail", "info", "information", "capacity", "status", "slots", "slot", "availability",
    "is", "are", "and", "for", "the", "list", "please", "has", "have", "with", "at", "on", "in", "tomorrow", "today",
}
_DATE = re.compile(
    r"\b(\d{4}-\d{2}-\d{2}|tomorrow|today|next\s+(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b",
    re.IGNORECASE,
)
_CLOCK = r"\d{1,2}:\d{2}\s*(?:am|pm)?|\d{1,2}\s*(?:am|pm)"
_TIME_WINDOW = re.compile(rf"\b({_CLOCK})\s*(?:-|to|until)\s*({_CLOCK})", re.IGNORECASE)
_DRIVER = re.compile(rf"\bdriver\s*(?:#|id)?\s*:?\s*({_UUID}|\d+)\b", re.IGNORECASE)
_STATUS = re.compile(r"\b(pending|confirmed|rejected|cancelled|canceled|consumed)\b", re.IGNORECASE)
_FOLLOW_UP = re.compile(r"^(and|also|what\s+about|how\s+about|same|then|et|y)\b", re.IGNORECASE)


def _to_24h(raw: str) -> str:
    value = raw.strip().lower().replace(" ", "")
    suffix = ""
    if value.endswith(("am", "pm")):
        suffix = value[-2:]
        value = value[:-2]
    hours, _, minutes = value.partition(":")
    hour = int(hours)
    if suffix == "pm" and hour < 12:
        hour += 12
    if suffix == "am" and hour == 12:
        hour = 0
    return f"{hour:02d}:{int(minutes or 0):02d}"


def extract_entities(text: str) -> Entities:
    found: dict[str, Any] = {}

    match = _BOOKING_ID.search(text) or _HASH_ID.search(text)
    if match:
        found["booking_id"] = match.group(1)

    for match in _TERMINAL.finditer(text):
        candidate = match.group(1)
        if candidate.casefold() in _TERMINAL_STOPWORDS:
            continue
        found["terminal"] = candidate
        if candidate.isdigit() or re.fullmatch(_UUID, candidate, re.IGNORECASE):
            found["terminal_id"] = candidate
        break

    match = _DATE.search(text)
    if match:
        found["date"] = re.sub(r"\s+", " ", match.group(1).lower())

    match = _TIME_WINDOW.search(text)
    if match:
        try:
            found["time_window"] = f"{_to_24h(match.group(1))}-{_to_24h(match.group(2))}"
        except ValueError:
            pass

    match = _DRIVER.search(text)
    if match:
        found["driver_id"] = match.group(1)

    match = _STATUS.search(text)
    if match:
        status = match.group(1).upper()
        found["status"] = "CANCELLED" if status == "CANCELED" else status

    return Entities(**found)


def score_categories(text: str) -> dict[str, tuple[int, int]]:
    """Return ``{category: (score, first_match_position)}`` for every category with a signal."""
    lowered = text.casefold()
    scores: dict[str, tuple[int, int]] = {}
    for category, rules in CATEGORY_RULES.items():
        total = 0
        first = len(lowered)
        for pattern, weight in rules:
            match = pattern.search(lowered)
            if match:
                total += weight
                first = min(first, match.start())
        if total:
            scores[category] = (total, first)
    return scores


def _confidence(score: int) -> float:
    return round(min(0.95, 0.45 + 0.1 * score), 2)


class _LLMClassification(BaseModel):
    category: str
    confidence: float = Field(ge=0.0, le=1.0)
    secondary_categories: list[str] = Field(default_factory=list)
    entities: dict[str, str | None] = Field(default_factory=dict)
    reasoning: str = ""

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str) -> str:
        if value not in policies.CATEGORIES:
            raise ValueError(f"unknown category: {value}")
        return value

    @field_validator("secondary_categories")
    @classmethod
    def _known_categories(cls, value: list[str]) -> list[str]:
        unknown = [item for item in value if item not in policies.CATEGORIES]
        if unknown:
            raise ValueError(f"unknown categories: {unknown}")
        return value


class IntentClassifier:
    def __init__(self, threshold: float = 0.6, llm: PortflowLLM | None = None, history_window: int = 10) -> None:
        self.threshold = threshold
        self.llm = llm
        self.history_window = history_window

    def classify(
        self,
        sanitized: SanitizedInput,
        history: Sequence[Any] = (),
        role: str = "",
        trace: Trace | None = None,
    ) -> IntentClassification:
        text = sanitized.sanitized_text
        entities = extract_entities(text)
        scores = score_categories(text)
        reasoning = "heuristic"
        version = CLASSIFIER_VERSION

        detected = self._detected(scores)
        if not detected and self._looks_like_follow_up(text, entities):
            fallback = self._from_history(history)
            if fallback is not None:
                prior_text, prior_detected, prior_scores = fallback
                detected = prior_detected
                scores = prior_scores
                entities = entities.merged_with(extract_entities(prior_text))
                reasoning = "follow-up resolved from conversation history"

        if detected:
            primary = max(detected, key=lambda category: (scores[category][0], -scores[category][1]))
            confidence = _confidence(scores[primary][0])
            if reasoning != "heuristic":
                confidence = round(confidence * 0.9, 2)
            secondary = [category for category in detected if category != primary]
        elif scores:
            primary = max(scores, key=lambda category: scores[category][0])
            confidence = _confidence(scores[primary][0])
            secondary = []
        elif self._looks_like_follow_up(text, entities):
            primary, confidence, secondary = policies.GENERAL_HELP, 0.3, []
            reasoning = "follow-up without conversation context"
        else:
            primary, confidence, secondary = policies.OUT_OF_SCOPE, 0.7, []
            reasoning = "no port-operations signal"

        if confidence < self.threshold:
            llm_result = self._classify_with_llm(text, history, role, trace)
            if llm_result is not None and llm_result.confidence >= self.threshold:
                primary = llm_result.category
                confidence = round(llm_result.confidence, 2)
                secondary = [item for item in llm_result.secondary_categories if item != primary]
                entities = entities.merged_with(self._llm_entities(llm_result.entities))
                reasoning = llm_result.reasoning or "language model"
                version = f"{CLASSIFIER_VERSION}+llm"
            else:
                result = IntentClassification(
                    category=primary,
                    confidence=confidence,
                    target_capability=policies.CLARIFICATION_NEEDED,
                    secondary_categories=secondary,
                    entities=entities,
                    clarification_question=self._clarification_question(primary, scores),
                    reasoning=f"{reasoning}; confidence {confidence} below {self.threshold}",
                    classifier_version=version,
                )
                self._log(result, role)
                return result

        target = policies.capability_for(primary)
        forbidden = [category for category in [primary, *secondary] if not policies.evaluate(role, category).allowed]
        if forbidden:
            decision = policies.evaluate(role, forbidden[0])
            if forbidden[0] != primary:
                secondary = [primary, *[category for category in secondary if category != forbidden[0]]]
            primary = forbidden[0]
            target = policies.FORBIDDEN
            reasoning = f"{reasoning}; {decision.reason}"

        result = IntentClassification(
            category=primary,
            confidence=confidence,
            target_capability=target,
            secondary_categories=secondary,
            entities=entities,
            reasoning=reasoning,
            classifier_version=version,
        )
        self._log(result, role)
        return result

    def _detected(self, scores: dict[str, tuple[int, int]]) -> list[str]:
        detected = [category for category, (score, _) in scores.items() if score >= DETECTION_MIN_SCORE]
        covered: set[str] = set()
        for category in detected:
            covered |= SUBSUMED_BY.get(category, set())
        if policies.GENERAL_HELP in detected and len(detected) > 1:
            covered.add(policies.GENERAL_HELP)
        detected = [category for category in detected if category not in covered]
        return sorted(detected, key=lambda category: scores[category][1])

    def _looks_like_follow_up(self, text: str, entities: Entities) -> bool:
        if _FOLLOW_UP.search(text.strip()):
            return True
        words = text.split()
        has_entity = any(value is not None for value in entities.model_dump().values())
        return has_entity and len(words) <= 5

    def _from_history(self, history: Sequence[Any]) -> tuple[str, list[str], dict[str, tuple[int, int]]] | None:
        user_turns = [turn for turn in history if getattr(turn, "speaker", None) == "user"]
        for turn in reversed(user_turns[-self.history_window :] if self.history_window else []):
            prior_scores = score_categories(turn.text)
            prior_detected = self._detected(prior_scores)
            if prior_detected:
                return turn.text, prior_detected, prior_scores
        return None

    def _clarification_question(self, guess: str, scores: dict[str, tuple[int, int]]) -> str:
        if scores and guess in policies.ACTION_LABELS and guess not in {policies.GENERAL_HELP, policies.OUT_OF_SCOPE}:
            return (
                f"Did you want to {policies.ACTION_LABELS[guess]}? "
                "Please add a bit more detail, for example a booking number, a terminal or a date."
            )
        return (
            "Could you tell me a bit more about what you need? "
            "I can help with bookings, slot availability, terminal capacity and peak hours."
        )

    def _classify_with_llm(
        self,
        text: str,
        history: Sequence[Any],
        role: str,
        trace: Trace | None,
    ) -> _LLMClassification | None:
        if self.llm is None or not self.llm.enabled:
            return None
        recent = list(history)[-self.history_window :] if self.history_window else []
        history_block = "\n".join(f"- {turn.speaker}: {turn.text}" for turn in recent)
        try:
            raw = self.llm.complete_json(
                system=classifier_system_prompt(),
                user=classifier_user_prompt(text, role, list(policies.CATEGORIES), history_block),
                trace=trace,
            )
            return _LLMClassification.model_validate(raw)
        except (LLMUnavailable, LLMOutputError, ValidationError) as exc:
            logger.warning("llm_classification_failed", extra={"extra_fields": {"error": str(exc)[:200]}})
            if trace is not None:
                trace.emit("ClassifierFallback", {"reason": exc.__class__.__name__})
            return None

    def _llm_entities(self, raw: dict[str, str | None]) -> Entities:
        known = set(Entities.model_fields)
        return Entities(**{key: value for key, value in raw.items() if key in known and value})

    def _log(self, result: IntentClassification, role: str) -> None:
        logger.info(
            "intent_classified",
            extra={
                "extra_fields": {
                    "category": result.category,
                    "capability": result.target_capability,
                    "confidence": result.confidence,
                    "secondary": result.secondary_categories,
                    "role": role,
                    "version": result.classifier_version,
                }
            },
        )
