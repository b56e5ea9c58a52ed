from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from portflow.core.models.prompts import SYSTEM_PROMPT
from portflow.core.orchestration.schemas import Redaction, SynthesizedOutput, ValidationVerdict

logger = logging.getLogger("portflow.validator")

REDACTED = "[REDACTED]"
FALLBACK_TEXT = (
    "Sorry, I can't share that response. Part of it contained information you are not allowed to see. "
    "Please rephrase your request or contact a terminal operator."
)

ALL_ROLES = frozenset({"ADMIN", "OPERATOR", "CARRIER", "DRIVER"})
EXTERNAL_ROLES = frozenset({"CARRIER", "DRIVER"})

AUDIT_FIELDS = frozenset(
    {"decidedByOperatorUserId", "internalId", "qrPayload", "qrToken", "auditLog", "createdByUserId"}
)


def _luhn(digits: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(digits)):
        value = int(char)
        if index % 2 == 1:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return total % 10 == 0


def _is_card(match: re.Match[str]) -> bool:
    return _luhn(re.sub(r"\D", "", match.group(0)))


@dataclass(frozen=True)
class ConfidentialityRule:
    name: str
    category: str
    pattern: re.Pattern[str]
    roles: frozenset[str]
    action: str  # "reject" or "redact"
    accept: Callable[[re.Match[str]], bool] | None = None
    # group holding the confidential value; 0 is the whole match
    group: int = 0

    def matches(self, text: str) -> list[re.Match[str]]:
        return [match for match in self.pattern.finditer(text) if self.accept is None or self.accept(match)]

    def redact(self, text: str) -> tuple[str, int]:
        hits = self.matches(text)
        for match in reversed(hits):
            start, end = match.span(self.group)
            text = text[:start] + REDACTED + text[end:]
        return text, len(hits)


_NOT_REDACTED = r"(?!\[REDACTED\]|\*\*\*)"

RULES: tuple[ConfidentialityRule, ...] = (
    ConfidentialityRule(
        "bearer_token",
        "credentials",
        re.compile(r"(?i)\bbearer\s+" + _NOT_REDACTED + r"[A-Za-z0-9._~+/-]{8,}=*"),
        ALL_ROLES,
        "reject",
    ),
    ConfidentialityRule(
        "jwt",
        "credentials",
        re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
        ALL_ROLES,
        "reject",
    ),
    ConfidentialityRule(
        "secret_value",
        "credentials",
        re.compile(r"(?i)\b(?:api[_-]?key|secret|password|passwd|access[_-]?token)\s*[:=]\s*" + _NOT_REDACTED + r"[^\s,;\"']{4,}"),
        ALL_ROLES,
        "reject",
    ),
    ConfidentialityRule(
        "system_prompt",
        "internal",
        re.compile(
            r"\[SYSTEM\]|<<SYS>>|<\|im_start\|>|^\s*#{2,}\s*(?:system|instructions?)\b|" + re.escape(SYSTEM_PROMPT[:48]),
            re.IGNORECASE | re.MULTILINE,
        ),
        ALL_ROLES,
        "reject",
    ),
    ConfidentialityRule(
        "card_number",
        "payment",
        re.compile(r"(?<![\w-])(?:\d[ -]?){12,18}\d(?![\w-])"),
        ALL_ROLES,
        "redact",
        accept=_is_card,
    ),
    ConfidentialityRule(
        "iban",
        "payment",
        re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,3})?\b"),
        ALL_ROLES,
        "redact",
    ),
    ConfidentialityRule(
        "account_number",
        "payment",
        re.compile(r"(?i)\b(?:account|acct)\s*(?:number|no\.?|#)\s*:?\s*(" + _NOT_REDACTED + r"[0-9][0-9 -]{5,}[0-9])"),
        ALL_ROLES,
        "redact",
        group=1,
    ),
    ConfidentialityRule(
        "email",
        "driver_pii",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}\b"),
        EXTERNAL_ROLES,
        "redact",
    ),
    ConfidentialityRule(
        "phone",
        "driver_pii",
        re.compile(r"(?<![\w+])(?:\+\d{1,3}[ .-]?\d(?:[ .-]?\d){6,12}|0\d(?:[ .-]?\d{2}){4})(?![\w-])"),
        EXTERNAL_ROLES,
        "redact",
    ),
    ConfidentialityRule(
        "audit_field",
        "audit",
        re.compile(
            r"\b(?:" + "|".join(sorted(AUDIT_FIELDS)) + r")\"?\s*[:=]\s*(" + _NOT_REDACTED + r"\"[^\"]*\"|[^\s,;}]+)"
        ),
        EXTERNAL_ROLES,
        "redact",
        group=1,
    ),
)


class OutputValidator:
    """Last checkpoint before a reply leaves the pipeline.

    Rejecting rules replace the whole output with a fixed fallback. Redacting
    rules replace the offending span with a marker that no rule matches, so a
    second pass over an approved output finds nothing new. In ``reject`` mode
    every rule rejects.
    """

    def __init__(self, mode: str = "redact", rules: tuple[ConfidentialityRule, ...] = RULES) -> None:
        if mode not in {"redact", "reject"}:
            raise ValueError(f"unknown redaction mode {mode!r}")
        self.mode = mode
        self.rules = rules

    def validate(self, output: SynthesizedOutput, role: str) -> ValidationVerdict:
        role = (role or "").strip().upper()
        applicable = [rule for rule in self.rules if role in rule.roles or not role]

        for rule in applicable:
            action = "reject" if self.mode == "reject" else rule.action
            if action != "reject":
                continue
            location = self._first_hit(rule, output, role)
            if location:
                return self._reject(rule, location)

        redactions: list[Redaction] = []
        text = output.text
        for rule in applicable:
            text, count = rule.redact(text)
            if count:
                redactions.append(Redaction(rule=rule.name, category=rule.category, location="text", count=count))

        payload = output.structured_payload
        if payload is not None:
            counts: dict[str, int] = {}
            payload = self._scrub(payload, applicable, role, counts)
            for rule in applicable:
                if counts.get(rule.name):
                    redactions.append(
                        Redaction(rule=rule.name, category=rule.category, location="payload", count=counts[rule.name])
                    )

        if redactions:
            logger.info(
                "output_redacted",
                extra={
                    "extra_fields": {
                        "role": role,
                        "rules": sorted({item.rule for item in redactions}),
                        "count": sum(item.count for item in redactions),
                    }
                },
            )
        return ValidationVerdict(approved=True, redactions=redactions, text=text, structured_payload=payload)

    def _first_hit(self, rule: ConfidentialityRule, output: SynthesizedOutput, role: str) -> str | None:
        if rule.matches(output.text):
            return "text"
        if output.structured_payload is not None:
            if self._payload_hit(output.structured_payload, rule, role):
                return "payload"
        return None

    def _payload_hit(self, value: Any, rule: ConfidentialityRule, role: str) -> bool:
        if isinstance(value, dict):
            for key, item in value.items():
                if rule.category == "audit" and key in AUDIT_FIELDS and item not in (None, REDACTED):
                    return True
                if self._payload_hit(item, rule, role):
                    return True
            return False
        if isinstance(value, (list, tuple)):
            return any(self._payload_hit(item, rule, role) for item in value)
        return isinstance(value, str) and bool(rule.matches(value))

    def _scrub(self, value: Any, rules: list[ConfidentialityRule], role: str, counts: dict[str, int]) -> Any:
        if isinstance(value, dict):
            audit = next((rule for rule in rules if rule.category == "audit"), None)
            scrubbed: dict[str, Any] = {}
            for key, item in value.items():
                if audit is not None and key in AUDIT_FIELDS and item not in (None, REDACTED):
                    scrubbed[key] = REDACTED
                    counts[audit.name] = counts.get(audit.name, 0) + 1
                else:
                    scrubbed[key] = self._scrub(item, rules, role, counts)
            return scrubbed
        if isinstance(value, list):
            return [self._scrub(item, rules, role, counts) for item in value]
        if isinstance(value, str):
            for rule in rules:
                value, count = rule.redact(value)
                if count:
                    counts[rule.name] = counts.get(rule.name, 0) + count
            return value
        return value

    def _reject(self, rule: ConfidentialityRule, location: str) -> ValidationVerdict:
        logger.warning(
            "output_rejected",
            extra={"extra_fields": {"rule": rule.name, "category": rule.category, "location": location}},
        )
        return ValidationVerdict(
            approved=False,
            redactions=[Redaction(rule=rule.name, category=rule.category, location=location)],
            reason=f"{rule.category}:{rule.name}",
            text=FALLBACK_TEXT,
            structured_payload=None,
        )
