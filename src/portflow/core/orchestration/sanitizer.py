from __future__ import annotations

import logging
import re
import unicodedata

from portflow.core.orchestration.errors import SanitizationError
from portflow.core.orchestration.schemas import SanitizedInput

logger = logging.getLogger("portflow.sanitizer")

INJECTION_FAMILIES: dict[str, list[re.Pattern[str]]] = {
    "instruction_override": [
        re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)", re.IGNORECASE),
        re.compile(r"disregard\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?)", re.IGNORECASE),
        re.compile(r"forget\s+(all\s+)?(previous|prior|above)\s+(instructions?|context)", re.IGNORECASE),
    ],
    "prompt_extraction": [
        re.compile(r"what\s+(is|are)\s+your\s+(system\s+)?(prompt|instructions?|rules?)", re.IGNORECASE),
        re.compile(r"show\s+me\s+your\s+(system\s+)?(prompt|instructions?)", re.IGNORECASE),
        re.compile(r"reveal\s+your\s+(system\s+)?(prompt|instructions?|rules?)", re.IGNORECASE),
        re.compile(r"print\s+your\s+(system\s+)?(prompt|instructions?)", re.IGNORECASE),
    ],
    "role_reassignment": [
        re.compile(r"you\s+are\s+now\s+(a|an|the)\s+", re.IGNORECASE),
        re.compile(r"pretend\s+(to\s+be|you\s+are)", re.IGNORECASE),
        re.compile(r"act\s+as\s+(a|an|if\s+you\s+are)\b", re.IGNORECASE),
        re.compile(r"roleplay\s+as", re.IGNORECASE),
    ],
    "delimiter_injection": [
        re.compile(r"\[SYSTEM\]", re.IGNORECASE),
        re.compile(r"\[/?INST\]", re.IGNORECASE),
        re.compile(r"<</?SYS>>", re.IGNORECASE),
        re.compile(r"<\|im_(start|end)\|>", re.IGNORECASE),
        re.compile(r"<\|endoftext\|>", re.IGNORECASE),
    ],
    "data_exfiltration": [
        re.compile(r"output\s+(all|every)\s+(user|customer|client)\s+data", re.IGNORECASE),
        re.compile(r"dump\s+(the\s+)?database", re.IGNORECASE),
        re.compile(r"show\s+(all\s+)?api\s+keys", re.IGNORECASE),
        re.compile(r"reveal\s+(all\s+)?passwords", re.IGNORECASE),
    ],
    "jailbreak": [
        re.compile(r"developer\s+mode", re.IGNORECASE),
        re.compile(r"\bdan\s+mode", re.IGNORECASE),
        re.compile(r"jailbreak", re.IGNORECASE),
        re.compile(r"bypass\s+(safety|filters?|restrictions?)", re.IGNORECASE),
    ],
}

UNSAFE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"<script[^>]*>[\s\S]*?</script\s*>", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>[\s\S]*?</iframe\s*>", re.IGNORECASE),
    re.compile(r"<(script|iframe)[^>]*>", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"(javascript|vbscript)\s*:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]

_ZERO_WIDTH = re.compile(r"[\u200b-\u200d\u2060\ufeff\u00ad]")
_WHITESPACE = re.compile(r"\s+")
_MEANINGFUL = re.compile(r"[^\W_]")
_QUOTES = str.maketrans(
    {
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u00ab": '"',
        "\u00bb": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u201a": "'",
    }
)

_ARABIC = re.compile(r"[\u0600-\u06ff]")
_FRENCH = re.compile(r"[éèêëàâùûüôîïçœ]|\b(je|réservation|créneau|annuler|bonjour|merci|quel|quelle)\b", re.IGNORECASE)
_SPANISH = re.compile(r"[ñ¿¡]|\b(reserva|cancelar|hola|gracias|cuál|cuándo)\b", re.IGNORECASE)


def normalize_text(text: str) -> str:
    normalized = unicodedata.normalize("NFC", text)
    normalized = _ZERO_WIDTH.sub("", normalized)
    normalized = "".join(
        " " if char in "\t\n\r\f\v" else char
        for char in normalized
        if char in "\t\n\r\f\v" or unicodedata.category(char) != "Cc"
    )
    normalized = normalized.translate(_QUOTES)
    return _WHITESPACE.sub(" ", normalized).strip()


def detect_language(text: str) -> str:
    if _ARABIC.search(text):
        return "ar"
    if _FRENCH.search(text):
        return "fr"
    if _SPANISH.search(text):
        return "es"
    return "en"


def detect_injection(text: str) -> tuple[list[str], list[str]]:
    """Return (matched families, matched phrases)."""
    families: list[str] = []
    phrases: list[str] = []
    for family, patterns in INJECTION_FAMILIES.items():
        for pattern in patterns:
            for match in pattern.finditer(text):
                phrases.append(match.group(0))
                if family not in families:
                    families.append(family)
    return families, phrases


class Sanitizer:
    def __init__(self, min_chars: int = 2, max_chars: int = 10000, strict: bool = False) -> None:
        self.min_chars = min_chars
        self.max_chars = max_chars
        self.strict = strict

    def sanitize(self, raw_text: str, role: str | None = None, session_id: str | None = None) -> SanitizedInput:
        raw = raw_text or ""
        if not raw.strip():
            raise SanitizationError("empty", "Your message is empty. Please type a request.")
        if len(raw.strip()) < self.min_chars:
            raise SanitizationError("too_short", f"Your message is too short (minimum {self.min_chars} characters).")
        if len(raw) > self.max_chars:
            raise SanitizationError("too_long", f"Your message is too long (maximum {self.max_chars} characters).")

        families, phrases = detect_injection(raw)
        # phrases split by zero-width characters or spelled with compatibility forms
        # (fullwidth letters) only match once normalized
        hidden_families, hidden_phrases = detect_injection(unicodedata.normalize("NFKC", normalize_text(raw)))
        families.extend(family for family in hidden_families if family not in families)
        phrases.extend(phrase for phrase in hidden_phrases if phrase not in phrases)
        if families:
            logger.warning(
                "injection_detected",
                extra={"extra_fields": {"families": families, "strict": self.strict, "session_id": session_id}},
            )
            if self.strict:
                raise SanitizationError(
                    "rejected_injection",
                    "Your message was rejected because it looks like an attempt to manipulate the assistant.",
                )

        removed: list[str] = list(phrases)
        cleaned = raw
        for pattern in UNSAFE_PATTERNS:
            removed.extend(match.group(0) for match in pattern.finditer(cleaned))
            cleaned = pattern.sub("", cleaned)

        text = normalize_text(cleaned)
        for patterns in INJECTION_FAMILIES.values():
            for pattern in patterns:
                text = pattern.sub(" ", text)
        text = normalize_text(text)

        if len(text) < self.min_chars or not _MEANINGFUL.search(text):
            raise SanitizationError(
                "empty_after_cleanup",
                "Your message had no usable content after cleanup. Please rephrase your request.",
            )

        return SanitizedInput(
            original_text=raw,
            sanitized_text=text,
            detected_language=detect_language(text),
            injection_detected=bool(families),
            injection_families=families,
            removed_patterns=removed,
            validation_errors=[],
            session_meta={"role": role, "session_id": session_id},
        )
