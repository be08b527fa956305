"""Review validity and premium-content checks (pure).

A review earns rewards only when it is valid:
- enough evidence for its complexity level and polarity
- enough text, and not only filler words ("好", "不错", "good", ...)

Premium content qualifies for the float reward and a higher scoring weight.
"""

import re
from dataclasses import dataclass

from repair_engine.schemas.evidence import EvidenceBundle
from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import ReviewRules

INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"
TEXT_TOO_SHORT = "TEXT_TOO_SHORT"
FILLER_CONTENT = "FILLER_CONTENT"

_PUNCT_RE = re.compile(r"[\s\W_]+", re.UNICODE)


@dataclass
class ValidationResult:
    valid: bool
    premium: bool = False
    reason_code: str | None = None
    message: str | None = None


def _evidence_ok(level: ComplexityLevel, is_negative: bool, ev: EvidenceBundle, rules: ReviewRules) -> bool:
    has_doc = ev.has_settlement_document
    if is_negative:
        problem = len(ev.problem_photos)
        if not level.is_high:
            return problem >= rules.negative_low_problem_photos
        return problem >= rules.negative_high_problem_photos or (problem >= 1 and has_doc)

    core = len(ev.completion_photos)
    if not level.is_high:
        return core >= rules.positive_low_photos or has_doc
    return core >= rules.positive_high_core_photos or (core >= 1 and has_doc)


def _filler_pattern(words: list[str]) -> re.Pattern[str] | None:
    parts: list[str] = []
    for w in sorted({w.strip().lower() for w in words if w.strip()}, key=len, reverse=True):
        esc = re.escape(w)
        # ASCII words match whole words only ("ok" must not eat "broken").
        parts.append(rf"\b{esc}\b" if w.isascii() else esc)
    if not parts:
        return None
    return re.compile("|".join(parts))


def strip_filler(text: str, rules: ReviewRules) -> str:
    """Text left after removing filler words, whitespace and punctuation."""
    s = text.lower()
    pattern = _filler_pattern(rules.filler_words)
    if pattern is not None:
        s = pattern.sub("", s)
    return _PUNCT_RE.sub("", s)


def _contains_any(text: str, words: list[str]) -> bool:
    t = text.lower()
    return any(w.lower() in t for w in words if w)


def is_premium(level: ComplexityLevel, ev: EvidenceBundle, text: str, rules: ReviewRules) -> bool:
    if ev.has_settlement_document:
        return True
    photo_floor = rules.premium_photos_high if level.is_high else rules.premium_photos_low
    if ev.photo_count >= photo_floor:
        return True
    t = text.strip()
    if len(t) >= rules.premium_text_min and (
        _contains_any(t, rules.price_words) or _contains_any(t, rules.process_words)
    ):
        return True
    return len(t) >= rules.premium_long_text_min and _contains_any(t, rules.project_words)


def validate_review(
    level: ComplexityLevel,
    is_negative: bool,
    evidence: EvidenceBundle,
    text: str,
    rules: ReviewRules,
) -> ValidationResult:
    """Check evidence first, then text; premium is only evaluated for valid reviews."""
    if not _evidence_ok(level, is_negative, evidence, rules):
        return ValidationResult(
            valid=False,
            reason_code=INSUFFICIENT_EVIDENCE,
            message=(
                "Negative reviews need photos of the problem"
                if is_negative
                else "Please attach completion photos or the settlement document"
            ),
        )

    t = (text or "").strip()
    min_len = rules.min_text_high if level.is_high else rules.min_text_low
    if len(t) < min_len:
        return ValidationResult(
            valid=False,
            reason_code=TEXT_TOO_SHORT,
            message=f"Please write at least {min_len} characters about the repair",
        )

    if len(strip_filler(t, rules)) < rules.min_text_low:
        return ValidationResult(
            valid=False,
            reason_code=FILLER_CONTENT,
            message="Please describe the repair itself; generic praise does not qualify",
        )

    return ValidationResult(valid=True, premium=is_premium(level, evidence, t, rules))
