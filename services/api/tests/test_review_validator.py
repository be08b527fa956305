from repair_engine.schemas.evidence import EvidenceBundle
from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import DEFAULT_CONFIG
from repair_engine.services.review_validator import (
    FILLER_CONTENT,
    INSUFFICIENT_EVIDENCE,
    TEXT_TOO_SHORT,
    strip_filler,
    validate_review,
)

RULES = DEFAULT_CONFIG.review

DETAILED = "前保险杠喷漆维修，价格明细清楚，师傅手艺很好，交车时间比承诺早一天，推荐给大家"


def test_high_complexity_review_without_photos_is_rejected() -> None:
    result = validate_review(ComplexityLevel.L3, False, EvidenceBundle(), "还不错", RULES)
    assert result.valid is False
    assert result.reason_code == INSUFFICIENT_EVIDENCE


def test_short_text_is_rejected() -> None:
    ev = EvidenceBundle(completion_photos=["p1"])
    result = validate_review(ComplexityLevel.L2, False, ev, "很好", RULES)
    assert result.reason_code == TEXT_TOO_SHORT


def test_filler_only_text_is_rejected() -> None:
    ev = EvidenceBundle(completion_photos=["p1"])
    result = validate_review(ComplexityLevel.L2, False, ev, "很好很好，不错！满意", RULES)
    assert result.reason_code == FILLER_CONTENT


def test_ascii_filler_matches_whole_words_only() -> None:
    assert strip_filler("OK, good!", RULES) == ""
    assert strip_filler("broken mirror", RULES) == "brokenmirror"


def test_negative_high_complexity_needs_two_problem_photos_or_document() -> None:
    text = "大灯更换后一周就进水起雾，返厂两次都没有解决问题"
    one_photo = EvidenceBundle(problem_photos=["p1"])
    assert validate_review(ComplexityLevel.L3, True, one_photo, text, RULES).reason_code == INSUFFICIENT_EVIDENCE

    with_doc = EvidenceBundle(problem_photos=["p1"], settlement_document="doc-1")
    assert validate_review(ComplexityLevel.L3, True, with_doc, text, RULES).valid is True


def test_settlement_document_alone_covers_low_complexity() -> None:
    ev = EvidenceBundle(settlement_document="doc-1")
    result = validate_review(ComplexityLevel.L1, False, ev, "补漆颜色和原车一致", RULES)
    assert result.valid is True
    # A settlement document always makes the review premium.
    assert result.premium is True


def test_premium_by_photos_or_detailed_text() -> None:
    many_photos = EvidenceBundle(completion_photos=["a", "b"], material_photos=["c"])
    assert validate_review(ComplexityLevel.L2, False, many_photos, "保险杠修复平整", RULES).premium is True

    one_photo = EvidenceBundle(completion_photos=["a"])
    assert validate_review(ComplexityLevel.L2, False, one_photo, "保险杠修复平整", RULES).premium is False
    assert validate_review(ComplexityLevel.L2, False, one_photo, DETAILED, RULES).premium is True
