"""
Unit tests for plan-based access checks.
"""
from app.core.access_validator import (
    DenialReason,
    can_upload_size,
    can_use_doc_type,
    can_use_link,
    can_use_type,
    normalize_document_type,
    validate_generation_request,
)

MB = 1024 * 1024


def test_starter_cannot_use_essay(catalog):
    decision = can_use_type("starter", "essay", catalog)
    assert not decision
    assert decision.reason == DenialReason.PLAN_RESTRICTION
    assert decision.required_plan_id == "advanced"


def test_starter_can_use_multiple_choice(catalog):
    assert can_use_type("starter", "multiple_choice", catalog)


def test_required_plan_is_cheapest_allowing_type(catalog):
    decision = can_use_type("basic", "open", catalog)
    assert decision.reason == DenialReason.PLAN_RESTRICTION
    assert decision.required_plan_id == "essentials"


def test_unknown_plan_and_type(catalog):
    assert can_use_type("gold", "open", catalog).reason == DenialReason.UNKNOWN_PLAN
    assert can_use_type("plus", "crossword", catalog).reason == DenialReason.UNKNOWN_QUESTION_TYPE


def test_document_types_by_plan(catalog):
    assert can_use_doc_type("basic", "docx", catalog)
    denied = can_use_doc_type("basic", "pdf", catalog)
    assert denied.reason == DenialReason.PLAN_RESTRICTION
    assert denied.required_plan_id == "essentials"
    assert not can_use_doc_type("plus", "pptx", catalog)
    assert can_use_doc_type("advanced", "pptx", catalog)


def test_document_type_normalization(catalog):
    assert normalize_document_type("Lecture Notes.PDF") == "pdf"
    assert normalize_document_type("application/pdf") == "pdf"
    assert normalize_document_type("image/png") is None
    assert can_use_doc_type("essentials", "notes.pdf", catalog)
    assert can_use_doc_type("starter", "exe", catalog).reason == DenialReason.UNSUPPORTED_DOCUMENT_TYPE


def test_upload_size_limits(catalog):
    assert can_upload_size("starter", 10 * MB, catalog)
    decision = can_upload_size("starter", 10 * MB + 1, catalog)
    assert decision.reason == DenialReason.FILE_TOO_LARGE
    assert decision.required_plan_id == "basic"
    assert can_upload_size("advanced", 100 * MB, catalog)
    assert can_upload_size("advanced", 101 * MB, catalog).required_plan_id is None


def test_links_require_a_plan_with_link_support(catalog):
    assert not can_use_link("basic", "https://example.com/article", catalog)
    assert can_use_link("essentials", "https://example.com/article", catalog)
    assert can_use_link("plus", "ftp://example.com", catalog).reason == DenialReason.INVALID_LINK


def test_generation_request_first_denial_wins(catalog):
    decision = validate_generation_request(
        "basic", ["multiple_choice", "essay"], document_type="pdf", catalog=catalog,
    )
    assert decision.reason == DenialReason.PLAN_RESTRICTION
    assert "essay" in decision.message

    ok = validate_generation_request(
        "plus", ["multiple_choice", "fill_in_the_blank"], document_type="pdf",
        document_size_bytes=5 * MB, catalog=catalog,
    )
    assert ok.allowed
    assert ok.to_dict()["reason"] is None
