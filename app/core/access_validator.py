"""
Plan-based access checks for question generation.

Pure functions over the plan catalog. Every check returns an AccessDecision
instead of raising, so callers decide how to surface a denial.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlparse

from app.core.plan_catalog import DOCUMENT_TYPES, QUESTION_TYPES, PlanCatalog, get_catalog


class DenialReason(str, Enum):
    PLAN_RESTRICTION = "PLAN_RESTRICTION"
    UNKNOWN_PLAN = "UNKNOWN_PLAN"
    UNKNOWN_QUESTION_TYPE = "UNKNOWN_QUESTION_TYPE"
    UNSUPPORTED_DOCUMENT_TYPE = "UNSUPPORTED_DOCUMENT_TYPE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_LINK = "INVALID_LINK"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    required_plan_id: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "required_plan_id": self.required_plan_id,
        }


ALLOWED = AccessDecision(allowed=True)

# Browser/upload MIME types mapped to the document types plans are defined in
MIME_TO_DOCUMENT_TYPE = {
    "text/plain": "txt",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
}


def normalize_document_type(doc_type: Optional[str]) -> Optional[str]:
    """
    Map a file extension, filename or MIME type to a catalog document type.

    Returns None when it cannot be recognised.
    """
    if not doc_type:
        return None
    value = doc_type.strip().lower()
    if value in MIME_TO_DOCUMENT_TYPE:
        return MIME_TO_DOCUMENT_TYPE[value]
    if "." in value:
        value = value.rsplit(".", 1)[-1]
    return value if value in DOCUMENT_TYPES else None


def _deny(reason: DenialReason, message: str, required_plan_id: Optional[str] = None) -> AccessDecision:
    return AccessDecision(allowed=False, reason=reason, message=message, required_plan_id=required_plan_id)


def _unknown_plan(plan_id: Optional[str]) -> AccessDecision:
    return _deny(DenialReason.UNKNOWN_PLAN, f"Unknown plan: {plan_id}")


def can_use_type(plan_id: str, question_type: str, catalog: Optional[PlanCatalog] = None) -> AccessDecision:
    """Check whether plan_id may generate questions of question_type."""
    catalog = catalog or get_catalog()
    plan = catalog.get(plan_id)
    if plan is None:
        return _unknown_plan(plan_id)

    qtype = (question_type or "").strip().lower()
    if qtype not in QUESTION_TYPES:
        return _deny(DenialReason.UNKNOWN_QUESTION_TYPE, f"Unknown question type: {question_type}")

    if qtype in plan.allowed_question_types:
        return ALLOWED

    required = catalog.cheapest_with(lambda p: qtype in p.allowed_question_types)
    return _deny(
        DenialReason.PLAN_RESTRICTION,
        f"Question type '{qtype}' is not included in the {plan.display_name} plan",
        required.id if required else None,
    )


def can_use_doc_type(plan_id: str, doc_type: str, catalog: Optional[PlanCatalog] = None) -> AccessDecision:
    """Check whether plan_id may upload documents of doc_type (extension, filename or MIME)."""
    catalog = catalog or get_catalog()
    plan = catalog.get(plan_id)
    if plan is None:
        return _unknown_plan(plan_id)

    normalized = normalize_document_type(doc_type)
    if normalized is None:
        return _deny(DenialReason.UNSUPPORTED_DOCUMENT_TYPE, f"Unsupported document type: {doc_type}")

    if normalized in plan.allowed_document_types:
        return ALLOWED

    required = catalog.cheapest_with(lambda p: normalized in p.allowed_document_types)
    return _deny(
        DenialReason.PLAN_RESTRICTION,
        f"Document type '{normalized}' is not included in the {plan.display_name} plan",
        required.id if required else None,
    )


def can_upload_size(plan_id: str, size_bytes: int, catalog: Optional[PlanCatalog] = None) -> AccessDecision:
    catalog = catalog or get_catalog()
    plan = catalog.get(plan_id)
    if plan is None:
        return _unknown_plan(plan_id)

    if size_bytes < 0:
        return _deny(DenialReason.FILE_TOO_LARGE, "Document size cannot be negative")

    if size_bytes <= plan.max_document_size_bytes:
        return ALLOWED

    required = catalog.cheapest_with(lambda p: size_bytes <= p.max_document_size_bytes)
    return _deny(
        DenialReason.FILE_TOO_LARGE,
        f"Document exceeds the {plan.max_document_size_mb}MB limit of the {plan.display_name} plan",
        required.id if required else None,
    )


def can_use_link(plan_id: str, url: str, catalog: Optional[PlanCatalog] = None) -> AccessDecision:
    """Links count as a document type; the URL must also be http(s)."""
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return _deny(DenialReason.INVALID_LINK, f"Invalid link: {url}")
    return can_use_doc_type(plan_id, "link", catalog)


def validate_generation_request(
    plan_id: str,
    question_types: Iterable[str],
    document_type: Optional[str] = None,
    document_size_bytes: Optional[int] = None,
    link: Optional[str] = None,
    catalog: Optional[PlanCatalog] = None,
) -> AccessDecision:
    """
    Run every capability check a generation request needs.

    The first denial wins.
    """
    catalog = catalog or get_catalog()
    if catalog.get(plan_id) is None:
        return _unknown_plan(plan_id)

    for question_type in question_types:
        decision = can_use_type(plan_id, question_type, catalog)
        if not decision:
            return decision

    if link:
        decision = can_use_link(plan_id, link, catalog)
        if not decision:
            return decision

    if document_type:
        decision = can_use_doc_type(plan_id, document_type, catalog)
        if not decision:
            return decision

    if document_size_bytes is not None:
        decision = can_upload_size(plan_id, document_size_bytes, catalog)
        if not decision:
            return decision

    return ALLOWED
