"""
Unit tests for generation enforcement.
Tests plan restrictions, cycle quota enforcement and usage recording.
"""
import pytest

from app.core.errors import AccessDenied, QuotaExceeded
from app.core.quota_guard import authorize_generation, record_generation
from conftest import auth_headers

MB = 1024 * 1024


@pytest.fixture
def basic_user(make_user, gateway):
    return make_user(email="basic@example.com", plan_id="basic", subscription=gateway.add_subscription("basic"))


def test_plan_restriction_raises_access_denied(db, catalog, ledger, make_user):
    user = make_user()

    with pytest.raises(AccessDenied) as exc_info:
        authorize_generation(db, user, catalog, ledger, ["essay"], 5)

    error = exc_info.value
    assert error.status_code == 402
    assert error.detail["reason"] == "PLAN_RESTRICTION"
    assert error.detail["plan"] == "starter"
    assert error.detail["required_plan_id"] == "advanced"


def test_oversized_document_denied(db, catalog, ledger, basic_user):
    with pytest.raises(AccessDenied) as exc_info:
        authorize_generation(
            db, basic_user, catalog, ledger, ["multiple_choice"], 5,
            document_type="docx", document_size_bytes=30 * MB,
        )
    assert exc_info.value.detail["reason"] == "FILE_TOO_LARGE"


def test_quota_exceeded_reports_remaining(db, catalog, ledger, basic_user):
    record_generation(db, basic_user, catalog, ledger, 48, subject="biology")

    with pytest.raises(QuotaExceeded) as exc_info:
        authorize_generation(db, basic_user, catalog, ledger, ["multiple_choice"], 5, subject="biology")

    error = exc_info.value
    assert error.status_code == 429
    assert error.detail["remaining"] == 2
    assert error.detail["limit"] == 50
    assert error.detail["used"] == 48
    assert error.detail["requested"] == 5
    assert "2 of 50" in error.message


def test_authorized_request_returns_check_without_recording(db, catalog, ledger, basic_user):
    check = authorize_generation(db, basic_user, catalog, ledger, ["multiple_choice", "true_false"], 10)
    assert check.allowed is True
    assert check.remaining == 50
    assert ledger.usage_summary(db, basic_user).used == 0


def test_record_generation_returns_cycle_total(db, catalog, ledger, basic_user):
    assert record_generation(db, basic_user, catalog, ledger, 7, subject="chemistry") == 7
    assert record_generation(db, basic_user, catalog, ledger, 3, subject="chemistry") == 10


def test_preflight_endpoint_plan_restriction(client, make_user):
    make_user(email="free@example.com")

    response = client.post(
        "/generation/preflight",
        json={"question_types": ["essay"], "question_count": 3},
        headers=auth_headers("free@example.com"),
    )

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["error"] == "plan_restriction"
    assert detail["required_plan_id"] == "advanced"


def test_preflight_endpoint_quota_exceeded(client, db, catalog, ledger, basic_user):
    record_generation(db, basic_user, catalog, ledger, 48)

    response = client.post(
        "/generation/preflight",
        json={"question_types": ["multiple_choice"], "question_count": 5},
        headers=auth_headers("basic@example.com"),
    )

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["error"] == "quota_exceeded"
    assert detail["remaining"] == 2


def test_preflight_then_record(client, basic_user):
    headers = auth_headers("basic@example.com")

    preflight = client.post(
        "/generation/preflight",
        json={"question_types": ["multiple_choice"], "question_count": 5, "subject": "History"},
        headers=headers,
    )
    assert preflight.status_code == 200
    assert preflight.json()["allowed"] is True
    assert preflight.json()["remaining"] == 50

    record = client.post("/generation/record", json={"question_count": 5, "subject": "History"}, headers=headers)
    assert record.status_code == 200
    assert record.json() == {"recorded": 5, "total": 5}


def test_preflight_rejects_zero_questions(client, basic_user):
    response = client.post(
        "/generation/preflight",
        json={"question_types": ["multiple_choice"], "question_count": 0},
        headers=auth_headers("basic@example.com"),
    )
    assert response.status_code == 422
