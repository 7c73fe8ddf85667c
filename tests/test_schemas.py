import os
import sys
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

# Ensure 'src' is on the import path for tests
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from gateway.schemas import ErrorResponse, QuotaResponse, QuotaView
from state.models import QuotaRecord

RESET = datetime(2024, 6, 2, tzinfo=timezone.utc)


def test_quota_view_remaining_never_negative():
    view = QuotaView.build(used=7, total=5, reset_at=RESET)
    assert view.remaining == 0


def test_quota_view_json_uses_camel_case_reset():
    view = QuotaView.build(used=1, total=100, reset_at=RESET)
    assert view.to_json() == {"used": 1, "total": 100, "remaining": 99, "resetAt": "2024-06-02T00:00:00Z"}


def test_quota_view_rejects_non_positive_total():
    with pytest.raises(ValidationError):
        QuotaView.build(used=0, total=0, reset_at=RESET)


def test_quota_response_wraps_view():
    view = QuotaView.build(used=3, total=10, reset_at=RESET)
    payload = QuotaResponse(quota=view).model_dump(mode="json", by_alias=True)
    assert payload == {"quota": {"used": 3, "total": 10, "remaining": 7, "resetAt": "2024-06-02T00:00:00Z"}}


def test_error_response_omits_unset_fields():
    payload = ErrorResponse(code="EMPTY_PROMPT", error="Prompt cannot be empty.").model_dump(
        by_alias=True, exclude_none=True
    )
    assert payload == {"code": "EMPTY_PROMPT", "error": "Prompt cannot be empty."}


def test_quota_record_from_document_ignores_unknown_and_nulls():
    record = QuotaRecord.from_document(
        {"_id": "u1", "used_today": 3, "total_quota": None, "reset_at": datetime(2024, 6, 2), "plan": "pro"}
    )
    assert record.used_today == 3
    assert record.total_quota is None
    assert record.reset_at == RESET
