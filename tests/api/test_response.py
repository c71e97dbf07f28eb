from datetime import datetime, timedelta, timezone

import pytest

from core.response import ErrorDetail, PaginatedData, error_response, paginated_response


@pytest.mark.parametrize("total,size,pages", [(0, 20, 0), (1, 20, 1), (20, 20, 1), (21, 20, 2)])
def test_page_count(total, size, pages):
    assert PaginatedData.of([], total, 1, size).pages == pages


def test_paginated_envelope():
    body = paginated_response(items=[1, 2], total=5, page=1, size=2).model_dump(mode="json")
    assert body["success"] is True
    assert body["data"]["pages"] == 3


def test_error_envelope_uses_utc_z():
    tz = timezone(timedelta(hours=5, minutes=30))
    detail = ErrorDetail(type="PaymentTimeout", timestamp=datetime(2026, 1, 1, 5, 30, tzinfo=tz))
    assert detail.model_dump(mode="json")["timestamp"] == "2026-01-01T00:00:00Z"

    body = error_response(code=50002, message="gateway timeout", request_id="req-1").model_dump(mode="json")
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["request_id"] == "req-1"
