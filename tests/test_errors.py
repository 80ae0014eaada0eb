"""
tests/test_errors.py — Error Hierarchy & ServiceResult
=======================================================
"""

from __future__ import annotations

import pytest

from bloom.errors import NotFoundError, ServiceResult


class TestServiceResult:
    def test_success_unwraps_value(self):
        result = ServiceResult.success(42)
        assert result
        assert result.unwrap() == 42

    def test_failure_raises_carried_error(self):
        result = ServiceResult.failure(NotFoundError("Event 9 not found"))
        assert not result
        with pytest.raises(NotFoundError, match="Event 9 not found"):
            result.unwrap()

    def test_failure_without_error_still_raises(self):
        with pytest.raises(RuntimeError, match="carries no error"):
            ServiceResult(ok=False).unwrap()
