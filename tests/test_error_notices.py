"""Tests for the account error notice store."""

import pytest

from jenn.audit.error_notices import ErrorNoticeStore
from jenn.schemas.llm import ErrorType


@pytest.fixture
def notices(tmp_path):
    store = ErrorNoticeStore(tmp_path / "notices.db")
    yield store
    store.close()


class TestErrorNoticeStore:
    def test_add_and_list(self, notices):
        notices.add("a@example.com", ErrorType.INVALID_MODEL, "Model gpt-9 does not exist")

        items = notices.list_for_account("a@example.com")

        assert len(items) == 1
        assert items[0].error_type is ErrorType.INVALID_MODEL
        assert items[0].message == "Model gpt-9 does not exist"

    def test_latest_per_category_wins(self, notices):
        notices.add("a@example.com", ErrorType.INCORRECT_API_KEY, "first")
        notices.add("a@example.com", ErrorType.INCORRECT_API_KEY, "second")
        notices.add("a@example.com", ErrorType.INSUFFICIENT_BALANCE, "top up")

        items = notices.list_for_account("a@example.com")

        assert len(items) == 2
        by_type = {n.error_type: n.message for n in items}
        assert by_type[ErrorType.INCORRECT_API_KEY] == "second"

    def test_accounts_are_separate(self, notices):
        notices.add("a@example.com", ErrorType.INVALID_MODEL, "x")
        assert notices.list_for_account("b@example.com") == []

    def test_clear_one_category(self, notices):
        notices.add("a@example.com", ErrorType.INVALID_MODEL, "x")
        notices.add("a@example.com", ErrorType.INCORRECT_API_KEY, "y")

        assert notices.clear("a@example.com", ErrorType.INVALID_MODEL) == 1
        assert [n.error_type for n in notices.list_for_account("a@example.com")] == [
            ErrorType.INCORRECT_API_KEY
        ]

    def test_clear_all(self, notices):
        notices.add("a@example.com", ErrorType.INVALID_MODEL, "x")
        notices.add("a@example.com", ErrorType.INCORRECT_API_KEY, "y")
        assert notices.clear("a@example.com") == 2
        assert notices.list_for_account("a@example.com") == []
