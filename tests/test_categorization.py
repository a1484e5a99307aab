"""Tests for keyword and amount based transaction categorization."""

from dataclasses import dataclass
from decimal import Decimal

from ledgerly.app.bank_integration.categorization import (
    UNKNOWN_CATEGORY,
    categorize_transaction,
)
from ledgerly.app.bank_integration.providers.base import Transaction
from ledgerly.app.seeders import DEFAULT_EXPENSE_CATEGORIES


@dataclass
class Category:
    id: int
    name: str


ALL_CATEGORIES = [Category(i + 1, name) for i, (name, _) in enumerate(DEFAULT_EXPENSE_CATEGORIES)]
IDS = {c.name: str(c.id) for c in ALL_CATEGORIES}


def tx(amount="-12.50", merchant="", description=""):
    return Transaction(
        id="t1",
        account_id="a1",
        amount=Decimal(amount),
        date=None,
        description=description,
        merchant_name=merchant,
    )


class TestKeywordTable:
    def test_grocery_merchant(self):
        assert categorize_transaction(tx(merchant="Pingo Doce"), ALL_CATEGORIES) == IDS["Food"]

    def test_keyword_in_description(self):
        result = categorize_transaction(tx(description="EDP electricity"), ALL_CATEGORIES)
        assert result == IDS["Utilities"]

    def test_case_insensitive(self):
        assert categorize_transaction(tx(merchant="NETFLIX.COM"), ALL_CATEGORIES) == IDS["Entertainment"]

    def test_first_table_entry_wins(self):
        # "gas" is both a utility and a transport keyword; Utilities comes first
        assert categorize_transaction(tx(merchant="Gas"), ALL_CATEGORIES) == IDS["Utilities"]

    def test_skips_categories_that_do_not_exist(self):
        # "gas" falls through to Transportation when Utilities is missing
        available = [c for c in ALL_CATEGORIES if c.name != "Utilities"]
        assert categorize_transaction(tx(merchant="Gas"), available) == IDS["Transportation"]

    def test_returns_string_ids(self):
        result = categorize_transaction(tx(merchant="Pingo Doce"), ALL_CATEGORIES)
        assert isinstance(result, str)

    def test_deterministic(self):
        transaction = tx(merchant="Amazon", description="Order 1234")
        results = {categorize_transaction(transaction, ALL_CATEGORIES) for _ in range(5)}
        assert results == {IDS["Shopping"]}


class TestFallbacks:
    def test_recurring_hint_prefers_entertainment(self):
        result = categorize_transaction(tx(merchant="Acme", description="Monthly plan"), ALL_CATEGORIES)
        assert result == IDS["Entertainment"]

    def test_recurring_hint_falls_back_to_utilities(self):
        available = [c for c in ALL_CATEGORIES if c.name != "Entertainment"]
        result = categorize_transaction(tx(merchant="Acme", description="Monthly plan"), available)
        assert result == IDS["Utilities"]

    def test_large_debit_is_housing(self):
        assert categorize_transaction(tx("-600.00", merchant="Acme Corp"), ALL_CATEGORIES) == IDS["Housing"]

    def test_small_debit_is_food(self):
        assert categorize_transaction(tx("-5.00", merchant="Acme Corp"), ALL_CATEGORIES) == IDS["Food"]

    def test_credits_skip_amount_rules(self):
        assert categorize_transaction(tx("600.00", merchant="Acme Corp"), ALL_CATEGORIES) == IDS["Other"]

    def test_boundaries_are_exclusive(self):
        assert categorize_transaction(tx("-500.00", merchant="Acme Corp"), ALL_CATEGORIES) == IDS["Other"]
        assert categorize_transaction(tx("-20.00", merchant="Acme Corp"), ALL_CATEGORIES) == IDS["Other"]

    def test_other_matched_case_insensitively(self):
        available = [Category(5, "OTHER")]
        assert categorize_transaction(tx("-100.00", merchant="Acme Corp"), available) == "5"

    def test_unknown_without_other(self):
        assert categorize_transaction(tx("-100.00", merchant="Acme Corp"), []) == UNKNOWN_CATEGORY
