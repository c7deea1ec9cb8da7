# =============================================================================
# Unit Tests — Expense Categories and Answer Confidence
# =============================================================================

from __future__ import annotations

from payrollpro.services.expenses import (
    EXPENSE_CATEGORIES,
    estimate_confidence,
    find_relevant_categories,
    format_categories_for_prompt,
    get_expense_category,
)


def _ids(categories):
    return [c.id for c in categories]


class TestFindRelevantCategories:
    def test_single_category(self):
        assert _ids(find_relevant_categories("Uber to the airport and a hotel night")) == ["travel"]

    def test_word_start_match(self):
        assert _ids(find_relevant_categories("New laptop and a software subscription")) == [
            "technology",
        ]

    def test_multiple_categories_in_registry_order(self):
        assert _ids(find_relevant_categories("Client dinner after the flight")) == [
            "travel", "meals",
        ]

    def test_short_keyword_needs_whole_word(self):
        assert _ids(find_relevant_categories("Is this ad deductible?")) == ["marketing"]
        assert len(find_relevant_categories("Any additional fees?")) == len(EXPENSE_CATEGORIES)

    def test_case_insensitive(self):
        assert _ids(find_relevant_categories("GAS and PARKING")) == ["vehicle"]


class TestRegistry:
    def test_lookup(self):
        assert get_expense_category("insurance").name == "Insurance"
        assert get_expense_category("yachts") is None

    def test_to_dict_hides_keywords(self):
        data = get_expense_category("vehicle").to_dict()
        assert set(data) == {"id", "name", "description", "tax_deductible", "examples", "tags"}
        assert data["examples"][0] == "Mileage reimbursement"

    def test_prompt_format(self):
        text = format_categories_for_prompt([get_expense_category("travel")])
        assert text.startswith("== TRAVEL EXPENSES ==")
        assert "Tax Deductible: Yes" in text
        assert "Airfare, Hotel accommodations" in text


class TestEstimateConfidence:
    def test_baseline(self):
        assert estimate_confidence("Travel.") == 0.7

    def test_all_cue_groups(self):
        answer = ("I would categorize this as Travel. It is tax deductible. "
                  "Keep the receipt.")
        assert estimate_confidence(answer) == 1.0

    def test_hedging_lowers_score(self):
        assert estimate_confidence("It may be travel, possibly meals.") == 0.6

    def test_hedging_penalty_is_capped(self):
        assert estimate_confidence("may " * 10) == 0.4
