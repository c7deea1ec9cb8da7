# =============================================================================
# Expense Categories — Registry, Keyword Matching, Answer Confidence
# =============================================================================
#
# Reference data for the Expense Categorizer agent and GET /reference/expense-
# categories. The agent receives the categories relevant to a question as
# tool context; estimate_confidence() scores the agent's answer.
#
# MATCHING:
#   Each category has keyword patterns matched at word starts, so "tech"
#   hits "technology" but "ad" does not hit "additional". A query matching
#   nothing gets every category.
# =============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ExpenseCategory:
    id: str
    name: str
    description: str
    tax_deductible: bool
    examples: tuple[str, ...]
    tags: tuple[str, ...]
    keywords: tuple[str, ...] = field(default=(), repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tax_deductible": self.tax_deductible,
            "examples": list(self.examples),
            "tags": list(self.tags),
        }


EXPENSE_CATEGORIES: tuple[ExpenseCategory, ...] = (
    ExpenseCategory(
        id="travel",
        name="Travel Expenses",
        description="Costs incurred while traveling for business purposes",
        tax_deductible=True,
        examples=("Airfare", "Hotel accommodations", "Rental cars",
                  "Taxis and rideshares", "Train tickets"),
        tags=("travel", "transportation", "lodging", "business trip",
              "airfare", "hotel"),
        keywords=("travel", "trip", "flight", "hotel", "airfare", "taxi",
                  "uber", "lyft"),
    ),
    ExpenseCategory(
        id="meals",
        name="Meals and Entertainment",
        description="Business-related food, beverage, and entertainment expenses",
        tax_deductible=True,
        examples=("Client dinners", "Business lunches", "Team meals",
                  "Conference catering", "Entertainment for business purposes"),
        tags=("meals", "food", "restaurant", "dining", "entertainment", "client"),
        keywords=("meal", "food", "restaurant", "dinner", "lunch",
                  "breakfast", "entertainment"),
    ),
    ExpenseCategory(
        id="office_supplies",
        name="Office Supplies",
        description="Consumable items used in day-to-day office operations",
        tax_deductible=True,
        examples=("Paper", "Pens and markers", "Staplers and paper clips",
                  "Printer ink and toner", "Notebooks and folders"),
        tags=("office", "supplies", "stationery", "consumables", "paper", "ink"),
        keywords=("office", "supplies", "paper", "stationery", "ink", "toner"),
    ),
    ExpenseCategory(
        id="technology",
        name="Technology and Equipment",
        description="Hardware, software, and tech services for business use",
        tax_deductible=True,
        examples=("Computers and laptops", "Smartphones and tablets",
                  "Software subscriptions", "Printers and scanners",
                  "Cloud storage services"),
        tags=("technology", "equipment", "hardware", "software",
              "subscription", "digital"),
        keywords=("computer", "laptop", "software", "hardware",
                  "subscription", "tech", "equipment"),
    ),
    ExpenseCategory(
        id="professional_services",
        name="Professional Services",
        description="Fees paid to external professionals for specialized services",
        tax_deductible=True,
        examples=("Legal fees", "Accounting services", "Consulting fees",
                  "Freelancer payments", "Professional memberships"),
        tags=("professional", "services", "consultant", "legal",
              "accounting", "freelancer"),
        keywords=("service", "consultant", "legal", "lawyer", "accounting",
                  "professional", "freelancer"),
    ),
    ExpenseCategory(
        id="marketing",
        name="Marketing and Advertising",
        description="Costs associated with promoting the business and its "
                    "products/services",
        tax_deductible=True,
        examples=("Online advertising", "Print advertisements",
                  "Marketing materials", "Trade show expenses",
                  "Social media promotions"),
        tags=("marketing", "advertising", "promotion", "branding", "ads", "media"),
        keywords=("marketing", "advertising", "promotion", "branding", "ad",
                  "social media"),
    ),
    ExpenseCategory(
        id="training",
        name="Training and Education",
        description="Expenses related to professional development and "
                    "employee training",
        tax_deductible=True,
        examples=("Conference registration fees", "Workshop costs",
                  "Online courses", "Educational books and materials",
                  "Professional certification expenses"),
        tags=("training", "education", "learning", "development",
              "conference", "workshop"),
        keywords=("training", "education", "conference", "workshop",
                  "course", "certification"),
    ),
    ExpenseCategory(
        id="rent_utilities",
        name="Rent and Utilities",
        description="Office space costs and associated utility expenses",
        tax_deductible=True,
        examples=("Office rent", "Electricity", "Water", "Internet service",
                  "Phone service"),
        tags=("rent", "lease", "utilities", "office space", "internet",
              "electricity"),
        keywords=("rent", "lease", "office space", "utility", "utilities",
                  "electric", "internet", "phone"),
    ),
    ExpenseCategory(
        id="insurance",
        name="Insurance",
        description="Business insurance premiums and related costs",
        tax_deductible=True,
        examples=("General liability insurance", "Professional liability insurance",
                  "Property insurance", "Workers' compensation insurance",
                  "Health insurance"),
        tags=("insurance", "policy", "premium", "coverage", "liability",
              "protection"),
        keywords=("insurance", "policy", "premium", "coverage", "liability"),
    ),
    ExpenseCategory(
        id="vehicle",
        name="Vehicle Expenses",
        description="Costs associated with business use of vehicles",
        tax_deductible=True,
        examples=("Mileage reimbursement", "Fuel", "Vehicle maintenance",
                  "Car insurance (business portion)", "Parking fees"),
        tags=("vehicle", "car", "automobile", "mileage", "transportation", "fuel"),
        keywords=("vehicle", "car", "mileage", "fuel", "gas", "parking"),
    ),
)

_BY_ID = {c.id: c for c in EXPENSE_CATEGORIES}

# Keywords of three letters or fewer must match a whole word (plural allowed);
# longer ones match at a word start.
_PATTERNS = {
    c.id: [
        re.compile(
            rf"\b{re.escape(kw)}s?\b" if len(kw) <= 3 else rf"\b{re.escape(kw)}",
            re.IGNORECASE,
        )
        for kw in c.keywords
    ]
    for c in EXPENSE_CATEGORIES
}


def get_expense_category(category_id: str) -> ExpenseCategory | None:
    return _BY_ID.get(category_id)


def find_relevant_categories(query: str) -> list[ExpenseCategory]:
    """Categories whose keywords appear in `query`; all of them if none do."""
    matches = [
        category
        for category in EXPENSE_CATEGORIES
        if any(p.search(query) for p in _PATTERNS[category.id])
    ]
    return matches or list(EXPENSE_CATEGORIES)


def format_categories_for_prompt(categories: list[ExpenseCategory]) -> str:
    """Render categories as the tool context block the agent receives."""
    blocks = []
    for c in categories:
        blocks.append(
            f"== {c.name.upper()} ==\n"
            f"Description: {c.description}\n"
            f"Tax Deductible: {'Yes' if c.tax_deductible else 'No'}\n"
            f"Examples: {', '.join(c.examples)}"
        )
    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

_CATEGORISATION_CUES = ("categorize this as", "this expense falls under",
                        "appropriate category")
_TAX_CUES = ("tax deductible", "tax implications", "IRS")
_DOCUMENTATION_CUES = ("documentation", "receipt", "record", "proof")
_UNCERTAINTY = re.compile(
    r"\b(may|might|could be|possibly|unclear|ambiguous|"
    r"additional information needed)\b",
    re.IGNORECASE,
)


def estimate_confidence(response: str) -> float:
    """
    Score an expense answer between 0.0 and 1.0.

    Starts at 0.7, adds 0.1 for each cue group present (a categorisation
    statement, tax treatment, documentation guidance) and subtracts 0.05
    per hedging word, at most 0.3.
    """
    confidence = 0.7
    for cues in (_CATEGORISATION_CUES, _TAX_CUES, _DOCUMENTATION_CUES):
        if any(cue in response for cue in cues):
            confidence += 0.1

    hedges = len(_UNCERTAINTY.findall(response))
    confidence -= min(0.3, hedges * 0.05)
    return round(max(0.0, min(1.0, confidence)), 2)
