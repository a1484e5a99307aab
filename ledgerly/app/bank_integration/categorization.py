"""
Transaction categorization

Best-effort keyword and amount heuristics mapping a bank transaction onto one
of the user's expense categories. Deterministic: the same transaction and
category set always give the same answer.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "unknown"

# Checked in order; the first category with a keyword hit wins
CATEGORY_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Food", (
        "grocery", "groceries", "supermarket", "food", "restaurant", "cafe",
        "coffee", "pizza", "takeaway", "delivery", "uber eats", "deliveroo",
        "continente", "pingo doce", "lidl", "aldi", "auchan", "mini preco",
        "bakery", "pastelaria", "meal", "dinner", "lunch", "breakfast", "snack",
        "mercado", "market", "burger", "mcdonald", "starbucks",
    )),
    ("Housing", (
        "rent", "mortgage", "home", "house", "apartment", "landlord", "realty",
        "renda", "imobiliaria", "building", "property", "lease", "condominio",
    )),
    ("Utilities", (
        "utility", "electric", "electricity", "water", "gas", "sewage", "waste",
        "edp", "galp", "internet", "phone", "mobile", "broadband", "cable", "tv",
        "television", "meo", "nos", "vodafone", "bill", "telecom",
    )),
    ("Transportation", (
        "transport", "transit", "train", "bus", "subway", "metro", "taxi", "uber",
        "fuel", "gas", "petrol", "diesel", "parking", "toll", "car", "auto",
        "maintenance", "repair", "cp", "comboios", "carris", "bolt", "rental",
    )),
    ("Health", (
        "health", "doctor", "hospital", "pharmacy", "medical", "medication",
        "dentist", "healthcare", "clinic", "therapy", "farmacia", "drug", "lab",
        "test", "check-up", "wellness", "fitness", "gym", "insurance",
    )),
    ("Entertainment", (
        "entertainment", "movie", "cinema", "theater", "theatre", "concert",
        "show", "ticket", "netflix", "spotify", "streaming", "game", "gaming",
        "book", "sport", "event", "music", "subscription", "leisure",
    )),
    ("Shopping", (
        "shopping", "retail", "store", "shop", "mall", "clothing", "clothes",
        "apparel", "shoes", "electronics", "gadget", "amazon", "worten", "fnac",
        "primark", "zara", "h&m", "decathlon", "ikea", "furniture",
    )),
    ("Education", (
        "education", "school", "university", "college", "course", "class",
        "tuition", "student", "training", "book", "learning", "academia",
        "workshop", "faculdade", "escola", "universidade", "formation",
    )),
    ("Personal", (
        "personal", "beauty", "haircut", "salon", "spa", "manicure", "pedicure",
        "cosmetics", "hygiene", "gift", "present", "donation", "charity",
    )),
    ("Savings & Investments", (
        "saving", "investment", "bank", "deposit", "withdraw", "transfer",
        "stock", "bond", "fund", "etf", "crypto", "bitcoin", "dividend",
        "interest", "wealth", "portfolio", "asset", "financial", "retirement",
    )),
]

RECURRING_HINTS = ("subscription", "monthly", "recurring")
LARGE_DEBIT = Decimal("500")
SMALL_DEBIT = Decimal("20")


class CategoryLike(Protocol):
    id: object
    name: str


class TransactionLike(Protocol):
    amount: Decimal
    description: str
    merchant_name: str


def categorize_transaction(transaction: TransactionLike, categories: Iterable[CategoryLike]) -> str:
    """
    Pick an expense category id for a transaction.

    Args:
        transaction: Anything with amount, description and merchant_name
        categories: Available expense categories (id, name)

    Returns:
        Category id as a string, or "unknown" if nothing fits and there is
        no "Other" category
    """
    categories = list(categories)

    match = match_transaction_to_category(transaction, categories)
    if match is not None:
        return match

    other = next((c for c in categories if c.name.lower() == "other"), None)
    return str(other.id) if other else UNKNOWN_CATEGORY


def match_transaction_to_category(
    transaction: TransactionLike,
    categories: List[CategoryLike]
) -> Optional[str]:
    """Keyword table first, then the recurring / amount fallbacks."""
    by_name = {c.name: str(c.id) for c in categories}
    search_text = " ".join(
        part for part in (transaction.merchant_name, transaction.description) if part
    ).lower()

    for name, keywords in CATEGORY_KEYWORDS:
        if name in by_name and any(keyword in search_text for keyword in keywords):
            return by_name[name]

    if any(hint in search_text for hint in RECURRING_HINTS):
        for name in ("Entertainment", "Utilities"):
            if name in by_name:
                return by_name[name]

    amount = Decimal(str(transaction.amount))
    if amount < 0 and abs(amount) > LARGE_DEBIT and "Housing" in by_name:
        return by_name["Housing"]

    if amount < 0 and abs(amount) < SMALL_DEBIT and "Food" in by_name:
        return by_name["Food"]

    return None


def learn_from_user_categorization(transaction_id: str, category_id: str) -> None:
    """Record a manual categorization. Only logged for now."""
    logger.info(f"Transaction {transaction_id} categorized by user as {category_id}")
