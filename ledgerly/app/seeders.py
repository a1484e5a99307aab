import logging
from sqlalchemy.orm import Session

from .models import ExpenseCategory

logger = logging.getLogger(__name__)

# (name, Font Awesome icon)
DEFAULT_EXPENSE_CATEGORIES = [
    ("Housing", "home"),
    ("Transportation", "car"),
    ("Food", "utensils"),
    ("Utilities", "bolt"),
    ("Health", "medkit"),
    ("Entertainment", "film"),
    ("Shopping", "shopping-cart"),
    ("Personal", "user"),
    ("Education", "graduation-cap"),
    ("Savings & Investments", "piggy-bank"),
    ("Other", "ellipsis-h"),
]


def seed_expense_categories(db: Session) -> int:
    """Insert the default expense categories that are missing. Returns how many were added."""
    existing = {name for (name,) in db.query(ExpenseCategory.name).all()}

    added = 0
    for name, icon in DEFAULT_EXPENSE_CATEGORIES:
        if name in existing:
            continue
        db.add(ExpenseCategory(name=name, icon_fa_name=icon))
        added += 1

    if added:
        db.commit()
        logger.info(f"Seeded {added} expense categories")
    return added
