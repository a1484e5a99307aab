from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from ledgerly.database import get_db
from ..models import ExpenseCategory, User
from ..schemas import ExpenseCategory as ExpenseCategorySchema
from ..auth import get_current_active_user

router = APIRouter(prefix="/expense-categories", tags=["categories"])


@router.get("/", response_model=List[ExpenseCategorySchema])
def get_expense_categories(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    return db.query(ExpenseCategory).order_by(ExpenseCategory.name).all()
