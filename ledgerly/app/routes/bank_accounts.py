"""
Bank Account Routes

Synced accounts and transactions:
- Listing accounts and paginated transactions
- On-demand sync of a single account
- Categorizing transactions and turning them into expenses
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List

from ledgerly.database import get_db
from ledgerly.app import models, schemas
from ledgerly.app.auth import get_current_active_user
from ledgerly.app.bank_integration.categorization import learn_from_user_categorization
from ledgerly.app.bank_integration.errors import BankingError
from ledgerly.app.bank_integration.factory import ProviderFactory, get_provider_factory
from ledgerly.app.bank_integration.sync import BankSyncService
from .bank_connections import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banking", tags=["banking"])

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def get_owned_account(db: Session, account_id: str, user: models.User) -> models.BankAccount:
    """Load an account whose connection belongs to the user, 404 otherwise."""
    account = db.query(models.BankAccount).join(models.BankConnection).filter(
        models.BankAccount.id == account_id,
        models.BankConnection.user_id == user.id
    ).first()
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Bank account not found"
        )
    return account


def get_owned_transaction(db: Session, transaction_id: str, user: models.User) -> models.BankTransaction:
    """Load a transaction whose account's connection belongs to the user, 404 otherwise."""
    transaction = db.query(models.BankTransaction).join(models.BankAccount).join(models.BankConnection).filter(
        models.BankTransaction.id == transaction_id,
        models.BankConnection.user_id == user.id
    ).first()
    if not transaction:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )
    return transaction


@router.get("/accounts", response_model=List[schemas.BankAccount])
def list_accounts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """List accounts under the user's active connections, most recently updated first."""
    return db.query(models.BankAccount).join(models.BankConnection).filter(
        models.BankConnection.user_id == current_user.id,
        models.BankConnection.status == models.BankConnectionStatus.ACTIVE
    ).order_by(models.BankAccount.last_updated.desc()).all()


@router.get("/accounts/{account_id}/transactions", response_model=schemas.BankTransactionPage)
def list_transactions(
    account_id: str,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    cursor: int = Query(0, ge=0, description="Offset returned as next_cursor by the previous page"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Page through an account's transactions, newest first.

    next_cursor is set only when a full page came back; a full final page
    yields one extra, empty request.
    """
    account = get_owned_account(db, account_id, current_user)

    transactions = db.query(models.BankTransaction).filter(
        models.BankTransaction.account_id == account.id
    ).order_by(
        models.BankTransaction.date.desc(),
        models.BankTransaction.id
    ).offset(cursor).limit(limit).all()

    next_cursor = cursor + limit if len(transactions) == limit else None

    return {'transactions': transactions, 'next_cursor': next_cursor}


@router.post("/accounts/{account_id}/sync", response_model=schemas.SyncResponse)
async def sync_account(
    account_id: str,
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    current_user: models.User = Depends(get_current_active_user)
):
    """Fetch the latest transactions for one account from its provider."""
    account = get_owned_account(db, account_id, current_user)

    service = BankSyncService(db, provider_factory)
    try:
        result = await service.sync_connection(account.connection_id, account_id=account.id)
    except BankingError as e:
        logger.error(f"Sync failed for account {account_id}: {e}")
        raise to_http_exception(e)

    return {
        'success': result.success,
        'accounts_synced': result.accounts_synced,
        'failed_accounts': result.failed_accounts,
        'transactions_added': result.transactions_added,
        'transactions_updated': result.transactions_updated,
    }


@router.post("/transactions/{transaction_id}/categorize", response_model=schemas.SuccessResponse)
def categorize_transaction(
    transaction_id: str,
    request: schemas.CategorizeTransactionRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    transaction = get_owned_transaction(db, transaction_id, current_user)

    transaction.category = request.category
    db.commit()

    learn_from_user_categorization(transaction.id, request.category)
    return {'success': True}


@router.post("/transactions/{transaction_id}/link-expense", response_model=schemas.SuccessResponse)
def link_transaction_to_expense(
    transaction_id: str,
    request: schemas.LinkExpenseRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    transaction = get_owned_transaction(db, transaction_id, current_user)

    expense = db.query(models.Expense).filter(
        models.Expense.id == request.expense_id,
        models.Expense.created_by_id == current_user.id
    ).first()
    if not expense:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Expense not found"
        )

    transaction.expense_id = expense.id
    transaction.synced = True
    db.commit()

    return {'success': True}


@router.post("/transactions/{transaction_id}/create-expense", response_model=schemas.CreateExpenseResponse)
def create_expense_from_transaction(
    transaction_id: str,
    request: schemas.CreateExpenseRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Create an expense from a bank transaction and link the two.

    The expense amount is the transaction's magnitude. Expense and link are
    written in one database transaction.
    """
    transaction = get_owned_transaction(db, transaction_id, current_user)

    category = db.query(models.ExpenseCategory).filter(
        models.ExpenseCategory.id == request.category_id
    ).first()
    if not category:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Expense category not found"
        )

    description = transaction.description or transaction.merchant_name or "Bank transaction"
    if request.notes:
        description = f"{description}\n{request.notes}"

    expense = models.Expense(
        name=transaction.merchant_name or "Bank Transaction",
        amount=abs(transaction.amount),
        description=description,
        expense_category_id=category.id,
        is_recurring=False,
        related_date=transaction.date,
        created_by_id=current_user.id,
    )

    try:
        db.add(expense)
        db.flush()
        transaction.expense_id = expense.id
        transaction.synced = True
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create expense from transaction {transaction_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create expense from transaction"
        )

    return {'success': True, 'expense_id': expense.id}
