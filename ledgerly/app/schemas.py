from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from .models import BankConnectionStatus, SubscriptionPlan


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    email: Optional[str] = None


class UserBase(BaseModel):
    email: EmailStr
    full_name: str


class UserCreate(UserBase):
    password: str = Field(min_length=8)


class User(UserBase):
    id: int
    is_active: bool
    subscription_plan: SubscriptionPlan
    subscription_status: str
    created_at: datetime

    class Config:
        from_attributes = True


# Expenses
class ExpenseCategory(BaseModel):
    id: int
    name: str
    icon_fa_name: Optional[str] = None

    class Config:
        from_attributes = True


class Expense(BaseModel):
    id: int
    name: Optional[str] = None
    amount: Decimal
    description: Optional[str] = None
    expense_category_id: int
    is_recurring: bool
    related_date: Optional[datetime] = None
    created_by_id: int

    class Config:
        from_attributes = True


# Bank Integration
class BankingProvider(BaseModel):
    id: str
    name: str


class BankOption(BaseModel):
    id: str
    name: str
    region: str
    logo: Optional[str] = None


class InitiateConnectionRequest(BaseModel):
    provider_name: str


class InitiateConnectionResponse(BaseModel):
    session_id: str
    auth_url: Optional[str] = None
    banks: Optional[List[BankOption]] = None
    requires_bank_selection: bool


class SelectBankRequest(BaseModel):
    session_id: str
    bank_id: str
    provider_name: str


class SelectBankResponse(BaseModel):
    auth_url: str


class CompleteConnectionRequest(BaseModel):
    code: str
    state: str  # session id
    provider_name: str


class CompleteConnectionResponse(BaseModel):
    success: bool
    connection_id: str


class BankConnection(BaseModel):
    id: str
    provider_name: str
    provider_account_id: str
    bank_id: Optional[str] = None
    status: BankConnectionStatus
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BankAccount(BaseModel):
    id: str
    connection_id: str
    account_name: str
    account_type: str
    account_number: Optional[str] = None
    balance: Decimal
    currency: str
    last_updated: Optional[datetime] = None

    class Config:
        from_attributes = True


class BankTransaction(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    date: datetime
    description: str
    merchant_name: str
    category: Optional[str] = None
    pending: bool
    synced: bool
    expense_id: Optional[int] = None

    class Config:
        from_attributes = True


class BankTransactionPage(BaseModel):
    transactions: List[BankTransaction]
    next_cursor: Optional[int] = None


class SyncResponse(BaseModel):
    success: bool
    accounts_synced: List[str]
    failed_accounts: List[str]
    transactions_added: int
    transactions_updated: int


class CategorizeTransactionRequest(BaseModel):
    category: str


class LinkExpenseRequest(BaseModel):
    expense_id: int


class CreateExpenseRequest(BaseModel):
    category_id: int
    notes: Optional[str] = None


class CreateExpenseResponse(BaseModel):
    success: bool
    expense_id: int


class SuccessResponse(BaseModel):
    success: bool


# Subscription
class PlanLimits(BaseModel):
    transactions: int
    bank_connections: int
    savings_goals: int
    historical_data: bool
    ai_insights: bool


class SubscriptionInfo(BaseModel):
    plan: SubscriptionPlan
    status: str
    current_period_end: Optional[datetime] = None
    limits: PlanLimits


class UsageInfo(BaseModel):
    plan: SubscriptionPlan
    bank_connections: int
    bank_connections_limit: int
    transactions_this_month: int
    transactions_limit: int


class FeatureAccess(BaseModel):
    feature: str
    allowed: bool


class CheckoutRequest(BaseModel):
    plan: SubscriptionPlan
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class RedirectUrl(BaseModel):
    url: str
