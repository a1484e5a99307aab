from sqlalchemy import Column, Integer, String, Boolean, DateTime, DECIMAL, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid
from ledgerly.database import Base


class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class BankConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)

    # Billing state, mirrored from Stripe webhooks
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    subscription_plan = Column(SQLEnum(SubscriptionPlan), nullable=False, default=SubscriptionPlan.FREE)
    subscription_status = Column(String(50), nullable=False, default="active")

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    subscriptions = relationship("Subscription", back_populates="user")
    bank_connections = relationship("BankConnection", back_populates="user")
    expenses = relationship("Expense", back_populates="created_by")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=False)
    plan = Column(SQLEnum(SubscriptionPlan), nullable=False)
    status = Column(String(50), nullable=False)
    current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")


class ExpenseCategory(Base):
    __tablename__ = "expense_categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    icon_fa_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    amount = Column(DECIMAL(15, 2), nullable=False)
    description = Column(Text, nullable=True)
    expense_category_id = Column(Integer, ForeignKey("expense_categories.id"), nullable=False)
    is_recurring = Column(Boolean, default=False, nullable=False)
    related_date = Column(DateTime, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    category = relationship("ExpenseCategory")
    created_by = relationship("User", back_populates="expenses")


# Bank Integration Models

class BankConnection(Base):
    __tablename__ = "bank_connections"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_name = Column(String(50), nullable=False)
    provider_account_id = Column(String(255), nullable=False)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Consent-based providers
    consent_id = Column(String(255), nullable=True)
    bank_id = Column(String(255), nullable=True)

    status = Column(SQLEnum(BankConnectionStatus), nullable=False, default=BankConnectionStatus.ACTIVE)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="bank_connections")
    accounts = relationship("BankAccount", back_populates="connection")


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    # Provider-assigned account id
    id = Column(String(255), primary_key=True)
    connection_id = Column(String(64), ForeignKey("bank_connections.id"), nullable=False, index=True)
    account_name = Column(String(255), nullable=False)
    account_type = Column(String(50), nullable=False)
    account_number = Column(String(64), nullable=True)
    balance = Column(DECIMAL(15, 2), default=0)
    currency = Column(String(3), nullable=False)
    last_updated = Column(DateTime, nullable=True)

    connection = relationship("BankConnection", back_populates="accounts")
    transactions = relationship("BankTransaction", back_populates="account")


class BankTransaction(Base):
    __tablename__ = "bank_transactions"

    # Provider-assigned transaction id, the deduplication key
    id = Column(String(255), primary_key=True)
    account_id = Column(String(255), ForeignKey("bank_accounts.id"), nullable=False, index=True)

    amount = Column(DECIMAL(15, 2), nullable=False)
    date = Column(DateTime, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    merchant_name = Column(String(255), nullable=False, default="")
    category = Column(String(100), nullable=True)
    pending = Column(Boolean, nullable=False, default=False)

    # Link to the user's expense records
    synced = Column(Boolean, nullable=False, default=False)
    expense_id = Column(Integer, ForeignKey("expenses.id"), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    account = relationship("BankAccount", back_populates="transactions")
    expense = relationship("Expense")
