from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    investment = "investment"
    cash = "cash"
    credit_card = "credit_card"


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorResponse(BaseModel):
    error: str
    details: Optional[list[ApiErrorDetail]] = None


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class MessageResponse(BaseModel):
    message: str


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str
    password: str = Field(min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        v = value.strip().lower()
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("invalid email format")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginResponse(BaseModel):
    token: str
    id: UUID
    name: str
    email: str


class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    accountType: AccountType = AccountType.checking
    initialBalance: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    color: Optional[str] = Field(default=None, max_length=32)
    icon: Optional[str] = Field(default=None, max_length=64)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    accountType: Optional[AccountType] = None
    color: Optional[str] = Field(default=None, max_length=32)
    icon: Optional[str] = Field(default=None, max_length=64)


class AccountResponse(BaseModel):
    id: UUID
    name: str
    accountType: AccountType
    initialBalance: Decimal
    currentBalance: Decimal
    color: Optional[str] = None
    icon: Optional[str] = None
    createdAt: datetime


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class CategoryUpdate(CategoryCreate):
    pass


class CategoryResponse(BaseModel):
    id: UUID
    name: str
    createdAt: datetime


class TransactionCreate(BaseModel):
    description: str = Field(default="", max_length=255)
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    type: TransactionType = TransactionType.EXPENSE
    date: datetime
    categoryId: UUID
    accountId: UUID

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, value: object) -> object:
        if value is None:
            return TransactionType.EXPENSE
        if isinstance(value, TransactionType):
            value = value.value
        if not isinstance(value, str) or value.strip().upper() not in {"INCOME", "EXPENSE"}:
            raise ValueError("type must be INCOME or EXPENSE")
        return value.strip().upper()

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return as_utc(value)


class TransactionUpdate(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"), max_digits=14, decimal_places=2)
    date: Optional[datetime] = None
    categoryId: Optional[UUID] = None
    accountId: Optional[UUID] = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class TransactionResponse(BaseModel):
    id: UUID
    description: str
    amount: Decimal
    type: TransactionType
    date: datetime
    categoryId: UUID
    accountId: UUID
    transferGroupId: Optional[UUID] = None
    createdAt: datetime


class TransferCreate(BaseModel):
    sourceAccountId: UUID
    destinationAccountId: UUID
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    date: datetime
    description: Optional[str] = Field(default=None, max_length=255)

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return as_utc(value)


class TransferResponse(BaseModel):
    message: str
    transferGroupId: UUID
    outgoing: TransactionResponse
    incoming: TransactionResponse


class AccountBalanceResponse(BaseModel):
    accountId: UUID
    accountName: str
    balance: Decimal
    cachedBalance: Decimal


class PeriodBounds(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None


class AccountPeriodBalanceResponse(BaseModel):
    accountId: UUID
    accountName: str
    balance: Decimal
    openingBalance: Decimal
    closingBalance: Decimal
    netChange: Decimal
    inflow: Decimal
    outflow: Decimal
    period: PeriodBounds


class BalancesRequest(BaseModel):
    accountIds: list[UUID] = Field(min_length=1)
    startDate: date
    endDate: date

    @model_validator(mode="after")
    def validate_period(self) -> "BalancesRequest":
        if self.endDate < self.startDate:
            raise ValueError("endDate must be >= startDate")
        return self


class ReceiptResponse(BaseModel):
    transactionId: UUID
    filename: str
    contentType: str
    size: int
