from datetime import date, datetime
from decimal import Decimal
from typing import Annotated

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from expense_manager.security import MAX_PASSWORD_BYTES, password_too_long

CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("1e10")

Money = Annotated[Decimal, PlainSerializer(float, return_type=float)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CategoryType:
    values = {"expense", "income"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Category type must be 'expense' or 'income'.")
        return normalized


class ProjectStatus:
    values = {"active", "completed", "on-hold"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace("_", "-")
        if normalized not in cls.values:
            raise ValueError("Project status must be 'active', 'completed', or 'on-hold'.")
        return normalized


class Role:
    values = {"admin", "user"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Role must be 'admin' or 'user'.")
        return normalized


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized or "@" not in normalized:
        raise ValueError("A valid email is required.")
    return normalized


def _check_password(value: str) -> str:
    if password_too_long(value):
        raise ValueError(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
    return value


class RegisterPayload(CamelModel):
    name: str = ""
    email: str = ""
    password: str = ""
    role: str | None = None

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.name = payload.name.strip()
        if not payload.name or not payload.email.strip() or not payload.password:
            raise ValueError("Name, email and password are required.")
        payload.password = _check_password(payload.password)
        payload.email = _normalize_email(payload.email)
        payload.role = Role.validate(payload.role) if payload.role else "user"
        return payload


class LoginPayload(CamelModel):
    email: str = ""
    password: str = ""


class ProfilePayload(CamelModel):
    name: str = ""
    email: str = ""

    @classmethod
    def validate_payload(cls, payload: "ProfilePayload") -> "ProfilePayload":
        payload.name = payload.name.strip()
        if not payload.name or not payload.email.strip():
            raise ValueError("Name and email are required.")
        payload.email = _normalize_email(payload.email)
        return payload


class PasswordPayload(CamelModel):
    current_password: str = ""
    new_password: str = ""

    @classmethod
    def validate_payload(cls, payload: "PasswordPayload") -> "PasswordPayload":
        if not payload.current_password or not payload.new_password:
            raise ValueError("Current and new password are required.")
        payload.new_password = _check_password(payload.new_password)
        return payload


class UserUpdatePayload(CamelModel):
    name: str | None = None
    email: str | None = None
    role: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserUpdatePayload") -> "UserUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Name cannot be empty.")
        if payload.email is not None:
            payload.email = _normalize_email(payload.email)
        if payload.role is not None:
            payload.role = Role.validate(payload.role)
        return payload


class UserResponse(CamelModel):
    id: int
    name: str
    email: str
    role: str
    created_at: datetime | None = None


class CategoryPayload(CamelModel):
    name: str = ""
    type: str = ""
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.type = CategoryType.validate(payload.type)
        return payload


class CategoryResponse(CamelModel):
    id: int
    name: str
    type: str
    is_active: bool
    created_by: int | None = None
    created_at: datetime | None = None


class SubcategoryPayload(CamelModel):
    name: str = ""
    category_id: int | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "SubcategoryPayload") -> "SubcategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Subcategory name required.")
        if payload.category_id is None:
            raise ValueError("Category required.")
        return payload


class SubcategoryResponse(CamelModel):
    id: int
    name: str
    category_id: int | None = None
    is_active: bool
    created_by: int | None = None
    created_at: datetime | None = None


class ProjectPayload(CamelModel):
    name: str = Field("", validation_alias=AliasChoices("name", "ProjectName"))
    description: str | None = Field(None, validation_alias=AliasChoices("description", "Description"))
    start_date: date | None = Field(
        None, validation_alias=AliasChoices("startDate", "start_date", "ProjectStartDate")
    )
    end_date: date | None = Field(
        None, validation_alias=AliasChoices("endDate", "end_date", "ProjectEndDate")
    )
    status: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ProjectPayload") -> "ProjectPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Project name required.")
        payload.description = payload.description.strip() if payload.description else None
        payload.status = ProjectStatus.validate(payload.status or "active")
        if payload.start_date and payload.end_date and payload.start_date > payload.end_date:
            raise ValueError("Start date must be on or before end date.")
        return payload


class ProjectResponse(CamelModel):
    id: int
    name: str
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    status: str
    owner_id: int | None = None
    created_at: datetime | None = None


class TransactionPayload(CamelModel):
    date: date
    amount: Decimal
    category_id: int | None = None
    subcategory_id: int | None = None
    project_id: int | None = None
    remarks: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.amount < 0:
            raise ValueError("Amount cannot be negative.")
        if payload.amount >= MAX_AMOUNT:
            raise ValueError("Amount is too large.")
        if payload.amount != payload.amount.quantize(CENT):
            raise ValueError("Amount must have at most two decimal places.")
        payload.amount = payload.amount.quantize(CENT)
        if payload.category_id is None:
            raise ValueError("Category required.")
        payload.remarks = payload.remarks.strip() if payload.remarks else None
        return payload


class TransactionResponse(CamelModel):
    id: int
    user_id: int | None = None
    date: date
    amount: Money
    category_id: int | None = None
    subcategory_id: int | None = None
    project_id: int | None = None
    remarks: str | None = None
    created_at: datetime | None = None


class DashboardStatsResponse(CamelModel):
    total_expenses: Money
    total_incomes: Money
    balance: Money
    monthly_expenses: Money
    monthly_incomes: Money
    monthly_balance: Money
    expense_count: int
    income_count: int


class CategoryBreakdownEntry(CamelModel):
    category_id: int | None = None
    category_name: str
    total: Money
    count: int
    percentage: Money


class MonthlyTrendBucket(CamelModel):
    month: str
    year: int
    month_key: str
    expenses: Money
    incomes: Money
    balance: Money


class ProjectBreakdownEntry(CamelModel):
    project_id: int
    project_name: str
    total_expenses: Money
    total_incomes: Money
    balance: Money
    expense_count: int
    income_count: int
