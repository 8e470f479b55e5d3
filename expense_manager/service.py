from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from expense_manager import analytics
from expense_manager.config import Settings
from expense_manager.errors import (
    AuthenticationInvalid,
    Forbidden,
    InvalidCredentials,
    NotFound,
    ValidationFailed,
)
from expense_manager.kv_store import KeyValueStore
from expense_manager.schemas import (
    CategoryPayload,
    CategoryType,
    LoginPayload,
    PasswordPayload,
    ProfilePayload,
    ProjectPayload,
    RegisterPayload,
    SubcategoryPayload,
    TransactionPayload,
    UserUpdatePayload,
)
from expense_manager.security import (
    MAX_PASSWORD_BYTES,
    Identity,
    decode_token,
    ensure_can_modify,
    hash_password,
    issue_token,
    parse_bearer_token,
    password_too_long,
    require_admin,
    verify_password,
)
from expense_manager.sql_store import SqlStore
from expense_manager.store import (
    CATEGORIES,
    EXPENSES,
    INCOMES,
    PROJECTS,
    SUBCATEGORIES,
    TRANSACTION_KINDS,
    USERS,
    Query,
    Record,
    SearchClause,
    Store,
)

logger = logging.getLogger(__name__)

OWNER_FIELDS = {
    CATEGORIES: "created_by",
    SUBCATEGORIES: "created_by",
    PROJECTS: "owner_id",
    EXPENSES: "user_id",
    INCOMES: "user_id",
}
LABELS = {
    USERS: "User",
    CATEGORIES: "Category",
    SUBCATEGORIES: "Subcategory",
    PROJECTS: "Project",
    EXPENSES: "Expense",
    INCOMES: "Income",
}
PROJECT_SEARCH_FIELDS = ("name", "description")
TRANSACTION_SEARCH_FIELDS = ("remarks",)
MAX_TREND_MONTHS = 120
MAX_PAGE_SIZE = 100


def build_store(settings: Settings) -> Store:
    if settings.storage_backend == "kv":
        return KeyValueStore()
    return SqlStore.from_url(settings.sqlalchemy_url())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validated(payload):
    try:
        return type(payload).validate_payload(payload)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc


class LedgerService:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.settings = settings
        self.today = today

    # Authentication

    def register(self, payload: RegisterPayload) -> tuple[str, Record]:
        payload = validated(payload)
        if payload.role == "admin" and not self.settings.allow_admin_signup:
            raise Forbidden("Admin accounts must be created by an administrator.")
        self._ensure_email_available(payload.email)
        user = self.store.insert(
            USERS,
            {
                "name": payload.name,
                "email": payload.email,
                "password_hash": hash_password(payload.password),
                "role": payload.role,
                "created_at": utcnow(),
            },
        )
        logger.info("Registered user %s with role %s", user["id"], user["role"])
        return self._token_for(user), user

    def login(self, payload: LoginPayload) -> tuple[str, Record]:
        email = payload.email.strip().lower()
        user = self._user_by_email(email) if email else None
        if not user or not payload.password or not verify_password(payload.password, user["password_hash"]):
            logger.warning("Failed login attempt")
            raise InvalidCredentials("Invalid credentials.")
        logger.info("User %s logged in", user["id"])
        return self._token_for(user), user

    def authenticate(self, authorization: str | None) -> Identity:
        token = parse_bearer_token(authorization)
        claims = decode_token(token, self.settings.jwt_secret)
        user = self.store.get(USERS, claims.id)
        if not user:
            raise AuthenticationInvalid("Invalid token.")
        return Identity(id=user["id"], email=user["email"], role=user["role"])

    # Users

    def current_user(self, caller: Identity) -> Record:
        return self._load(USERS, caller.id)

    def list_users(self, caller: Identity) -> list[Record]:
        require_admin(caller)
        return self.store.find(USERS, Query(order_by=("id",)))

    def update_user(self, caller: Identity, user_id: int, payload: UserUpdatePayload) -> Record:
        require_admin(caller)
        payload = validated(payload)
        self._load(USERS, user_id)
        values = payload.model_dump(exclude_none=True)
        if "email" in values:
            self._ensure_email_available(values["email"], exclude_id=user_id)
        values["updated_at"] = utcnow()
        updated = self.store.update(USERS, user_id, values)
        if not updated:
            raise NotFound("User not found.")
        logger.info("Admin %s updated user %s", caller.id, user_id)
        return updated

    def update_profile(self, caller: Identity, payload: ProfilePayload) -> Record:
        payload = validated(payload)
        self._ensure_email_available(payload.email, exclude_id=caller.id)
        updated = self.store.update(
            USERS,
            caller.id,
            {"name": payload.name, "email": payload.email, "updated_at": utcnow()},
        )
        if not updated:
            raise NotFound("User not found.")
        return updated

    def change_password(self, caller: Identity, payload: PasswordPayload) -> None:
        payload = validated(payload)
        user = self._load(USERS, caller.id)
        if not verify_password(payload.current_password, user["password_hash"]):
            raise ValidationFailed("Incorrect current password.")
        self.store.update(
            USERS,
            caller.id,
            {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()},
        )
        logger.info("User %s changed password", caller.id)

    def designate_admin(self, email: str, password: str, name: str) -> Record:
        email = email.strip().lower()
        name = name.strip()
        if not email or not password or not name:
            raise ValidationFailed("Name, email and password are required.")
        if password_too_long(password):
            raise ValidationFailed(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
        for admin in self.store.find(USERS, Query(filters={"role": "admin"})):
            self.store.update(USERS, admin["id"], {"role": "user", "updated_at": utcnow()})
            logger.info("Demoted admin %s", admin["id"])
        values = {"name": name, "password_hash": hash_password(password), "role": "admin"}
        existing = self._user_by_email(email)
        if existing:
            values["updated_at"] = utcnow()
            return self.store.update(USERS, existing["id"], values)
        return self.store.insert(USERS, {**values, "email": email, "created_at": utcnow()})

    # Categories and subcategories

    def list_categories(
        self, caller: Identity, category_type: str | None = None, active: bool | None = None
    ) -> list[Record]:
        filters: dict[str, Any] = {}
        if category_type:
            try:
                filters["type"] = CategoryType.validate(category_type)
            except ValueError as exc:
                raise ValidationFailed(str(exc)) from exc
        if active is not None:
            filters["is_active"] = active
        return self.store.find(CATEGORIES, Query(filters=filters, order_by=("name", "id")))

    def get_category(self, caller: Identity, category_id: int) -> Record:
        return self._load(CATEGORIES, category_id)

    def create_category(self, caller: Identity, payload: CategoryPayload) -> Record:
        payload = validated(payload)
        return self.store.insert(
            CATEGORIES,
            {**payload.model_dump(), "created_by": caller.id, "created_at": utcnow()},
        )

    def update_category(self, caller: Identity, category_id: int, payload: CategoryPayload) -> Record:
        payload = validated(payload)
        self._owned(caller, CATEGORIES, category_id)
        return self._mutate(CATEGORIES, category_id, payload.model_dump())

    def delete_category(self, caller: Identity, category_id: int) -> None:
        self._owned(caller, CATEGORIES, category_id)
        subcategories = self.store.find(SUBCATEGORIES, Query(filters={"category_id": category_id}))
        for kind in TRANSACTION_KINDS:
            self.store.detach(kind, "category_id", category_id)
            for subcategory in subcategories:
                self.store.detach(kind, "subcategory_id", subcategory["id"])
        self.store.detach(SUBCATEGORIES, "category_id", category_id)
        self._delete(caller, CATEGORIES, category_id)

    def list_subcategories(self, caller: Identity, category_id: int | None = None) -> list[Record]:
        filters = {"category_id": category_id} if category_id is not None else {}
        return self.store.find(SUBCATEGORIES, Query(filters=filters, order_by=("name", "id")))

    def get_subcategory(self, caller: Identity, subcategory_id: int) -> Record:
        return self._load(SUBCATEGORIES, subcategory_id)

    def create_subcategory(self, caller: Identity, payload: SubcategoryPayload) -> Record:
        payload = validated(payload)
        self._load(CATEGORIES, payload.category_id)
        return self.store.insert(
            SUBCATEGORIES,
            {**payload.model_dump(), "created_by": caller.id, "created_at": utcnow()},
        )

    def update_subcategory(
        self, caller: Identity, subcategory_id: int, payload: SubcategoryPayload
    ) -> Record:
        payload = validated(payload)
        self._owned(caller, SUBCATEGORIES, subcategory_id)
        self._load(CATEGORIES, payload.category_id)
        return self._mutate(SUBCATEGORIES, subcategory_id, payload.model_dump())

    def delete_subcategory(self, caller: Identity, subcategory_id: int) -> None:
        self._owned(caller, SUBCATEGORIES, subcategory_id)
        for kind in TRANSACTION_KINDS:
            self.store.detach(kind, "subcategory_id", subcategory_id)
        self._delete(caller, SUBCATEGORIES, subcategory_id)

    # Projects

    def list_projects(
        self, caller: Identity, page: int = 1, limit: int = 10, search: str | None = None
    ) -> tuple[list[Record], int]:
        filters = self._ownership_filter(caller, PROJECTS)
        clause = None
        if search and search.strip():
            clause = SearchClause(term=search.strip(), fields=PROJECT_SEARCH_FIELDS)
        return self._page(PROJECTS, filters, clause, ("start_date", "id"), page, limit)

    def get_project(self, caller: Identity, project_id: int) -> Record:
        return self._owned(caller, PROJECTS, project_id)

    def create_project(self, caller: Identity, payload: ProjectPayload) -> Record:
        payload = validated(payload)
        values = payload.model_dump()
        values["start_date"] = values["start_date"] or self.today()
        if values["end_date"] and values["start_date"] > values["end_date"]:
            raise ValidationFailed("Start date must be on or before end date.")
        return self.store.insert(PROJECTS, {**values, "owner_id": caller.id, "created_at": utcnow()})

    def update_project(self, caller: Identity, project_id: int, payload: ProjectPayload) -> Record:
        payload = validated(payload)
        existing = self._owned(caller, PROJECTS, project_id)
        values = payload.model_dump()
        values["start_date"] = values["start_date"] or existing["start_date"]
        if values["start_date"] and values["end_date"] and values["start_date"] > values["end_date"]:
            raise ValidationFailed("Start date must be on or before end date.")
        return self._mutate(PROJECTS, project_id, values)

    def delete_project(self, caller: Identity, project_id: int) -> None:
        self._owned(caller, PROJECTS, project_id)
        for kind in TRANSACTION_KINDS:
            self.store.detach(kind, "project_id", project_id)
        self._delete(caller, PROJECTS, project_id)

    # Expenses and incomes

    def list_transactions(
        self,
        caller: Identity,
        kind: str,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        category_id: int | None = None,
        project_id: int | None = None,
        user_id: int | None = None,
    ) -> tuple[list[Record], int]:
        filters = self._ownership_filter(caller, kind)
        if caller.is_admin and user_id is not None:
            filters["user_id"] = user_id
        if category_id is not None:
            filters["category_id"] = category_id
        if project_id is not None:
            filters["project_id"] = project_id
        clause = None
        if search and search.strip():
            term = search.strip()
            matching_categories = frozenset(
                row["id"]
                for row in self.store.find(
                    CATEGORIES, Query(search=SearchClause(term=term, fields=("name",)))
                )
            )
            clause = SearchClause(
                term=term,
                fields=TRANSACTION_SEARCH_FIELDS,
                related={"category_id": matching_categories},
            )
        return self._page(kind, filters, clause, ("date", "id"), page, limit)

    def get_transaction(self, caller: Identity, kind: str, record_id: int) -> Record:
        return self._owned(caller, kind, record_id)

    def create_transaction(self, caller: Identity, kind: str, payload: TransactionPayload) -> Record:
        payload = validated(payload)
        self._check_references(payload)
        return self.store.insert(
            kind, {**payload.model_dump(), "user_id": caller.id, "created_at": utcnow()}
        )

    def update_transaction(
        self, caller: Identity, kind: str, record_id: int, payload: TransactionPayload
    ) -> Record:
        payload = validated(payload)
        self._owned(caller, kind, record_id)
        self._check_references(payload)
        return self._mutate(kind, record_id, payload.model_dump())

    def delete_transaction(self, caller: Identity, kind: str, record_id: int) -> None:
        self._owned(caller, kind, record_id)
        self._delete(caller, kind, record_id)

    # Analytics

    def dashboard_stats(self, caller: Identity) -> analytics.DashboardStats:
        return analytics.dashboard_stats(
            self._entries(caller, EXPENSES), self._entries(caller, INCOMES), self.today()
        )

    def category_breakdown(self, caller: Identity, kind: str = EXPENSES) -> list[analytics.CategoryTotal]:
        kind = (kind or EXPENSES).strip().lower()
        if kind not in TRANSACTION_KINDS:
            raise ValidationFailed("type must be 'expense' or 'income'.")
        names = {row["id"]: row["name"] for row in self.store.find(CATEGORIES)}
        return analytics.category_breakdown(self._entries(caller, kind), names)

    def monthly_trends(self, caller: Identity, months: int = 12) -> list[analytics.MonthBucket]:
        if months < 1 or months > MAX_TREND_MONTHS:
            raise ValidationFailed(f"months must be between 1 and {MAX_TREND_MONTHS}.")
        return analytics.monthly_trends(
            self._entries(caller, EXPENSES), self._entries(caller, INCOMES), months, self.today()
        )

    def project_breakdown(self, caller: Identity) -> list[analytics.ProjectTotals]:
        expenses = self._entries(caller, EXPENSES)
        incomes = self._entries(caller, INCOMES)
        projects = self.store.find(PROJECTS, Query(order_by=("id",)))
        if not caller.is_admin:
            referenced = {entry.project_id for entry in expenses + incomes if entry.project_id is not None}
            projects = [
                row for row in projects if row["owner_id"] == caller.id or row["id"] in referenced
            ]
        refs = [analytics.ProjectRef(id=row["id"], name=row["name"]) for row in projects]
        return analytics.project_breakdown(refs, expenses, incomes)

    # Helpers

    def _token_for(self, user: Record) -> str:
        identity = Identity(id=user["id"], email=user["email"], role=user["role"])
        return issue_token(identity, self.settings.jwt_secret, self.settings.token_ttl)

    def _user_by_email(self, email: str) -> Record | None:
        rows = self.store.find(USERS, Query(filters={"email": email}, limit=1))
        return rows[0] if rows else None

    def _ensure_email_available(self, email: str, exclude_id: int | None = None) -> None:
        existing = self._user_by_email(email)
        if existing and existing["id"] != exclude_id:
            raise ValidationFailed("Email already exists.")

    def _load(self, kind: str, record_id: int) -> Record:
        row = self.store.get(kind, record_id)
        if not row:
            raise NotFound(f"{LABELS[kind]} not found.")
        return row

    def _owned(self, caller: Identity, kind: str, record_id: int) -> Record:
        row = self._load(kind, record_id)
        ensure_can_modify(caller, row.get(OWNER_FIELDS[kind]))
        return row

    def _mutate(self, kind: str, record_id: int, values: dict[str, Any]) -> Record:
        updated = self.store.update(kind, record_id, {**values, "updated_at": utcnow()})
        if not updated:
            raise NotFound(f"{LABELS[kind]} not found.")
        return updated

    def _delete(self, caller: Identity, kind: str, record_id: int) -> None:
        if not self.store.delete(kind, record_id):
            raise NotFound(f"{LABELS[kind]} not found.")
        logger.info("User %s deleted %s %s", caller.id, kind, record_id)

    def _ownership_filter(self, caller: Identity, kind: str) -> dict[str, Any]:
        if caller.is_admin:
            return {}
        return {OWNER_FIELDS[kind]: caller.id}

    def _page(
        self,
        kind: str,
        filters: dict[str, Any],
        clause: SearchClause | None,
        order_by: tuple[str, ...],
        page: int,
        limit: int,
    ) -> tuple[list[Record], int]:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive.")
        if limit > MAX_PAGE_SIZE:
            raise ValidationFailed(f"limit cannot exceed {MAX_PAGE_SIZE}.")
        query = Query(
            filters=filters,
            search=clause,
            order_by=order_by,
            descending=True,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return self.store.find(kind, query), self.store.count(kind, query)

    def _check_references(self, payload: TransactionPayload) -> None:
        self._load(CATEGORIES, payload.category_id)
        if payload.subcategory_id is not None:
            subcategory = self._load(SUBCATEGORIES, payload.subcategory_id)
            if subcategory["category_id"] != payload.category_id:
                raise ValidationFailed("Subcategory does not belong to the selected category.")
        if payload.project_id is not None:
            self._load(PROJECTS, payload.project_id)

    def _entries(self, caller: Identity, kind: str) -> list[analytics.Entry]:
        rows = self.store.find(kind, Query(filters=self._ownership_filter(caller, kind)))
        return [
            analytics.Entry(
                amount=row["amount"],
                date=row["date"],
                category_id=row.get("category_id"),
                project_id=row.get("project_id"),
            )
            for row in rows
        ]
