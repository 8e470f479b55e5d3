import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from expense_manager.config import Settings
from expense_manager.errors import (
    AuthenticationInvalid,
    AuthenticationRequired,
    Forbidden,
    InvalidCredentials,
    NotFound,
    ValidationFailed,
)
from expense_manager.kv_store import KeyValueStore
from expense_manager.schemas import (
    CategoryPayload,
    LoginPayload,
    PasswordPayload,
    ProfilePayload,
    ProjectPayload,
    RegisterPayload,
    SubcategoryPayload,
    TransactionPayload,
    UserUpdatePayload,
)
from expense_manager.security import Identity
from expense_manager.service import LedgerService
from expense_manager.sql_store import SqlStore
from expense_manager.store import EXPENSES, INCOMES

TODAY = date(2024, 6, 15)


class LedgerServiceTestCase(unittest.TestCase):
    def make_store(self):
        return KeyValueStore()

    def setUp(self) -> None:
        self.settings = Settings(jwt_secret="test-secret")
        store = self.make_store()
        store.init_schema()
        self.service = LedgerService(store, self.settings, today=lambda: TODAY)
        admin = self.service.designate_admin("admin@example.com", "admin-pass", "Admin")
        self.admin = Identity(id=admin["id"], email=admin["email"], role="admin")
        self.ana = self.register("Ana", "ana@example.com")
        self.bo = self.register("Bo", "bo@example.com")
        self.food = self.service.create_category(self.ana, CategoryPayload(name="Food", type="expense"))
        self.salary = self.service.create_category(self.admin, CategoryPayload(name="Salary", type="income"))

    def register(self, name: str, email: str) -> Identity:
        _, user = self.service.register(RegisterPayload(name=name, email=email, password="pw"))
        return Identity(id=user["id"], email=user["email"], role=user["role"])

    def expense(self, caller: Identity, amount: str, day: date = TODAY, **extra) -> dict:
        payload = TransactionPayload(date=day, amount=Decimal(amount), category_id=self.food["id"], **extra)
        return self.service.create_transaction(caller, EXPENSES, payload)

    def income(self, caller: Identity, amount: str, day: date = TODAY, **extra) -> dict:
        payload = TransactionPayload(date=day, amount=Decimal(amount), category_id=self.salary["id"], **extra)
        return self.service.create_transaction(caller, INCOMES, payload)


class AuthenticationTests(LedgerServiceTestCase):
    def test_register_normalizes_email_and_defaults_role(self) -> None:
        token, user = self.service.register(
            RegisterPayload(name=" Cy ", email=" CY@Example.com ", password="pw")
        )

        self.assertEqual(user["email"], "cy@example.com")
        self.assertEqual(user["name"], "Cy")
        self.assertEqual(user["role"], "user")
        self.assertEqual(self.service.authenticate(f"Bearer {token}").id, user["id"])

    def test_register_rejects_duplicate_email(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.register(RegisterPayload(name="Ana 2", email="ANA@example.com", password="pw"))

    def test_register_requires_fields(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.register(RegisterPayload(name="", email="x@example.com", password="pw"))

    def test_admin_signup_is_refused_unless_enabled(self) -> None:
        with self.assertRaises(Forbidden):
            self.service.register(
                RegisterPayload(name="Eve", email="eve@example.com", password="pw", role="admin")
            )

        open_service = LedgerService(
            self.service.store, Settings(jwt_secret="test-secret", allow_admin_signup=True)
        )
        _, user = open_service.register(
            RegisterPayload(name="Eve", email="eve@example.com", password="pw", role="admin")
        )
        self.assertEqual(user["role"], "admin")

    def test_login_failures_are_indistinguishable(self) -> None:
        messages = []
        for payload in (
            LoginPayload(email="ana@example.com", password="wrong"),
            LoginPayload(email="nobody@example.com", password="pw"),
            LoginPayload(email="", password=""),
        ):
            with self.assertRaises(InvalidCredentials) as ctx:
                self.service.login(payload)
            messages.append((ctx.exception.status_code, ctx.exception.message))

        self.assertEqual(set(messages), {(401, "Invalid credentials.")})

    def test_over_long_password_fails_login_like_any_wrong_password(self) -> None:
        for email in ("ana@example.com", "nobody@example.com"):
            with self.subTest(email=email):
                with self.assertRaises(InvalidCredentials):
                    self.service.login(LoginPayload(email=email, password="x" * 80))

    def test_register_rejects_over_long_password(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.register(RegisterPayload(name="Cy", email="cy@example.com", password="x" * 73))

        _, user = self.service.register(RegisterPayload(name="Cy", email="cy@example.com", password="x" * 72))
        self.assertEqual(user["email"], "cy@example.com")

    def test_login_accepts_any_email_case(self) -> None:
        token, user = self.service.login(LoginPayload(email="Ana@Example.COM", password="pw"))

        self.assertEqual(user["id"], self.ana.id)
        self.assertTrue(token)

    def test_authenticate_requires_header(self) -> None:
        with self.assertRaises(AuthenticationRequired):
            self.service.authenticate(None)

    def test_token_for_deleted_user_is_invalid(self) -> None:
        token, user = self.service.register(RegisterPayload(name="Tmp", email="tmp@example.com", password="pw"))
        self.service.store.delete("user", user["id"])

        with self.assertRaises(AuthenticationInvalid):
            self.service.authenticate(f"Bearer {token}")

    def test_authenticate_reflects_current_role(self) -> None:
        token, _ = self.service.login(LoginPayload(email="bo@example.com", password="pw"))
        self.service.update_user(self.admin, self.bo.id, UserUpdatePayload(role="admin"))

        self.assertTrue(self.service.authenticate(f"Bearer {token}").is_admin)


class UserManagementTests(LedgerServiceTestCase):
    def test_only_admins_list_users(self) -> None:
        self.assertEqual(len(self.service.list_users(self.admin)), 3)
        with self.assertRaises(Forbidden):
            self.service.list_users(self.ana)

    def test_update_user_checks_email_collisions(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.update_user(self.admin, self.ana.id, UserUpdatePayload(email="bo@example.com"))
        with self.assertRaises(NotFound):
            self.service.update_user(self.admin, 999, UserUpdatePayload(name="Ghost"))

    def test_update_profile(self) -> None:
        user = self.service.update_profile(self.ana, ProfilePayload(name="Ana B", email="anab@example.com"))

        self.assertEqual(user["name"], "Ana B")
        self.assertEqual(self.service.current_user(self.ana)["email"], "anab@example.com")

    def test_change_password_requires_current_password(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.change_password(self.ana, PasswordPayload(current_password="nope", new_password="new"))

        self.service.change_password(self.ana, PasswordPayload(current_password="pw", new_password="new"))
        self.service.login(LoginPayload(email="ana@example.com", password="new"))
        with self.assertRaises(ValidationFailed):
            self.service.change_password(self.ana, PasswordPayload(current_password="new", new_password="y" * 80))

    def test_designate_admin_demotes_previous_admin(self) -> None:
        promoted = self.service.designate_admin("ana@example.com", "root-pw", "Ana")

        self.assertEqual(promoted["id"], self.ana.id)
        self.assertEqual(promoted["role"], "admin")
        roles = {user["email"]: user["role"] for user in self.service.list_users(self.admin)}
        self.assertEqual(roles["admin@example.com"], "user")
        self.service.login(LoginPayload(email="ana@example.com", password="root-pw"))

    def test_designate_admin_rejects_over_long_password_before_demoting(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.designate_admin("ana@example.com", "z" * 100, "Ana")

        roles = {user["email"]: user["role"] for user in self.service.list_users(self.admin)}
        self.assertEqual(roles["admin@example.com"], "admin")


class CategoryTests(LedgerServiceTestCase):
    def test_list_filters_by_type_and_active_flag(self) -> None:
        self.service.create_category(self.ana, CategoryPayload(name="Old", type="expense", is_active=False))

        names = [row["name"] for row in self.service.list_categories(self.ana, category_type="expense")]
        active = [row["name"] for row in self.service.list_categories(self.ana, active=True)]

        self.assertEqual(names, ["Food", "Old"])
        self.assertEqual(active, ["Food", "Salary"])
        with self.assertRaises(ValidationFailed):
            self.service.list_categories(self.ana, category_type="asset")

    def test_only_creator_or_admin_may_change_category(self) -> None:
        with self.assertRaises(Forbidden):
            self.service.update_category(self.bo, self.food["id"], CategoryPayload(name="Mine", type="expense"))

        renamed = self.service.update_category(
            self.admin, self.food["id"], CategoryPayload(name="Groceries", type="expense")
        )
        self.assertEqual(renamed["name"], "Groceries")

    def test_delete_category_detaches_dependents(self) -> None:
        fruit = self.service.create_subcategory(
            self.ana, SubcategoryPayload(name="Fruit", category_id=self.food["id"])
        )
        expense = self.expense(self.ana, "12.00", subcategory_id=fruit["id"])

        self.service.delete_category(self.ana, self.food["id"])

        self.assertIsNone(self.service.get_subcategory(self.ana, fruit["id"])["category_id"])
        detached = self.service.get_transaction(self.ana, EXPENSES, expense["id"])
        self.assertIsNone(detached["category_id"])
        self.assertIsNone(detached["subcategory_id"])
        recategorized = self.service.update_transaction(
            self.ana,
            EXPENSES,
            expense["id"],
            TransactionPayload(date=TODAY, amount=Decimal("12.00"), category_id=self.salary["id"]),
        )
        self.assertEqual(recategorized["category_id"], self.salary["id"])
        with self.assertRaises(NotFound):
            self.service.get_category(self.ana, self.food["id"])

    def test_subcategory_requires_existing_category(self) -> None:
        with self.assertRaises(NotFound):
            self.service.create_subcategory(self.ana, SubcategoryPayload(name="Fruit", category_id=999))

        fruit = self.service.create_subcategory(
            self.ana, SubcategoryPayload(name="Fruit", category_id=self.food["id"])
        )
        listed = self.service.list_subcategories(self.ana, category_id=self.food["id"])
        self.assertEqual([row["id"] for row in listed], [fruit["id"]])


class ProjectTests(LedgerServiceTestCase):
    def test_create_defaults_start_date_and_status(self) -> None:
        project = self.service.create_project(self.ana, ProjectPayload(name="Kitchen"))

        self.assertEqual(project["start_date"], TODAY)
        self.assertEqual(project["status"], "active")
        self.assertEqual(project["owner_id"], self.ana.id)

    def test_accepts_legacy_field_names(self) -> None:
        payload = ProjectPayload.model_validate(
            {"ProjectName": "Garden", "Description": "Beds", "ProjectStartDate": "2024-03-01"}
        )

        project = self.service.create_project(self.ana, payload)

        self.assertEqual(project["name"], "Garden")
        self.assertEqual(project["description"], "Beds")
        self.assertEqual(project["start_date"], date(2024, 3, 1))

    def test_rejects_inverted_dates(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.create_project(
                self.ana,
                ProjectPayload(name="Bad", start_date=date(2024, 5, 2), end_date=date(2024, 5, 1)),
            )

    def test_listing_is_scoped_to_owner_and_searchable(self) -> None:
        self.service.create_project(self.ana, ProjectPayload(name="Kitchen", description="Tiles"))
        self.service.create_project(self.ana, ProjectPayload(name="Garden"))
        self.service.create_project(self.bo, ProjectPayload(name="Bo's kitchen"))

        ana_rows, ana_total = self.service.list_projects(self.ana)
        found, found_total = self.service.list_projects(self.ana, search="KITCHEN")
        by_description, _ = self.service.list_projects(self.ana, search="tiles")
        admin_rows, admin_total = self.service.list_projects(self.admin)

        self.assertEqual(ana_total, 2)
        self.assertEqual({row["owner_id"] for row in ana_rows}, {self.ana.id})
        self.assertEqual(([row["name"] for row in found], found_total), (["Kitchen"], 1))
        self.assertEqual([row["name"] for row in by_description], ["Kitchen"])
        self.assertEqual(admin_total, 3)
        self.assertEqual(len(admin_rows), 3)

    def test_other_users_cannot_read_or_delete(self) -> None:
        project = self.service.create_project(self.ana, ProjectPayload(name="Kitchen"))

        with self.assertRaises(Forbidden):
            self.service.get_project(self.bo, project["id"])
        with self.assertRaises(Forbidden):
            self.service.delete_project(self.bo, project["id"])
        self.service.delete_project(self.admin, project["id"])
        with self.assertRaises(NotFound):
            self.service.get_project(self.ana, project["id"])

    def test_paging_validates_bounds(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.service.list_projects(self.ana, page=0)
        with self.assertRaises(ValidationFailed):
            self.service.list_projects(self.ana, limit=101)


class TransactionTests(LedgerServiceTestCase):
    def test_amount_round_trips_exactly(self) -> None:
        created = self.expense(self.ana, "42.5", remarks=" Lunch ")

        loaded = self.service.get_transaction(self.ana, EXPENSES, created["id"])
        self.assertEqual(loaded["amount"], Decimal("42.50"))
        self.assertEqual(loaded["remarks"], "Lunch")
        self.assertEqual(loaded["user_id"], self.ana.id)

    def test_rejects_invalid_amounts(self) -> None:
        for amount in ("-1", "1.005", "10000000000", "1e30"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationFailed):
                    self.expense(self.ana, amount)

    def test_references_must_exist_and_agree(self) -> None:
        fruit = self.service.create_subcategory(
            self.ana, SubcategoryPayload(name="Fruit", category_id=self.food["id"])
        )
        with self.assertRaises(NotFound):
            self.expense(self.ana, "1.00", project_id=999)
        with self.assertRaises(ValidationFailed):
            self.income(self.ana, "1.00", subcategory_id=fruit["id"])

        created = self.expense(self.ana, "1.00", subcategory_id=fruit["id"])
        self.assertEqual(created["subcategory_id"], fruit["id"])

    def test_ownership_is_enforced(self) -> None:
        expense = self.expense(self.ana, "5.00")
        payload = TransactionPayload(date=TODAY, amount=Decimal("6.00"), category_id=self.food["id"])

        with self.assertRaises(Forbidden):
            self.service.update_transaction(self.bo, EXPENSES, expense["id"], payload)
        with self.assertRaises(Forbidden):
            self.service.delete_transaction(self.bo, EXPENSES, expense["id"])

        updated = self.service.update_transaction(self.admin, EXPENSES, expense["id"], payload)
        self.assertEqual(updated["amount"], Decimal("6.00"))
        self.assertEqual(updated["user_id"], self.ana.id)

    def test_listing_scopes_filters_and_pages(self) -> None:
        for day in range(1, 4):
            self.expense(self.ana, "1.00", day=date(2024, 6, day))
        self.expense(self.bo, "2.00")

        rows, total = self.service.list_transactions(self.ana, EXPENSES, page=1, limit=2)
        admin_rows, admin_total = self.service.list_transactions(self.admin, EXPENSES, user_id=self.bo.id)

        self.assertEqual(total, 3)
        self.assertEqual([row["date"] for row in rows], [date(2024, 6, 3), date(2024, 6, 2)])
        self.assertEqual(admin_total, 1)
        self.assertEqual(admin_rows[0]["user_id"], self.bo.id)

    def test_search_matches_remarks_or_category_name(self) -> None:
        rent = self.service.create_category(self.ana, CategoryPayload(name="Rent", type="expense"))
        by_category = self.expense(self.ana, "10.00")
        by_remarks = self.service.create_transaction(
            self.ana,
            EXPENSES,
            TransactionPayload(date=TODAY, amount=Decimal("20"), category_id=rent["id"], remarks="food market"),
        )
        self.service.create_transaction(
            self.ana,
            EXPENSES,
            TransactionPayload(date=TODAY, amount=Decimal("30"), category_id=rent["id"]),
        )

        rows, total = self.service.list_transactions(self.ana, EXPENSES, search="FOOD")

        self.assertEqual(total, 2)
        self.assertEqual({row["id"] for row in rows}, {by_category["id"], by_remarks["id"]})


class AnalyticsTests(LedgerServiceTestCase):
    def test_dashboard_is_scoped_to_caller(self) -> None:
        self.expense(self.ana, "40.00")
        self.expense(self.ana, "10.00", day=date(2024, 5, 1))
        self.income(self.ana, "100.00")
        self.expense(self.bo, "999.00")

        stats = self.service.dashboard_stats(self.ana)

        self.assertEqual(stats.total_expenses, Decimal("50.00"))
        self.assertEqual(stats.monthly_expenses, Decimal("40.00"))
        self.assertEqual(stats.balance, Decimal("50.00"))
        self.assertEqual(self.service.dashboard_stats(self.admin).total_expenses, Decimal("1049.00"))

    def test_category_breakdown_validates_kind(self) -> None:
        self.income(self.ana, "100.00")

        rows = self.service.category_breakdown(self.ana, "income")

        self.assertEqual([(row.category_name, row.total) for row in rows], [("Salary", Decimal("100.00"))])
        with self.assertRaises(ValidationFailed):
            self.service.category_breakdown(self.ana, "transfer")

    def test_monthly_trends_bounds(self) -> None:
        self.assertEqual(len(self.service.monthly_trends(self.ana)), 12)
        for months in (0, 121):
            with self.assertRaises(ValidationFailed):
                self.service.monthly_trends(self.ana, months)

    def test_project_breakdown_covers_own_and_referenced_projects(self) -> None:
        own = self.service.create_project(self.ana, ProjectPayload(name="Kitchen"))
        shared = self.service.create_project(self.bo, ProjectPayload(name="Shared"))
        self.service.create_project(self.bo, ProjectPayload(name="Private"))
        self.expense(self.ana, "15.00", project_id=shared["id"])

        rows = self.service.project_breakdown(self.ana)

        self.assertEqual([row.project_id for row in rows], [own["id"], shared["id"]])
        self.assertEqual(rows[0].total_expenses, Decimal("0"))
        self.assertEqual(rows[1].total_expenses, Decimal("15.00"))
        self.assertEqual(len(self.service.project_breakdown(self.admin)), 3)


class SqlBacked:
    def make_store(self):
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        return SqlStore(engine)


class SqlAuthenticationTests(SqlBacked, AuthenticationTests):
    pass


class SqlCategoryTests(SqlBacked, CategoryTests):
    pass


class SqlProjectTests(SqlBacked, ProjectTests):
    pass


class SqlTransactionTests(SqlBacked, TransactionTests):
    pass


class SqlAnalyticsTests(SqlBacked, AnalyticsTests):
    pass


if __name__ == "__main__":
    unittest.main()
