"""HTTP surface of the expense manager.

Serve with ``uvicorn --factory expense_manager.main:create_app``.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from typing import Callable

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from expense_manager.config import Settings, configure_logging
from expense_manager.errors import ApiError
from expense_manager.schemas import (
    CategoryBreakdownEntry,
    CategoryPayload,
    CategoryResponse,
    DashboardStatsResponse,
    LoginPayload,
    MonthlyTrendBucket,
    PasswordPayload,
    ProfilePayload,
    ProjectBreakdownEntry,
    ProjectPayload,
    ProjectResponse,
    RegisterPayload,
    SubcategoryPayload,
    SubcategoryResponse,
    TransactionPayload,
    TransactionResponse,
    UserResponse,
    UserUpdatePayload,
)
from expense_manager.security import Identity
from expense_manager.service import LedgerService, build_store
from expense_manager.store import EXPENSES, INCOMES, Store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    today: Callable[[], date] = date.today,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    store = store or build_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.init_schema()
        yield

    app = FastAPI(title="Expense Manager API", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = LedgerService(store, settings, today=today)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    return app


async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request."
    return JSONResponse(status_code=400, content={"error": message})


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Something went wrong!", "details": str(exc)},
    )


def get_service(request: Request) -> LedgerService:
    return request.app.state.service


def authenticated(request: Request, authorization: str | None) -> tuple[LedgerService, Identity]:
    service = get_service(request)
    return service, service.authenticate(authorization)


def user_out(row: dict) -> UserResponse:
    return UserResponse.model_validate(row)


def transaction_out(row: dict) -> TransactionResponse:
    return TransactionResponse.model_validate(row)


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/register")
@router.post("/auth/signup")
def register(payload: RegisterPayload, request: Request) -> dict:
    token, user = get_service(request).register(payload)
    return {"success": True, "token": token, "user": user_out(user)}


@router.post("/auth/login")
def login(payload: LoginPayload, request: Request) -> dict:
    token, user = get_service(request).login(payload)
    return {"success": True, "token": token, "user": user_out(user)}


@router.get("/auth/me")
@router.get("/users/me")
def current_user(request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    return {"user": user_out(service.current_user(caller))}


@router.get("/users")
def list_users(request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    return {"users": [user_out(row) for row in service.list_users(caller)]}


@router.put("/users/profile")
def update_profile(
    payload: ProfilePayload, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    return {"success": True, "user": user_out(service.update_profile(caller, payload))}


@router.put("/users/password")
def change_password(
    payload: PasswordPayload, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    service.change_password(caller, payload)
    return {"success": True}


@router.put("/users/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdatePayload,
    request: Request,
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    return {"user": user_out(service.update_user(caller, user_id, payload))}


@router.get("/categories")
def list_categories(
    request: Request,
    category_type: str | None = Query(None, alias="type"),
    active: bool | None = Query(None),
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    rows = service.list_categories(caller, category_type=category_type, active=active)
    return {"categories": [CategoryResponse.model_validate(row) for row in rows]}


@router.get("/categories/{category_id}")
def get_category(category_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    return {"category": CategoryResponse.model_validate(service.get_category(caller, category_id))}


@router.post("/categories")
def create_category(
    payload: CategoryPayload, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.create_category(caller, payload)
    return {"success": True, "id": row["id"], "category": CategoryResponse.model_validate(row)}


@router.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPayload,
    request: Request,
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.update_category(caller, category_id, payload)
    return {"success": True, "category": CategoryResponse.model_validate(row)}


@router.delete("/categories/{category_id}")
def delete_category(category_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    service.delete_category(caller, category_id)
    return {"success": True}


@router.get("/subcategories")
def list_subcategories(
    request: Request,
    category_id: int | None = Query(None, alias="categoryId"),
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    rows = service.list_subcategories(caller, category_id=category_id)
    return {"subcategories": [SubcategoryResponse.model_validate(row) for row in rows]}


@router.get("/subcategories/{subcategory_id}")
def get_subcategory(
    subcategory_id: int, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.get_subcategory(caller, subcategory_id)
    return {"subcategory": SubcategoryResponse.model_validate(row)}


@router.post("/subcategories")
def create_subcategory(
    payload: SubcategoryPayload, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.create_subcategory(caller, payload)
    return {"success": True, "id": row["id"], "subcategory": SubcategoryResponse.model_validate(row)}


@router.put("/subcategories/{subcategory_id}")
def update_subcategory(
    subcategory_id: int,
    payload: SubcategoryPayload,
    request: Request,
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.update_subcategory(caller, subcategory_id, payload)
    return {"success": True, "subcategory": SubcategoryResponse.model_validate(row)}


@router.delete("/subcategories/{subcategory_id}")
def delete_subcategory(
    subcategory_id: int, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    service.delete_subcategory(caller, subcategory_id)
    return {"success": True}


@router.get("/projects")
def list_projects(
    request: Request,
    page: int = Query(1),
    limit: int = Query(10),
    search: str | None = Query(None),
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    rows, total = service.list_projects(caller, page=page, limit=limit, search=search)
    return {
        "projects": [ProjectResponse.model_validate(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/projects/{project_id}")
def get_project(project_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    return {"project": ProjectResponse.model_validate(service.get_project(caller, project_id))}


@router.post("/projects")
def create_project(
    payload: ProjectPayload, request: Request, authorization: str | None = Header(None)
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.create_project(caller, payload)
    return {"success": True, "id": row["id"], "project": ProjectResponse.model_validate(row)}


@router.put("/projects/{project_id}")
def update_project(
    project_id: int,
    payload: ProjectPayload,
    request: Request,
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    row = service.update_project(caller, project_id, payload)
    return {"success": True, "project": ProjectResponse.model_validate(row)}


@router.delete("/projects/{project_id}")
def delete_project(project_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    service.delete_project(caller, project_id)
    return {"success": True}


def add_transaction_routes(kind: str, singular: str, plural: str) -> None:
    def list_records(
        request: Request,
        page: int = Query(1),
        limit: int = Query(10),
        search: str | None = Query(None),
        category_id: int | None = Query(None, alias="categoryId"),
        project_id: int | None = Query(None, alias="projectId"),
        user_id: int | None = Query(None, alias="userId"),
        authorization: str | None = Header(None),
    ) -> dict:
        service, caller = authenticated(request, authorization)
        rows, total = service.list_transactions(
            caller,
            kind,
            page=page,
            limit=limit,
            search=search,
            category_id=category_id,
            project_id=project_id,
            user_id=user_id,
        )
        return {
            plural: [transaction_out(row) for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
        }

    def get_record(record_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
        service, caller = authenticated(request, authorization)
        return {singular: transaction_out(service.get_transaction(caller, kind, record_id))}

    def create_record(
        payload: TransactionPayload, request: Request, authorization: str | None = Header(None)
    ) -> dict:
        service, caller = authenticated(request, authorization)
        row = service.create_transaction(caller, kind, payload)
        return {"success": True, "id": row["id"], singular: transaction_out(row)}

    def update_record(
        record_id: int,
        payload: TransactionPayload,
        request: Request,
        authorization: str | None = Header(None),
    ) -> dict:
        service, caller = authenticated(request, authorization)
        row = service.update_transaction(caller, kind, record_id, payload)
        return {"success": True, singular: transaction_out(row)}

    def delete_record(record_id: int, request: Request, authorization: str | None = Header(None)) -> dict:
        service, caller = authenticated(request, authorization)
        service.delete_transaction(caller, kind, record_id)
        return {"success": True}

    router.add_api_route(f"/{plural}", list_records, methods=["GET"], name=f"list_{plural}")
    router.add_api_route(f"/{plural}/{{record_id}}", get_record, methods=["GET"], name=f"get_{singular}")
    router.add_api_route(f"/{plural}", create_record, methods=["POST"], name=f"create_{singular}")
    router.add_api_route(
        f"/{plural}/{{record_id}}", update_record, methods=["PUT"], name=f"update_{singular}"
    )
    router.add_api_route(
        f"/{plural}/{{record_id}}", delete_record, methods=["DELETE"], name=f"delete_{singular}"
    )


add_transaction_routes(EXPENSES, "expense", "expenses")
add_transaction_routes(INCOMES, "income", "incomes")


@router.get("/dashboard-stats")
@router.get("/analytics/dashboard")
def dashboard_stats(request: Request, authorization: str | None = Header(None)) -> DashboardStatsResponse:
    service, caller = authenticated(request, authorization)
    return DashboardStatsResponse.model_validate(asdict(service.dashboard_stats(caller)))


@router.get("/category-breakdown")
@router.get("/analytics/category-breakdown")
def category_breakdown(
    request: Request,
    kind: str = Query("expense", alias="type"),
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    rows = service.category_breakdown(caller, kind)
    return {"breakdown": [CategoryBreakdownEntry.model_validate(asdict(row)) for row in rows]}


@router.get("/monthly-trends")
@router.get("/analytics/monthly-trends")
def monthly_trends(
    request: Request,
    months: int = Query(12),
    authorization: str | None = Header(None),
) -> dict:
    service, caller = authenticated(request, authorization)
    buckets = service.monthly_trends(caller, months)
    return {"trends": [MonthlyTrendBucket.model_validate(asdict(bucket)) for bucket in buckets]}


@router.get("/project-breakdown")
@router.get("/analytics/project-breakdown")
def project_breakdown(request: Request, authorization: str | None = Header(None)) -> dict:
    service, caller = authenticated(request, authorization)
    rows = service.project_breakdown(caller)
    return {"breakdown": [ProjectBreakdownEntry.model_validate(asdict(row)) for row in rows]}
