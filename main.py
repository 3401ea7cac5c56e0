import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import TokenUser, current_user, issue_token, token_matches
from config import get_settings
from database import SessionLocal
from errors import FinanceError, Forbidden, NotFound, StoreUnavailable
from query_builder import QueryParams, QuerySpec, RecordKind, build_query
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    IncomeIn,
    IncomeOut,
    IncomeUpdate,
    LoginIn,
    SignupIn,
    SummaryOut,
    UserOut,
    UserUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    IncomeService,
    SummaryService,
    UserService,
)


logger = logging.getLogger(__name__)

API = "/api/v1"

app = FastAPI(title="Finance Tracker API")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().summary_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    headers = {"Retry-After": "1"} if isinstance(exc, StoreUnavailable) else None
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.message}, headers=headers
    )


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        loc = [
            str(part)
            for part in error.get("loc", ())
            if part not in ("body", "query", "path")
        ]
        where = ".".join(loc)
        msg = error.get("msg", "Invalid value")
        messages.append(f"{where}: {msg}" if where else msg)
    return "; ".join(messages) or "Invalid request"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": _validation_message(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def is_store_busy(exc: OperationalError) -> bool:
    reason = str(exc.orig if exc.orig is not None else exc).lower()
    return "database is locked" in reason or "database is busy" in reason


@app.exception_handler(OperationalError)
async def store_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    if not is_store_busy(exc):
        return await unexpected_error_handler(request, exc)
    logger.warning(f"store_unavailable: path={request.url.path} error={exc.orig!r}")
    return await finance_error_handler(
        request, StoreUnavailable("Store temporarily unavailable, retry later")
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"request_failed: path={request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Something went wrong"})


def active_user(
    token_user: TokenUser = Depends(current_user), db: Session = Depends(get_db)
) -> TokenUser:
    try:
        account = UserService(db).get(token_user.id)
    except NotFound as exc:
        raise Forbidden("Unknown user") from exc
    if not token_matches(token_user, account):
        raise Forbidden("Unknown user")
    return token_user


def admin_user(
    user: TokenUser = Depends(active_user), db: Session = Depends(get_db)
) -> TokenUser:
    account = UserService(db).get(user.id)
    if account.email.lower() not in get_settings().admin_emails:
        raise Forbidden("Admin access required")
    return user


def require_self(user_id: int, user: TokenUser) -> None:
    if user_id != user.id:
        raise Forbidden("Cannot act on another user")


def query_from_request(request: Request, kind: RecordKind) -> QuerySpec:
    return build_query(QueryParams.from_mapping(request.query_params), kind)


def dump(model: BaseModel, fields: tuple[str, ...] = ()) -> dict:
    if fields:
        return model.model_dump(mode="json", by_alias=True, include={"id", *fields})
    return model.model_dump(mode="json", by_alias=True)


def listing(items: list[dict]) -> dict:
    return {"success": True, "nbHit": len(items), "data": items}


@app.post(f"{API}/signup", status_code=201)
def signup(data: SignupIn, db: Session = Depends(get_db)):
    user = UserService(db).signup(data)
    return {
        "success": True,
        "user": dump(UserOut.from_user(user)),
        "token": issue_token(user),
        "msg": "Registration successful",
    }


@app.post(f"{API}/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data)
    return {"success": True, "token": issue_token(user), "msg": "Logged In"}


@app.get(f"{API}/users")
def list_users(
    user: TokenUser = Depends(admin_user), db: Session = Depends(get_db)
):
    users = UserService(db).list_all()
    return listing([dump(UserOut.from_user(u)) for u in users])


@app.get(f"{API}/users/{{user_id}}")
def get_user(
    user_id: int, user: TokenUser = Depends(active_user), db: Session = Depends(get_db)
):
    require_self(user_id, user)
    account = UserService(db).get(user_id)
    return {"success": True, "data": dump(UserOut.from_user(account))}


@app.patch(f"{API}/users/{{user_id}}")
def update_user(
    user_id: int,
    data: UserUpdate,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    require_self(user_id, user)
    account = UserService(db).update(user_id, data)
    return {"success": True, "data": dump(UserOut.from_user(account))}


@app.delete(f"{API}/users/{{user_id}}")
def delete_user(
    user_id: int, user: TokenUser = Depends(active_user), db: Session = Depends(get_db)
):
    require_self(user_id, user)
    UserService(db).delete(user_id)
    return {"success": True, "msg": "User deleted successfully"}


@app.patch(f"{API}/users/{{user_id}}/categories")
def add_user_category(
    user_id: int,
    data: CategoryIn,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    require_self(user_id, user)
    categories = CategoryService(db, user_id).add(data.category)
    return {"success": True, "categories": categories}


@app.delete(f"{API}/users/{{user_id}}/categories")
def remove_user_category(
    user_id: int,
    data: CategoryIn,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    require_self(user_id, user)
    removal = CategoryService(db, user_id).remove(data.category)
    return {
        "success": True,
        "categories": removal.categories,
        "modifiedCount": removal.modified_count,
        "expenseIds": removal.expense_ids,
    }


@app.get(f"{API}/users/me/expenses")
def list_expenses(
    request: Request,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    spec = query_from_request(request, RecordKind.expense)
    expenses = ExpenseService(db, user.id).list(spec)
    return listing([dump(ExpenseOut.model_validate(e), spec.fields) for e in expenses])


@app.post(f"{API}/users/me/expenses", status_code=201)
def create_expense(
    data: ExpenseIn,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).create(data)
    return {"success": True, "data": dump(ExpenseOut.model_validate(expense))}


@app.get(f"{API}/users/me/expenses/{{expense_id}}")
def get_expense(
    expense_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).get(expense_id)
    return {"success": True, "data": dump(ExpenseOut.model_validate(expense))}


@app.patch(f"{API}/users/me/expenses/{{expense_id}}")
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).update(expense_id, data)
    return {"success": True, "data": dump(ExpenseOut.model_validate(expense))}


@app.delete(f"{API}/users/me/expenses/{{expense_id}}")
def delete_expense(
    expense_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    ExpenseService(db, user.id).delete(expense_id)
    return {"success": True, "msg": "Expense deleted successfully"}


@app.get(f"{API}/users/me/incomes")
def list_incomes(
    request: Request,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    spec = query_from_request(request, RecordKind.income)
    incomes = IncomeService(db, user.id).list(spec)
    return listing([dump(IncomeOut.model_validate(i), spec.fields) for i in incomes])


@app.post(f"{API}/users/me/incomes", status_code=201)
def create_income(
    data: IncomeIn,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    income = IncomeService(db, user.id).create(data)
    return {"success": True, "data": dump(IncomeOut.model_validate(income))}


@app.get(f"{API}/users/me/incomes/{{income_id}}")
def get_income(
    income_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    income = IncomeService(db, user.id).get(income_id)
    return {"success": True, "data": dump(IncomeOut.model_validate(income))}


@app.patch(f"{API}/users/me/incomes/{{income_id}}")
def update_income(
    income_id: int,
    data: IncomeUpdate,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    income = IncomeService(db, user.id).update(income_id, data)
    return {"success": True, "data": dump(IncomeOut.model_validate(income))}


@app.delete(f"{API}/users/me/incomes/{{income_id}}")
def delete_income(
    income_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    IncomeService(db, user.id).delete(income_id)
    return {"success": True, "msg": "Income deleted successfully"}


@app.get(f"{API}/users/me/budgets")
def list_budgets(
    request: Request,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    spec = query_from_request(request, RecordKind.budget)
    budgets = BudgetService(db, user.id).list(spec)
    return listing([dump(BudgetOut.model_validate(b), spec.fields) for b in budgets])


@app.post(f"{API}/users/me/budgets", status_code=201)
def create_budget(
    data: BudgetIn,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).create(data)
    return {"success": True, "data": dump(BudgetOut.model_validate(budget))}


@app.get(f"{API}/users/me/budgets/{{budget_id}}")
def get_budget(
    budget_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).get(budget_id)
    return {"success": True, "data": dump(BudgetOut.model_validate(budget))}


@app.patch(f"{API}/users/me/budgets/{{budget_id}}")
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user.id).update(budget_id, data)
    return {"success": True, "data": dump(BudgetOut.model_validate(budget))}


@app.delete(f"{API}/users/me/budgets/{{budget_id}}")
def delete_budget(
    budget_id: int,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    BudgetService(db, user.id).delete(budget_id)
    return {"success": True, "msg": "Budget deleted successfully"}


@app.get(f"{API}/users/me/summaries")
def latest_summary(
    month: Optional[str] = None,
    user: TokenUser = Depends(active_user),
    db: Session = Depends(get_db),
):
    summary = SummaryService(db, user.id).latest(month)
    return {"success": True, "data": dump(SummaryOut.from_summary(summary))}


@app.get(f"{API}/users/me/summaries/all")
def all_summaries(
    month: Optional[str] = None,
    user: TokenUser = Depends(admin_user),
    db: Session = Depends(get_db),
):
    summaries = SummaryService(db).list_all(month)
    return listing([dump(SummaryOut.from_summary(s)) for s in summaries])


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
