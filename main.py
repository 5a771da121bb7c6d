import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Iterator, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import resolve_user_id
from config import Settings, load_settings
from context import AppContext
from database import session_scope
from errors import (
    CategoryInUse,
    DuplicateCategory,
    DuplicateEmail,
    NotFound,
    ReportGenerationError,
    Unauthenticated,
)
from models import Expense
from schemas import (
    BudgetUpdateIn,
    CategoryIn,
    CategoryOut,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    LoginIn,
    UserIn,
    UserOut,
    UserUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    ReportService,
    SpendingService,
    UserService,
)

logger = logging.getLogger(__name__)

CHANGE_TRIGGER = "expenses-changed"


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

bearer_scheme = HTTPBearer(auto_error=False)
router = APIRouter(prefix="/api")


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(context: AppContext = Depends(get_context)) -> Iterator[Session]:
    with session_scope(context.session_factory) as db:
        yield db


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    context: AppContext = Depends(get_context),
) -> int:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return resolve_user_id(credentials.credentials, context.settings)
    except Unauthenticated as exc:
        raise HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        ) from exc


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, (DuplicateCategory, CategoryInUse, DuplicateEmail)):
        status_code = 409
    elif isinstance(exc, Unauthenticated):
        status_code = 401
    elif isinstance(exc, ReportGenerationError):
        status_code = 500
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(exc))


def expense_out(expense: Expense) -> ExpenseOut:
    return ExpenseOut(
        id=expense.id,
        category_id=expense.category_id,
        category=expense.category.name,
        budget_cents=expense.category.budget_cents,
        amount_cents=expense.amount_cents,
        description=expense.description,
        occurred_at=expense.occurred_at,
        created_at=expense.created_at,
        updated_at=expense.updated_at,
    )


def expense_service(
    db: Session, user_id: int, context: AppContext
) -> ExpenseService:
    return ExpenseService(
        db, user_id, locks=context.budget_locks, notifier=context.notifier
    )


# users


@router.post("/user", status_code=201, response_model=UserOut)
def register_user(data: UserIn, db: Session = Depends(get_db)):
    try:
        return UserService(db).register(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.post("/user/login")
def login_user(
    data: LoginIn,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        user, token = UserService(db).login(data, context.settings)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "user": UserOut.model_validate(user),
        "token": token,
        "token_type": "bearer",
    }


@router.get("/user/me", response_model=UserOut)
def get_me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        return UserService(db).get(user_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.put("/user/me", response_model=UserOut)
def replace_me(
    data: UserIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return UserService(db).update(user_id, UserUpdate(**data.model_dump()))
    except ValueError as exc:
        raise http_error(exc) from exc


@router.patch("/user/me", response_model=UserOut)
def edit_me(
    data: UserUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return UserService(db).update(user_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.delete("/user/me")
def delete_me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        UserService(db).delete(user_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "User deleted successfully"}


# categories


@router.post("/category", status_code=201, response_model=CategoryOut)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        return CategoryService(db, user_id, locks=context.budget_locks).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/category", response_model=list[CategoryOut])
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).list_all()


@router.put("/category/update-category")
def update_category_budget(
    data: BudgetUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = CategoryService(db, user_id, locks=context.budget_locks)
    try:
        category = service.update_budget(data.category_id, data.budget_cents)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "message": "Budget updated successfully",
        "category": CategoryOut.model_validate(category),
    }


@router.delete("/category/{category_id}")
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        CategoryService(db, user_id, locks=context.budget_locks).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Category deleted successfully"}


# expenses


@router.post("/expense", status_code=201, response_model=ExpenseOut)
def create_expense(
    data: ExpenseIn,
    response: Response,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        expense = expense_service(db, user_id, context).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    response.headers["HX-Trigger"] = CHANGE_TRIGGER
    return expense_out(expense)


@router.get("/expense", response_model=list[ExpenseOut])
def list_expenses(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [expense_out(e) for e in ExpenseService(db, user_id).list_all()]


@router.get("/expense/report")
def download_expense_report(
    report_format: str = Query(..., alias="format"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = ReportService(db, user_id, reports_dir=context.settings.reports_dir)
    try:
        report = service.export(report_format)
    except ValueError as exc:
        raise http_error(exc) from exc

    if isinstance(report, str):
        return StreamingResponse(
            iter([report]),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="expenses.csv"'},
        )
    return FileResponse(
        report, media_type="application/pdf", filename=f"expense_report_{user_id}.pdf"
    )


@router.get("/expense/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return expense_out(ExpenseService(db, user_id).get(expense_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@router.put("/expense/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    response: Response,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        expense = expense_service(db, user_id, context).update(expense_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    response.headers["HX-Trigger"] = CHANGE_TRIGGER
    return expense_out(expense)


@router.delete("/expense/{expense_id}")
def delete_expense(
    expense_id: int,
    response: Response,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        result = expense_service(db, user_id, context).delete(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    response.headers["HX-Trigger"] = CHANGE_TRIGGER
    return result


# budget views


@router.get("/budget/summary")
def budget_summary(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = BudgetService(
        db, user_id, owner_scoped=context.settings.scope_aggregates_to_owner
    )
    return service.summary()


@router.get("/budget/category-summary")
def category_summary(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = BudgetService(
        db, user_id, owner_scoped=context.settings.scope_aggregates_to_owner
    )
    return service.category_breakdown()


@router.get("/budget/spending-summary")
def spending_summary(
    period: str = Query("monthly"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = SpendingService(
        db, user_id, owner_scoped=context.settings.scope_aggregates_to_owner
    )
    try:
        return service.period_summary(period)
    except ValueError as exc:
        raise http_error(exc) from exc


@router.get("/budget/spending-trends")
def spending_trends(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    service = SpendingService(
        db, user_id, owner_scoped=context.settings.scope_aggregates_to_owner
    )
    return service.trends()


# live updates


def _socket_token(websocket: WebSocket) -> str:
    # browsers cannot set headers on a websocket handshake, so ?token= is accepted too
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return websocket.query_params.get("token", "")


@router.websocket("/ws")
async def expense_events(websocket: WebSocket):
    """Push ``expense-updated`` events for the connected user.

    Each message is ``{"event": ..., "user_id": ...}``. Events of other users
    are not forwarded. Anything the client sends is ignored.
    """
    context: AppContext = websocket.app.state.context
    try:
        user_id = resolve_user_id(_socket_token(websocket), context.settings)
    except Unauthenticated as exc:
        logger.info(f"ws_rejected: reason={exc}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, object]] = asyncio.Queue()

    # publishers run in worker threads; hand events over to this loop
    def forward(event: str, owner_id: int) -> None:
        if owner_id == user_id:
            loop.call_soon_threadsafe(
                queue.put_nowait, {"event": event, "user_id": owner_id}
            )

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    # subscribed before accept: events published during the handshake are queued
    unsubscribe = context.notifier.subscribe(forward)
    sender: Optional[asyncio.Task] = None
    try:
        await websocket.accept()
        logger.info(f"ws_connected: user_id={user_id}")
        sender = asyncio.create_task(pump())
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender
        logger.info(f"ws_disconnected: user_id={user_id}")


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        f"storage_error: method={request.method} path={request.url.path}",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Unexpected error"})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    context = AppContext(settings)
    if settings.auto_create_schema:
        context.create_schema()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        context.close()

    app = FastAPI(title="Budget Ledger", version=APP_VERSION, lifespan=lifespan)
    app.state.context = context
    app.include_router(router)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    @app.get("/")
    def health():
        return {"status": "ok"}

    logger.info(f"app_created: version={APP_VERSION}")
    return app


def main():
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
