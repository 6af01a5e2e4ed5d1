import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import AuthError, AuthService, InvalidTokenError, read_access_token
from config import get_settings
from database import SessionLocal
from months import Month
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BudgetAssignIn,
    BudgetItemOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    GoalIn,
    GoalOut,
    GoalUpdate,
    LoginIn,
    PasswordChangeIn,
    MessageOut,
    RefreshIn,
    SignupIn,
    SignupOut,
    TokenPairOut,
    TransactionCreatedOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    NotFoundError,
    OwnershipError,
    ReportService,
    RolloverAlreadyAppliedError,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Budget API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url] if settings.frontend_url else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bearer_scheme = HTTPBearer(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="no token")
    try:
        return read_access_token(credentials.credentials)
    except InvalidTokenError as exc:
        logger.info("auth_rejected: reason=invalid_token")
        raise HTTPException(status_code=401, detail="invalid token") from exc


def month_from_path(month: str) -> Month:
    try:
        return Month.parse(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, OwnershipError):
        status_code = 403
    elif isinstance(exc, RolloverAlreadyAppliedError):
        status_code = 409
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(exc))


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"store_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.on_event("startup")
def startup_event():
    logger.info(
        f"api_startup: spent_convention={settings.spent_convention.value} "
        f"rollover_guard={settings.rollover_guard}"
    )


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": _utc_now_iso(), "message": "server running"}


@app.get("/health/detailed")
def health_detailed(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("health_check_failed")
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "timestamp": _utc_now_iso(),
                "error": "DB connection failed",
            },
        )
    return {"status": "ok", "timestamp": _utc_now_iso(), "database": "connected"}


@app.post("/auth/signup", response_model=SignupOut, status_code=201)
def signup(payload: SignupIn, db: Session = Depends(get_db)):
    try:
        issued = AuthService(db).signup(payload.email, payload.password)
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return SignupOut(
        message="Account created successfully",
        user_id=issued.user_id,
        token=issued.token,
        refresh_token=issued.refresh_token,
        expires_at=issued.expires_at,
    )


@app.post("/auth/login", response_model=TokenPairOut)
def login(payload: LoginIn, db: Session = Depends(get_db)):
    try:
        issued = AuthService(db).login(payload.email, payload.password)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return TokenPairOut(
        token=issued.token,
        refresh_token=issued.refresh_token,
        expires_at=issued.expires_at,
    )


@app.post("/auth/refresh-token", response_model=TokenPairOut)
def refresh_token(payload: RefreshIn, db: Session = Depends(get_db)):
    try:
        issued = AuthService(db).refresh(payload.refresh_token)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return TokenPairOut(
        token=issued.token,
        refresh_token=issued.refresh_token,
        expires_at=issued.expires_at,
    )


@app.post("/auth/logout", response_model=MessageOut)
def logout(payload: RefreshIn, db: Session = Depends(get_db)):
    try:
        AuthService(db).logout(payload.refresh_token)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return MessageOut(message="Logged out successfully")


@app.patch("/user/password", response_model=MessageOut)
def change_password(
    payload: PasswordChangeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        AuthService(db).change_password(
            user_id, payload.old_password, payload.new_password
        )
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return MessageOut(message="Password updated")


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AccountService(db, user_id).list_all()


@app.post("/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).create(payload)
    return {"message": "Account Created", "accountId": account.id}


@app.patch("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/accounts/{account_id}", response_model=MessageOut)
def delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        AccountService(db, user_id).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Account Deleted")


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).list_all()


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(payload)


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/categories/{category_id}", response_model=MessageOut)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Category deleted")


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return TransactionService(db, user_id).list_all()


@app.post("/transactions", response_model=TransactionCreatedOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return TransactionCreatedOut(message="Transaction Created", transaction_id=txn.id)


@app.patch("/transactions/{transaction_id}", response_model=MessageOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Transaction Updated")


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.delete("/budget/reset", response_model=MessageOut)
def reset_budget(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    BudgetService(db, user_id).reset_current_month()
    return MessageOut(message="Budget data reset for current month")


@app.get("/budget/{month}", response_model=list[BudgetItemOut])
def read_budget(
    user_id: int = Depends(current_user_id),
    month: Month = Depends(month_from_path),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).items_for_month(month)


@app.post(
    "/budget/{month}/categories/{category_id}",
    response_model=BudgetItemOut,
    status_code=201,
)
def assign_budget(
    category_id: int,
    payload: BudgetAssignIn,
    user_id: int = Depends(current_user_id),
    month: Month = Depends(month_from_path),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, user_id).assign(month, category_id, payload.amount)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/budget/{month}/rollover", response_model=MessageOut)
def rollover_budget(
    user_id: int = Depends(current_user_id),
    month: Month = Depends(month_from_path),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user_id).rollover(month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Rollover successful")


@app.get("/goals", response_model=list[GoalOut])
def list_goals(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return GoalService(db, user_id).list_all()


@app.post("/goals", response_model=GoalOut, status_code=201)
def create_goal(
    payload: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return GoalService(db, user_id).create(payload)


@app.patch("/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    payload: GoalUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return GoalService(db, user_id).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/goals/{goal_id}", response_model=MessageOut)
def delete_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Goal deleted")


@app.get("/user/dashboard")
def user_dashboard(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    data = ReportService(db, user_id).dashboard()
    summary = data["summary"]
    return {
        "accounts": [
            AccountOut.model_validate(a).model_dump(by_alias=True)
            for a in data["accounts"]
        ],
        "totalBalance": data["total_balance"],
        "totalSpent": data["total_spent"],
        "unassigned": data["unassigned"],
        "recentTransactions": [
            TransactionOut.model_validate(txn).model_dump(by_alias=True, mode="json")
            for txn in data["recent_transactions"]
        ],
        "summary": {
            "topPurchase": summary["top_purchase"],
            "topCategory": summary["top_category"],
            "weeklyChangePercent": summary["weekly_change_percent"],
        },
    }


@app.get("/reports/spending")
def report_spending(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        data = ReportService(db, user_id).spending(start_date, end_date)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "byCategory": data["by_category"],
        "totalSpent": data["total_spent"],
        "transactions": [
            TransactionOut.model_validate(txn).model_dump(by_alias=True, mode="json")
            for txn in data["transactions"]
        ],
    }


@app.get("/reports/net-worth")
def report_net_worth(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    data = ReportService(db, user_id).net_worth()
    return {
        "netWorth": data["net_worth"],
        "accounts": [
            AccountOut.model_validate(a).model_dump(by_alias=True)
            for a in data["accounts"]
        ],
    }


@app.get("/reports/trends")
def report_trends(
    months: int = Query(6, ge=1, le=120),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ReportService(db, user_id).trends(months)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
