import logging
from datetime import date
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from clock import Clock
from database import SessionLocal, get_engine
from models import (
    AuditLogEntry,
    Budget,
    Category,
    MemberRole,
    Notification,
    Rule,
    Team,
    Transaction,
    TransactionStatus,
    User,
)
from schemas import (
    BudgetIn,
    CategoryIn,
    MemberIn,
    RuleIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BudgetAnalytics,
    BudgetService,
    BudgetStatus,
    CategoryService,
    ConflictError,
    DependencyError,
    IngestService,
    NotFoundError,
    NotificationService,
    RequestContext,
    RuleService,
    ServiceError,
    TeamService,
    TransactionService,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Expenses")


def get_db():
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return Clock()


def get_context(
    x_team_id: Optional[int] = Header(default=None),
    x_user_id: Optional[int] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> RequestContext:
    if x_team_id is None or x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing identity headers")
    try:
        role = MemberRole(x_user_role or MemberRole.member.value)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Unknown role") from exc
    return RequestContext(team_id=x_team_id, user_id=x_user_id, role=role)


def require_admin(ctx: RequestContext = Depends(get_context)) -> RequestContext:
    if ctx.role != MemberRole.admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return ctx


def http_error(exc: ServiceError) -> HTTPException:
    logger.info(f"request_rejected: {type(exc).__name__}: {exc}")
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DependencyError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def transaction_out(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "description": txn.description,
        "amount": str(txn.amount),
        "date": txn.date.isoformat(),
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "bank": txn.bank,
        "source": txn.source.value,
        "status": txn.status.value,
        "is_ai_suggested": txn.is_ai_suggested,
    }


def category_out(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "is_active": category.is_active,
    }


def rule_out(rule: Rule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "field": rule.field.value,
        "match_text": rule.match_text,
        "category_id": rule.category_id,
        "is_active": rule.is_active,
    }


def budget_out(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "amount": str(budget.amount),
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
        "is_active": budget.is_active,
    }


def budget_status_out(status: BudgetStatus) -> dict[str, Any]:
    return {
        "budget_id": status.budget_id,
        "category_id": status.category_id,
        "category": status.category_name,
        "period": status.period,
        "start": status.window.start.isoformat(),
        "end": status.window.end.isoformat() if status.window.end else None,
        "amount": str(status.amount),
        "spent": str(status.spent),
        "remaining": str(status.remaining),
        "percentage": str(status.percentage),
        "status": status.status,
    }


def audit_out(entry: AuditLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_id": entry.transaction_id,
        "user_id": entry.user_id,
        "change_type": entry.change_type.value,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "changed_at": entry.changed_at.isoformat(),
    }


def notification_out(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "title": notification.title,
        "body": notification.body,
        "type": notification.type.value,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
        "related_transaction_id": notification.related_transaction_id,
        "related_category_id": notification.related_category_id,
    }


def member_out(member: User) -> dict[str, Any]:
    return {
        "id": member.id,
        "team_id": member.team_id,
        "name": member.name,
        "email": member.email,
        "role": member.role.value,
        "is_active": member.is_active,
    }


def team_out(team: Team) -> dict[str, Any]:
    return {"id": team.id, "name": team.name, "invite_code": team.invite_code}


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    founder: MemberIn


class TeamJoin(BaseModel):
    invite_code: str = Field(..., min_length=1, max_length=32)
    member: MemberIn


class TeamRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class RoleChange(BaseModel):
    role: MemberRole


class BanksIn(BaseModel):
    banks: list[str] = Field(default_factory=list)


class IngestRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    rows: list[dict[str, Any]]


@app.post("/teams", status_code=201)
def create_team(payload: TeamCreate, db: Session = Depends(get_db)):
    try:
        team, founder = TeamService.create_team(db, payload.name, payload.founder)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {"team": team_out(team), "member": member_out(founder)}


@app.post("/teams/join", status_code=201)
def join_team(
    payload: TeamJoin,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    try:
        member = TeamService.join_team(db, payload.invite_code, payload.member, clock)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return member_out(member)


@app.get("/team")
def get_team(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    service = TeamService(db, ctx, clock)
    try:
        team = service.get_team()
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {**team_out(team), "members": [member_out(m) for m in service.members()]}


@app.patch("/team")
def rename_team(
    payload: TeamRename,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        team = TeamService(db, ctx, clock).rename(payload.name)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return team_out(team)


@app.post("/team/invite-code")
def regenerate_invite_code(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        code = TeamService(db, ctx, clock).regenerate_invite_code()
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {"invite_code": code}


@app.post("/team/members", status_code=201)
def add_member(
    payload: MemberIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        member = TeamService(db, ctx, clock).add_member(payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return member_out(member)


@app.delete("/team/members/{user_id}", status_code=204)
def remove_member(
    user_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        TeamService(db, ctx, clock).remove_member(user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.put("/team/members/{user_id}/role")
def change_role(
    user_id: int,
    payload: RoleChange,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    try:
        member = TeamService(db, ctx, clock).change_role(user_id, payload.role)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return member_out(member)


@app.put("/team/members/{user_id}/banks")
def set_banks(
    user_id: int,
    payload: BanksIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    if user_id != ctx.user_id and ctx.role != MemberRole.admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    try:
        member = TeamService(db, ctx, clock).set_banks(user_id, payload.banks)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return member_out(member)


@app.get("/transactions")
def list_transactions(
    category_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    q: Optional[str] = None,
    status: TransactionStatus = TransactionStatus.active,
    bank: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    service = TransactionService(db, ctx, clock)
    filters = {
        "category_id": category_id,
        "start": start,
        "end": end,
        "query": q,
        "status": status,
        "bank": bank,
        "page": page,
        "page_size": page_size,
    }
    try:
        items = service.list(filters)
        total = service.count(filters)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {"items": [transaction_out(t) for t in items], "total": total, "page": page}


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        txn = TransactionService(db, ctx, clock).create(payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.post("/transactions/apply-rules")
def apply_rules(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        result = TransactionService(db, ctx, clock).apply_rules()
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {
        "categorized_count": result.categorized_count,
        "total_processed": result.total_processed,
        "details": [
            {
                "transaction_id": d.transaction_id,
                "description": d.description,
                "old_category_id": d.old_category_id,
                "new_category_id": d.new_category_id,
                "rule_id": d.rule_id,
                "rule_name": d.rule_name,
            }
            for d in result.details
        ],
    }


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        txn = TransactionService(db, ctx, clock).get(transaction_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        txn = TransactionService(db, ctx, clock).update(transaction_id, payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    deleted = TransactionService(db, ctx, clock).delete(transaction_id)
    return {"deleted": deleted}


@app.get("/transactions/{transaction_id}/history")
def transaction_history(
    transaction_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    entries = TransactionService(db, ctx, clock).history(transaction_id)
    return [audit_out(e) for e in entries]


@app.get("/categories")
def list_categories(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    categories = CategoryService(db, ctx, clock).list_all(include_inactive)
    return [category_out(c) for c in categories]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        category = CategoryService(db, ctx, clock).create(payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        category = CategoryService(db, ctx, clock).update(category_id, payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return category_out(category)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        CategoryService(db, ctx, clock).delete(category_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/rules")
def list_rules(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    return [rule_out(r) for r in RuleService(db, ctx, clock).list_all()]


@app.post("/rules", status_code=201)
def create_rule(
    payload: RuleIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        rule = RuleService(db, ctx, clock).create(payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return rule_out(rule)


@app.put("/rules/{rule_id}")
def update_rule(
    rule_id: int,
    payload: RuleIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        rule = RuleService(db, ctx, clock).update(rule_id, payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return rule_out(rule)


@app.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        RuleService(db, ctx, clock).delete(rule_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/budgets")
def list_budgets(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    budgets = BudgetService(db, ctx, clock).list_all(include_inactive)
    return [budget_out(b) for b in budgets]


@app.get("/budgets/status")
def budget_status(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        statuses = BudgetAnalytics(db, ctx, clock).analyze(month=month, year=year)
    except ServiceError as exc:
        raise http_error(exc) from exc
    summary = BudgetAnalytics.summary(statuses)
    return {
        "budgets": [budget_status_out(s) for s in statuses],
        "summary": {key: str(value) for key, value in summary.items()},
    }


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        budget = BudgetService(db, ctx, clock).create(payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return budget_out(budget)


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        budget = BudgetService(db, ctx, clock).update(budget_id, payload)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return budget_out(budget)


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        BudgetService(db, ctx, clock).delete(budget_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/notifications")
def list_notifications(
    unread_only: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    service = NotificationService(db, ctx, clock)
    return {
        "items": [
            notification_out(n) for n in service.list_for_user(unread_only=unread_only)
        ],
        "unread": service.unread_count(),
    }


@app.post("/notifications/read-all")
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    return {"updated": NotificationService(db, ctx, clock).mark_all_read()}


@app.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        notification = NotificationService(db, ctx, clock).mark_read(notification_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return notification_out(notification)


@app.post("/ingest")
def ingest(
    payload: IngestRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_context),
    clock: Clock = Depends(get_clock),
):
    try:
        result = IngestService(db, ctx, clock).ingest_rows(
            payload.rows, payload.filename
        )
    except ServiceError as exc:
        raise http_error(exc) from exc
    return {
        "created": [transaction_out(t) for t in result.created],
        "errors": result.errors,
    }
