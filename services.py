from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from categorization import Candidate, first_match
from clock import Clock
from config import get_settings
from models import (
    AuditLogEntry,
    Budget,
    Category,
    ChangeType,
    MemberRole,
    Notification,
    NotificationType,
    Rule,
    Team,
    Transaction,
    TransactionSource,
    TransactionStatus,
    User,
)
from periods import Period, budget_window
from schemas import (
    BudgetIn,
    CategoryIn,
    IngestRow,
    MemberIn,
    RuleIn,
    TransactionFilters,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
M = TypeVar("M", bound=BaseModel)


class ServiceError(ValueError):
    pass


class NotFoundError(ServiceError):
    """Id absent, or owned by another team; the two are indistinguishable."""


class ValidationError(ServiceError):
    pass


class ConflictError(ServiceError):
    pass


class DependencyError(ServiceError):
    pass


@dataclass(frozen=True)
class RequestContext:
    team_id: int
    user_id: int
    role: MemberRole = MemberRole.member


def validated(model_cls: type[M], data: Any) -> M:
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


def money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


def category_label(txn: Transaction) -> str:
    if txn.category is not None:
        return txn.category.name
    return get_settings().uncategorized_label


def snapshot(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "description": txn.description,
        "amount": str(money(txn.amount)),
        "date": txn.date.isoformat(),
        "category_id": txn.category_id,
        "bank": txn.bank,
        "source": TransactionSource(txn.source).value,
        "status": TransactionStatus(txn.status).value,
        "is_ai_suggested": bool(txn.is_ai_suggested),
    }


def run_isolated(session: Session, label: str, fn: Callable[[], Any]) -> Any:
    """Run a best-effort side effect inside a SAVEPOINT.

    Failures are logged and rolled back to the savepoint; they never reach
    the caller or undo the surrounding unit of work.
    """
    try:
        with session.begin_nested():
            return fn()
    except Exception:
        logger.exception(f"side_effect_failed: {label}")
        return None


class TeamScopedService:
    """Base for every data-access service; all reads go through the team filter."""

    def __init__(
        self,
        session: Session,
        ctx: RequestContext,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.ctx = ctx
        self.team_id = ctx.team_id
        self.clock = clock or Clock()
        self.settings = get_settings()

    def _select(self, model):
        return select(model).where(model.team_id == self.team_id)

    def _get(self, model, obj_id: int, label: str):
        obj = self.session.scalar(self._select(model).where(model.id == obj_id))
        if obj is None:
            raise NotFoundError(f"{label} not found")
        return obj

    def _member(self) -> User:
        member = self.session.scalar(
            self._select(User).where(User.id == self.ctx.user_id)
        )
        if member is None:
            raise NotFoundError("Member not found")
        return member

    def _active_category(self, category_id: int) -> Category:
        category = self.session.scalar(
            self._select(Category).where(
                Category.id == category_id, Category.is_active.is_(True)
            )
        )
        if category is None:
            raise DependencyError(f"Category {category_id} does not exist")
        return category

    def _commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


@dataclass
class TransactionEvent:
    kind: ChangeType
    transaction: Transaction
    before: Optional[dict[str, Any]]
    after: Optional[dict[str, Any]]
    rule: Optional[Rule] = None


class TransactionStore(TeamScopedService):
    """Team-scoped persistence for transactions. Produces events, no side effects."""

    def _banks_for(self, member: User) -> list[str]:
        if member.banks_json:
            banks = [b for b in json.loads(member.banks_json) if b]
            if banks:
                return banks
        return list(self.settings.default_banks)

    def _resolve_bank(self, bank: Optional[str]) -> Optional[str]:
        banks = self._banks_for(self._member())
        if bank is None:
            return banks[0] if banks else None
        if banks and bank not in banks:
            raise ValidationError(
                f'Bank "{bank}" is not valid. Options: {", ".join(banks)}'
            )
        return bank

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            self._select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.id == transaction_id,
                Transaction.status != TransactionStatus.deleted,
            )
        )
        txn = self.session.scalar(stmt)
        if txn is None:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn, rules: Sequence[Rule]) -> TransactionEvent:
        category_id = data.category_id
        if category_id is not None:
            self._active_category(category_id)
        bank = self._resolve_bank(data.bank)

        rule = first_match(
            Candidate(description=data.description, amount=data.amount, date=data.date),
            rules,
        )
        is_ai_suggested = False
        if rule is not None:
            category_id = rule.category_id
            is_ai_suggested = True

        txn = Transaction(
            team_id=self.team_id,
            user_id=self.ctx.user_id,
            description=data.description.strip(),
            amount=money(data.amount),
            date=data.date,
            category_id=category_id,
            bank=bank,
            source=data.source,
            status=data.status,
            is_ai_suggested=is_ai_suggested,
        )
        self.session.add(txn)
        self.session.flush()
        return TransactionEvent(ChangeType.created, txn, None, snapshot(txn), rule)

    def update(self, transaction_id: int, data: TransactionUpdate) -> TransactionEvent:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if "category_id" in changes and changes["category_id"] is not None:
            self._active_category(changes["category_id"])
        if "bank" in changes:
            changes["bank"] = self._resolve_bank(changes["bank"])
        for key in ("description", "amount", "date", "status"):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be cleared")

        before = snapshot(txn)
        if "description" in changes:
            txn.description = changes["description"].strip()
        if "amount" in changes:
            txn.amount = money(changes["amount"])
        if "date" in changes:
            txn.date = changes["date"]
        if "bank" in changes:
            txn.bank = changes["bank"]
        if "status" in changes:
            txn.status = changes["status"]
        if "category_id" in changes and changes["category_id"] != txn.category_id:
            txn.category_id = changes["category_id"]
            txn.is_ai_suggested = False
        self.session.flush()
        self.session.refresh(txn, ["category"])
        return TransactionEvent(ChangeType.updated, txn, before, snapshot(txn))

    def soft_delete(self, transaction_id: int) -> Optional[TransactionEvent]:
        txn = self.session.scalar(
            self._select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.status != TransactionStatus.deleted,
            )
        )
        if txn is None:
            return None
        before = snapshot(txn)
        txn.status = TransactionStatus.deleted
        self.session.flush()
        return TransactionEvent(ChangeType.deleted, txn, before, snapshot(txn))

    def recategorize(self, txn: Transaction, rule: Rule) -> TransactionEvent:
        before = snapshot(txn)
        txn.category_id = rule.category_id
        txn.is_ai_suggested = True
        self.session.flush()
        after = snapshot(txn)
        after["rule_id"] = rule.id
        after["rule_name"] = rule.name
        return TransactionEvent(ChangeType.category_changed, txn, before, after, rule)

    def _filtered(self, filters: TransactionFilters):
        stmt = self._select(Transaction).where(Transaction.status == filters.status)
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.query:
            stmt = stmt.where(
                func.lower(Transaction.description).contains(
                    filters.query.lower(), autoescape=True
                )
            )
        if filters.bank:
            stmt = stmt.where(Transaction.bank == filters.bank)
        return stmt

    def list(self, filters: TransactionFilters) -> list[Transaction]:
        page_size = filters.page_size or self.settings.page_size
        stmt = (
            self._filtered(filters)
            .options(joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((filters.page - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.scalars(stmt).all())

    def count(self, filters: TransactionFilters) -> int:
        subq = self._filtered(filters).subquery()
        return int(self.session.scalar(select(func.count()).select_from(subq)) or 0)

    def active(self) -> list[Transaction]:
        stmt = (
            self._select(Transaction)
            .where(Transaction.status == TransactionStatus.active)
            .order_by(Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def recent_active(self, since, *, limit: int, exclude_id: Optional[int] = None):
        stmt = (
            self._select(Transaction)
            .where(
                Transaction.status == TransactionStatus.active,
                Transaction.date >= since,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if exclude_id is not None:
            stmt = stmt.where(Transaction.id != exclude_id)
        return list(self.session.scalars(stmt).all())


class AuditLogService(TeamScopedService):
    def append(
        self,
        transaction_id: int,
        change_type: ChangeType,
        old_value: Optional[dict[str, Any]],
        new_value: Optional[dict[str, Any]],
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            team_id=self.team_id,
            transaction_id=transaction_id,
            user_id=self.ctx.user_id,
            change_type=change_type,
            old_value=old_value,
            new_value=new_value,
            changed_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def record(self, event: TransactionEvent) -> AuditLogEntry:
        return self.append(event.transaction.id, event.kind, event.before, event.after)

    def history(self, transaction_id: int) -> list[AuditLogEntry]:
        stmt = (
            self._select(AuditLogEntry)
            .where(AuditLogEntry.transaction_id == transaction_id)
            .order_by(AuditLogEntry.changed_at.desc(), AuditLogEntry.id.desc())
        )
        return list(self.session.scalars(stmt).all())


class CategoryService(TeamScopedService):
    def list_all(self, include_inactive: bool = False) -> list[Category]:
        stmt = self._select(Category).order_by(Category.name, Category.id)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        return self._get(Category, category_id, "Category")

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = self._select(Category).where(
            Category.is_active.is_(True),
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        data = validated(CategoryIn, data)
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        self._ensure_unique(name)
        category = Category(
            team_id=self.team_id,
            name=name,
            icon=data.icon or "📝",
            color=data.color or "#6366f1",
            is_active=True,
        )
        self.session.add(category)
        self._commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        data = validated(CategoryIn, data)
        category = self.get(category_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        self._ensure_unique(name, exclude_id=category.id)
        category.name = name
        if data.icon is not None:
            category.icon = data.icon
        if data.color is not None:
            category.color = data.color
        self._commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.team_id == self.team_id,
                Transaction.category_id == category.id,
                Transaction.status == TransactionStatus.active,
            )
        )
        if in_use:
            raise ConflictError(
                f"Category '{category.name}' is used by {in_use} active transactions"
            )
        category.is_active = False
        self.session.execute(
            update(Rule)
            .where(Rule.team_id == self.team_id, Rule.category_id == category.id)
            .values(is_active=False)
        )
        self._commit()


class RuleService(TeamScopedService):
    def list_all(self) -> list[Rule]:
        stmt = (
            self._select(Rule)
            .options(joinedload(Rule.category))
            .order_by(Rule.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def active_rules(self) -> list[Rule]:
        """Rules eligible for matching, in evaluation (insertion) order."""
        stmt = (
            self._select(Rule)
            .join(Rule.category)
            .where(Rule.is_active.is_(True), Category.is_active.is_(True))
            .order_by(Rule.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, rule_id: int) -> Rule:
        return self._get(Rule, rule_id, "Rule")

    def create(self, data: RuleIn) -> Rule:
        data = validated(RuleIn, data)
        self._active_category(data.category_id)
        rule = Rule(
            team_id=self.team_id,
            name=data.name.strip(),
            field=data.field,
            match_text=data.match_text.strip(),
            category_id=data.category_id,
            is_active=data.is_active,
        )
        self.session.add(rule)
        self._commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RuleIn) -> Rule:
        data = validated(RuleIn, data)
        rule = self.get(rule_id)
        self._active_category(data.category_id)
        rule.name = data.name.strip()
        rule.field = data.field
        rule.match_text = data.match_text.strip()
        rule.category_id = data.category_id
        rule.is_active = data.is_active
        self._commit()
        self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self._commit()


class BudgetService(TeamScopedService):
    def list_all(self, include_inactive: bool = False) -> list[Budget]:
        stmt = (
            self._select(Budget)
            .options(joinedload(Budget.category))
            .order_by(Budget.id.asc())
        )
        if not include_inactive:
            stmt = stmt.where(Budget.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, budget_id: int) -> Budget:
        return self._get(Budget, budget_id, "Budget")

    def create(self, data: BudgetIn) -> Budget:
        data = validated(BudgetIn, data)
        self._active_category(data.category_id)
        budget = Budget(
            team_id=self.team_id,
            category_id=data.category_id,
            amount=money(data.amount),
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            is_active=data.is_active,
        )
        self.session.add(budget)
        self._commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        data = validated(BudgetIn, data)
        budget = self.get(budget_id)
        self._active_category(data.category_id)
        budget.category_id = data.category_id
        budget.amount = money(data.amount)
        budget.period = data.period
        budget.start_date = data.start_date
        budget.end_date = data.end_date
        budget.is_active = data.is_active
        self._commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self._commit()


@dataclass(frozen=True)
class BudgetStatus:
    budget_id: int
    category_id: int
    category_name: str
    period: str
    window: Period
    amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: str  # "good" | "warning" | "over"


def classify_budget(
    amount: Decimal, spent: Decimal, warning_pct: Decimal
) -> tuple[Decimal, str]:
    percentage = (spent * 100 / amount) if amount > 0 else Decimal("0")
    if spent > amount:
        status = "over"
    elif spent == amount:
        # fully used, not exceeded
        status = "good"
    elif percentage >= warning_pct:
        status = "warning"
    else:
        status = "good"
    return percentage, status


class BudgetAnalytics(TeamScopedService):
    """Spend per active budget, recomputed from transactions on every call."""

    def _spent(self, category_id: int, window: Period) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.team_id == self.team_id,
            Transaction.status == TransactionStatus.active,
            Transaction.category_id == category_id,
            Transaction.date >= window.start,
        )
        if window.end is not None:
            stmt = stmt.where(Transaction.date <= window.end)
        return money(self.session.execute(stmt).scalar_one())

    def analyze(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[BudgetStatus]:
        if month is not None and not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12")
        if year is not None and not 1970 <= year <= 3000:
            raise ValidationError("Year out of range")

        today = self.clock.today()
        budgets = self.session.scalars(
            self._select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.is_active.is_(True))
            .order_by(Budget.id.asc())
        ).all()

        statuses: list[BudgetStatus] = []
        for budget in budgets:
            window = budget_window(budget, today=today, month=month, year=year)
            amount = money(budget.amount)
            spent = self._spent(budget.category_id, window)
            percentage, status = classify_budget(
                amount, spent, self.settings.budget_warning_pct
            )
            statuses.append(
                BudgetStatus(
                    budget_id=budget.id,
                    category_id=budget.category_id,
                    category_name=budget.category.name,
                    period=budget.period.value,
                    window=window,
                    amount=amount,
                    spent=spent,
                    remaining=amount - spent,
                    percentage=percentage.quantize(CENT),
                    status=status,
                )
            )
        return statuses

    @staticmethod
    def summary(statuses: Iterable[BudgetStatus]) -> dict[str, Decimal]:
        rows = list(statuses)
        budgeted = sum((s.amount for s in rows), Decimal("0"))
        spent = sum((s.spent for s in rows), Decimal("0"))
        return {"budgeted": budgeted, "spent": spent, "remaining": budgeted - spent}


class NotificationService(TeamScopedService):
    def emit(
        self,
        *,
        title: str,
        body: str,
        type: NotificationType,
        user_id: Optional[int] = None,
        transaction_id: Optional[int] = None,
        category_id: Optional[int] = None,
    ) -> Notification:
        notification = Notification(
            team_id=self.team_id,
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            is_read=False,
            created_at=self.clock.now(),
            related_transaction_id=transaction_id,
            related_category_id=category_id,
        )
        self.session.add(notification)
        self.session.flush()
        return notification

    def broadcast(
        self,
        title: str,
        body: str,
        *,
        type: NotificationType = NotificationType.info,
        category_id: Optional[int] = None,
    ) -> list[Notification]:
        """Fan one notice out to every active member of the team."""
        members = self.session.scalars(
            self._select(User).where(User.is_active.is_(True)).order_by(User.id)
        ).all()
        return [
            self.emit(
                title=title,
                body=body,
                type=type,
                user_id=m.id,
                category_id=category_id,
            )
            for m in members
        ]

    def broadcast_isolated(self, title: str, body: str) -> None:
        run_isolated(
            self.session,
            f"broadcast team={self.team_id} title={title!r}",
            lambda: self.broadcast(title, body),
        )

    def _visible(self):
        return self._select(Notification).where(
            (Notification.user_id == self.ctx.user_id)
            | Notification.user_id.is_(None)
        )

    def list_for_user(
        self, *, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]:
        stmt = self._visible().order_by(
            Notification.created_at.desc(), Notification.id.desc()
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        return list(self.session.scalars(stmt.limit(limit)).all())

    def unread_count(self) -> int:
        subq = self._visible().where(Notification.is_read.is_(False)).subquery()
        return int(self.session.scalar(select(func.count()).select_from(subq)) or 0)

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.session.scalar(
            self._visible().where(Notification.id == notification_id)
        )
        if notification is None:
            raise NotFoundError("Notification not found")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self.clock.now()
            self._commit()
        return notification

    def mark_all_read(self) -> int:
        rows = self.session.scalars(
            self._visible().where(Notification.is_read.is_(False))
        ).all()
        now = self.clock.now()
        for notification in rows:
            notification.is_read = True
            notification.read_at = now
        self._commit()
        return len(rows)


class AlertDispatcher(TeamScopedService):
    """Inspects a write and the team's budgets; emits notifications.

    Every check runs in its own savepoint so a failing check is logged and
    skipped without affecting the write or the other checks.
    """

    def __init__(self, session, ctx, clock=None) -> None:
        super().__init__(session, ctx, clock)
        self.notifications = NotificationService(session, ctx, self.clock)
        self.analytics = BudgetAnalytics(session, ctx, self.clock)
        self.store = TransactionStore(session, ctx, self.clock)

    def after_write(self, event: TransactionEvent) -> list[Notification]:
        txn = event.transaction
        checks: list[Callable[[], list[Notification]]] = []
        if event.kind == ChangeType.created:
            checks.append(lambda: self.check_anomaly(txn))
            checks.append(lambda: self.check_high_value(txn))
            checks.append(lambda: self.check_auto_categorized(txn))
        checks.append(self.check_budgets)

        emitted: list[Notification] = []
        for check in checks:
            result = run_isolated(
                self.session, f"alert_check team={self.team_id} txn={txn.id}", check
            )
            emitted.extend(result or [])
        return emitted

    def after_batch(self) -> list[Notification]:
        return run_isolated(
            self.session, f"alert_check team={self.team_id} batch", self.check_budgets
        ) or []

    def check_anomaly(self, txn: Transaction) -> list[Notification]:
        since = self.clock.today() - timedelta(days=self.settings.anomaly_window_days)
        recent = self.store.recent_active(
            since, limit=self.settings.anomaly_sample_size, exclude_id=txn.id
        )
        if len(recent) <= self.settings.anomaly_min_history:
            return []
        average = sum((abs(money(t.amount)) for t in recent), Decimal("0")) / len(
            recent
        )
        amount = abs(money(txn.amount))
        if amount < average * self.settings.anomaly_multiplier:
            return []
        if amount <= self.settings.anomaly_floor:
            return []
        return [
            self.notifications.emit(
                title="Unusual expense detected",
                body=(
                    f'"{txn.description}" for {amount} is well above the recent '
                    f"average of {average.quantize(CENT)}."
                ),
                type=NotificationType.alert,
                user_id=self.ctx.user_id,
                transaction_id=txn.id,
            )
        ]

    def check_high_value(self, txn: Transaction) -> list[Notification]:
        amount = abs(money(txn.amount))
        if amount <= self.settings.high_value_floor:
            return []
        return [
            self.notifications.emit(
                title="High-value expense",
                body=f'"{txn.description}" was recorded for {amount}.',
                type=NotificationType.alert,
                user_id=self.ctx.user_id,
                transaction_id=txn.id,
            )
        ]

    def check_auto_categorized(self, txn: Transaction) -> list[Notification]:
        if not txn.is_ai_suggested:
            return []
        return [
            self.notifications.emit(
                title="Transaction auto-categorized",
                body=f'"{txn.description}" was assigned to {category_label(txn)}.',
                type=NotificationType.info,
                user_id=self.ctx.user_id,
                transaction_id=txn.id,
                category_id=txn.category_id,
            )
        ]

    def _recent_alert_for(self, category_id: int, category_name: str) -> bool:
        since = self.clock.now() - timedelta(hours=self.settings.alert_dedup_hours)
        stmt = select(Notification.id).where(
            Notification.team_id == self.team_id,
            Notification.type == NotificationType.alert,
            Notification.created_at >= since,
            Notification.related_category_id == category_id,
            Notification.title.contains(category_name, autoescape=True),
        )
        return self.session.scalar(stmt.limit(1)) is not None

    def check_budgets(self) -> list[Notification]:
        emitted: list[Notification] = []
        for status in self.analytics.analyze():
            if status.status == "good":
                continue
            if self._recent_alert_for(status.category_id, status.category_name):
                continue
            if status.status == "over":
                title = f"Budget exceeded: {status.category_name}"
                body = (
                    f"Spending in {status.category_name} is "
                    f"{status.spent - status.amount} over the budget of {status.amount}."
                )
            else:
                title = f"Budget warning: {status.category_name}"
                body = (
                    f"{status.percentage:.0f}% of the {status.category_name} budget "
                    f"is used; {status.remaining} remaining."
                )
            emitted.extend(
                self.notifications.broadcast(
                    title,
                    body,
                    type=NotificationType.alert,
                    category_id=status.category_id,
                )
            )
        return emitted


@dataclass(frozen=True)
class RuleApplication:
    transaction_id: int
    description: str
    old_category_id: Optional[int]
    new_category_id: int
    rule_id: int
    rule_name: str


@dataclass
class ApplyRulesResult:
    categorized_count: int
    total_processed: int
    details: list[RuleApplication] = field(default_factory=list)


class TransactionService(TeamScopedService):
    """Entry point for transaction writes.

    Each write runs as one unit of work: the store change, its audit entry,
    and the alerting pass commit together.
    """

    def __init__(self, session, ctx, clock=None) -> None:
        super().__init__(session, ctx, clock)
        self.store = TransactionStore(session, ctx, self.clock)
        self.audit = AuditLogService(session, ctx, self.clock)
        self.rules = RuleService(session, ctx, self.clock)
        self.alerts = AlertDispatcher(session, ctx, self.clock)
        self.notifications = NotificationService(session, ctx, self.clock)

    def _record(self, event: TransactionEvent) -> None:
        self.audit.record(event)
        self.alerts.after_write(event)

    def create(self, data: TransactionIn) -> Transaction:
        data = validated(TransactionIn, data)
        try:
            event = self.store.create(data, self.rules.active_rules())
            self._record(event)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        txn = event.transaction
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} team={self.team_id} "
            f"rule={event.rule.id if event.rule else None}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        data = validated(TransactionUpdate, data)
        try:
            event = self.store.update(transaction_id, data)
            self._record(event)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(event.transaction)
        logger.info(f"transaction_updated: id={transaction_id} team={self.team_id}")
        return event.transaction

    def delete(self, transaction_id: int) -> bool:
        try:
            event = self.store.soft_delete(transaction_id)
            if event is None:
                self.session.rollback()
                return False
            self._record(event)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"transaction_deleted: id={transaction_id} team={self.team_id}")
        return True

    def get(self, transaction_id: int) -> Transaction:
        return self.store.get(transaction_id)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = validated(TransactionFilters, filters or TransactionFilters())
        return self.store.list(filters)

    def count(self, filters: Optional[TransactionFilters] = None) -> int:
        filters = validated(TransactionFilters, filters or TransactionFilters())
        return self.store.count(filters)

    def history(self, transaction_id: int) -> list[AuditLogEntry]:
        return self.audit.history(transaction_id)

    def apply_rules(self) -> ApplyRulesResult:
        """Re-run the active rules over every active transaction of the team."""
        rules = self.rules.active_rules()
        result = ApplyRulesResult(categorized_count=0, total_processed=0)
        try:
            for txn in self.store.active():
                result.total_processed += 1
                rule = first_match(txn, rules)
                if rule is None or rule.category_id == txn.category_id:
                    continue
                old_category_id = txn.category_id
                event = self.store.recategorize(txn, rule)
                self.audit.record(event)
                result.categorized_count += 1
                result.details.append(
                    RuleApplication(
                        transaction_id=txn.id,
                        description=txn.description,
                        old_category_id=old_category_id,
                        new_category_id=rule.category_id,
                        rule_id=rule.id,
                        rule_name=rule.name,
                    )
                )
            self.alerts.after_batch()
            self.notifications.broadcast_isolated(
                "Rules applied",
                f"{result.categorized_count} of {result.total_processed} "
                "transactions were recategorized.",
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"rules_applied: team={self.team_id} "
            f"categorized={result.categorized_count} processed={result.total_processed}"
        )
        return result


class TeamService(TeamScopedService):
    @staticmethod
    def _invite_code() -> str:
        return secrets.token_hex(8).upper()

    @staticmethod
    def _new_member(session: Session, team: Team, data: MemberIn) -> User:
        email = data.email.strip().lower()
        if session.scalar(select(User.id).where(func.lower(User.email) == email)):
            raise ValidationError("A member with this email already exists")
        member = User(
            team_id=team.id,
            name=data.name.strip(),
            email=email,
            role=data.role,
            is_active=True,
            banks_json=json.dumps(data.banks) if data.banks else None,
        )
        session.add(member)
        session.flush()
        return member

    @classmethod
    def create_team(
        cls, session: Session, name: str, founder: MemberIn
    ) -> tuple[Team, User]:
        founder = validated(MemberIn, founder)
        clean = name.strip()
        if not clean:
            raise ValidationError("Team name cannot be empty")
        team = Team(name=clean, invite_code=cls._invite_code())
        session.add(team)
        try:
            session.flush()
            member = cls._new_member(
                session, team, founder.model_copy(update={"role": MemberRole.admin})
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        logger.info(f"team_created: id={team.id}")
        return team, member

    @classmethod
    def join_team(
        cls,
        session: Session,
        invite_code: str,
        data: MemberIn,
        clock: Optional[Clock] = None,
    ) -> User:
        data = validated(MemberIn, data)
        team = session.scalar(
            select(Team).where(Team.invite_code == invite_code.strip().upper())
        )
        if team is None:
            raise NotFoundError("Invalid invitation code")
        try:
            member = cls._new_member(
                session, team, data.model_copy(update={"role": MemberRole.member})
            )
            ctx = RequestContext(team_id=team.id, user_id=member.id)
            NotificationService(session, ctx, clock).broadcast_isolated(
                "New member", f"{member.name} joined the team."
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        return member

    def get_team(self) -> Team:
        team = self.session.get(Team, self.team_id)
        if team is None:
            raise NotFoundError("Team not found")
        return team

    def members(self, include_inactive: bool = False) -> list[User]:
        stmt = self._select(User).order_by(User.name, User.id)
        if not include_inactive:
            stmt = stmt.where(User.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def _notify(self, title: str, body: str) -> None:
        NotificationService(self.session, self.ctx, self.clock).broadcast_isolated(
            title, body
        )

    def rename(self, name: str) -> Team:
        team = self.get_team()
        clean = name.strip()
        if not clean:
            raise ValidationError("Team name cannot be empty")
        team.name = clean
        self.session.flush()
        self._notify("Team renamed", f'The team is now called "{clean}".')
        self._commit()
        return team

    def regenerate_invite_code(self) -> str:
        team = self.get_team()
        team.invite_code = self._invite_code()
        self.session.flush()
        self._notify("Invite code changed", "A new invitation code was generated.")
        self._commit()
        return team.invite_code

    def add_member(self, data: MemberIn) -> User:
        data = validated(MemberIn, data)
        member = self._new_member(self.session, self.get_team(), data)
        self._notify("New member", f"{member.name} was added to the team.")
        self._commit()
        return member

    def remove_member(self, user_id: int) -> None:
        member = self._get(User, user_id, "Member")
        if not member.is_active:
            return
        member.is_active = False
        self.session.flush()
        self._notify("Member removed", f"{member.name} was removed from the team.")
        self._commit()

    def change_role(self, user_id: int, role: MemberRole) -> User:
        member = self._get(User, user_id, "Member")
        member.role = MemberRole(role)
        self.session.flush()
        self._notify("Role changed", f"{member.name} is now {member.role.value}.")
        self._commit()
        return member

    def set_banks(self, user_id: int, banks: list[str]) -> User:
        member = self._get(User, user_id, "Member")
        clean = [b.strip() for b in banks if b and b.strip()]
        member.banks_json = json.dumps(clean) if clean else None
        self._commit()
        return member


@dataclass
class IngestResult:
    created: list[Transaction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class IngestService(TeamScopedService):
    """Turns rows parsed from an uploaded file into transactions."""

    def resolve_category(self, name: str) -> int:
        raw = name.strip()
        lowered = raw.lower()
        categories = CategoryService(self.session, self.ctx, self.clock).list_all()
        for category in categories:
            if category.name.strip().lower() == lowered:
                return category.id

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(lowered, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ValidationError(
                    f"Category '{raw}' is ambiguous; matches: {options}"
                )
            return best[0].id
        created = CategoryService(self.session, self.ctx, self.clock).create(
            validated(CategoryIn, {"name": raw})
        )
        return created.id

    def ingest_rows(self, rows: Iterable[Any], filename: str) -> IngestResult:
        result = IngestResult()
        transactions = TransactionService(self.session, self.ctx, self.clock)
        for index, raw in enumerate(rows, start=1):
            try:
                row = validated(IngestRow, raw)
                category_id = (
                    self.resolve_category(row.category) if row.category else None
                )
                txn = transactions.create(
                    TransactionIn(
                        description=row.description,
                        amount=row.amount,
                        date=row.date,
                        category_id=category_id,
                        bank=row.bank,
                        source=TransactionSource.file,
                    )
                )
                result.created.append(txn)
            except ServiceError as exc:
                result.errors.append(f"Row {index}: {exc}")

        NotificationService(self.session, self.ctx, self.clock).broadcast_isolated(
            "File processed",
            f'"{filename}": {len(result.created)} transactions created, '
            f"{len(result.errors)} errors.",
        )
        self._commit()
        logger.info(
            f"file_processed: team={self.team_id} file={filename!r} "
            f"created={len(result.created)} errors={len(result.errors)}"
        )
        return result
