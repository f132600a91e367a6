from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from models import AuditLogEntry, ChangeType, Transaction, TransactionStatus
from schemas import CategoryIn, RuleIn
from services import (
    CategoryService,
    DependencyError,
    NotFoundError,
    RuleService,
    TransactionService,
    ValidationError,
)


def payload(**overrides):
    data = {
        "description": "Supermercado",
        "amount": "250.50",
        "date": date(2026, 3, 10),
    }
    data.update(overrides)
    return data


def test_create_normalizes_amount_and_defaults_bank(session, ctx, clock) -> None:
    txn = TransactionService(session, ctx, clock).create(payload(amount="-250.5"))

    assert txn.amount == Decimal("250.50")
    assert txn.bank == "Banregio"
    assert txn.status == TransactionStatus.active
    assert txn.team_id == ctx.team_id
    assert txn.user_id == ctx.user_id
    assert txn.category_id is None
    assert txn.is_ai_suggested is False


def test_create_rejects_zero_amount_and_unknown_bank(session, ctx, clock) -> None:
    service = TransactionService(session, ctx, clock)
    with pytest.raises(ValidationError):
        service.create(payload(amount="0"))
    with pytest.raises(ValidationError, match="not valid"):
        service.create(payload(bank="Banco Imaginario"))
    with pytest.raises(ValidationError):
        service.create(payload(amount="10.999"))
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_unknown_category_aborts_without_audit(session, ctx, other_ctx, clock) -> None:
    foreign = CategoryService(session, other_ctx, clock).create(CategoryIn(name="Ajena"))
    service = TransactionService(session, ctx, clock)

    with pytest.raises(DependencyError):
        service.create(payload(category_id=9999))
    with pytest.raises(DependencyError):
        service.create(payload(category_id=foreign.id))

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert session.scalar(select(func.count(AuditLogEntry.id))) == 0


def test_other_team_cannot_see_transaction(session, ctx, other_ctx, clock) -> None:
    txn = TransactionService(session, ctx, clock).create(payload())
    other = TransactionService(session, other_ctx, clock)

    with pytest.raises(NotFoundError):
        other.get(txn.id)
    with pytest.raises(NotFoundError):
        other.update(txn.id, {"description": "hijacked"})
    assert other.delete(txn.id) is False
    assert other.list() == []
    assert other.history(txn.id) == []
    assert TransactionService(session, ctx, clock).get(txn.id).description == "Supermercado"


def test_list_filters_and_pagination(session, ctx, clock) -> None:
    food = CategoryService(session, ctx, clock).create(CategoryIn(name="Comida"))
    service = TransactionService(session, ctx, clock)
    service.create(payload(description="Tacos El Güero", date=date(2026, 3, 1), category_id=food.id))
    service.create(payload(description="Gasolina", date=date(2026, 3, 5)))
    service.create(payload(description="tacos de canasta", date=date(2026, 3, 9), category_id=food.id))
    service.create(payload(description="Cine", date=date(2026, 2, 20), bank="BBVA"))

    everything = service.list()
    assert [t.description for t in everything] == [
        "tacos de canasta",
        "Gasolina",
        "Tacos El Güero",
        "Cine",
    ]
    assert service.count() == 4

    tacos = service.list({"query": "TACOS"})
    assert {t.description for t in tacos} == {"Tacos El Güero", "tacos de canasta"}

    march = service.list({"start": date(2026, 3, 1), "end": date(2026, 3, 5)})
    assert [t.description for t in march] == ["Gasolina", "Tacos El Güero"]

    assert service.count({"category_id": food.id}) == 2
    assert [t.description for t in service.list({"bank": "BBVA"})] == ["Cine"]

    page_two = service.list({"page": 2, "page_size": 3})
    assert [t.description for t in page_two] == ["Cine"]

    with pytest.raises(ValidationError):
        service.list({"start": date(2026, 3, 5), "end": date(2026, 3, 1)})


def test_query_wildcards_are_literal(session, ctx, clock) -> None:
    service = TransactionService(session, ctx, clock)
    service.create(payload(description="Descuento 100%"))
    service.create(payload(description="Descuento 1000"))

    assert [t.description for t in service.list({"query": "100%"})] == ["Descuento 100%"]


def test_soft_delete_is_idempotent(session, ctx, clock) -> None:
    service = TransactionService(session, ctx, clock)
    txn = service.create(payload())

    assert service.delete(txn.id) is True
    assert service.delete(txn.id) is False
    assert service.delete(424242) is False

    with pytest.raises(NotFoundError):
        service.get(txn.id)
    with pytest.raises(NotFoundError):
        service.update(txn.id, {"description": "back from the dead"})

    assert service.list() == []
    deleted = service.list({"status": "deleted"})
    assert [t.id for t in deleted] == [txn.id]

    kinds = [e.change_type for e in service.history(txn.id)]
    assert kinds == [ChangeType.deleted, ChangeType.created]


def test_update_applies_only_given_fields(session, ctx, clock) -> None:
    service = TransactionService(session, ctx, clock)
    txn = service.create(payload(bank="BBVA"))

    updated = service.update(txn.id, {"amount": "99.90"})
    assert updated.amount == Decimal("99.90")
    assert updated.description == "Supermercado"
    assert updated.bank == "BBVA"

    with pytest.raises(ValidationError):
        service.update(txn.id, {"description": None})
    with pytest.raises(ValidationError):
        service.update(txn.id, {"status": "deleted"})


def test_manual_recategorization_clears_suggestion_flag(session, ctx, clock) -> None:
    categories = CategoryService(session, ctx, clock)
    food = categories.create(CategoryIn(name="Comida"))
    home = categories.create(CategoryIn(name="Hogar"))
    RuleService(session, ctx, clock).create(
        RuleIn(name="super", field="description", match_text="super", category_id=food.id)
    )
    service = TransactionService(session, ctx, clock)
    txn = service.create(payload())
    assert txn.category_id == food.id
    assert txn.is_ai_suggested is True

    txn = service.update(txn.id, {"category_id": home.id})
    assert txn.category_id == home.id
    assert txn.is_ai_suggested is False
