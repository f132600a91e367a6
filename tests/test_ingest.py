from decimal import Decimal

from sqlalchemy import select

from models import Notification, TransactionSource
from schemas import CategoryIn
from services import CategoryService, IngestService


def row(description, category=None, amount="100", on="2026-03-08", **extra):
    data = {"description": description, "amount": amount, "date": on, **extra}
    if category is not None:
        data["category"] = category
    return data


def test_ingest_matches_categories_exactly_then_fuzzily(session, ctx, clock) -> None:
    categories = CategoryService(session, ctx, clock)
    food = categories.create(CategoryIn(name="Comida"))
    home = categories.create(CategoryIn(name="Hogar"))

    result = IngestService(session, ctx, clock).ingest_rows(
        [
            row("Mercado", "COMIDA"),
            row("Focos", "hoga"),
            row("Pizza", "Comda"),
            row("Sin etiqueta"),
        ],
        "marzo.csv",
    )

    assert result.errors == []
    assert [t.category_id for t in result.created] == [food.id, home.id, food.id, None]
    assert all(t.source == TransactionSource.file for t in result.created)


def test_ingest_creates_unknown_categories(session, ctx, clock) -> None:
    result = IngestService(session, ctx, clock).ingest_rows(
        [row("Vet", "Mascotas"), row("Croquetas", "mascotas")], "gastos.csv"
    )

    names = [c.name for c in CategoryService(session, ctx, clock).list_all()]
    assert names == ["Mascotas"]
    assert result.created[0].category_id == result.created[1].category_id


def test_ingest_reports_bad_rows_and_keeps_good_ones(session, ctx, clock) -> None:
    categories = CategoryService(session, ctx, clock)
    categories.create(CategoryIn(name="Gas"))
    categories.create(CategoryIn(name="Bar"))

    result = IngestService(session, ctx, clock).ingest_rows(
        [
            row("Cilindro", "Gas"),
            row("Nada", amount="0"),
            row("Algo", "Gar"),
            row("Retiro", amount="-300.5"),
        ],
        "estado.csv",
    )

    assert [t.description for t in result.created] == ["Cilindro", "Retiro"]
    assert result.created[1].amount == Decimal("300.50")
    assert len(result.errors) == 2
    assert result.errors[0].startswith("Row 2:")
    assert result.errors[1].startswith("Row 3:")
    assert "ambiguous" in result.errors[1]

    notice = session.scalars(
        select(Notification).where(Notification.title == "File processed")
    ).one()
    assert "estado.csv" in notice.body
    assert "2 transactions created" in notice.body
    assert "2 errors" in notice.body


def test_blank_category_is_left_uncategorized(session, ctx, clock) -> None:
    result = IngestService(session, ctx, clock).ingest_rows(
        [row("Propina", "   "), row("Caseta", "")], "blancos.csv"
    )

    assert result.errors == []
    assert [t.category_id for t in result.created] == [None, None]
    assert CategoryService(session, ctx, clock).list_all() == []
    notice = session.scalars(
        select(Notification).where(Notification.title == "File processed")
    ).one()
    assert "2 transactions created" in notice.body
