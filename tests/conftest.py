import os
from datetime import datetime, timedelta

os.environ.setdefault("HOUSEHOLD_DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from clock import Clock  # noqa: E402
from database import Base, create_db_engine  # noqa: E402
from models import MemberRole  # noqa: E402
from schemas import MemberIn  # noqa: E402
from services import RequestContext, TeamService  # noqa: E402


class FixedClock(Clock):
    def __init__(self, now: datetime) -> None:
        super().__init__("UTC")
        self.current = now

    def now(self) -> datetime:
        return self.current

    def today(self):
        return self.current.date()

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 15, 12, 0))


@pytest.fixture
def session():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as s:
        yield s
    engine.dispose()


@pytest.fixture
def ctx(session) -> RequestContext:
    team, founder = TeamService.create_team(
        session, "Casa", MemberIn(name="Ana", email="ana@example.com")
    )
    return RequestContext(team_id=team.id, user_id=founder.id, role=MemberRole.admin)


@pytest.fixture
def other_ctx(session) -> RequestContext:
    team, founder = TeamService.create_team(
        session, "Otra casa", MemberIn(name="Bob", email="bob@example.com")
    )
    return RequestContext(team_id=team.id, user_id=founder.id, role=MemberRole.admin)
