"""Shared fixtures: an in-memory SQLite database per test and data builders."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from capturebot.core.db import Base
from capturebot.core import models  # noqa: F401
from capturebot.core.models import User, Item, Container, ContainerItem, Interest
from capturebot.llm.provider import CompletionProvider, CompletionResult, CompletionError

NOW = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


class FakeProvider(CompletionProvider):
    """Completion provider returning canned responses."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None,
                 cost: float = 0.001):
        self.responses = list(responses or [])
        self.error = error
        self.cost = cost
        self.prompts: List[str] = []
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "Fake"

    async def complete(self, prompt, temperature=0.2, max_tokens=500):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        if not self.responses:
            raise CompletionError("no canned response left")
        return CompletionResult(text=self.responses.pop(0), cost=self.cost)

    async def aclose(self):
        self.closed = True


class DataBuilder:
    """Inserts users, items, containers and interests into a session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def user(self, **kwargs) -> User:
        user = User(**kwargs)
        self.session.add(user)
        await self.session.commit()
        return user

    async def container(self, user: User, name: str, item_count: int = 0, description: str = None) -> Container:
        container = Container(user_id=user.id, name=name, item_count=item_count, description=description)
        self.session.add(container)
        await self.session.commit()
        return container

    async def item(self, user: User, captured_at: datetime, title: str = "item",
                   containers: Optional[List[Container]] = None,
                   filed_at: Optional[datetime] = None) -> Item:
        item = Item(user_id=user.id, title=title, captured_at=captured_at)
        self.session.add(item)
        await self.session.flush()
        for container in containers or []:
            membership = ContainerItem(container_id=container.id, item_id=item.id)
            if filed_at is not None:
                membership.created_at = filed_at
            self.session.add(membership)
        await self.session.commit()
        return item

    async def interest(self, user: User, interest_type: str, value: str, first_seen: datetime,
                       occurrence_count: int = 1, last_seen: Optional[datetime] = None,
                       weight: float = 0.5) -> Interest:
        interest = Interest(
            user_id=user.id,
            interest_type=interest_type,
            value=value,
            occurrence_count=occurrence_count,
            first_seen=first_seen,
            last_seen=last_seen or first_seen,
            weight=weight,
        )
        self.session.add(interest)
        await self.session.commit()
        return interest


@pytest.fixture
def build(session) -> DataBuilder:
    return DataBuilder(session)


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)
