from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_lookahead import BatchLoader, lookahead_cache_clear
from sqla_lookahead.registry import Registry, get_registry, init_registry

from .models import (
    Author,
    Base,
    Comment,
    Like,
    Message,
    Post,
    Profile,
    Tag,
    Thread,
    User,
    post_tags,
)


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_registry() -> None:
    """Initialize the Registry singleton with model relationships.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Registry()
    except RuntimeError:
        Registry.reset()
        init_registry(get_registry(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    test_author = Author(id=1, name="Test Author")
    lonely_author = Author(id=2, name="No Profile Author")
    deep_user = User(id=1, name="Deep User")
    session.add_all([test_author, lonely_author, deep_user])
    await session.flush()

    profile = Profile(id=1, bio="Writes about GraphQL", author_id=1)
    session.add(profile)
    await session.flush()

    rocks = Post(id=1, title="GraphQL Rocks")
    paginated = Post(id=2, title="Paginated Post")
    empty = Post(id=3, title="Empty Post")
    single = Post(id=4, title="Single Thread")
    session.add_all([rocks, paginated, empty, single])
    await session.flush()

    graphql = Tag(id=1, name="graphql")
    python = Tag(id=2, name="python")
    session.add_all([graphql, python])
    await session.flush()

    await session.execute(
        post_tags.insert().values([
            {"post_id": 1, "tag_id": 1},
            {"post_id": 1, "tag_id": 2},
            {"post_id": 2, "tag_id": 1},
        ])
    )
    await session.flush()

    comments = [
        Comment(id=1, body="Nice", post_id=1, author_type="Author", author_id=1),
        Comment(id=2, body="From a user", post_id=1, author_type="User", author_id=1),
        Comment(id=3, body="Stale author", post_id=1, author_type="Ghost", author_id=99),
        *(
            Comment(id=4 + i, body=f"Comment {i}", post_id=2, author_type="Author", author_id=2)
            for i in range(5)
        ),
        Comment(id=9, body="Spam comment", spam=True, post_id=2, author_type="Author", author_id=2),
        Comment(id=10, body="Single", post_id=4, author_type="Author", author_id=1),
    ]
    session.add_all(comments)
    await session.flush()

    replies = [
        Comment(id=11, body="Reply", post_id=1, parent_id=1, author_type="Author", author_id=1),
        Comment(id=12, body="Reply to reply", post_id=1, parent_id=11, author_type="User", author_id=1),
    ]
    session.add_all(replies)
    await session.flush()

    like = Like(id=1, comment_id=1, user_id=1)
    session.add(like)
    await session.flush()

    thread = Thread(id=1, subject="Newest first")
    session.add(thread)
    await session.flush()

    messages = [Message(id=i, text=f"Message {i}", thread_id=1) for i in (1, 2, 3)]
    session.add_all(messages)
    await session.flush()

    session.expunge_all()

    return {
        "authors": [test_author, lonely_author],
        "users": [deep_user],
        "profiles": [profile],
        "posts": [rocks, paginated, empty, single],
        "tags": [graphql, python],
        "comments": [*comments, *replies],
        "likes": [like],
        "threads": [thread],
        "messages": messages,
    }


@pytest.fixture
def sql_log(engine: AsyncEngine, seed_data: dict[str, list[Base]]) -> Iterator[list[str]]:
    """SELECT statements executed after seeding."""
    statements: list[str] = []

    def _record(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
    ) -> None:
        if statement.lstrip().upper().startswith("SELECT"):
            statements.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _record)
    yield statements
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
def loader(session: AsyncSession, seed_data: dict[str, list[Base]]) -> BatchLoader:
    return BatchLoader(session)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    lookahead_cache_clear()


@pytest.fixture
def reset_registry_singleton() -> Iterator[None]:
    saved = Registry._Registry__instance  # type: ignore[attr-defined]
    yield
    Registry._Registry__instance = saved  # type: ignore[attr-defined]
