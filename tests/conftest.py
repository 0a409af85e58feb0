import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from santadraw.db import Base, repo
from santadraw.services import group_flow


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(session):
    counter = {"next": 1000}

    def factory(username=None, display_name=None):
        counter["next"] += 1
        telegram_id = counter["next"]
        user = repo.upsert_user(session, telegram_id, username or f"user{telegram_id}", display_name)
        user.has_private_chat = True
        return user

    return factory


@pytest.fixture
def make_group(session, make_user):
    """Group with an owner plus ``size - 1`` more participants. Returns (group, users)."""

    def factory(size=4, name="Office party"):
        users = [make_user() for _ in range(size)]
        group = group_flow.create_group(session, users[0], name)
        for user in users[1:]:
            group_flow.join_group(session, group, user)
        session.commit()
        return group, users

    return factory
