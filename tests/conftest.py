import os
import sqlite3
import uuid

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

import app.models  # noqa: F401,E402
from app.models.migration import MigrationSource  # noqa: E402
from tests.factories import FakeSourceAPI, jn_contact, jn_file, jn_job, jn_task  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite issues its own BEGIN; take that over so SAVEPOINTs work.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    # Session commits/rollbacks become SAVEPOINTs inside the test transaction.
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def org_id():
    return uuid.uuid4()


@pytest.fixture()
def make_fake_api():
    def _make(source: MigrationSource = MigrationSource.jobnimbus, data=None) -> FakeSourceAPI:
        return FakeSourceAPI(source, data)

    return _make


@pytest.fixture()
def jobnimbus_data():
    """Five contacts, three jobs (linked to contacts 1-3), two files and two tasks on job 1."""
    return {
        "contacts": [jn_contact(i) for i in range(1, 6)],
        "jobs": [jn_job(i, contact_idx=i) for i in range(1, 4)],
        "documents": [jn_file(1, job_idx=1), jn_file(2, job_idx=1)],
        "tasks": [jn_task(1, job_idx=1), jn_task(2, job_idx=1)],
    }
