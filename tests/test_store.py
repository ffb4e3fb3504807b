"""Session store tests — in-memory store and the database-backed adapter.

Uses MockSessionRow (a plain dataclass mimicking ChainDiagnosisSession) and
MockRepository (in-memory dict implementing the SessionRepository interface)
to test ``DatabaseSessionStore`` without a real database.

Mock strategy:
  - MockSessionRow has the same attributes as ChainDiagnosisSession but no
    SQLAlchemy dependency.  The store reads attributes directly.
  - MockRepository implements every async method the store calls,
    mutating MockSessionRow in-place just like the real repository.
    Setting ``fail = True`` makes every call raise ``OperationalError``.
  - FakeSessionFactory stands in for ``async_sessionmaker``; its sessions
    count commits and rollbacks.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from radiance_db.models.enums import SessionStatus
from radiance_pipeline.errors import PersistenceError, SessionNotFoundError
from radiance_pipeline.models.session import DiagnosisSession
from radiance_pipeline.store import (
    DatabaseSessionStore,
    InMemorySessionStore,
    fields_to_columns,
    row_to_session,
)

from test_stages import make_user_input


# =====================================================================
# Mock infrastructure
# =====================================================================


@dataclass
class MockSessionRow:
    """In-memory stand-in for the ChainDiagnosisSession ORM model."""

    user_id: str = "user1"
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_input: dict = field(default_factory=dict)
    status: str = SessionStatus.IN_PROGRESS.value
    current_step: int = 0
    error_message: str | None = None
    medical_analyst_response: dict | None = None
    general_physician_response: dict | None = None
    specialist_doctor_response: dict | None = None
    pathologist_response: dict | None = None
    nutritionist_response: dict | None = None
    pharmacist_response: dict | None = None
    follow_up_specialist_response: dict | None = None
    summarizer_response: dict | None = None
    raw_medical_analyst_response: str | None = None
    raw_general_physician_response: str | None = None
    raw_specialist_doctor_response: str | None = None
    raw_pathologist_response: str | None = None
    raw_nutritionist_response: str | None = None
    raw_pharmacist_response: str | None = None
    raw_follow_up_specialist_response: str | None = None
    raw_summarizer_response: str | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class MockRepository:
    """In-memory SessionRepository replacement.

    Stores MockSessionRow instances keyed by primary key, plus chat
    messages keyed by session so the delete cascade can be observed.
    """

    def __init__(self):
        self.rows: dict[uuid.UUID, MockSessionRow] = {}
        self.chat: dict[uuid.UUID, list[dict]] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("db down"))

    async def create_session(self, db, *, session_pk, user_id, user_input, created_at=None):
        self._check()
        now = created_at or datetime.now(timezone.utc)
        row = MockSessionRow(
            id=session_pk, user_id=user_id, user_input=user_input,
            created_at=now, updated_at=now,
        )
        self.rows[session_pk] = row
        return row

    async def get_by_id(self, db, session_pk):
        self._check()
        return self.rows.get(session_pk)

    async def list_by_user(self, db, user_id, *, limit=50, offset=0):
        self._check()
        rows = [r for r in self.rows.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def update_fields(self, db, row, fields):
        self._check()
        for key, value in fields.items():
            if not hasattr(row, key):
                raise ValueError(f"Cannot update columns: {key}")
            setattr(row, key, value)
        row.updated_at = datetime.now(timezone.utc)
        return row

    async def delete_owned(self, db, session_pk, user_id):
        self._check()
        row = self.rows.get(session_pk)
        if row is None or row.user_id != user_id:
            return False
        self.chat.pop(session_pk, None)
        del self.rows[session_pk]
        return True


class FakeDbSession:
    """Async context manager mimicking AsyncSession's transaction calls."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class FakeSessionFactory:
    def __init__(self):
        self.sessions: list[FakeDbSession] = []

    def __call__(self):
        session = FakeDbSession()
        self.sessions.append(session)
        return session


def new_session(user_id="user1", **fields) -> DiagnosisSession:
    return DiagnosisSession(
        id=str(uuid.uuid4()), user_id=user_id, user_input=make_user_input(id=user_id), **fields,
    )


# =====================================================================
# Fixtures
# =====================================================================


@pytest.fixture
def mock_repo():
    """Fresh MockRepository for each test."""
    return MockRepository()


@pytest.fixture
def factory():
    return FakeSessionFactory()


@pytest.fixture
def db_store(factory, mock_repo):
    return DatabaseSessionStore(factory, mock_repo)


@pytest.fixture
def memory_store():
    return InMemorySessionStore()


# =====================================================================
# In-memory store
# =====================================================================


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_returned_sessions_are_copies(self, memory_store):
        session = await memory_store.create(new_session())
        session.current_step = 5

        stored = await memory_store.get(session.id)
        assert stored.current_step == 0, "callers must not mutate stored state"

    @pytest.mark.asyncio
    async def test_update_applies_fields(self, memory_store):
        session = await memory_store.create(new_session())
        await memory_store.update(session.id, {
            "current_step": 2,
            "general_physician_response": {"role_name": "GP"},
            "status": SessionStatus.ERROR,
            "error_message": "boom",
        })
        stored = await memory_store.get(session.id)
        assert stored.current_step == 2
        assert stored.general_physician_response == {"role_name": "GP"}
        assert stored.status == SessionStatus.ERROR
        assert stored.updated_at >= session.updated_at

    @pytest.mark.asyncio
    async def test_update_unknown_session(self, memory_store):
        with pytest.raises(SessionNotFoundError):
            await memory_store.update("missing", {"current_step": 1})

    @pytest.mark.asyncio
    async def test_list_is_owner_only_and_newest_first(self, memory_store):
        now = datetime.now(timezone.utc)
        old = await memory_store.create(new_session(created_at=now - timedelta(days=1)))
        recent = await memory_store.create(new_session(created_at=now))
        await memory_store.create(new_session(user_id="other"))

        listed = await memory_store.list_by_user("user1")
        assert [s.id for s in listed] == [recent.id, old.id]

    @pytest.mark.asyncio
    async def test_delete_by_owner(self, memory_store):
        session = await memory_store.create(new_session())
        memory_store.chat_history[session.id] = [{"role": "user", "content": "hi"}]

        assert await memory_store.delete(session.id, "user1") is True
        assert await memory_store.get(session.id) is None
        assert session.id not in memory_store.chat_history

    @pytest.mark.asyncio
    async def test_delete_by_other_user_leaves_session(self, memory_store):
        session = await memory_store.create(new_session())

        assert await memory_store.delete(session.id, "intruder") is False
        assert await memory_store.get(session.id) is not None
        assert await memory_store.delete("missing", "user1") is False


# =====================================================================
# Database store
# =====================================================================


class TestDatabaseStore:

    @pytest.mark.asyncio
    async def test_create_and_get(self, db_store, mock_repo, factory):
        session = new_session()
        created = await db_store.create(session)

        assert created.id == session.id
        assert uuid.UUID(session.id) in mock_repo.rows
        assert mock_repo.rows[uuid.UUID(session.id)].user_input["symptoms_info"]["symptoms_list"] == [
            "fever", "sore throat",
        ]
        assert factory.sessions[-1].commits == 1

        fetched = await db_store.get(session.id)
        assert fetched.user_input == session.user_input
        assert fetched.status == SessionStatus.IN_PROGRESS
        assert fetched.durable is True

    @pytest.mark.asyncio
    async def test_get_unknown_or_malformed_id(self, db_store):
        assert await db_store.get(str(uuid.uuid4())) is None
        assert await db_store.get("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_update_maps_fields_to_columns(self, db_store, mock_repo):
        session = await db_store.create(new_session())
        await db_store.update(session.id, {
            "general_physician_response": {"role_name": "GP"},
            "raw_responses": {"general_physician": '{"role_name": "GP"}'},
            "current_step": 2,
            "status": SessionStatus.IN_PROGRESS,
            "error_message": None,
            "durable": True,
            "warnings": [],
        })

        row = mock_repo.rows[uuid.UUID(session.id)]
        assert row.raw_general_physician_response == '{"role_name": "GP"}'
        assert row.status == "in_progress"
        assert row.current_step == 2

        fetched = await db_store.get(session.id)
        assert fetched.raw_responses == {"general_physician": '{"role_name": "GP"}'}
        assert fetched.general_physician_response == {"role_name": "GP"}

    @pytest.mark.asyncio
    async def test_update_unknown_session(self, db_store):
        with pytest.raises(SessionNotFoundError):
            await db_store.update(str(uuid.uuid4()), {"current_step": 1})
        with pytest.raises(SessionNotFoundError):
            await db_store.update("not-a-uuid", {"current_step": 1})

    @pytest.mark.asyncio
    async def test_failures_raise_persistence_error(self, db_store, mock_repo, factory):
        session = await db_store.create(new_session())
        mock_repo.fail = True

        with pytest.raises(PersistenceError):
            await db_store.create(new_session())
        assert factory.sessions[-1].rollbacks == 1
        with pytest.raises(PersistenceError):
            await db_store.get(session.id)
        with pytest.raises(PersistenceError):
            await db_store.update(session.id, {"current_step": 1})

    @pytest.mark.asyncio
    async def test_list_degrades_to_empty(self, db_store, mock_repo):
        await db_store.create(new_session())
        assert len(await db_store.list_by_user("user1")) == 1

        mock_repo.fail = True
        assert await db_store.list_by_user("user1") == []

    @pytest.mark.asyncio
    async def test_delete_ownership(self, db_store, mock_repo):
        session = await db_store.create(new_session())
        pk = uuid.UUID(session.id)
        mock_repo.chat[pk] = [{"role": "user", "content": "hello"}]

        assert await db_store.delete(session.id, "intruder") is False
        assert await db_store.get(session.id) is not None

        assert await db_store.delete(session.id, "user1") is True
        assert await db_store.get(session.id) is None
        assert pk not in mock_repo.chat

    @pytest.mark.asyncio
    async def test_delete_never_raises(self, db_store, mock_repo):
        session = await db_store.create(new_session())
        mock_repo.fail = True
        assert await db_store.delete(session.id, "user1") is False
        assert await db_store.delete("not-a-uuid", "user1") is False


# =====================================================================
# Row mapping
# =====================================================================


class TestRowMapping:

    def test_row_to_session(self):
        user_input = make_user_input().model_dump(mode="json")
        row = MockSessionRow(
            user_input=user_input,
            status="completed",
            current_step=8,
            summarizer_response={"report_title": "Report"},
            raw_summarizer_response="{...}",
        )
        session = row_to_session(row)
        assert session.id == str(row.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.is_completed
        assert session.raw_responses == {"summarizer": "{...}"}
        assert session.summarizer_response == {"report_title": "Report"}

    def test_fields_to_columns_drops_transient_fields(self):
        columns = fields_to_columns({
            "durable": False,
            "warnings": ["x"],
            "status": "error",
            "raw_responses": {"pathologist": "raw"},
        })
        assert columns == {"status": "error", "raw_pathologist_response": "raw"}
