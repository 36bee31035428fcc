"""
Test configuration and fixtures.
"""

import asyncio
import os
import tempfile
import uuid
import warnings
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

# Settings are read at import time, so configure the environment first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="bridge-tests-")
os.environ.setdefault("DB_URL", f"sqlite:///{_TEST_DB_DIR}/bridge_test.db")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from bridge.core.security import get_password_hash  # noqa: E402
from bridge.db.database import Base, get_engine, get_session_local  # noqa: E402
from bridge.main import app  # noqa: E402
from bridge.models.user import EntraSignIn, User, utcnow  # noqa: E402
from bridge.schemas.user import LocalUser  # noqa: E402
from bridge.services.errors import (  # noqa: E402
    RemoteUnavailableError,
    StoreUnavailableError,
    UserNotFoundError,
)

# Filter out deprecation warnings that are not actionable
warnings.filterwarnings("ignore", category=DeprecationWarning, module="pydantic.*")
warnings.filterwarnings("ignore", category=DeprecationWarning, module="passlib.*")

ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]


@pytest.fixture(scope="session", autouse=True)
def setup_test_tables():
    """Create all tables once per session."""
    Base.metadata.create_all(bind=get_engine())
    yield
    Base.metadata.drop_all(bind=get_engine())


@pytest.fixture(scope="function")
def db():
    """Database session; all rows are removed after the test."""
    session = get_session_local()()
    try:
        yield session
    finally:
        session.rollback()
        session.query(EntraSignIn).delete()
        session.query(User).delete()
        session.commit()
        session.close()


@pytest.fixture(scope="function")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-API-Key": ADMIN_API_KEY}


@pytest.fixture
def make_db_user(db: Session):
    """Factory creating users in the test database."""

    def _make(
        password: str = "Legacy-pass1",
        is_active: bool = True,
        migrated: bool = False,
        created_at: Optional[datetime] = None,
        **kwargs,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            email=kwargs.pop("email", f"user_{suffix}@example.com"),
            username=kwargs.pop("username", f"user_{suffix}"),
            password=get_password_hash(password),
            is_active=is_active,
            migrated_to_entra=migrated,
            entra_user_id=f"entra-{suffix}" if migrated else None,
            created_at=created_at or utcnow(),
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


# In-memory collaborators for service tests


def local_user(user_id: int, **overrides: Any) -> LocalUser:
    data = {
        "id": user_id,
        "email": f"user{user_id}@example.com",
        "username": f"user{user_id}",
        "password": "hash",
        "is_active": True,
        "migrated_to_entra": False,
        "entra_user_id": None,
        "created_at": datetime(2020, 1, 1) + timedelta(minutes=user_id),
    }
    data.update(overrides)
    return LocalUser(**data)


class FakeUserStore:
    """Dictionary-backed LocalUserStore with the same conditional update."""

    def __init__(self, users: Optional[List[LocalUser]] = None):
        self.users: Dict[int, LocalUser] = {u.id: u for u in users or []}
        self.mark_calls: List[tuple] = []
        self.fail_list = False
        self.fail_mark = False
        self.password_hashes: Dict[int, str] = {}

    async def find_by_id(self, user_id: int) -> Optional[LocalUser]:
        await asyncio.sleep(0)
        return self.users.get(user_id)

    async def get_user(self, user_id: int) -> LocalUser:
        user = await self.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def find_by_email(self, email: str) -> Optional[LocalUser]:
        return next((u for u in self.users.values() if u.email == email), None)

    async def find_by_entra_id(self, entra_user_id: str) -> Optional[LocalUser]:
        return next(
            (u for u in self.users.values() if u.entra_user_id == entra_user_id), None
        )

    async def list_unmigrated(
        self, limit: Optional[int] = None, active_only: bool = True
    ) -> List[LocalUser]:
        if self.fail_list:
            raise StoreUnavailableError("Datastore unavailable during list_unmigrated")
        candidates = sorted(
            (
                u
                for u in self.users.values()
                if not u.migrated_to_entra and (u.is_active or not active_only)
            ),
            key=lambda u: (u.created_at, u.id),
        )
        return candidates[:limit] if limit is not None else candidates

    async def mark_migrated(self, user_id: int, entra_user_id: str) -> bool:
        await asyncio.sleep(0)
        self.mark_calls.append((user_id, entra_user_id))
        if self.fail_mark:
            raise StoreUnavailableError("Datastore unavailable during mark_migrated")
        user = self.users.get(user_id)
        if user is None or user.migrated_to_entra:
            return False
        self.users[user_id] = user.model_copy(
            update={"migrated_to_entra": True, "entra_user_id": entra_user_id}
        )
        return True

    async def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        if user_id not in self.users:
            return False
        self.password_hashes[user_id] = password_hash
        self.users[user_id] = self.users[user_id].model_copy(
            update={"password": password_hash}
        )
        return True


class FakeIdentity:
    """Records Graph calls; behaviour is configured per email."""

    def __init__(self):
        self.existing_emails: set = set()
        self.create_errors: Dict[str, Exception] = {}
        self.exists_errors: Dict[str, Exception] = {}
        self.created: List[Dict[str, Any]] = []
        self.exists_calls: List[str] = []
        self.password_updates: List[tuple] = []
        self.password_error: Optional[Exception] = None
        self.create_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def user_exists(self, email: str) -> bool:
        self.exists_calls.append(email)
        if email in self.exists_errors:
            raise self.exists_errors[email]
        return email in self.existing_emails

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        if email in self.exists_errors:
            raise self.exists_errors[email]
        if email in self.existing_emails:
            return {"id": f"remote-{email}"}
        return None

    async def create_user(self, user: LocalUser, password: str, force_change: bool = True):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.create_delay)
            if user.email in self.create_errors:
                raise self.create_errors[user.email]
            entra_id = f"entra-{user.id}"
            self.created.append(
                {
                    "user_id": user.id,
                    "email": user.email,
                    "password": password,
                    "force_change": force_change,
                    "entra_user_id": entra_id,
                }
            )
            self.existing_emails.add(user.email)
            return entra_id
        finally:
            self.in_flight -= 1

    async def update_user_password(
        self, entra_user_id: str, password: str, force_change: bool = False
    ) -> None:
        if self.password_error:
            raise self.password_error
        self.password_updates.append((entra_user_id, password, force_change))

    async def get_user_attributes(self, entra_user_id: str, select=None):
        return {}

    async def get_extension_properties(self, app_id: str):
        return []

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class FakeNotifier:
    def __init__(self):
        self.submitted: List[tuple] = []

    def submit(self, email: str, password: str, user_id: Optional[int] = None) -> bool:
        self.submitted.append((email, password, user_id))
        return True


@pytest.fixture
def fake_store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture
def fake_identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def unavailable_error() -> RemoteUnavailableError:
    return RemoteUnavailableError("Graph unavailable after 5 attempts", status_code=503)


@pytest.fixture
def make_local_user():
    return local_user
