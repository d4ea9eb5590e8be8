from __future__ import annotations

import datetime
import sys
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import SETTINGS  # noqa: E402
from app.main import app  # noqa: E402
from app.models.module import ContentItem, Module  # noqa: E402
from app.repos.enrollment_roster import InMemoryEnrollmentRoster  # noqa: E402
from app.repos.module_catalog import InMemoryModuleCatalog  # noqa: E402
from app.repos.progress_store import InMemoryProgressStore  # noqa: E402
from app.repos.submission_ledger import InMemorySubmissionLedger  # noqa: E402
from app.services.token_service import ALGORITHM  # noqa: E402


@pytest.fixture(autouse=True)
def reset_progress_state() -> None:
    """Clear the in-memory catalog, ledger, progress rows and enrollments."""
    app.state.module_catalog.clear()
    app.state.submission_ledger.clear()
    app.state.progress_store.clear()
    app.state.enrollments.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def catalog() -> InMemoryModuleCatalog:
    return app.state.module_catalog


@pytest.fixture
def ledger() -> InMemorySubmissionLedger:
    return app.state.submission_ledger


@pytest.fixture
def store() -> InMemoryProgressStore:
    return app.state.progress_store


@pytest.fixture
def enrollments() -> InMemoryEnrollmentRoster:
    return app.state.enrollments


def mint_token(
    sub: str | None = None,
    roles: list[str] | None = None,
    *,
    secret: str | None = None,
    audience: str | None = None,
    expires_in: datetime.timedelta = datetime.timedelta(minutes=15),
) -> str:
    """HS256 token shaped like the ones the auth service issues."""
    now = datetime.datetime.now(datetime.UTC)
    claims = {
        "sub": sub or str(uuid.uuid4()),
        "roles": ["student"] if roles is None else roles,
        "aud": audience or SETTINGS.jwt_audience,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(claims, secret or SETTINGS.jwt_secret, algorithm=ALGORITHM)


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@dataclass
class Student:
    id: uuid.UUID
    headers: dict[str, str]


@pytest.fixture
def student() -> Student:
    student_id = uuid.uuid4()
    return Student(id=student_id, headers=auth_header(mint_token(str(student_id))))


# ---------------------------------------------------------------------------
# Course builder
# ---------------------------------------------------------------------------


@dataclass
class CourseFixture:
    """A course seeded into an in-memory catalog.

    modules[i] has order_index i; content[i] and assignments[i] belong
    to modules[i].
    """

    id: uuid.UUID
    modules: list[Module] = field(default_factory=list)
    content: list[list[ContentItem]] = field(default_factory=list)
    assignments: list[list[uuid.UUID]] = field(default_factory=list)


def build_course(
    catalog: InMemoryModuleCatalog,
    layout: list[tuple[int, int]],
    *,
    course_id: uuid.UUID | None = None,
    roster: InMemoryEnrollmentRoster | None = None,
    students: Iterable[uuid.UUID] = (),
) -> CourseFixture:
    """Seed one module per (content_count, assignment_count) entry.

    students are enrolled in the new course through roster, which
    defaults to the app's in-memory roster.
    """
    course = CourseFixture(id=course_id or uuid.uuid4())
    roster = roster if roster is not None else app.state.enrollments
    for student_id in students:
        roster.enroll(student_id, course.id)
    for index, (n_content, n_assignments) in enumerate(layout):
        module = Module.new(
            course_id=course.id, title=f"Module {index + 1}", order_index=index
        )
        catalog.add_module(module)
        items = []
        for n in range(n_content):
            item = ContentItem.new(
                module_id=module.id,
                title=f"Lesson {index + 1}.{n + 1}",
                order_index=n,
                body=f"Body of lesson {index + 1}.{n + 1}",
            )
            catalog.add_content(item)
            items.append(item)
        course.modules.append(module)
        course.content.append(items)
        course.assignments.append(
            [catalog.add_assignment(module.id) for _ in range(n_assignments)]
        )
    return course
