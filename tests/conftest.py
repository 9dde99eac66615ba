"""
Test configuration and setup for HEMS
"""

import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import pytest

# Set test environment variables before any service is built
os.environ["HEMS_TEST_MODE"] = "1"
os.environ["HEMS_JWT_SECRET"] = "test-jwt-secret-not-for-production"
os.environ["HEMS_TIMER_KEY"] = "test-timer-key-not-for-production"

from hems.core.clock import reset_clock, set_clock
from hems.core.models import AuthState, Choice, Exam, Question, Student, User, UserRole
from hems.core.security import hash_password
from hems.core.services import reset_services
from hems.core.services.database import get_db_service, init_db_service

COORDINATOR_PASSWORD = "Coord#Pass2024"
SESSION_PASSWORD = "Session2024"
EXAM_START = datetime(2026, 3, 2, 8, 0, 0)


class FakeClock:
    """Controllable clock returning naive UTC datetimes"""

    def __init__(self, start: datetime = EXAM_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class ExamFixture:
    exam_id: int
    question_ids: List[int]
    correct_choice_ids: List[int]
    wrong_choice_ids: List[int]


class Factory:
    """Builds users, students, exams and sessions directly in the test database"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._student_seq = 0

    @property
    def db_service(self):
        return get_db_service()

    def coordinator(
        self,
        username: str = "coordinator@hu.edu.et",
        password: str = COORDINATOR_PASSWORD,
        must_change_password: bool = False,
        password_hash: Optional[str] = None,
    ) -> User:
        return self.db_service.create_user(
            User(
                username=username,
                password_hash=password_hash if password_hash is not None else hash_password(password),
                role=UserRole.COORDINATOR,
                must_change_password=must_change_password,
            )
        )

    def student(
        self,
        id_number: Optional[str] = None,
        university_email: Optional[str] = None,
        auth_state: AuthState = AuthState.UNVERIFIED,
        must_change_password: bool = False,
    ) -> Student:
        self._student_seq += 1
        id_number = id_number or f"HU{1000 + self._student_seq}"
        university_email = university_email or f"student{self._student_seq}@hu.edu.et"
        user = User(
            username=university_email,
            password_hash=None,
            role=UserRole.STUDENT,
            auth_state=auth_state,
            must_change_password=must_change_password,
        )
        return self.db_service.create_student(
            user,
            Student(
                id_number=id_number,
                university_email=university_email,
                first_name="Abebe",
                last_name=f"Kebede{self._student_seq}",
                batch_year="2018",
            ),
        )

    def exam(
        self,
        question_count: int = 5,
        duration_minutes: int = 60,
        published: bool = True,
        title: str = "Final Examination",
    ) -> ExamFixture:
        with self.db_service.get_session() as session:
            exam = Exam(
                title=title,
                academic_year=2026,
                duration_minutes=duration_minutes,
                start_at=self.clock(),
                end_at=self.clock() + timedelta(hours=8),
                is_published=published,
            )
            for order in range(1, question_count + 1):
                question = Question(
                    question_text=f"Question number {order} of the exam?",
                    question_order=order,
                )
                question.choices = [
                    Choice(choice_text=f"Option {c}", is_correct=(c == 2), choice_order=c)
                    for c in range(1, 5)
                ]
                exam.questions.append(question)
            session.add(exam)
            session.commit()
            return ExamFixture(
                exam_id=exam.id,
                question_ids=[q.id for q in exam.questions],
                correct_choice_ids=[q.choices[1].id for q in exam.questions],
                wrong_choice_ids=[q.choices[0].id for q in exam.questions],
            )

    def exam_session(self, exam_id: int, password: str = SESSION_PASSWORD) -> int:
        from hems.core.services.exam_session_service import ExamSessionRegistry

        result = ExamSessionRegistry(clock=self.clock).issue_session(exam_id, password)
        assert result.ok, result.message
        return result.data["session_id"]


@pytest.fixture(scope="function")
def test_data_dir():
    """Create a temporary test data directory"""
    temp_dir = tempfile.mkdtemp(prefix="hems_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_db_path(test_data_dir):
    """Create a test database path"""
    return test_data_dir / "test.db"


@pytest.fixture
def test_log_dir(test_data_dir):
    """Create a test logs directory"""
    log_dir = test_data_dir / "logs"
    log_dir.mkdir(exist_ok=True)
    return log_dir


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def setup_test_env(test_db_path, test_log_dir, fake_clock, monkeypatch):
    """Fresh database, logs and services per test, all on the fake clock"""
    monkeypatch.setenv("HEMS_DB_PATH", str(test_db_path))
    monkeypatch.setenv("HEMS_LOG_DIR", str(test_log_dir))
    reset_services()
    set_clock(fake_clock)

    init_db_service(str(test_db_path))

    yield

    reset_clock()
    reset_services()


@pytest.fixture
def db_service():
    """Provide the database service for tests"""
    return get_db_service()


@pytest.fixture
def factory(fake_clock):
    return Factory(fake_clock)


@pytest.fixture
def client():
    """FastAPI TestClient sharing the test database"""
    from fastapi.testclient import TestClient
    from hems.api.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def coordinator(factory):
    return factory.coordinator()


@pytest.fixture
def coordinator_token(client, coordinator):
    """Bearer token for the default coordinator."""
    resp = client.post(
        "/api/auth/phase1",
        data={"username": coordinator.username, "password": COORDINATOR_PASSWORD},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]
