"""
Database service for HEMS
"""

import sqlite3
import weakref
from pathlib import Path
from typing import Optional, Any, cast
from weakref import WeakSet
from sqlalchemy import create_engine, event, select, func
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from ..exceptions import DatabaseError
from ..models import Base, User, Student
from .settings_config_service import get_settings_service


class DatabaseService:
    """Database service for managing connections and sessions"""

    def __init__(self, db_path: Optional[str] = None, database_url: Optional[str] = None):
        """Initialize database service.

        ``db_path`` selects a SQLite file; otherwise ``database_url`` or the
        configured ``[database] url`` (``HEMS_DB_PATH`` wins) is used.
        """
        settings = get_settings_service()
        if db_path is not None:
            database_url = f"sqlite:///{db_path}"
        elif database_url is None:
            database_url = settings.get_database_url()

        self.database_url = database_url
        self.echo = settings.getboolean("database", "echo", False)
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker[Session]] = None
        # Track open sessions to ensure cleanup in tests
        self._open_sessions: WeakSet[Session] = WeakSet()

        # Import logging service after initialization to avoid circular imports
        from .logging import get_logging_service

        self.logger = get_logging_service().get_logger("database")

        self._setup_engine()
        self._create_tables()

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.database_url).get_backend_name() == "sqlite"

    def _setup_engine(self):
        """Set up SQLAlchemy engine with SQLite optimizations"""
        if self.is_sqlite:
            database = make_url(self.database_url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                self.database_url,
                echo=self.echo,
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
            )

            # Use WAL mode for better concurrency
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                if isinstance(dbapi_connection, sqlite3.Connection):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA synchronous=NORMAL")
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.execute("PRAGMA busy_timeout=5000")
                    cursor.close()

        else:
            self.engine = create_engine(
                self.database_url,
                echo=self.echo,
                pool_pre_ping=True,
                pool_recycle=3600,
            )

        # Ensure engine is disposed when DatabaseService is garbage collected
        weakref.finalize(self, self.engine.dispose)

        # Objects handed back by repository helpers stay readable after commit
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def _create_tables(self):
        """Create all database tables"""
        if self.engine is None:
            raise RuntimeError("Database engine not initialized")
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a database session"""
        if self.SessionLocal is None:
            raise RuntimeError("Database session factory not initialized")
        session = self.SessionLocal()
        self._open_sessions.add(session)
        return session

    def close(self):
        """Close database connections"""
        if self.engine:
            for session in list(self._open_sessions):
                session.close()
            self.engine.dispose()

    def get_database_stats(self) -> dict:
        """Row counts per table"""
        if not self.engine:
            return {}

        stats = {}
        with self.get_session() as session:
            for name, table in Base.metadata.tables.items():
                stats[name] = session.execute(
                    select(func.count()).select_from(table)
                ).scalar_one()
        return stats

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        with self.get_session() as session:
            return session.execute(
                select(User).where(User.id == user_id)
            ).scalar_one_or_none()

    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get user by username"""
        with self.get_session() as session:
            return session.execute(
                select(User).where(User.username == username)
            ).scalar_one_or_none()

    def get_student_by_id_number(self, id_number: str) -> Optional[Student]:
        """Get student profile by institutional id number"""
        with self.get_session() as session:
            return session.execute(
                select(Student).where(Student.id_number == id_number)
            ).scalar_one_or_none()

    def get_student_by_user_id(self, user_id: int) -> Optional[Student]:
        """Get student profile of a user"""
        with self.get_session() as session:
            return session.execute(
                select(Student).where(Student.user_id == user_id)
            ).scalar_one_or_none()

    def create_user(self, user: User) -> User:
        """Create a new user"""
        try:
            with self.get_session() as session:
                session.add(user)
                session.commit()
                session.refresh(user)
                return user
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to create user: {str(e)}") from e

    def create_student(self, user: User, student: Student) -> Student:
        """Create a student identity and its profile in one transaction"""
        try:
            with self.get_session() as session:
                session.add(user)
                session.flush()
                student.user_id = user.id
                session.add(student)
                session.commit()
                session.refresh(student)
                return student
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to create student: {str(e)}") from e


# Store the singleton in `sys.modules` under a stable key so it is shared
# across every import path of this module.
from types import ModuleType  # noqa: E402
import sys  # noqa: E402

_SINGLETON_KEY = "hems._database_service_singleton"
_singleton = cast(
    Any, sys.modules.setdefault(_SINGLETON_KEY, ModuleType(_SINGLETON_KEY))
)
if not hasattr(_singleton, "service"):
    _singleton.service = None


def get_db_service() -> DatabaseService:
    """Get the global database service instance"""
    if _singleton.service is None:
        _singleton.service = DatabaseService()
    return _singleton.service


def init_db_service(
    db_path: Optional[str] = None, database_url: Optional[str] = None
) -> DatabaseService:
    """Initialize the global database service"""
    if _singleton.service is not None:
        _singleton.service.close()
    _singleton.service = DatabaseService(db_path, database_url)
    return _singleton.service


def reset_db_service():
    """Close and drop the global database service. Useful for testing."""
    if _singleton.service is not None:
        _singleton.service.close()
    _singleton.service = None
