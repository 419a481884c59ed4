"""Base model, portable column types and database setup."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine, TypeDecorator
from sqlalchemy.dialects.postgresql import UUID as PostgreSQLUUID
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import CHAR

from bonsai.config import settings

# SQLAlchemy base class
Base = declarative_base()

# Database engine - bound by init_db() from the app factory
engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GUID(TypeDecorator):
    """
    Platform-independent GUID type.

    Uses PostgreSQL's UUID type, otherwise uses CHAR(36), storing as stringified hex values.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgreSQLUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        if dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


def parse_uuid(value) -> uuid.UUID:
    """
    Parse a client-supplied identifier.

    Raises:
        ValueError: If the value is not a UUID
    """
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def init_db(database_url: str) -> None:
    """
    Initialize database engine and bind the session factory.

    Args:
        database_url: Database connection URL (PostgreSQL or SQLite)
    """
    global engine

    # SQLite doesn't support pool_size and max_overflow parameters
    if database_url.startswith('sqlite'):
        kwargs = {
            'connect_args': {'check_same_thread': False},
            'echo': settings.is_development,
        }
        # In-memory databases exist per connection, so share one
        if ':memory:' in database_url or database_url == 'sqlite://':
            kwargs['poolclass'] = StaticPool
        engine = create_engine(database_url, **kwargs)
    else:
        # PostgreSQL configuration
        engine = create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            echo=settings.is_development,
        )

    SessionLocal.configure(bind=engine)
