import logging
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from coursechat.config import settings
from coursechat.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("messages", "user_preferences")


def make_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    check_same_thread=False is required for SQLite to work with FastAPI's
    threadpool; connections are opened lazily so an unreachable store only
    fails when first used.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, echo=False)


engine = make_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> bool:
    """
    Initialize the database by creating all tables.
    Called during application startup.

    Returns:
        True if the schema is in place, False if the store is unreachable.
        The service keeps running on fallback data in the latter case.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from coursechat.models import Message, UserPreference  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied: missing tables {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def store_errors(db: Session, operation: str) -> Iterator[None]:
    """Translate driver failures into StoreUnavailableError."""
    try:
        yield
    except SQLAlchemyError as e:
        try:
            db.rollback()
        except SQLAlchemyError:
            logger.debug(f"Rollback after failed {operation} also failed")
        logger.error(f"Store operation {operation} failed: {e}")
        raise StoreUnavailableError(f"{operation} failed: store unavailable") from e


# =============================================================================
# Message Repository Functions
# =============================================================================

def fetch_course_messages(db: Session, course_id: str) -> list:
    """
    Retrieve every message of a course, deleted ones included.

    Ordering: ts ASC, then insertion order (seq ASC).
    """
    from coursechat.models import Message

    with store_errors(db, "fetch_course_messages"):
        messages = (
            db.query(Message)
            .filter(Message.course_id == course_id)
            .order_by(Message.ts.asc(), Message.seq.asc())
            .all()
        )
    logger.debug(f"Retrieved {len(messages)} messages for course {course_id}")
    return messages


def insert_message(
    db: Session,
    message_id: str,
    course_id: str,
    text: str,
    author_id: str,
    author_display_name: str,
    ts: str,
):
    """
    Insert a new message row.

    Returns:
        The stored Message row
    """
    from coursechat.models import Message

    logger.info(f"Creating message: id={message_id}, course={course_id}, author={author_id}")

    with store_errors(db, "insert_message"):
        message = Message(
            message_id=message_id,
            course_id=course_id,
            text=text,
            author_id=author_id,
            author_display_name=author_display_name,
            ts=ts,
            is_deleted=False,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
    return message


def find_message(db: Session, message_id: str):
    """
    Retrieve a message by its ID.

    Returns:
        Message row if found, None otherwise
    """
    from coursechat.models import Message

    with store_errors(db, "find_message"):
        result = db.query(Message).filter(Message.message_id == message_id).first()
    logger.debug(f"Message lookup {message_id}: {'found' if result else 'not found'}")
    return result


def update_message_fields(db: Session, message_id: str, fields: dict) -> bool:
    """
    Overwrite the given columns of one message.

    Returns:
        True if a row matched message_id
    """
    from coursechat.models import Message

    with store_errors(db, "update_message_fields"):
        matched = (
            db.query(Message)
            .filter(Message.message_id == message_id)
            .update(fields, synchronize_session=False)
        )
        db.commit()
    logger.info(f"Updated message {message_id}: fields={sorted(fields)}, matched={matched}")
    return matched > 0


# =============================================================================
# Preference Repository Functions
# =============================================================================

def find_preference(db: Session, user_id: str):
    from coursechat.models import UserPreference

    with store_errors(db, "find_preference"):
        return db.get(UserPreference, user_id)


def upsert_preference(db: Session, user_id: str, selected_course: str) -> None:
    """Create or replace the preference row of a user."""
    from coursechat.models import UserPreference

    with store_errors(db, "upsert_preference"):
        db.merge(UserPreference(user_id=user_id, selected_course=selected_course))
        db.commit()
    logger.info(f"Stored preference: user={user_id}, course={selected_course}")
