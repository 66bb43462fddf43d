import logging
from typing import Generator, List, Optional

from sqlalchemy import create_engine, inspect, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from chatsync.config import settings
from chatsync.errors import StoreError, ValidationError
from chatsync.utils import utc_now_iso

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("users", "conversations", "messages")

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


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
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied: missing tables {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Repository Functions
# =============================================================================
#
# Users belong to the external profile service; the store keeps the rows
# it needs to validate recipients and to answer user search.

def create_user(db: Session, name: str, email: str, user_id: Optional[str] = None):
    """
    Create a user row.

    Raises:
        ValidationError: if the email or id is already taken
        StoreError: on any other persistence failure
    """
    from chatsync.models import User

    logger.info(f"Creating user: email={email}")
    user = User(name=name, email=email.lower(), created_at=utc_now_iso())
    if user_id is not None:
        user.id = user_id

    try:
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"User created successfully: {user.id}")
        return user
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate user detected: {email}")
        raise ValidationError("User already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create user {email}: {e}")
        raise StoreError()


def get_user(db: Session, user_id: Optional[str]):
    """
    Retrieve a user by id.

    Returns:
        User object if found, None otherwise
    """
    from chatsync.models import User

    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id).first()


def search_users(db: Session, query: str, exclude_id: Optional[str] = None, limit: int = 10) -> List:
    """
    Case-insensitive substring search over name and email.

    Args:
        db: Database session
        query: Search text
        exclude_id: User to leave out of the results (the caller)
        limit: Maximum number of users to return
    """
    from chatsync.models import User

    logger.info(f"Searching users: q={query}, limit={limit}")
    pattern = f"%{query}%"
    q = db.query(User).filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    if exclude_id:
        q = q.filter(User.id != exclude_id)
    users = q.order_by(User.name.asc(), User.id.asc()).limit(limit).all()
    logger.debug(f"User search returned {len(users)} users")
    return users
