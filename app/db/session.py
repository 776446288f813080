from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.exc import OperationalError
from app.core.config import settings
import logging
from sqlalchemy.pool import QueuePool, StaticPool

import app.models

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """Create an engine for PostgreSQL (psycopg v3) or SQLite."""
    if database_url.startswith("sqlite"):
        # Tests run against SQLite; in-memory databases need a single shared connection
        if ":memory:" in database_url:
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Convert postgresql:// to postgresql+psycopg:// for psycopg v3
    database_url = database_url.replace("postgresql://", "postgresql+psycopg://")
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


logger.info("Creating database engine...")
engine = build_engine(settings.DATABASE_URL)
logger.info("Database engine created successfully")

def get_session():
    logger.debug("Creating new database session...")
    session = Session(engine)
    try:
        yield session
    except Exception as e:
        logger.error(f"Database session error: {str(e)}")
        session.rollback()
        raise
    finally:
        logger.debug("Closing database session...")
        session.close()

def create_db_and_tables():
    try:
        logger.info("Creating database tables...")
        SQLModel.metadata.create_all(engine)
        logger.info("Database and tables created successfully")
    except OperationalError as e:
        logger.error(f"Error creating database and tables: {str(e)}")
        raise
