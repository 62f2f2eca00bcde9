"""
SQLite database engine and session management.
Database location comes from CI_DATABASE_URL or CI_DATA_DIR (default: data/ci.db).
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from ciserver.core.config import get_settings

settings = get_settings()

# Ensure data directory exists
settings.data_dir.mkdir(parents=True, exist_ok=True)

DATABASE_URL = settings.effective_database_url

# Create engine with check_same_thread=False for SQLite
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db():
    """Initialize database tables."""
    from ciserver.db.models import Project, Build, HookEvent  # noqa: F401
    Base.metadata.create_all(bind=engine)


def reset_engine_after_fork() -> None:
    """
    Drop pooled connections inherited from a parent process.
    Must be called at the start of every worker process.
    """
    engine.dispose(close=False)
