from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
import logging

from config import DATABASE_URL

logger = logging.getLogger(__name__)


connect_args = {}
engine_kwargs = {
    "pool_pre_ping": True,
    "pool_recycle": 3600,
    "echo": False,
}

if "sqlite" in DATABASE_URL:
    # Workflows run on worker threads (bulk operations, health probes).
    connect_args = {"check_same_thread": False}
elif "postgresql" in DATABASE_URL:
    engine_kwargs.update({
        "pool_size": 25,
        "max_overflow": 50,
        "pool_timeout": 60,
    })

engine = create_engine(DATABASE_URL, connect_args=connect_args, **engine_kwargs)


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)


Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class DatabaseSession:
    """Context manager committing on success and rolling back on error.

    Takes an optional session factory so services can be pointed at a
    different engine (tests use a per-test SQLite file).
    """

    def __init__(self, factory=None):
        self.factory = factory or SessionLocal
        self.db = None

    def __enter__(self):
        self.db = self.factory()
        return self.db

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self.db.rollback()
            else:
                self.db.commit()
        finally:
            self.db.close()


def health_check_db(factory=None) -> bool:
    """Quick database health check."""
    try:
        with DatabaseSession(factory) as db:
            db.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def init_db(bind=None):
    """Initialize the database and create tables."""
    import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")
