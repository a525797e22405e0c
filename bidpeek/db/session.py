"""
Database connection and session management.
"""
from sqlmodel import create_engine, SQLModel, Session
from bidpeek.core.settings import settings


def _connect_args(database_url: str, timeout_seconds: int) -> dict:
    """Driver arguments that bound connection and lock waits."""
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
        }
    return {}


def build_engine(database_url: str = None, **kwargs):
    """Create an engine for the configured store."""
    database_url = database_url or settings.database_url
    options = {
        "echo": False,
        "pool_pre_ping": True,  # Verify connections before use
        "connect_args": _connect_args(database_url, settings.store_timeout_seconds),
    }
    if not database_url.startswith("sqlite"):
        options["pool_recycle"] = 300
        options["pool_timeout"] = settings.store_timeout_seconds
    options.update(kwargs)
    return create_engine(database_url, **options)


# Create database engine
engine = build_engine()


def create_db_and_tables(bind=None):
    """Create database tables."""
    # table models register themselves on import
    import bidpeek.db.models  # noqa: F401
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Dependency to get database session."""
    with Session(engine) as session:
        yield session
