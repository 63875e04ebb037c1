from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
import logging

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the local state database."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # The scheduler and the poller share one engine
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15

    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


@event.listens_for(Engine, "connect")
def set_sqlite_pragmas(dbapi_connection, connection_record):
    """Use WAL journaling so a crash mid-write keeps the previous value readable."""
    module = type(dbapi_connection).__module__
    if "sqlite" not in module:
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
    except Exception as e:
        logger.warning(f"Could not set SQLite pragmas: {e}")
    finally:
        cursor.close()


def create_db_and_tables(db_engine: Engine) -> None:
    # Register table metadata before create_all
    import notisync.models  # noqa: F401

    SQLModel.metadata.create_all(db_engine)
