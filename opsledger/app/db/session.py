from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from opsledger.app.core.config import settings


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    SQLite ignore FOR UPDATE : chaque transaction prend le verrou d'écriture
    dès le BEGIN (BEGIN IMMEDIATE), les read-modify-write ne peuvent donc
    pas s'entrelacer.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        engine = create_engine(url, **kwargs)
        _serialize_sqlite_writers(engine)
        return engine

    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = make_engine(settings.database_url, echo=settings.database_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
