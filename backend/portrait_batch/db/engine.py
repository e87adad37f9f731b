from sqlalchemy import event
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

from portrait_batch.core.config import settings

# Ensure the metadata directory exists before initializing the engine so that
# the SQLite file can be created on first connect.
settings.ensure_dirs()


def _sqlite_on_connect(dbapi_connection, connection_record):
    # Let SQLAlchemy emit BEGIN itself (see _sqlite_on_begin) so a session
    # that reads a job and its items sees one consistent snapshot.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_on_begin(conn):
    conn.exec_driver_sql("BEGIN")


def create_db_engine(url: str, **kwargs):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True, **kwargs)

    # check_same_thread=False allows the job runner threads and request
    # handlers to share the same SQLite file. NullPool closes connections
    # immediately so the runner never hoards them between items.
    kwargs.setdefault("poolclass", NullPool)
    sqlite_engine = create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 5.0},
        **kwargs,
    )
    event.listen(sqlite_engine, "connect", _sqlite_on_connect)
    event.listen(sqlite_engine, "begin", _sqlite_on_begin)
    return sqlite_engine


engine = create_db_engine(settings.database_url)
