from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from models import Base


def make_engine(database_url):
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(database_url, **kwargs)

    if engine.dialect.name == "sqlite":
        # SQLite only enforces foreign keys when asked to
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

    return engine


def init_db(database_url):
    """Create the engine, the tables and return a session factory bound to it."""
    engine = make_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def transaction(session_factory):
    """Yield a session inside one all-or-nothing transaction."""
    session = session_factory()
    try:
        with session.begin():
            yield session
    finally:
        session.close()
