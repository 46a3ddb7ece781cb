from sqlalchemy import event
from sqlmodel import create_engine, SQLModel, Session

from config import settings


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if "sqlite" in url else {}
    engine = create_engine(url, echo=False, connect_args=connect_args)

    if "sqlite" in url:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


engine = make_engine(settings.database_url)


def create_db_and_tables(bind=None):
    SQLModel.metadata.create_all(bind if bind is not None else engine)


def get_session():
    with Session(engine) as session:
        yield session
