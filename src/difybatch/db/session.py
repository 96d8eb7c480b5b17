import os
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Generator

from platformdirs import user_data_dir
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from difybatch.db.models import Base

APP_NAME = "difybatch"
APP_AUTHOR = "difybatch"
DATABASE_URL_ENV_VAR = "DIFYBATCH_DATABASE_URL"


def resolve_database_url(*, url: str | None = None) -> str:
    """
    Resolve the database URL.

    Parameters
    ----------
    url : str | None, optional
        Explicit SQLAlchemy URL.

    Returns
    -------
    str
        Explicit URL, then ``DIFYBATCH_DATABASE_URL``, then a SQLite file in the
        user data directory.
    """
    if url is not None:
        return url

    env_url = os.getenv(DATABASE_URL_ENV_VAR)
    if env_url:
        return env_url

    db_file_path = Path(user_data_dir(APP_NAME, APP_AUTHOR)) / f"{APP_NAME}.db"
    db_file_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_file_path}"


def create_session_factory(*, url: str | None = None) -> sessionmaker[Session]:
    engine = create_engine(resolve_database_url(url=url), echo=False, future=True)
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine, class_=Session
    )


@lru_cache(maxsize=1)
def default_session_factory() -> sessionmaker[Session]:
    return create_session_factory()


def _engine_of(session_factory: sessionmaker[Session] | None) -> Engine:
    factory = session_factory or default_session_factory()
    return factory.kw["bind"]


@contextmanager
def get_db(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    db = (session_factory or default_session_factory())()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(session_factory: sessionmaker[Session] | None = None) -> None:
    Base.metadata.create_all(bind=_engine_of(session_factory))
