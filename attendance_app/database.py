import os
from typing import Callable

from sqlmodel import Session, SQLModel, create_engine

from .config import settings

os.makedirs(settings.data_dir, exist_ok=True)

engine = create_engine(f"sqlite:///{settings.db_path}", connect_args={"check_same_thread": False})


def init_db(bind=engine):
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind)


def get_db():
    with Session(engine) as session:
        yield session


def session_factory() -> Session:
    """Standalone session for work outside a request, e.g. the capture thread."""
    return Session(engine)


def get_session_factory() -> Callable[[], Session]:
    return session_factory
