# rindang/storage/db.py
from pathlib import Path
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Union

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.record  # noqa: F401
import models.pending_op  # noqa: F401
import models.sync_conflict  # noqa: F401
import models.sync_meta  # noqa: F401
from storage import migrations


SessionFactory = Callable[[], Session]


@contextmanager
def session_scope(factory: SessionFactory, session: Optional[Session] = None) -> Iterator[Session]:
    """Join ``session`` when given, otherwise open one and commit on success."""

    if session is not None:
        yield session
        return
    with factory() as own:
        yield own
        own.commit()


def create_db_engine(path: Optional[Union[str, Path]] = None) -> Engine:
    """Engine for the on-device mirror database; ``":memory:"`` is accepted."""

    if path == ":memory:":
        return create_engine("sqlite:///:memory:", echo=False)
    target = Path(path or DB_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{target.as_posix()}", echo=False)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)


def make_session_factory(engine: Engine) -> SessionFactory:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = [
    "SessionFactory",
    "create_db_engine",
    "init_db",
    "make_session_factory",
    "session_scope",
]
