from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


LOGGER = logging.getLogger("rental_engine.db")


def build_engine(database_url: str, **engine_kwargs) -> Engine:
    engine_kwargs.setdefault("pool_pre_ping", True)
    engine_kwargs.setdefault("future", True)
    return create_engine(database_url, **engine_kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


@contextmanager
def unit_of_work(db: Session, name: str = "workflow") -> Iterator[Session]:
    """Commit everything done inside the block, or nothing.

    Workflows that touch several rows (asset state, assignments, contracts,
    events) run inside one of these so a failure halfway through leaves the
    datastore as it was before the call.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        LOGGER.warning("Rolled back unit of work name=%s", name)
        raise
