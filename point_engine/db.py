from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from point_engine.errors import ApiError, ConsistencyFailure
from point_engine.settings import get_settings

logger = logging.getLogger("point_engine.db")


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session, *, operation: str, **context: Any) -> Iterator[Session]:
    """Run one unit of work and commit it, or roll all of it back.

    Domain errors are re-raised untouched after the rollback. Storage errors
    are logged with the given context and surface as ConsistencyFailure so a
    half-applied cascade is never reported as success. Anything else is rolled
    back and re-raised as is.
    """
    try:
        yield db
        db.flush()
        db.commit()
    except ApiError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "transaction_failed",
            extra={"operation": operation, **context},
        )
        raise ConsistencyFailure(operation) from exc
    except Exception:
        db.rollback()
        logger.exception(
            "transaction_aborted",
            extra={"operation": operation, **context},
        )
        raise
