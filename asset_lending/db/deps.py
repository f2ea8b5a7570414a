import logging
from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager
from functools import wraps
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.errors import StoreUnavailable

from .session import SessionLocalLending

LOGGER = logging.getLogger("asset_lending.db")

T = TypeVar("T")


def get_lending_db() -> Generator:
    db = SessionLocalLending()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a block as one unit of work: commit on success, roll back everything otherwise."""
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Unit of work failed, rolled back")
        raise StoreUnavailable() from exc
    except Exception:
        db.rollback()
        raise


@contextmanager
def store_read(db: Session) -> Iterator[Session]:
    """Read outside a unit of work; store failures surface as StoreUnavailable."""
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Store read failed")
        raise StoreUnavailable("Data store unavailable.") from exc


def reads_store(func: Callable[..., T]) -> Callable[..., T]:
    @wraps(func)
    def wrapper(db: Session, *args: Any, **kwargs: Any) -> T:
        with store_read(db):
            return func(db, *args, **kwargs)

    return wrapper
