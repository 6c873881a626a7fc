"""Unit-of-work helper mapping SQLAlchemy failures onto the service errors."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.services.errors import ConcurrencyConflict, StorageFailure

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session, operation: str) -> Iterator[Session]:
    """Run a block of writes as one database transaction.

    Commits when the block completes. Any error rolls the whole block back,
    so readers never observe a partial write.

    Args:
        db: Database session
        operation: Short label used in logs and error messages

    Raises:
        ConcurrencyConflict: A versioned row changed since it was read
        StorageFailure: Any other database error
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("Concurrent modification during %s: %s", operation, e)
        raise ConcurrencyConflict(
            f"{operation} conflicted with a concurrent change; reload and retry"
        ) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Storage failure during %s: %s", operation, e, exc_info=True)
        raise StorageFailure(f"{operation} failed: {e}") from e
    except Exception:
        db.rollback()
        raise


__all__ = ["unit_of_work"]
