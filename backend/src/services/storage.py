"""
Entity storage over an async SQLAlchemy session.

Every operation returns a result value instead of raising: Ok(value) on
success, NotFound when a lookup matched nothing, StorageError when the
database call failed. Callers branch on the result type.
"""
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from models.base import Base
from services.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=Base)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful storage operation."""

    value: T


@dataclass(frozen=True)
class NotFound:
    """No entity matched the lookup."""

    entity_type: str
    key: Any = None


@dataclass(frozen=True)
class StorageError:
    """The database call failed."""

    message: str


StorageResult = Ok | NotFound | StorageError


def unwrap(result: "Ok[T] | NotFound | StorageError") -> T | None:
    """
    Value of a storage result for callers that cannot continue without storage.

    NotFound becomes None; StorageError raises StorageUnavailableError.
    """
    if isinstance(result, StorageError):
        raise StorageUnavailableError(result.message)
    if isinstance(result, NotFound):
        return None
    return result.value


@dataclass(frozen=True)
class Page:
    """Pagination window. page is 1-based."""

    page: int = 1
    limit: int = 25

    @property
    def offset(self) -> int:
        """Rows to skip for this page."""
        return (max(1, self.page) - 1) * self.limit

    def slice(self, items: Sequence[T]) -> list[T]:
        """The items that fall on this page."""
        return list(items[self.offset:self.offset + self.limit])


# Listings filter rows by visibility after loading them (friend lists live in
# JSON columns), so they read at most this many rows, already ordered by the
# database. Totals count the visible rows inside this window.
SCAN_WINDOW = Page(limit=1000)


class Storage:
    """Load/query/save/delete entities within the request's session."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def load(self, model: type[M], entity_id: int) -> Ok[M] | NotFound | StorageError:
        """Load one entity by primary key."""
        try:
            entity = await self._db.get(model, entity_id)
        except SQLAlchemyError as e:
            return self._error("load", model, e)
        if entity is None:
            return NotFound(model.__name__, entity_id)
        return Ok(entity)

    async def load_by(
        self,
        model: type[M],
        *filters: ColumnElement[bool],
    ) -> Ok[M] | NotFound | StorageError:
        """Load the first entity matching all filters."""
        try:
            result = await self._db.execute(select(model).where(*filters).limit(1))
            entity = result.scalars().first()
        except SQLAlchemyError as e:
            return self._error("load_by", model, e)
        if entity is None:
            return NotFound(model.__name__)
        return Ok(entity)

    async def query(
        self,
        model: type[M],
        filters: Sequence[ColumnElement[bool]] = (),
        page: Page | None = None,
        order_by: InstrumentedAttribute | None = None,
        descending: bool = True,
    ) -> Ok[list[M]] | StorageError:
        """List entities matching filters, ordered and paginated."""
        stmt = select(model).where(*filters)
        if order_by is not None:
            stmt = stmt.order_by(order_by.desc() if descending else order_by.asc())
        if page is not None:
            stmt = stmt.offset(page.offset).limit(page.limit)
        try:
            result = await self._db.execute(stmt)
        except SQLAlchemyError as e:
            return self._error("query", model, e)
        return Ok(list(result.scalars().all()))

    async def count(
        self,
        model: type[M],
        filters: Sequence[ColumnElement[bool]] = (),
    ) -> Ok[int] | StorageError:
        """Count entities matching filters."""
        stmt = select(func.count()).select_from(model).where(*filters)
        try:
            result = await self._db.execute(stmt)
        except SQLAlchemyError as e:
            return self._error("count", model, e)
        return Ok(int(result.scalar_one()))

    async def save(self, entity: M) -> Ok[M] | StorageError:
        """
        Insert or update an entity.

        Uses flush(), not commit. The session generator commits at request end.
        """
        try:
            self._db.add(entity)
            await self._db.flush()
            await self._db.refresh(entity)
        except SQLAlchemyError as e:
            return self._error("save", type(entity), e)
        return Ok(entity)

    async def delete(self, entity: Base) -> Ok[None] | StorageError:
        """Delete an entity."""
        try:
            await self._db.delete(entity)
            await self._db.flush()
        except SQLAlchemyError as e:
            return self._error("delete", type(entity), e)
        return Ok(None)

    @staticmethod
    def _error(operation: str, model: type, exc: SQLAlchemyError) -> StorageError:
        logger.error(
            "storage_error",
            extra={"operation": operation, "model": model.__name__, "error": str(exc)},
        )
        return StorageError(f"{operation} {model.__name__} failed")
