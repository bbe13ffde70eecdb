"""
Ledger store - thin persistence layer over billing entities

No business rules live here. Callers compose these operations inside
unit_of_work() so that a group of mutations commits or rolls back as one.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Type, TypeVar

from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session
import logging

from ..db.models import WebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class LedgerStore:
    """Create/read/update/count/filter access to persisted entities"""

    def __init__(self, db: Session):
        """Initialize ledger store"""
        self.db = db

    def add(self, entity: ModelT) -> ModelT:
        """Stage a new entity and flush so its primary key is assigned"""
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, model: Type[ModelT], entity_id: Any) -> Optional[ModelT]:
        return self.db.get(model, entity_id)

    def get_for_update(self, model: Type[ModelT], entity_id: Any) -> Optional[ModelT]:
        """Load a row holding a row lock until the transaction ends (no-op on SQLite)"""
        pk = model.__mapper__.primary_key[0]
        return self.db.query(model).filter(pk == entity_id).with_for_update().first()

    def first(self, model: Type[ModelT], *criteria, order_by=None) -> Optional[ModelT]:
        query = self.db.query(model).filter(*criteria)
        if order_by is not None:
            query = query.order_by(order_by)
        return query.first()

    def filter(self, model: Type[ModelT], *criteria, order_by=None, limit: Optional[int] = None) -> List[ModelT]:
        query = self.db.query(model).filter(*criteria)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count(self, model: Type[ModelT], *criteria) -> int:
        return self.db.query(model).filter(*criteria).count()

    def update(self, model: Type[ModelT], entity_id: Any, **values) -> int:
        """
        Column-scoped single-row UPDATE

        Only the named columns are written, so two writers touching
        different columns of the same row never overwrite each other.

        Args:
            model: Mapped class
            entity_id: Primary key value
            **values: Column values to set

        Returns:
            Number of rows updated (0 or 1)
        """
        pk = model.__mapper__.primary_key[0]
        if "updated_at" in model.__table__.columns and "updated_at" not in values:
            values["updated_at"] = datetime.utcnow()
        result = self.db.execute(
            sql_update(model).where(pk == entity_id).values(**values).execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def increment(self, model: Type[ModelT], entity_id: Any, column: str, amount: int) -> int:
        """Atomic col = col + amount on one row"""
        pk = model.__mapper__.primary_key[0]
        target = getattr(model, column)
        result = self.db.execute(
            sql_update(model)
            .where(pk == entity_id)
            .values({target: target + amount})
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def has_processed_event(self, event_id: str) -> bool:
        return self.db.get(WebhookEvent, event_id) is not None

    def record_processed_event(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        status: str = WebhookEventStatus.PROCESSED.value,
    ) -> WebhookEvent:
        """
        Stage the idempotency marker for an event

        Flushes immediately so a concurrent first delivery surfaces as an
        IntegrityError inside the caller's unit of work.
        """
        marker = WebhookEvent(
            event_id=event_id,
            provider=provider,
            event_type=event_type,
            status=status,
            processed_at=datetime.utcnow(),
        )
        self.db.add(marker)
        self.db.flush()
        return marker

    def flush(self) -> None:
        self.db.flush()

    @contextmanager
    def unit_of_work(self) -> Iterator["LedgerStore"]:
        """Commit everything staged inside the block, or roll all of it back"""
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
