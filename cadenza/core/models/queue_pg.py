from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    false as sa_false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for cadenza tables"""

    pass


class QueueModel(Base):
    """
    A declared queue.

    - name: str # queue name, usually derived from the task name
    - persistent: bool # False = dropped once its last consumer goes away
    - created_at: datetime
    """

    __tablename__ = 'cadenza_queues'

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    persistent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class BindingModel(Base):
    """A topic pattern binding a queue to an exchange."""

    __tablename__ = 'cadenza_bindings'
    __table_args__ = (
        UniqueConstraint('queue_name', 'exchange', 'pattern', name='uq_cadenza_binding'),
        Index('idx_cadenza_bindings_exchange', 'exchange'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(
        String(255),
        ForeignKey('cadenza_queues.name', ondelete='CASCADE'),
        nullable=False,
    )
    exchange: Mapped[str] = mapped_column(String(255), nullable=False)
    pattern: Mapped[str] = mapped_column(String(255), nullable=False)


class MessageModel(Base):
    """
    One message sitting in (or being consumed from) one queue.

    - id: int # doubles as the delivery tag
    - status: str # 'ready' | 'unacked'
    - redelivered: bool # set once the message has been requeued
    - consumer_tag: str # consumer holding the message while unacked
    """

    __tablename__ = 'cadenza_messages'
    __table_args__ = (
        Index('idx_cadenza_messages_claim', 'queue_name', 'status', 'id'),
        Index('idx_cadenza_messages_consumer', 'consumer_tag'),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(
        String(255),
        ForeignKey('cadenza_queues.name', ondelete='CASCADE'),
        nullable=False,
    )
    exchange: Mapped[str] = mapped_column(String(255), nullable=False)
    routing_key: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(255), nullable=False, default='application/octet-stream'
    )
    headers: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb")
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default='ready', server_default=text("'ready'")
    )
    redelivered: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )
    consumer_tag: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=text('now()')
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ConsumerModel(Base):
    """A live consumer, kept fresh through heartbeat_at."""

    __tablename__ = 'cadenza_consumers'
    __table_args__ = (Index('idx_cadenza_consumers_queue', 'queue_name'),)

    consumer_tag: Mapped[str] = mapped_column(String(255), primary_key=True)
    queue_name: Mapped[str] = mapped_column(
        String(255),
        ForeignKey('cadenza_queues.name', ondelete='CASCADE'),
        nullable=False,
    )
    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=text('now()')
    )
