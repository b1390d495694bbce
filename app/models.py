from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ItemStatus(str, Enum):
    PENDING = 'PENDING'
    PURCHASED = 'PURCHASED'
    DELIVERED = 'DELIVERED'


class ItemType(str, Enum):
    MANUFACTURED = 'MANUFACTURED'
    COMMERCIAL = 'COMMERCIAL'


class SyncStatus(str, Enum):
    LOADING = 'LOADING'
    SYNCED = 'SYNCED'
    PENDING = 'PENDING'
    SAVING = 'SAVING'
    ERROR = 'ERROR'
    OFFLINE = 'OFFLINE'


class SyncDocument(Base):
    __tablename__ = 'sync_documents'

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[dict | list] = mapped_column(JSON, nullable=False, default=dict)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PresenceSession(Base):
    __tablename__ = 'presence_sessions'
    __table_args__ = (UniqueConstraint('channel', 'session_key', name='uq_presence_channel_session'),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    session_key: Mapped[str] = mapped_column(Text, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
