"""SQLModel ORM table backing the SQLite object store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel


class StoreObjectRow(SQLModel, table=True):
    __tablename__ = "store_objects"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    body: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    version: str = Field(index=True)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
