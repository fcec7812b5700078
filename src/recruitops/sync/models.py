"""Record store persistence models -- one table per synced entity type.

Four SQLAlchemy models sharing the same shape through SyncedRecordMixin:
- CandidateModel: people imported from CRM contacts
- ClientModel: organizations imported from CRM accounts
- VacancyModel: jobs imported from the CRM jobs module
- TodoModel: tasks imported from the CRM calendar module

``external_id`` is unique (NULLs allowed) and ``natural_key`` is indexed so
upserts resolve records by index lookup rather than table scans. Mapped
fields live in the ``data`` JSON document.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from src.recruitops.core.database import Base
from src.recruitops.sync.schemas import EntityType


class SyncedRecordMixin:
    """Columns shared by every synced record table."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    natural_key: Mapped[str | None] = mapped_column(String(320), nullable=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        return (
            Index(f"uq_{cls.__tablename__}_external_id", "external_id", unique=True),
            Index(f"ix_{cls.__tablename__}_natural_key", "natural_key"),
        )


class CandidateModel(SyncedRecordMixin, Base):
    __tablename__ = "candidates"


class ClientModel(SyncedRecordMixin, Base):
    __tablename__ = "clients"


class VacancyModel(SyncedRecordMixin, Base):
    __tablename__ = "vacancies"


class TodoModel(SyncedRecordMixin, Base):
    __tablename__ = "todos"


MODEL_FOR_ENTITY: dict[EntityType, type[SyncedRecordMixin]] = {
    EntityType.CANDIDATE: CandidateModel,
    EntityType.CLIENT: ClientModel,
    EntityType.VACANCY: VacancyModel,
    EntityType.TODO: TodoModel,
}
