from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.hierarchies.models import Base, JSONDocument

STATUS_IN_DRAFT = "in-draft"
STATUS_APPROVED = "approved"
STATUS_ARCHIVED = "archived"

# in-draft -> approved | archived; approved -> archived; archived -> approved (re-approving an older version)
VALID_STATUSES = (STATUS_IN_DRAFT, STATUS_APPROVED, STATUS_ARCHIVED)


def _new_id() -> str:
    return str(uuid.uuid4())


class HierarchyMetadata(Base):
    __tablename__ = "hierarchy_metadata"
    __table_args__ = (
        UniqueConstraint("root_hierarchy_id", "version_number", name="uq_hierarchy_chain_version"),
        Index("idx_hierarchy_metadata_company", "company"),
        Index("idx_hierarchy_metadata_root", "root_hierarchy_id"),
        Index("idx_hierarchy_metadata_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Entity key (immutable; copied from the root into every version)
    company: Mapped[str] = mapped_column(String(255), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_input: Mapped[dict] = mapped_column(JSONDocument, nullable=False)

    version: Mapped[str] = mapped_column(String(16), nullable=False)  # "v0", "v1", ...
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_IN_DRAFT)
    is_active_draft: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    user_feedback: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)

    # NULL on the root; every descendant points straight at the root.
    root_hierarchy_id: Mapped[str | None] = mapped_column(
        ForeignKey("hierarchy_metadata.id", ondelete="RESTRICT"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def chain_root_id(self) -> str:
        return self.root_hierarchy_id or self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_input": self.user_input,
            "company": self.company,
            "project_name": self.project_name,
            "location": self.location,
            "version": self.version,
            "version_number": self.version_number,
            "status": self.status,
            "is_active_draft": self.is_active_draft,
            "user_feedback": self.user_feedback,
            "root_hierarchy_id": self.root_hierarchy_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class HierarchyData(Base):
    __tablename__ = "hierarchy_data"
    __table_args__ = (
        Index("idx_hierarchy_data_metadata", "metadata_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    metadata_id: Mapped[str] = mapped_column(
        ForeignKey("hierarchy_metadata.id", ondelete="CASCADE"),
        nullable=False,
    )
    data: Mapped[object] = mapped_column(JSONDocument, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metadata_id": self.metadata_id,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
