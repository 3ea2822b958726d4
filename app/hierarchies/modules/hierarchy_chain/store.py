"""
Persistence adapter for hierarchy chains.

ChainStore is the only code that talks SQL for this module. It flushes but
never commits: the caller owns the transaction (request handler or
session_scope). Database failures surface as StorageError.
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.hierarchies.audit import record_event
from app.hierarchies.errors import ConflictError, StorageError
from app.hierarchies.models import AuditEvent

from .models import (
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_IN_DRAFT,
    VALID_STATUSES,
    HierarchyData,
    HierarchyMetadata,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityKey:
    """Identity of the business entity a chain belongs to."""

    company: str
    project_name: str | None = None
    location: str | None = None

    def to_dict(self) -> dict:
        return {"company": self.company, "project_name": self.project_name, "location": self.location}


@dataclass(frozen=True)
class MetadataUpdate:
    """The only mutable fields of a metadata record."""

    status: str | None = None
    is_active_draft: bool | None = None

    def __post_init__(self) -> None:
        if self.status is not None and self.status not in VALID_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")

    def is_empty(self) -> bool:
        return self.status is None and self.is_active_draft is None


@dataclass
class EntityGroup:
    company: str
    project_name: str | None
    location: str | None
    versions: list[HierarchyMetadata] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "company": self.company,
            "location": self.location or "Global",
            "projectName": self.project_name,
            "versions": [v.to_dict() for v in self.versions],
        }


def version_label(version_number: int) -> str:
    return f"v{version_number}"


@contextmanager
def _storage_errors(op: str) -> Generator[None, None, None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception("ChainStore.%s failed", op)
        raise StorageError(f"Storage failure during {op}.") from e


def _in_chain(root_id: str):
    return or_(HierarchyMetadata.root_hierarchy_id == root_id, HierarchyMetadata.id == root_id)


def _matches_entity(key: EntityKey):
    clauses = [HierarchyMetadata.company == key.company]
    if key.project_name:
        clauses.append(HierarchyMetadata.project_name == key.project_name)
    else:
        clauses.append(HierarchyMetadata.project_name.is_(None))
    if key.location:
        clauses.append(HierarchyMetadata.location == key.location)
    else:
        clauses.append(HierarchyMetadata.location.is_(None))
    return clauses


class ChainStore:
    def __init__(self, s: Session) -> None:
        self.s = s

    def insert_metadata(
        self,
        *,
        entity_key: EntityKey,
        user_input: dict,
        version_number: int,
        status: str = STATUS_IN_DRAFT,
        user_feedback: dict | None = None,
        root_hierarchy_id: str | None = None,
    ) -> HierarchyMetadata:
        m = HierarchyMetadata(
            company=entity_key.company,
            project_name=entity_key.project_name,
            location=entity_key.location,
            user_input=user_input,
            version=version_label(version_number),
            version_number=version_number,
            status=status,
            is_active_draft=True,
            user_feedback=user_feedback,
            root_hierarchy_id=root_hierarchy_id,
        )
        self.s.add(m)
        try:
            self.s.flush()
        except IntegrityError as e:
            # uq_hierarchy_chain_version: another writer took this number first.
            logger.warning("v%s already exists in chain %s: %s", version_number, root_hierarchy_id, e.orig)
            raise ConflictError("Version number already taken in this chain; reload and try again.") from e
        except SQLAlchemyError as e:
            logger.exception("ChainStore.insert_metadata failed")
            raise StorageError("Storage failure during insert_metadata.") from e
        return m

    def insert_data(self, metadata_id: str, payload: Any) -> HierarchyData:
        d = HierarchyData(metadata_id=metadata_id, data=payload)
        with _storage_errors("insert_data"):
            self.s.add(d)
            self.s.flush()
        return d

    def get_metadata_by_id(self, metadata_id: str) -> HierarchyMetadata | None:
        with _storage_errors("get_metadata_by_id"):
            return self.s.get(HierarchyMetadata, metadata_id, populate_existing=True)

    def get_data_by_metadata_id(self, metadata_id: str) -> list[HierarchyData]:
        """Data rows for one version, newest first."""
        stmt = (
            select(HierarchyData)
            .where(HierarchyData.metadata_id == metadata_id)
            .order_by(HierarchyData.created_at.desc(), HierarchyData.id.desc())
        )
        with _storage_errors("get_data_by_metadata_id"):
            return list(self.s.scalars(stmt).all())

    def update_metadata(self, metadata_id: str, changes: MetadataUpdate) -> HierarchyMetadata | None:
        m = self.get_metadata_by_id(metadata_id)
        if m is None or changes.is_empty():
            return m
        if changes.status is not None:
            m.status = changes.status
        if changes.is_active_draft is not None:
            m.is_active_draft = changes.is_active_draft
        with _storage_errors("update_metadata"):
            self.s.flush()
        return m

    def find_latest_by_entity_key(self, entity_key: EntityKey, status: str | None = None) -> HierarchyMetadata | None:
        """
        Most recent record for an entity across all of its chains.

        The active draft wins, then the newest record. Version numbers only
        break ties, since they restart at v0 for every chain.
        """
        stmt = select(HierarchyMetadata).where(*_matches_entity(entity_key))
        if status is not None:
            stmt = stmt.where(HierarchyMetadata.status == status)
        stmt = stmt.order_by(
            HierarchyMetadata.is_active_draft.desc(),
            HierarchyMetadata.created_at.desc(),
            HierarchyMetadata.version_number.desc(),
        ).limit(1)
        with _storage_errors("find_latest_by_entity_key"):
            return self.s.scalars(stmt).first()

    def archive_chain(self, root_id: str, exclude_id: str) -> int:
        """Archive every record of the chain except `exclude_id`, in one statement."""
        stmt = (
            update(HierarchyMetadata)
            .where(_in_chain(root_id), HierarchyMetadata.id != exclude_id)
            .values(status=STATUS_ARCHIVED, is_active_draft=False)
        )
        with _storage_errors("archive_chain"):
            return self.s.execute(stmt).rowcount

    def archive_approved_for_entity(self, entity_key: EntityKey, exclude_id: str) -> int:
        """Archive approvals held by other chains of the same entity."""
        stmt = (
            update(HierarchyMetadata)
            .where(
                *_matches_entity(entity_key),
                HierarchyMetadata.status == STATUS_APPROVED,
                HierarchyMetadata.id != exclude_id,
            )
            .values(status=STATUS_ARCHIVED, is_active_draft=False)
        )
        with _storage_errors("archive_approved_for_entity"):
            return self.s.execute(stmt).rowcount

    def archive_drafts_for_entity(self, entity_key: EntityKey) -> int:
        stmt = (
            update(HierarchyMetadata)
            .where(*_matches_entity(entity_key), HierarchyMetadata.status == STATUS_IN_DRAFT)
            .values(status=STATUS_ARCHIVED, is_active_draft=False)
        )
        with _storage_errors("archive_drafts_for_entity"):
            return self.s.execute(stmt).rowcount

    def clear_active_drafts(self, root_id: str) -> int:
        stmt = (
            update(HierarchyMetadata)
            .where(_in_chain(root_id), HierarchyMetadata.is_active_draft.is_(True))
            .values(is_active_draft=False)
        )
        with _storage_errors("clear_active_drafts"):
            return self.s.execute(stmt).rowcount

    def max_version_number(self, root_id: str) -> int:
        stmt = select(func.max(HierarchyMetadata.version_number)).where(_in_chain(root_id))
        with _storage_errors("max_version_number"):
            return self.s.scalar(stmt) or 0

    def lock_chain(self, root_id: str) -> None:
        # Row lock on the root; SQLite does not render FOR UPDATE (writers are serialised there anyway).
        stmt = select(HierarchyMetadata.id).where(HierarchyMetadata.id == root_id).with_for_update()
        with _storage_errors("lock_chain"):
            self.s.execute(stmt)

    def mark_approved(self, metadata_id: str, *, expected_status: str) -> HierarchyMetadata | None:
        """
        Compare-and-swap the record to approved.
        Returns None when the record is no longer in `expected_status`.
        """
        stmt = (
            update(HierarchyMetadata)
            .where(HierarchyMetadata.id == metadata_id, HierarchyMetadata.status == expected_status)
            .values(status=STATUS_APPROVED, is_active_draft=False)
        )
        with _storage_errors("mark_approved"):
            if self.s.execute(stmt).rowcount != 1:
                return None
            return self.s.get(HierarchyMetadata, metadata_id, populate_existing=True)

    def list_all_grouped_by_entity(self) -> list[EntityGroup]:
        stmt = select(HierarchyMetadata).order_by(
            HierarchyMetadata.company.asc(),
            HierarchyMetadata.location.asc(),
            HierarchyMetadata.project_name.asc(),
            HierarchyMetadata.version_number.desc(),
        )
        with _storage_errors("list_all_grouped_by_entity"):
            rows = self.s.scalars(stmt).all()

        grouped: dict[tuple, EntityGroup] = {}
        for row in rows:
            key = (row.company, row.project_name, row.location)
            group = grouped.get(key)
            if group is None:
                group = EntityGroup(company=row.company, project_name=row.project_name, location=row.location)
                grouped[key] = group
            group.versions.append(row)
        return list(grouped.values())

    def record_event(self, **kwargs: Any) -> AuditEvent:
        with _storage_errors("record_event"):
            return record_event(self.s, **kwargs)
