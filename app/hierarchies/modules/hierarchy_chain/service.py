"""
Hierarchy chain service layer.

A chain is a root version (v0) plus every version branched from it. All
descendants point straight at the root through `root_hierarchy_id`.

Chain rules enforced here:
- at most one record per chain is the active draft
- at most one record per entity is approved (approval archives the rest first)
- version numbers grow by one per new version and never repeat within a chain
- the entity key and user input of the root are copied into every version
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from app.hierarchies.errors import ConflictError, NotFoundError, ValidationError

from .models import STATUS_APPROVED, STATUS_IN_DRAFT, HierarchyData, HierarchyMetadata
from .store import ChainStore, EntityGroup, EntityKey

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    metadata: HierarchyMetadata
    data: HierarchyData | None

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata.to_dict(),
            "data": self.data.to_dict() if self.data is not None else None,
        }


@dataclass
class HierarchyHistory:
    metadata: HierarchyMetadata
    data: list[HierarchyData] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"metadata": self.metadata.to_dict(), "data": [d.to_dict() for d in self.data]}


def normalize_key_part(value: Any) -> str | None:
    """Blank and missing entity attributes are the same thing."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def entity_key_from_params(company: Any, project: Any = None, location: Any = None) -> EntityKey:
    c = normalize_key_part(company)
    if not c:
        raise ValidationError("Company is required.")
    return EntityKey(company=c, project_name=normalize_key_part(project), location=normalize_key_part(location))


def entity_key_from_user_input(user_input: Any) -> EntityKey:
    """
    Build the entity key from a client's userInput object.

    Accepts `projectName` (client spelling) or `project_name`.
    """
    if not isinstance(user_input, Mapping):
        raise ValidationError("userInput must be an object with at least a company.")
    project = user_input.get("projectName")
    if project is None:
        project = user_input.get("project_name")
    return entity_key_from_params(user_input.get("company"), project, user_input.get("location"))


class HierarchyChainManager:
    """
    Version-chain state machine. Stateless apart from the injected store;
    the caller commits or rolls back.
    """

    def __init__(self, store: ChainStore) -> None:
        self.store = store

    def create_initial_hierarchy(
        self,
        user_input: Any,
        payload: Any,
        *,
        start_fresh: bool = False,
        actor: str | None = None,
    ) -> ChainResult:
        entity_key = entity_key_from_user_input(user_input)
        if payload is None:
            raise ValidationError("Data is required.")

        if start_fresh:
            archived = self.store.archive_drafts_for_entity(entity_key)
            logger.info("Start fresh for %s: archived %s draft(s)", entity_key, archived)
            self.store.record_event(
                actor=actor,
                action="hierarchy.start_fresh",
                entity_type="HierarchyMetadata",
                metadata={**entity_key.to_dict(), "archived": archived},
            )

        metadata = self.store.insert_metadata(
            entity_key=entity_key,
            user_input=dict(user_input),
            version_number=0,
            status=STATUS_IN_DRAFT,
        )
        data = self.store.insert_data(metadata.id, payload)

        self.store.record_event(
            actor=actor,
            action="hierarchy.create",
            entity_type="HierarchyMetadata",
            entity_id=metadata.id,
            metadata={**entity_key.to_dict(), "version": metadata.version},
        )
        return ChainResult(metadata=metadata, data=data)

    def create_new_version(
        self,
        parent_id: str,
        payload: Any,
        feedback: str | None = None,
        *,
        actor: str | None = None,
    ) -> ChainResult:
        parent = self.store.get_metadata_by_id(parent_id)
        if parent is None:
            raise NotFoundError("Parent hierarchy not found.")
        if payload is None:
            raise ValidationError("New hierarchy data is required.")

        root_id = parent.chain_root_id
        self.store.lock_chain(root_id)

        # Clears the parent and any other open draft in the chain (branching from a non-tip version).
        self.store.clear_active_drafts(root_id)

        version_number = self.store.max_version_number(root_id) + 1
        if version_number != parent.version_number + 1:
            logger.info(
                "Branching from non-tip version %s of chain %s; new version is v%s",
                parent.version,
                root_id,
                version_number,
            )

        metadata = self.store.insert_metadata(
            entity_key=EntityKey(company=parent.company, project_name=parent.project_name, location=parent.location),
            user_input=parent.user_input,
            version_number=version_number,
            status=STATUS_IN_DRAFT,
            user_feedback={"text": feedback} if feedback else None,
            root_hierarchy_id=root_id,
        )
        data = self.store.insert_data(metadata.id, payload)

        self.store.record_event(
            actor=actor,
            action="hierarchy.revise",
            entity_type="HierarchyMetadata",
            entity_id=metadata.id,
            reason=feedback,
            metadata={"root_id": root_id, "from": parent.version, "to": metadata.version},
        )
        return ChainResult(metadata=metadata, data=data)

    def approve_hierarchy(self, metadata_id: str, *, actor: str | None = None, reason: str | None = None) -> HierarchyMetadata:
        target = self.store.get_metadata_by_id(metadata_id)
        if target is None:
            raise NotFoundError("Hierarchy to approve not found.")

        expected_status = target.status
        root_id = target.chain_root_id
        self.store.lock_chain(root_id)

        # Archive first, then approve: never two approved records for one entity.
        archived = self.store.archive_chain(root_id, metadata_id)
        entity_key = EntityKey(company=target.company, project_name=target.project_name, location=target.location)
        archived += self.store.archive_approved_for_entity(entity_key, metadata_id)
        approved = self.store.mark_approved(metadata_id, expected_status=expected_status)
        if approved is None:
            logger.warning("Approve lost a race on %s (chain %s)", metadata_id, root_id)
            raise ConflictError("Hierarchy was changed by another request; reload and try again.")

        self.store.record_event(
            actor=actor,
            action="hierarchy.approve",
            entity_type="HierarchyMetadata",
            entity_id=approved.id,
            reason=reason,
            metadata={"root_id": root_id, "version": approved.version, "archived": archived},
        )
        return approved

    def lookup_approved(self, entity_key: EntityKey) -> ChainResult | None:
        metadata = self.store.find_latest_by_entity_key(entity_key, status=STATUS_APPROVED)
        if metadata is None:
            return None
        return self._with_newest_data(metadata)

    def lookup_active_draft_or_project(self, entity_key: EntityKey) -> ChainResult | None:
        metadata = self.store.find_latest_by_entity_key(entity_key)
        if metadata is None:
            return None
        return self._with_newest_data(metadata)

    def get_hierarchy(self, metadata_id: str) -> HierarchyHistory:
        metadata = self.store.get_metadata_by_id(metadata_id)
        if metadata is None:
            raise NotFoundError("Hierarchy not found.")
        return HierarchyHistory(metadata=metadata, data=self.store.get_data_by_metadata_id(metadata_id))

    def list_all_grouped(self) -> list[EntityGroup]:
        return self.store.list_all_grouped_by_entity()

    def _with_newest_data(self, metadata: HierarchyMetadata) -> ChainResult:
        rows = self.store.get_data_by_metadata_id(metadata.id)
        return ChainResult(metadata=metadata, data=rows[0] if rows else None)
