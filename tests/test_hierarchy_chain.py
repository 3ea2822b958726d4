"""
Service-level tests for the hierarchy version chain.

Each test drives HierarchyChainManager through ChainStore on a throwaway
SQLite database and checks the chain rules from a fresh session.
"""

import pytest
from sqlalchemy import select

from app.hierarchies import create_app
from app.hierarchies.db import session_scope
from app.hierarchies.errors import ConflictError, NotFoundError, StorageError, ValidationError
from app.hierarchies.models import AuditEvent, Base
from app.hierarchies.modules.hierarchy_chain.models import HierarchyMetadata
from app.hierarchies.modules.hierarchy_chain.service import HierarchyChainManager
from app.hierarchies.modules.hierarchy_chain.store import ChainStore, EntityKey, MetadataUpdate


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


def _chain(s, root_id):
    stmt = (
        select(HierarchyMetadata)
        .where((HierarchyMetadata.root_hierarchy_id == root_id) | (HierarchyMetadata.id == root_id))
        .order_by(HierarchyMetadata.version_number.asc())
    )
    return list(s.scalars(stmt).all())


def _create_root(app, user_input=None, payload=None, **kwargs):
    with session_scope(app) as s:
        result = HierarchyChainManager(ChainStore(s)).create_initial_hierarchy(
            user_input or {"company": "Acme"},
            payload if payload is not None else {"a": 1},
            **kwargs,
        )
    return result


def test_create_root_starts_chain_as_active_draft(app):
    result = _create_root(app)
    m = result.metadata

    assert m.version_number == 0
    assert m.version == "v0"
    assert m.status == "in-draft"
    assert m.is_active_draft is True
    assert m.root_hierarchy_id is None
    assert m.company == "Acme"
    assert result.data.metadata_id == m.id
    assert result.data.data == {"a": 1}


def test_create_root_requires_company_and_payload(app):
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        with pytest.raises(ValidationError):
            mgr.create_initial_hierarchy({"location": "Berlin"}, {"a": 1})
        with pytest.raises(ValidationError):
            mgr.create_initial_hierarchy({"company": "   "}, {"a": 1})
        with pytest.raises(ValidationError):
            mgr.create_initial_hierarchy({"company": "Acme"}, None)
        with pytest.raises(ValidationError):
            mgr.create_initial_hierarchy("Acme", {"a": 1})


def test_new_version_from_root(app):
    root = _create_root(app).metadata

    with session_scope(app) as s:
        v1 = HierarchyChainManager(ChainStore(s)).create_new_version(root.id, {"a": 2}, "fix spelling")

    assert v1.metadata.version_number == 1
    assert v1.metadata.version == "v1"
    assert v1.metadata.root_hierarchy_id == root.id
    assert v1.metadata.user_feedback == {"text": "fix spelling"}
    assert v1.metadata.is_active_draft is True
    assert v1.metadata.user_input == {"company": "Acme"}
    assert v1.data.data == {"a": 2}

    with session_scope(app) as s:
        parent = s.get(HierarchyMetadata, root.id)
        assert parent.is_active_draft is False
        assert parent.status == "in-draft"


def test_new_version_from_descendant_points_at_true_root(app):
    root = _create_root(app, {"company": "Acme", "projectName": "Roll-out", "location": "Berlin"}).metadata

    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        v1 = mgr.create_new_version(root.id, {"a": 2}).metadata
        v2 = mgr.create_new_version(v1.id, {"a": 3}).metadata

    assert v2.root_hierarchy_id == root.id
    assert v2.version_number == 2
    assert v2.user_feedback is None
    assert (v2.company, v2.project_name, v2.location) == ("Acme", "Roll-out", "Berlin")

    with session_scope(app) as s:
        chain = _chain(s, root.id)
        assert [m.version for m in chain] == ["v0", "v1", "v2"]
        assert [m.is_active_draft for m in chain] == [False, False, True]


def test_branching_from_non_tip_version_takes_next_chain_number(app):
    root = _create_root(app).metadata

    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        mgr.create_new_version(root.id, {"a": 2})
        mgr.create_new_version(root.id, {"a": 3})
        branched = mgr.create_new_version(root.id, {"a": 4}).metadata

    assert branched.version_number == 3

    with session_scope(app) as s:
        chain = _chain(s, root.id)
        numbers = [m.version_number for m in chain]
        assert numbers == sorted(set(numbers)) == [0, 1, 2, 3]
        active = [m for m in chain if m.is_active_draft]
        assert [m.id for m in active] == [branched.id]


def test_new_version_unknown_parent_is_not_found(app):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            HierarchyChainManager(ChainStore(s)).create_new_version("nonexistent-id", {"a": 1})


def test_approve_archives_rest_of_chain(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        v1 = HierarchyChainManager(ChainStore(s)).create_new_version(root.id, {"a": 2}, "fix spelling").metadata

    with session_scope(app) as s:
        approved = HierarchyChainManager(ChainStore(s)).approve_hierarchy(v1.id)
        assert approved.id == v1.id
        assert approved.status == "approved"
        assert approved.is_active_draft is False

    with session_scope(app) as s:
        chain = _chain(s, root.id)
        assert [m.status for m in chain] == ["archived", "approved"]
        assert not any(m.is_active_draft for m in chain)

        found = HierarchyChainManager(ChainStore(s)).lookup_approved(EntityKey(company="Acme"))
        assert found.metadata.id == v1.id
        assert found.data.data == {"a": 2}


def test_reapproving_older_version_keeps_single_approval(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        v1 = mgr.create_new_version(root.id, {"a": 2}).metadata
        mgr.approve_hierarchy(v1.id)
        v2 = mgr.create_new_version(v1.id, {"a": 3}).metadata
        mgr.approve_hierarchy(v2.id)
        mgr.approve_hierarchy(v1.id)

    with session_scope(app) as s:
        chain = _chain(s, root.id)
        approved = [m.id for m in chain if m.status == "approved"]
        assert approved == [v1.id]


def test_approve_unknown_id_is_not_found(app):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            HierarchyChainManager(ChainStore(s)).approve_hierarchy("nonexistent-id")


def test_approve_that_loses_a_race_raises_conflict(app):
    root = _create_root(app).metadata

    class RacingStore(ChainStore):
        # Another request archives the target between our read and our approve.
        def archive_chain(self, root_id, exclude_id):
            touched = super().archive_chain(root_id, exclude_id)
            super().update_metadata(exclude_id, MetadataUpdate(status="archived", is_active_draft=False))
            return touched

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            HierarchyChainManager(RacingStore(s)).approve_hierarchy(root.id)

    with session_scope(app) as s:
        assert s.get(HierarchyMetadata, root.id).status == "in-draft"


def test_lookup_approved_ignores_drafts_and_archived(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        assert mgr.lookup_approved(EntityKey(company="Acme")) is None
        mgr.create_new_version(root.id, {"a": 2})
        assert mgr.lookup_approved(EntityKey(company="Acme")) is None
        # other entities never leak in
        assert mgr.lookup_approved(EntityKey(company="Other")) is None


def test_lookup_matches_blank_and_missing_location(app):
    root = _create_root(app, {"company": "Acme", "location": ""}).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        mgr.approve_hierarchy(root.id)
        assert mgr.lookup_approved(EntityKey(company="Acme")).metadata.id == root.id
        assert mgr.lookup_approved(EntityKey(company="Acme", location="Berlin")) is None


def test_lookup_active_draft_or_project_returns_latest_any_status(app):
    root = _create_root(app, {"company": "Acme", "projectName": "Alpha"}).metadata
    key = EntityKey(company="Acme", project_name="Alpha")
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        assert mgr.lookup_active_draft_or_project(key).metadata.id == root.id
        v1 = mgr.create_new_version(root.id, {"a": 2}).metadata
        latest = mgr.lookup_active_draft_or_project(key)
        assert latest.metadata.id == v1.id
        assert latest.data.data == {"a": 2}
        assert mgr.lookup_active_draft_or_project(EntityKey(company="Acme", project_name="Beta")) is None


def test_start_fresh_archives_previous_drafts(app):
    first = _create_root(app, {"company": "Acme", "projectName": "Alpha"}).metadata
    second = _create_root(app, {"company": "Acme", "projectName": "Alpha"}, start_fresh=True).metadata

    with session_scope(app) as s:
        old = s.get(HierarchyMetadata, first.id)
        assert old.status == "archived"
        assert old.is_active_draft is False
        new = s.get(HierarchyMetadata, second.id)
        assert new.status == "in-draft"
        assert new.is_active_draft is True

        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
        assert "hierarchy.start_fresh" in actions


def test_start_fresh_leaves_other_entities_alone(app):
    other = _create_root(app, {"company": "Acme", "projectName": "Beta"}).metadata
    _create_root(app, {"company": "Acme", "projectName": "Alpha"}, start_fresh=True)

    with session_scope(app) as s:
        assert s.get(HierarchyMetadata, other.id).status == "in-draft"


def test_get_hierarchy_returns_data_history_newest_first(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        ChainStore(s).insert_data(root.id, {"a": "edited"})

    with session_scope(app) as s:
        history = HierarchyChainManager(ChainStore(s)).get_hierarchy(root.id)
        assert history.metadata.id == root.id
        assert [d.data for d in history.data] == [{"a": "edited"}, {"a": 1}]

        with pytest.raises(NotFoundError):
            HierarchyChainManager(ChainStore(s)).get_hierarchy("nonexistent-id")


def test_update_metadata_empty_is_noop(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        store = ChainStore(s)
        same = store.update_metadata(root.id, MetadataUpdate())
        assert same.id == root.id
        assert same.status == "in-draft"
        assert same.is_active_draft is True
        assert store.update_metadata("nonexistent-id", MetadataUpdate(status="archived")) is None


def test_list_all_grouped_by_entity(app):
    acme = _create_root(app, {"company": "Acme"}).metadata
    _create_root(app, {"company": "Acme", "projectName": "Alpha", "location": "Berlin"})
    _create_root(app, {"company": "Beta"})
    with session_scope(app) as s:
        HierarchyChainManager(ChainStore(s)).create_new_version(acme.id, {"a": 2})

    with session_scope(app) as s:
        groups = HierarchyChainManager(ChainStore(s)).list_all_grouped()

    keys = [(g.company, g.project_name, g.location) for g in groups]
    assert len(keys) == len(set(keys)) == 3
    acme_group = next(g for g in groups if (g.company, g.project_name, g.location) == ("Acme", None, None))
    assert [v.version_number for v in acme_group.versions] == [1, 0]
    assert acme_group.to_dict()["location"] == "Global"


def test_audit_trail_records_transitions(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        v1 = mgr.create_new_version(root.id, {"a": 2}, "fix spelling", actor="reviewer@example.com").metadata
        mgr.approve_hierarchy(v1.id, actor="approver@example.com", reason="Looks right")

    with session_scope(app) as s:
        events = s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()
        assert [e.action for e in events] == ["hierarchy.create", "hierarchy.revise", "hierarchy.approve"]
        assert events[1].reason == "fix spelling"
        assert events[2].actor == "approver@example.com"
        assert events[2].entity_id == v1.id


def test_storage_failures_surface_as_storage_error(app, caplog):
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.drop_all(bind=engine)

    with pytest.raises(StorageError) as excinfo:
        with session_scope(app) as s:
            HierarchyChainManager(ChainStore(s)).get_hierarchy("anything")

    assert excinfo.value.__cause__ is not None
    failures = [r for r in caplog.records if "get_metadata_by_id failed" in r.getMessage()]
    assert failures and failures[0].exc_info is not None


def test_approving_fresh_chain_supersedes_older_chain(app):
    old_root = _create_root(app, payload={"a": "old0"}).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        old_v1 = mgr.create_new_version(old_root.id, {"a": "old1"}).metadata
        mgr.approve_hierarchy(old_v1.id)
        mgr.create_new_version(old_v1.id, {"a": "old2"})

    fresh = _create_root(app, payload={"a": "new0"}, start_fresh=True).metadata
    with session_scope(app) as s:
        HierarchyChainManager(ChainStore(s)).approve_hierarchy(fresh.id)

    with session_scope(app) as s:
        found = HierarchyChainManager(ChainStore(s)).lookup_approved(EntityKey(company="Acme"))
        assert found.metadata.id == fresh.id
        assert found.data.data == {"a": "new0"}

        approved = s.scalars(select(HierarchyMetadata).where(HierarchyMetadata.status == "approved")).all()
        assert [m.id for m in approved] == [fresh.id]
        assert s.get(HierarchyMetadata, old_v1.id).status == "archived"


def test_draft_lookup_prefers_active_draft_of_newest_chain(app):
    old_root = _create_root(app).metadata
    with session_scope(app) as s:
        mgr = HierarchyChainManager(ChainStore(s))
        v1 = mgr.create_new_version(old_root.id, {"a": 2}).metadata
        mgr.create_new_version(v1.id, {"a": 3})

    fresh = _create_root(app, payload={"a": "new"}, start_fresh=True).metadata

    with session_scope(app) as s:
        latest = HierarchyChainManager(ChainStore(s)).lookup_active_draft_or_project(EntityKey(company="Acme"))
        assert latest.metadata.id == fresh.id
        assert latest.metadata.is_active_draft is True
        assert latest.data.data == {"a": "new"}


def test_version_number_collision_raises_conflict(app):
    root = _create_root(app).metadata
    with session_scope(app) as s:
        v1 = HierarchyChainManager(ChainStore(s)).create_new_version(root.id, {"a": 2}).metadata

    class StaleStore(ChainStore):
        # A concurrent writer already took the number this request computed.
        def max_version_number(self, root_id):
            return super().max_version_number(root_id) - 1

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            HierarchyChainManager(StaleStore(s)).create_new_version(root.id, {"a": 3})

    with session_scope(app) as s:
        chain = _chain(s, root.id)
        assert [m.version_number for m in chain] == [0, 1]
        assert [m.id for m in chain if m.is_active_draft] == [v1.id]


def test_sqlite_enforces_foreign_keys(app):
    with pytest.raises(StorageError):
        with session_scope(app) as s:
            ChainStore(s).insert_data("nonexistent-id", {"a": 1})
