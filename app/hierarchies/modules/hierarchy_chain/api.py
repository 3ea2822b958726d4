"""
JSON API for hierarchy chains.

Thin transport: parse the request, call HierarchyChainManager, commit, answer.
HierarchyError subclasses raised here are turned into JSON errors by the
app-level handler (see create_app), which also rolls the session back.
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.hierarchies.db import db_session
from app.hierarchies.errors import NotFoundError, StorageError, ValidationError
from app.hierarchies.modules.hierarchy_chain.service import HierarchyChainManager, entity_key_from_params
from app.hierarchies.modules.hierarchy_chain.store import ChainStore

bp = Blueprint("hierarchies", __name__)


def _manager() -> HierarchyChainManager:
    return HierarchyChainManager(ChainStore(db_session()))


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def _commit(s: Session) -> None:
    try:
        s.commit()
    except SQLAlchemyError as e:
        current_app.logger.error("Commit failed (request_id=%s): %s", getattr(g, "request_id", None), e)
        raise StorageError("Storage failure during commit.") from e


def _actor() -> str | None:
    return (request.headers.get("X-Actor") or "").strip() or None


def _entity_key_from_query():
    company = request.args.get("company")
    if not (company or "").strip():
        raise ValidationError("Company query parameter is required.")
    return entity_key_from_params(company, request.args.get("project"), request.args.get("location"))


@bp.get("/lookup")
def lookup_approved():
    result = _manager().lookup_approved(_entity_key_from_query())
    if result is None:
        raise NotFoundError("No approved hierarchy found for this entity.")
    return jsonify(result.to_dict())


@bp.get("/draft")
def lookup_draft():
    result = _manager().lookup_active_draft_or_project(_entity_key_from_query())
    if result is None:
        raise NotFoundError("No hierarchy found for this entity.")
    return jsonify(result.to_dict())


@bp.post("")
def create_initial_hierarchy():
    body = _json_body()
    user_input = body.get("userInput")
    data = body.get("data")
    if not user_input or data is None:
        raise ValidationError("userInput and data are required.")

    s = db_session()
    result = HierarchyChainManager(ChainStore(s)).create_initial_hierarchy(
        user_input,
        data,
        start_fresh=bool(body.get("startFresh")),
        actor=_actor(),
    )
    _commit(s)
    return jsonify(result.to_dict()), 201


@bp.post("/<string:hierarchy_id>/versions")
def create_new_version(hierarchy_id: str):
    body = _json_body()
    data = body.get("data")
    if data is None:
        raise ValidationError("New hierarchy data is required.")
    feedback = body.get("userFeedback")
    if feedback is not None and not isinstance(feedback, str):
        raise ValidationError("userFeedback must be a string.")

    s = db_session()
    result = HierarchyChainManager(ChainStore(s)).create_new_version(
        hierarchy_id,
        data,
        (feedback or "").strip() or None,
        actor=_actor(),
    )
    _commit(s)
    return jsonify(result.to_dict()), 201


@bp.patch("/<string:hierarchy_id>/approve")
def approve_hierarchy(hierarchy_id: str):
    # Body is optional here; only an approval reason is read from it.
    body = request.get_json(silent=True)
    reason = body.get("reason") if isinstance(body, dict) else None
    if not isinstance(reason, str):
        reason = None

    s = db_session()
    approved = HierarchyChainManager(ChainStore(s)).approve_hierarchy(
        hierarchy_id,
        actor=_actor(),
        reason=(reason or "").strip() or None,
    )
    _commit(s)
    return jsonify(approved.to_dict())


@bp.get("/grouped")
def list_grouped():
    groups = _manager().list_all_grouped()
    return jsonify([group.to_dict() for group in groups])


@bp.get("/<string:hierarchy_id>")
def get_hierarchy(hierarchy_id: str):
    history = _manager().get_hierarchy(hierarchy_id)
    return jsonify(history.to_dict())
