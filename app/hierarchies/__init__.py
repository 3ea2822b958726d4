import logging
import uuid

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.hierarchies.config import load_config
from app.hierarchies.db import init_db, teardown_db_session
from app.hierarchies import models  # noqa: F401  (registers every table on Base.metadata)
from app.hierarchies.errors import HierarchyError
from app.hierarchies.routes import bp as routes_bp
from app.hierarchies.modules.hierarchy_chain.api import bp as hierarchies_bp


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    _configure_logging(app.config["LOG_LEVEL"])
    app.json.sort_keys = False  # keep record fields in declaration order

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(hierarchies_bp, url_prefix="/api/hierarchies")

    @app.before_request
    def _assign_request_id():
        # Per-request id for audit/log correlation; honour one set by a proxy.
        g.request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-ID"] = rid
        return response

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HierarchyError)
    def _err_hierarchy(e: HierarchyError):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        rid = getattr(g, "request_id", None)
        if e.status_code >= 500:
            app.logger.error("%s on %s %s (request_id=%s): %s", e.code, request.method, request.path, rid, e.message)
        else:
            app.logger.warning("%s on %s %s (request_id=%s): %s", e.code, request.method, request.path, rid, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):
        return jsonify({"error": e.description, "code": (e.name or "error").lower().replace(" ", "_")}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Something went wrong!", "code": "internal_error"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
