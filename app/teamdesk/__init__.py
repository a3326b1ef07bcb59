import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request

from app.teamdesk.config import load_config
from app.teamdesk.db import init_db, teardown_db_session
from app.teamdesk.errors import register_error_handlers
from app.teamdesk.rate_limit import check_rate_limit, init_rate_limiters
from app.teamdesk.routes import bp as routes_bp
from app.teamdesk.auth import bp as auth_bp, load_current_user
from app.teamdesk.admin import bp as admin_bp
from app.teamdesk.modules.teams.admin import bp as teams_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=app.config["SESSION_TTL_HOURS"])

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    init_rate_limiters(app)
    register_error_handlers(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(teams_bp, url_prefix="/api/teams")

    app.before_request(load_current_user)

    @app.before_request
    def _api_rate_limit():  # type: ignore[no-redef]
        if request.path.startswith("/api/"):
            check_rate_limit("api")
        return None

    @app.after_request
    def _echo_request_id(resp):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
