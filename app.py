from models.base import init_engine_and_session, Base
import os
import logging
from logging.handlers import RotatingFileHandler
from time import time

from flask import Flask, request, g, jsonify, current_app
from dotenv import load_dotenv
from sqlalchemy import text

from controllers.payments import payments_bp
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY
from services.payments import registry as payments_registry
from services.payments.config import is_production, load_khalti_config

# --- Load .env exactly once, here ---
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _setup_logging(app: Flask) -> None:
    # default on in containers
    log_to_stdout = os.getenv("LOG_TO_STDOUT", "1") == "1"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    if log_to_stdout:
        handler = logging.StreamHandler()
    else:
        log_dir = os.path.join(os.path.dirname(__file__), "log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            # read-only filesystem (containers): stdout it is
            handler = logging.StreamHandler()

    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    app.logger.setLevel(logging.INFO)


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    APP_ENV = "production" if is_production(os.environ) else \
        (os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development").lower()

    app.config.from_mapping(
        APP_ENV=APP_ENV,
        BASE_URL=os.getenv("BASE_URL", "http://localhost:5000"),
        JSON_SORT_KEYS=False,
        # webhook and JSON bodies are small; larger requests get a 413
        MAX_CONTENT_LENGTH=int(os.getenv("MAX_CONTENT_LENGTH", str(64 * 1024))),
    )
    if test_config:
        app.config.update(test_config)

    _setup_logging(app)

    # ---- Khalti: resolve env once, fail startup on bad production config ----
    khalti_config = app.config.get("KHALTI_CONFIG") or load_khalti_config()
    payments_registry.init_app(app, khalti_config)

    # ---- DB ----
    engine, _Session = init_engine_and_session()
    if _env_bool("AUTO_CREATE_SCHEMA", True):
        Base.metadata.create_all(engine, checkfirst=True)

    # ---- Blueprints ----
    app.register_blueprint(payments_bp)

    # Prometheus
    if _env_bool("METRICS_ENABLED", True):
        init_metrics(app)

    # ---- Errors ----

    @app.errorhandler(404)
    def not_found(e):
        app.logger.warning("404 %s %s", request.method, request.path)
        return jsonify(message="Not found", path=request.path), 404

    @app.errorhandler(405)
    def not_allowed(e):
        app.logger.warning("405 %s %s", request.method, request.path)
        return jsonify(message="Method not allowed", path=request.path), 405

    @app.errorhandler(413)
    def too_large(e):
        app.logger.warning("413 %s %s", request.method, request.path)
        return jsonify(message="Request body too large", path=request.path), 413

    # ---- Routes ----
    @app.before_request
    def _start_timer():
        g._t0 = time()

    @app.after_request
    def _log_request(resp):
        ms = (time() - getattr(g, "_t0", time())) * 1000
        app.logger.info("%s %s %s %s %.1fms",
                        request.remote_addr, request.method, request.full_path, resp.status_code, ms)

        # --- Skip self-scrapes to keep series clean ---
        ep = request.endpoint or ""
        if ep == "static" or (request.path or "").startswith("/metrics"):
            return resp

        endpoint = ep.replace(".", "_") or "unknown"
        REQUEST_COUNT.labels(
            method=request.method, endpoint=endpoint, status=str(resp.status_code)).inc()
        REQUEST_LATENCY.labels(
            endpoint=endpoint, method=request.method).observe(ms / 1000.0)
        return resp

    @app.get("/healthz")
    def healthz():
        # Liveness: process is up, Flask can serve a simple request
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # Readiness: app can talk to the DB
        try:
            engine, _ = init_engine_and_session()
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ok"), 200
        except Exception as e:
            current_app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500

    return app


if __name__ == "__main__":
    # TIP: use APP_ENV=production KHALTI_SECRET_KEY=... when deploying
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=(
        app.config["APP_ENV"] != "production"))
