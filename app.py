import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import redis
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix

from admin_claims import admin_claims
from claim_registry import FileClaimRegistry, MemoryClaimRegistry, RedisClaimRegistry
from email_rules import TldSet
from extensions import compress, db, limiter
from ledger_storage import JsonFileStorage, MemoryStorage, RedisStorage, SqlStorage
from spin_ledger import EmailSpinLedger, SpinLedger
from spin_session import SpinSession
from spins import spins_api
from wheel import DEFAULT_PRIZES, load_prizes
import models_spins  # noqa: F401


# Load environment variables
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_config() -> dict:
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY") or "dev-secret-key-change-me",
        "SQLALCHEMY_DATABASE_URI": os.getenv("DATABASE_URL") or "sqlite:///spinwheel.db",
        "TLDS_PATH": os.getenv("TLDS_PATH") or os.path.join(BASE_DIR, "tlds.json"),
        "PRIZES_PATH": os.getenv("PRIZES_PATH") or None,
        "LEDGER_MODE": os.getenv("LEDGER_MODE", "email").lower(),
        "LEDGER_STORAGE": os.getenv("LEDGER_STORAGE", "sql").lower(),
        "LEDGER_JSON_PATH": os.getenv("LEDGER_JSON_PATH", "spin_state.json"),
        "CLAIM_BACKEND": os.getenv("CLAIM_BACKEND", "memory").lower(),
        "CLAIM_TTL_MINUTES": int(os.getenv("CLAIM_TTL_MINUTES", "10")),
        "CLAIMS_LOG_PATH": os.getenv("CLAIMS_LOG_PATH", "emails.txt"),
        "CLAIM_DEBOUNCE_SECONDS": float(os.getenv("CLAIM_DEBOUNCE_SECONDS", "2")),
        "REDIS_URL": os.getenv("REDIS_URL") or None,
        "WHEEL_TIMEZONE": os.getenv("WHEEL_TIMEZONE") or None,
        "ADMIN_TOKEN": os.getenv("ADMIN_TOKEN", ""),
        "TRUST_PROXY": bool(os.getenv("RENDER")) or os.getenv("FLASK_ENV") == "production",
        "RATELIMIT_STORAGE_URI": os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
        "CORS_ORIGINS": [
            o.strip()
            for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:63342").split(",")
            if o.strip()
        ],
    }


@dataclass
class SpinServices:
    """Per-app wiring shared by the blueprints."""

    tlds: TldSet
    ledger: SpinLedger
    storage: object
    prizes: tuple
    ledger_mode: str
    rng: object = None
    tz: object = None

    def now(self) -> datetime:
        return datetime.now(self.tz) if self.tz else datetime.now().astimezone()

    def session(self, identity=None, rotation=0.0, wins_key=None) -> SpinSession:
        return SpinSession(
            self.ledger,
            self.tlds,
            identity=identity,
            prizes=self.prizes,
            rng=self.rng,
            wins_key=wins_key,
            rotation=rotation,
            clock=self.now,
        )


def _redis_client(config):
    url = config.get("REDIS_URL")
    if not url:
        raise RuntimeError("REDIS_URL is required for the redis backends")
    return redis.from_url(url)


def _build_storage(config):
    kind = config["LEDGER_STORAGE"]
    if kind == "sql":
        return SqlStorage()
    if kind == "memory":
        return MemoryStorage()
    if kind == "json":
        return JsonFileStorage(config["LEDGER_JSON_PATH"])
    if kind == "redis":
        return RedisStorage(_redis_client(config))
    raise RuntimeError(f"Unknown LEDGER_STORAGE: {kind}")


def _build_registry(config):
    kind = config["CLAIM_BACKEND"]
    ttl = timedelta(minutes=int(config["CLAIM_TTL_MINUTES"]))
    if kind == "memory":
        return MemoryClaimRegistry(ttl)
    if kind == "file":
        registry = FileClaimRegistry(config["CLAIMS_LOG_PATH"])
        registry.ensure_file()
        return registry
    if kind == "redis":
        return RedisClaimRegistry(_redis_client(config), ttl)
    raise RuntimeError(f"Unknown CLAIM_BACKEND: {kind}")


def _build_ledger(config, storage, tz):
    debounce = timedelta(seconds=float(config["CLAIM_DEBOUNCE_SECONDS"]))
    mode = config["LEDGER_MODE"]
    if mode == "daily":
        return SpinLedger(storage, tz=tz, debounce=debounce)
    if mode == "email":
        return EmailSpinLedger(storage, _build_registry(config), tz=tz, debounce=debounce)
    raise RuntimeError(f"Unknown LEDGER_MODE: {mode}")


def _load_tlds(config) -> TldSet:
    tlds = TldSet()
    if config.get("TLDS") is not None:
        tlds.load_list(config["TLDS"])
    else:
        tlds.load_file(config["TLDS_PATH"])
    return tlds


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.update(_env_config())
    if overrides:
        app.config.update(overrides)

    db_url = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_url.startswith("postgres://"):
        app.config["SQLALCHEMY_DATABASE_URI"] = db_url.replace("postgres://", "postgresql://", 1)
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"pool_pre_ping": True})

    # Behind a reverse proxy remote_addr is the proxy; trust a single hop.
    if app.config.get("TRUST_PROXY"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    # Initialize extensions
    db.init_app(app)
    limiter.init_app(app)
    compress.init_app(app)
    CORS(app, origins=app.config["CORS_ORIGINS"])

    tz = ZoneInfo(app.config["WHEEL_TIMEZONE"]) if app.config.get("WHEEL_TIMEZONE") else None
    prizes = load_prizes(app.config["PRIZES_PATH"]) if app.config.get("PRIZES_PATH") else DEFAULT_PRIZES
    tlds = _load_tlds(app.config)
    if not tlds.loaded:
        app.logger.warning("TLD list unavailable; claims are blocked until it loads")

    storage = _build_storage(app.config)
    app.extensions["spinwheel"] = SpinServices(
        tlds=tlds,
        ledger=_build_ledger(app.config, storage, tz),
        storage=storage,
        prizes=prizes,
        ledger_mode=app.config["LEDGER_MODE"],
        rng=app.config.get("SPIN_RNG") or random.SystemRandom(),
        tz=tz,
    )

    app.register_blueprint(spins_api)
    app.register_blueprint(admin_claims)

    @app.after_request
    def add_no_store(resp):
        if request.path.startswith("/api/"):
            resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"ok": False, "message": "Not Found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"ok": False, "message": "Method Not Allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"ok": False, "error": "RATE_LIMITED", "message": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"ok": False, "error": "SERVER_ERROR"}), 500

    with app.app_context():
        db.create_all()

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    app = create_app()
    port = int(os.getenv("PORT", 3000))
    debug = os.getenv("FLASK_ENV", "development") == "development"
    svc = app.extensions["spinwheel"]

    print("=" * 60)
    print("Spin the Wheel")
    print("=" * 60)
    print(f"Claim endpoint: http://localhost:{port}/api/claim-spin")
    print(f"Ledger mode: {svc.ledger_mode} / storage: {app.config['LEDGER_STORAGE']}")
    print(f"TLDs loaded: {len(svc.tlds)}")
    print("=" * 60)

    app.run(host="0.0.0.0", port=port, debug=debug)
