import logging
import os

from flask import Flask
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from config import Settings, load_settings
from dispatcher import BroadcastDispatcher
from extensions import db
from push_api import push_api
from registry import SubscriptionRegistry
from stores import DurableStore, MemoryStore

logger = logging.getLogger(__name__)


def _build_durable_store(app: Flask, settings: Settings) -> DurableStore | None:
    if not settings.durable_store:
        logger.info("Durable store disabled; subscriptions live in memory only")
        return None

    app.config["SQLALCHEMY_DATABASE_URI"] = settings.database_url
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }
    db.init_app(app)

    with app.app_context():
        store = DurableStore(db.engine)
        if settings.create_tables:
            try:
                store.create_tables()
            except SQLAlchemyError as e:
                # Unreachable at boot is fine: writes fall back to memory.
                logger.warning("Could not ensure push_subscriptions table: %s", str(e).partition("\n")[0])
    return store


def create_app(settings: Settings | None = None, transport=None) -> Flask:
    """Application factory.

    ``transport`` replaces the pywebpush sender (tests pass a fake). The
    fallback store is created here, once per process, and lives as long as
    the app does.
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["PUSH_SETTINGS"] = settings
    CORS(app)

    registry = SubscriptionRegistry(MemoryStore(), _build_durable_store(app, settings))
    dispatcher = BroadcastDispatcher(
        registry,
        settings.vapid,
        transport=transport,
        max_workers=settings.max_workers,
        ttl=settings.push_ttl,
        timeout=settings.push_timeout,
    )
    app.extensions["push_registry"] = registry
    app.extensions["push_dispatcher"] = dispatcher

    app.register_blueprint(push_api)
    return app


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    app = create_app()
    settings = app.config["PUSH_SETTINGS"]
    print("=" * 60)
    print("Web Push Broadcast Service")
    print("=" * 60)
    print(f"Durable store: {settings.database_url if settings.durable_store else 'disabled'}")
    print(f"VAPID configured: {settings.vapid.is_complete}")
    print(f"Register: POST http://localhost:{port}/api/push/register")
    print(f"Broadcast: POST http://localhost:{port}/api/push/broadcast")
    print("=" * 60)
    app.run(host="0.0.0.0", port=port, debug=debug)
