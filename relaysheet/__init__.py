import os
from flask import Flask


def create_app():
    """Build the relay sheet app: JSON routes over the PostgreSQL store."""
    app = Flask(__name__)

    if not os.environ.get("DATABASE_URL"):
        raise RuntimeError(
            "DATABASE_URL is required; the relay sheet reads and writes PostgreSQL only."
        )

    from . import datastore_pg as _pg

    minconn = _pg._env_int("DB_POOL_MIN", 1)
    maxconn = _pg._env_int("DB_POOL_MAX", 10)
    try:
        _pg.init_pool(minconn=minconn, maxconn=maxconn)
    except Exception:  # pragma: no cover
        # Requests still work; each one opens its own connection
        app.logger.exception("PostgreSQL pool initialization failed (min=%s max=%s)", minconn, maxconn)

    from . import routes  # type: ignore
    app.register_blueprint(routes.bp)

    from .timeutil import race_timezone
    app.logger.info("Relay sheet ready (race timezone %s, pool %s-%s)", race_timezone().key, minconn, maxconn)
    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)
