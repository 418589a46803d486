# webscan/extensions.py
from __future__ import annotations
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()

@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, _connection_record):
    # PRAGMA is SQLite-only; skip for PostgreSQL
    module_name = type(dbapi_connection).__module__
    if "sqlite" in module_name.lower():
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

def init_extensions(app, scan_queue=None):
    db.init_app(app)
    if scan_queue is None:
        from webscan.queue import ScanQueue
        scan_queue = ScanQueue.from_url(
            app.config["REDIS_URL"],
            name=app.config["QUEUE_NAME"],
            max_attempts=app.config["QUEUE_MAX_ATTEMPTS"],
        )
    app.extensions["scan_queue"] = scan_queue


def get_scan_queue(app=None):
    """The queue handle opened by create_app()."""
    from flask import current_app
    return (app or current_app).extensions["scan_queue"]
