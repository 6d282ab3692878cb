"""
app.py – Flask application entry point.

Creates the Flask app, registers the HTTP routes from ``routes.py`` and, when
run directly, starts the background scheduler before serving.
"""

from __future__ import annotations

import logging
import os

from flask import Flask

from config import load_config
from routes import bp
from scheduler import start_scheduler

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = Flask(__name__)
app.register_blueprint(bp)


if __name__ == "__main__":
    # Creates config.json with defaults on first start
    load_config()
    start_scheduler()
    # The reloader would start a second scheduler
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=False, use_reloader=False)
