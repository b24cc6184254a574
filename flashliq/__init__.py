"""
Creates and returns main flask app
"""

import threading

from flask import Flask, jsonify
from flask_cors import CORS

from .liquidation.config_loader import configured_chain_ids
from .liquidation.routes import liquidation, start_monitor


def create_app(chain_ids=None, start_pipeline=True):
    """Create Flask app and start the pipeline for the enabled chains"""
    app = Flask(__name__)
    CORS(app)

    @app.route("/health", methods=["GET"])
    def health_check():
        return jsonify({"status": "healthy"}), 200

    if chain_ids is None:
        chain_ids = configured_chain_ids()

    if start_pipeline:
        monitor_thread = threading.Thread(target=start_monitor, args=(chain_ids,), name="chain-manager", daemon=True)
        monitor_thread.start()

    app.register_blueprint(liquidation, url_prefix="/liquidation")

    return app
