"""
Flaskアプリケーションの組み立て。
Flask application assembly.
"""

import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS

from sagascout import security
from sagascout.database import init_db
from sagascout.routes import error_response, planner_bp

logger = logging.getLogger(__name__)


def create_app(initialize_database: bool = True) -> Flask:
    app = Flask(__name__)
    # Cookie署名などに使用する秘密鍵
    # Secret key used for signing
    app.secret_key = os.getenv("SECRET_KEY") or os.urandom(32).hex()

    CORS(
        app,
        resources={r"/api/*": {"origins": security.get_allowed_origins()}},
        supports_credentials=True,
    )

    app.register_blueprint(planner_bp)

    @app.after_request
    def _apply_security_headers(response):
        return security.apply_security_headers(response)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    @app.errorhandler(404)
    def _not_found(_error):
        return error_response(f"No route for {request.path}.", status=404)

    if initialize_database:
        init_db()
    return app
