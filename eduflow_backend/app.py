import os
import json
import logging

import click
from flask import Flask, jsonify, request

from . import auth, certificates, explorer, verification
from .blockchain import build_adapter
from .config import Config, load_or_create_config
from .errors import register_error_handlers
from .helpers import get_chain, get_store
from .storage import open_store


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    data_dir = app.config["DATA_DIR"]
    os.makedirs(data_dir, exist_ok=True)
    # Get JWT_SECRET from environment or the generated config file
    if not app.config.get("JWT_SECRET"):
        app.config["JWT_SECRET"] = load_or_create_config(data_dir)["jwt_secret"]

    store = open_store(app.config["MONGO_URI"], data_dir, app.logger)
    store.ensure_indexes()
    app.extensions["eduflow.store"] = store
    app.extensions["eduflow.chain"] = build_adapter(app.config)

    # CORS Configuration
    @app.after_request
    def after_request(response):
        response.headers["Access-Control-Allow-Origin"] = app.config["CLIENT_URL"]
        response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS,PATCH"
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Max-Age"] = "3600"
        if app.config["ENVIRONMENT"] != "production":
            app.logger.info("%s %s %s", request.method, request.path, response.status_code)
        return response

    register_error_handlers(app)
    app.register_blueprint(auth.bp)
    app.register_blueprint(explorer.bp)
    app.register_blueprint(certificates.bp)
    app.register_blueprint(verification.bp)

    # Health check endpoint
    @app.route("/api", methods=["GET"])
    def api_health():
        return jsonify({"success": True, "status": "ok", "message": "Backend is running"}), 200

    register_commands(app)
    return app


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create collections and indexes."""
        get_store().ensure_indexes()
        click.echo("Indexes ensured")

    @app.cli.command("seed-nodes")
    @click.option("--file", "path", type=click.Path(exists=True, dir_okay=False), help="JSON list of nodes")
    def seed_nodes_command(path):
        """Load ledger node metadata for the explorer."""
        nodes = explorer.DEFAULT_NODES
        if path:
            with open(path, "r") as f:
                nodes = json.load(f)
        created, updated = explorer.seed_nodes(get_store(), nodes)
        click.echo(f"Nodes created: {created}, updated: {updated}")

    @app.cli.command("sync-blocks")
    @click.option("--count", default=20, show_default=True, help="How many of the latest blocks to cache")
    def sync_blocks_command(count):
        """Copy the latest ledger blocks into the local cache."""
        fetched = explorer.sync_blocks(get_store(), get_chain(), count)
        click.echo(f"Blocks cached: {fetched}")


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
