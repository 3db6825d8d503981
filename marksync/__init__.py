from flask import Flask

from marksync.api import api_bp
from marksync.auth import auth_bp
from marksync.config import Config
from marksync.extensions import db, init_feed_hub, login_manager, migrate
from marksync.web import web_bp


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    init_feed_hub(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(web_bp)
    app.register_blueprint(api_bp)

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        print("Initialized Marksync database.")

    @app.context_processor
    def inject_globals():
        return {"app_name": "Marksync"}

    with app.app_context():
        db.create_all()

    return app
