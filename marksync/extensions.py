from flask import current_app
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

from marksync.services.feed import FeedHub

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
login_manager.login_view = "auth.login"

FEED_HUB_KEY = "marksync_feed_hub"


def init_feed_hub(app) -> FeedHub:
    hub = FeedHub(queue_size=app.config["FEED_QUEUE_SIZE"])
    app.extensions[FEED_HUB_KEY] = hub
    return hub


def get_feed_hub() -> FeedHub:
    return current_app.extensions[FEED_HUB_KEY]
