import os
from dataclasses import dataclass, field
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'marksync.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    FEED_TICKET_TTL_SECONDS = int(os.environ.get("FEED_TICKET_TTL_SECONDS", "60"))
    FEED_KEEPALIVE_SECONDS = float(os.environ.get("FEED_KEEPALIVE_SECONDS", "15"))
    FEED_QUEUE_SIZE = int(os.environ.get("FEED_QUEUE_SIZE", "256"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    FEED_KEEPALIVE_SECONDS = 0.05


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


@dataclass
class ClientConfig:
    server_url: str = field(
        default_factory=lambda: os.environ.get(
            "MARKSYNC_SERVER_URL", "http://127.0.0.1:8072"
        )
    )
    token: str | None = field(
        default_factory=lambda: os.environ.get("MARKSYNC_TOKEN") or None
    )
    request_timeout: float = field(
        default_factory=lambda: _env_float("MARKSYNC_REQUEST_TIMEOUT", "10")
    )
    poll_interval: float = field(
        default_factory=lambda: _env_float("MARKSYNC_POLL_INTERVAL", "3")
    )
    handshake_timeout: float = field(
        default_factory=lambda: _env_float("MARKSYNC_HANDSHAKE_TIMEOUT", "10")
    )
    mirror_poll_interval: float = field(
        default_factory=lambda: _env_float("MARKSYNC_MIRROR_POLL_INTERVAL", "0.5")
    )
    storage_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get(
                "MARKSYNC_STORAGE_PATH", str(Path.home() / ".marksync" / "storage.json")
            )
        )
    )
