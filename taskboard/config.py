from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


VERSION = "1.0.0"


@dataclass
class Settings:
    """Runtime configuration.

    Every value comes from the environment so the same image can run locally
    with SQLite and in production against a managed database. A ``.env`` file
    in the working directory is honoured for local development.
    """

    database_url: str = "sqlite:///./taskboard.db"
    session_secret: str = "dev-session-secret-change-in-production"
    session_max_age: int = 60 * 60 * 24 * 7
    app_url: str = "http://localhost:8000"
    env: str = "development"

    # Messaging API (bot) channel
    line_channel_access_token: str = ""
    line_channel_secret: str = ""

    # LINE Login channel
    line_login_channel_id: str = ""
    line_login_channel_secret: str = ""

    log_level: str = "INFO"
    log_dir: str | None = None

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def login_redirect_uri(self) -> str:
        return f"{self.app_url.rstrip('/')}/v1/auth/line/callback"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            session_secret=os.getenv("SESSION_SECRET", cls.session_secret),
            session_max_age=int(os.getenv("SESSION_MAX_AGE", cls.session_max_age)),
            app_url=os.getenv("APP_URL", cls.app_url),
            env=os.getenv("ENV", cls.env),
            line_channel_access_token=os.getenv("LINE_CHANNEL_ACCESS_TOKEN", ""),
            line_channel_secret=os.getenv("LINE_CHANNEL_SECRET", ""),
            line_login_channel_id=os.getenv("LINE_LOGIN_CHANNEL_ID", ""),
            line_login_channel_secret=os.getenv("LINE_LOGIN_CHANNEL_SECRET", ""),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            log_dir=os.getenv("LOG_DIR") or None,
        )
