# lumen/core/config.py

import os
from dotenv import load_dotenv
from lumen.logger import logging
# Load variables from .env into environment
load_dotenv()


class Settings:
    """
    Simple config holder.
    Reads from environment variables (which are loaded from .env).
    """
    DATABASE_URL: str | None
    ASSISTANT_URL: str | None
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str
    ASSISTANT_CONNECT_TIMEOUT: float

    def __init__(self) -> None:
        logging.info("Checking all keys are been set or not ")
        database_url = os.getenv("DATABASE_URL")
        if database_url and database_url.startswith("postgresql://"):
            database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        self.DATABASE_URL = database_url
        self.ASSISTANT_URL = os.getenv("ASSISTANT_URL")
        self.JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "fallback-key-for-development-only")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

        try:
            self.ASSISTANT_CONNECT_TIMEOUT = float(os.getenv("ASSISTANT_CONNECT_TIMEOUT", "10"))
        except ValueError:
            logging.error("ASSISTANT_CONNECT_TIMEOUT is not a number, using 10 seconds")
            self.ASSISTANT_CONNECT_TIMEOUT = 10.0

        # Simple validation – warn early if critical things are missing
        missing = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.ASSISTANT_URL:
            missing.append("ASSISTANT_URL")

        if missing:
            logging.warning(f"[Settings] Missing env vars: {', '.join(missing)}")


# create a singleton settings object you can import everywhere
settings = Settings()
