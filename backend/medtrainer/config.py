"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    LOG_LEVEL: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    AUTH_COOKIE_NAME: str
    ALLOW_INSECURE_JWT: bool
    CORS_ORIGINS: list
    RATE_LIMIT_MAX: int
    RATE_LIMIT_WINDOW_SECONDS: int
    MAX_ANSWER_LENGTH: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'medtrainer.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "jwt")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        # 1000 requests per 15 minutes per client
        self.RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "1000"))
        self.RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))
        self.MAX_ANSWER_LENGTH = int(os.getenv("MAX_ANSWER_LENGTH", "500"))
        self._validate()

    @property
    def is_dev(self) -> bool:
        return self.ENV == "dev"

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.JWT_EXPIRE_HOURS <= 0:
            raise RuntimeError("JWT_EXPIRE_HOURS must be positive")
        if self.RATE_LIMIT_MAX <= 0 or self.RATE_LIMIT_WINDOW_SECONDS <= 0:
            raise RuntimeError("rate limit settings must be positive")


settings = Settings()
