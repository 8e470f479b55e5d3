from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from sqlalchemy.engine import URL

STORAGE_BACKENDS = {"sql", "kv"}
DEFAULT_SQLITE_URL = "sqlite:///./expense_manager.db"
DEFAULT_JWT_SECRET = "dev-secret-change-me"


@dataclass(frozen=True)
class Settings:
    db_host: str | None = None
    db_user: str = "root"
    db_password: str = ""
    db_name: str = "expense_manager"
    database_url: str | None = None
    jwt_secret: str = DEFAULT_JWT_SECRET
    token_ttl: timedelta = timedelta(hours=24)
    storage_backend: str = "sql"
    frontend_origin: str = "http://localhost:3000"
    allow_admin_signup: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        backend = env.get("STORAGE_BACKEND", "sql").strip().lower()
        if backend not in STORAGE_BACKENDS:
            raise ValueError("STORAGE_BACKEND must be 'sql' or 'kv'.")
        try:
            ttl_hours = float(env.get("TOKEN_TTL_HOURS", "24"))
        except ValueError as exc:
            raise ValueError("TOKEN_TTL_HOURS must be a number.") from exc
        if ttl_hours <= 0:
            raise ValueError("TOKEN_TTL_HOURS must be greater than zero.")
        return cls(
            db_host=env.get("DB_HOST") or None,
            db_user=env.get("DB_USER", "root"),
            db_password=env.get("DB_PASSWORD", ""),
            db_name=env.get("DB_NAME", "expense_manager"),
            database_url=env.get("DATABASE_URL") or None,
            jwt_secret=env.get("JWT_SECRET", DEFAULT_JWT_SECRET),
            token_ttl=timedelta(hours=ttl_hours),
            storage_backend=backend,
            frontend_origin=env.get("FRONTEND_ORIGIN", "http://localhost:3000"),
            allow_admin_signup=_parse_flag(env.get("ALLOW_ADMIN_SIGNUP")),
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper(),
        )

    def sqlalchemy_url(self) -> str | URL:
        if self.database_url:
            return self.database_url
        if self.db_host:
            return URL.create(
                "mysql+pymysql",
                username=self.db_user,
                password=self.db_password or None,
                host=self.db_host,
                database=self.db_name,
            )
        return DEFAULT_SQLITE_URL


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_flag(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}
