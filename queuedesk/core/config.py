# queuedesk/core/config.py
from typing import List, Literal, Optional, Union
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    # ==== Infrastructure ====
    database_url: str = "postgresql+asyncpg://app:app@db:5432/queuedesk"
    redis_url: str = "redis://redis:6379/0"

    # ==== Security / Auth ====
    # tokens are issued by the external auth service, we only verify them
    jwt_secret: str = "changeme"
    jwt_alg: str = "HS256"
    jwt_expires_min: int = 60

    # ==== CORS ====
    # CORS_ORIGINS=http://localhost:5173,http://127.0.0.1:5173,...
    cors_origins: Union[str, List[str]] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ]

    # ==== Status transitions ====
    # how long a request may wait for the entry row lock
    status_lock_timeout_ms: int = 5000

    # ==== Real-time / audit ====
    realtime_enabled: bool = True
    # seconds; a stalled Redis must not pin post-commit tasks forever
    redis_socket_timeout: float = 2.0
    realtime_channel: str = "queue:updates"
    audit_channel: str = "queue:audit"

    # ==== Background jobs (RQ) ====
    jobs_queue: str = "queue-events"
    analytics_mode: Literal["queued", "inline", "off"] = "queued"
    # upper bound for each post-commit side effect (publish, analytics)
    side_effect_timeout_s: float = 10.0
    audit_webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None

    # ==== Logging / Environment ====
    env: str = "dev"          # dev|staging|prod
    log_level: str = "INFO"   # DEBUG|INFO|WARNING|ERROR

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                try:
                    import json
                    parsed = json.loads(s)
                    return [str(i).strip() for i in parsed if str(i).strip()]
                except ValueError:
                    pass
            return [i.strip() for i in s.split(",") if i.strip()]
        return v


settings = Settings()
