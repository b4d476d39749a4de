# /chatflow/config/settings.py

import sys
from typing import List, Literal
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB (flows, products, orders, claims, message logs)
    mongo_uri: str = "mongodb://localhost:27017/chatflow"
    mongo_db_name: str = "chatflow"
    max_pool_size: int = 10
    min_pool_size: int = 1

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Sessions
    # "memory" keeps sessions for the lifetime of the process only.
    session_backend: Literal["memory", "redis"] = "memory"
    session_ttl_seconds: int = 30 * 60
    session_lock_timeout_seconds: int = 30
    session_history_max: int = 50
    dedup_ttl_seconds: int = 300

    # Interpreter
    max_transitions_per_step: int = 50
    flow_cache_ttl_seconds: int = 30
    escape_commands: str = "hola,menu,menú,cancelar,inicio,salir,reiniciar,reset"

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    # Collaborators
    document_renderer_url: str | None = None
    handover_webhook_url: str | None = None
    business_timezone: str = "America/Argentina/Buenos_Aires"
    slot_cutoff_minutes: int = 30

    # Security
    api_key: str | None = None

    # Observability
    alerting_webhook_url: str | None = None

    # App Metadata & Limits
    environment: str = "production"
    log_level: str = "INFO"
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    workers: int = 4

    # ---------------- Validators ---------------- #

    @field_validator("escape_commands")
    @classmethod
    def normalize_escape_commands(cls, v: str) -> str:
        return ",".join(cmd.strip().lower() for cmd in v.split(",") if cmd.strip())

    @field_validator("max_transitions_per_step")
    @classmethod
    def transitions_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_TRANSITIONS_PER_STEP must be at least 1")
        return v

    @model_validator(mode="after")
    def check_production_backend(self):
        if self.environment == "production" and self.session_backend == "memory":
            raise ValueError(
                "SESSION_BACKEND=memory keeps sessions only for the process lifetime; "
                "set SESSION_BACKEND=redis in production"
            )
        return self

    @property
    def escape_command_list(self) -> List[str]:
        return [cmd for cmd in self.escape_commands.split(",") if cmd]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["whatsapp_access_token", "whatsapp_phone_id", "whatsapp_verify_token", "whatsapp_app_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")
            if not settings_obj.api_key:
                raise ValueError("API_KEY is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


try:
    settings = Settings()
except ValueError as e:
    print(f"--- [ERROR] Invalid configuration: {e}")
    sys.exit(1)
validate_environment(settings)
