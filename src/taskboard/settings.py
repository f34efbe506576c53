from typing import Annotated
from typing import Literal
from typing import Optional
from urllib.parse import urlsplit

from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator
from pydantic_settings import BaseSettings
from pydantic_settings import NoDecode

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_origin(value: str) -> str:
    """Return ``scheme://host[:port]`` for a bare origin, or raise ValueError.

    Default ports are dropped and scheme/host are lower-cased so two spellings
    of the same origin compare equal.
    """
    parts = urlsplit(value.strip())
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"origin must use http or https: {value!r}")
    if not parts.hostname:
        raise ValueError(f"origin has no host: {value!r}")
    if parts.username or parts.password:
        raise ValueError(f"origin must not carry credentials: {value!r}")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ValueError(f"origin must not have a path, query or fragment: {value!r}")

    port = parts.port
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class Settings(BaseSettings):
    # === General ===
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # === Database ===
    database_url: str = Field(default="sqlite:///./tasks.db", validation_alias="DATABASE_URL")

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_pg_scheme(cls, v: str) -> str:
        # Render/Heroku sometimes provide 'postgres://'
        if v and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+psycopg://", 1)
        return v

    # === CSRF ===
    trusted_origins: Annotated[list[str], NoDecode] = Field(
        default=["http://localhost:5173"], validation_alias="TRUSTED_ORIGINS"
    )
    csrf_cookie_name: str = Field(default="csrftoken", validation_alias="CSRF_COOKIE_NAME")
    csrf_header_name: str = Field(default="x-csrf-token", validation_alias="CSRF_HEADER_NAME")
    csrf_cookie_max_age: int = Field(
        default=60 * 60 * 24 * 7, gt=0, validation_alias="CSRF_COOKIE_MAX_AGE"
    )
    csrf_cookie_samesite: Literal["lax", "strict", "none"] = Field(
        default="lax", validation_alias="CSRF_COOKIE_SAMESITE"
    )
    # None means "decide from the environment"
    cookie_secure_override: Optional[bool] = Field(default=None, validation_alias="COOKIE_SECURE")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    @field_validator("trusted_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        if isinstance(v, str):
            v = [item for item in v.split(",") if item.strip()]
        return [normalize_origin(item) for item in v]

    @field_validator("csrf_header_name")
    @classmethod
    def lower_header_name(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("csrf_cookie_samesite", mode="before")
    @classmethod
    def lower_samesite(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_cookie_policy(self):
        if not self.trusted_origins:
            raise ValueError("TRUSTED_ORIGINS must list at least one origin")
        if self.csrf_cookie_samesite == "none" and not self.cookie_secure:
            raise ValueError("CSRF_COOKIE_SAMESITE=none requires secure cookies")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cookie_secure(self) -> bool:
        if self.cookie_secure_override is not None:
            return self.cookie_secure_override
        return self.environment not in ("development", "test")


settings = Settings()
