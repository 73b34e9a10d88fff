"""
Application configuration bound from layered sources.

Uses pydantic-settings for type-safe configuration with validation.
Sources, highest precedence first: explicit overrides, environment
variables (nested sections use ``__``), ``.env``, ``appsettings.json``
and ``appsettings.{environment}.json``, and the secrets directory.

Secrets themselves never live here; sections only carry the *path* of
the file that holds them.
"""

import os
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings, JsonConfigSettingsSource

from practice_web.errors import ConfigurationError

DEFAULT_ENVIRONMENT = "Production"
SECRETS_DIR = "/run/secrets"


class IdentityProviderConfig(BaseModel, frozen=True):
    """External OpenID Connect provider."""

    address: str
    client_secret_file: str
    client_id: str = "web"
    cookie_secret_file: str | None = None


class TelemetrySinkConfig(BaseModel, frozen=True):
    """OTLP collector. ``address`` is used verbatim as an endpoint prefix."""

    address: str


class RelationalStoreConfig(BaseModel, frozen=True):
    address: str
    user_name: str
    password_file: str
    driver: str = "ODBC Driver 18 for SQL Server"


class DocumentStoreConfig(BaseModel, frozen=True):
    host: str
    port: int = 27017
    user_name: str
    password_file: str
    database: str = "development"


class StartupOptions(BaseModel, frozen=True):
    """Switches that shape how the host is composed."""

    # The configured sink accepts OTLP logs only.
    use_trace_and_metrics: bool = False
    map_inbound_claims: bool = False
    debug: bool = False


def _active_environment(*sources) -> str:
    """
    Environment name used to pick ``appsettings.{environment}.json``.

    Resolved from the sources that outrank the JSON files, so a value
    set in ``.env`` selects the same file it reports.
    """
    for source in sources:
        environment = source().get("environment")
        if environment:
            return str(environment)
    return DEFAULT_ENVIRONMENT


class Settings(BaseSettings):
    """Application settings loaded once at startup."""

    app_name: str
    environment: str = DEFAULT_ENVIRONMENT
    identity_provider: IdentityProviderConfig
    telemetry_sink: TelemetrySinkConfig
    relational_store: RelationalStoreConfig
    document_store: DocumentStoreConfig
    startup: StartupOptions = StartupOptions()

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
        "secrets_dir": SECRETS_DIR if os.path.isdir(SECRETS_DIR) else None,
        "extra": "ignore",
        "frozen": True,
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        environment = _active_environment(init_settings, env_settings, dotenv_settings)
        # Environment files override individual fields, not whole sections.
        json_settings = JsonConfigSettingsSource(
            settings_cls,
            json_file=("appsettings.json", f"appsettings.{environment}.json"),
            deep_merge=True,
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            json_settings,
            file_secret_settings,
        )

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


REQUIRED_SECTIONS = (
    "app_name",
    "identity_provider",
    "telemetry_sink",
    "relational_store",
    "document_store",
)


def _missing_sections(exc: ValidationError) -> tuple[str, ...]:
    missing = []
    for error in exc.errors():
        if not error["loc"]:
            continue
        section = str(error["loc"][0])
        if section not in missing:
            missing.append(section)
    return tuple(missing)


def load_settings(**overrides: Any) -> Settings:
    """
    Bind every configuration section.

    Raises:
        ConfigurationError: If a required section or field is absent or
            invalid. This is startup-fatal.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        missing = _missing_sections(exc)
        raise ConfigurationError(
            f"Missing or invalid configuration sections: {', '.join(missing)}",
            missing=missing,
        ) from exc


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()
