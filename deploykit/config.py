"""
DeployKit — Configuration
==========================

What:  Two configuration objects, both built on pydantic-settings.

       `ParameterSet` is the externally supplied parameter set of the
       deployment: container identities, published port and datastore
       credentials. Every field is required and the object is immutable once
       built. It is constructed exactly once per process via
       `load_parameters()`; nothing else reads these variables from the
       environment directly.

       `Settings` holds the ambient knobs of the tool and of the runtime
       shell (log level, retry budget, pool sizing, docker binary). They all
       have defaults and are exposed as the `settings` singleton.

How:   Pydantic Settings reads from environment variables (or a .env file)
       and validates types and ranges. Validation errors are translated into
       the DeployKit exception hierarchy so callers see
       `MissingParameterError` rather than a raw pydantic error.
"""

from pathlib import Path
from typing import Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploykit.exceptions import ConfigurationError, MissingParameterError


# Environment variable name for each ParameterSet field, in declaration order
PARAMETER_FIELDS: Dict[str, str] = {
    "DB_CONTAINER_NAME": "db_container_name",
    "TEST_DB_CONTAINER_NAME": "test_db_container_name",
    "APP_CONTAINER_NAME": "app_container_name",
    "PORT": "port",
    "DB_NAME": "db_name",
    "DB_USERNAME": "db_username",
    "DB_PASSWORD": "db_password",
}

PARAMETER_NAMES: FrozenSet[str] = frozenset(PARAMETER_FIELDS)

_MISSING_ERROR_TYPES = {"missing", "string_too_short"}


class ParameterSet(BaseSettings):
    """
    The deployment's parameter set.

    The same topology declaration runs against any valid ParameterSet, which
    is how one definition stands up both production and test instances.
    """

    # ── Container identities ──────────────────────────────────────────────
    # The application addresses datastores by these names, never by IP.
    db_container_name: str = Field(min_length=1)
    test_db_container_name: str = Field(min_length=1)
    app_container_name: str = Field(min_length=1)

    # ── Published port ────────────────────────────────────────────────────
    port: int = Field(ge=1, le=65535)

    # ── Datastore credentials ─────────────────────────────────────────────
    db_name: str = Field(min_length=1)
    db_username: str = Field(min_length=1)
    db_password: str = Field(min_length=1, repr=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # PORT="" is reported as missing, not as an unparsable integer
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @model_validator(mode="after")
    def validate_distinct_containers(self) -> "ParameterSet":
        names = [self.db_container_name, self.test_db_container_name, self.app_container_name]
        if len(set(names)) != len(names):
            raise ValueError(
                "DB_CONTAINER_NAME, TEST_DB_CONTAINER_NAME and APP_CONTAINER_NAME "
                f"must be distinct, got {names}"
            )
        return self

    def as_mapping(self) -> Dict[str, str]:
        """Environment-style view used for `${NAME}` substitution."""
        return {env: str(getattr(self, field)) for env, field in PARAMETER_FIELDS.items()}


def load_parameters(
    env_file: Optional[Union[str, Path]] = None,
    **overrides: object,
) -> ParameterSet:
    """
    Build the ParameterSet once, failing fast on anything missing.

    Args:
        env_file:   Optional dotenv file read in addition to the process
                    environment (process environment wins).
        overrides:  Field values that take precedence over both, keyed by
                    field name (e.g. `db_password="..."`).

    Raises:
        MissingParameterError: One or more parameters absent or empty.
        ConfigurationError:    Any other validation failure.
    """
    kwargs: Dict[str, object] = dict(overrides)
    if env_file is not None:
        kwargs["_env_file"] = str(env_file)

    try:
        return ParameterSet(**kwargs)
    except ValidationError as exc:
        missing: List[str] = []
        problems: List[str] = []
        for error in exc.errors():
            loc = error.get("loc") or ()
            field = str(loc[0]) if loc else ""
            if error.get("type") in _MISSING_ERROR_TYPES and field:
                missing.append(field.upper())
            else:
                label = field.upper() or "parameters"
                problems.append(f"{label}: {error.get('msg')}")
        if missing:
            raise MissingParameterError(missing, context={"problems": problems}) from exc
        raise ConfigurationError(
            "Invalid parameter set:\n" + "\n".join(f"  - {p}" for p in problems),
            context={"problems": problems},
        ) from exc


class Settings(BaseSettings):
    """
    Ambient settings for the CLI and the application runtime shell.

    Attributes are grouped by concern.
    """

    # ── Runtime shell ─────────────────────────────────────────────────────
    # The application binds a fixed internal port; the topology maps the
    # externally supplied PORT onto it.
    app_host: str = Field(default="0.0.0.0")
    app_internal_port: int = Field(default=8080, ge=1, le=65535)

    # ── Datastore connection ──────────────────────────────────────────────
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_pool_size: int = Field(default=7, ge=1, le=100)
    db_max_overflow: int = Field(default=3, ge=0, le=50)
    db_connect_timeout: float = Field(default=5.0, gt=0)
    datastore_target: Literal["primary", "test"] = Field(default="primary")

    # ── Retry Configuration ───────────────────────────────────────────────
    # Tenacity settings for the initial datastore connection
    retry_max_attempts: int = Field(default=10, ge=1, le=100)
    retry_min_wait: float = Field(default=1.0, gt=0, le=30)
    retry_max_wait: float = Field(default=15.0, gt=0, le=300)

    # ── Topology / build ──────────────────────────────────────────────────
    data_root: str = Field(default="./data")
    docker_binary: str = Field(default="docker")
    build_timeout: float = Field(default=1800.0, gt=0)
    project_name: str = Field(default="app")

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        if self.retry_max_wait < self.retry_min_wait:
            raise ValueError("retry_max_wait must be >= retry_min_wait")
        return self


settings = Settings()
