from __future__ import annotations

import copy
import ipaddress
import os
import re
import tomllib
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chatauth.logging import get_logger
from chatauth.service.errors import ConfigError

logger = get_logger(__name__)

ENV_PREFIX = "APP"
ENV_SEPARATOR = "__"
ENV_NAME_VAR = "APP__ENV"
DEPLOY_ENV_VAR = "APP__DEPLOY_ENV"

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


def _non_blank(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("cannot be empty")
    return stripped


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AppSection(_Section):
    name: str
    environment: str
    cookie_domain: Optional[str] = None

    @field_validator("name", "environment")
    @classmethod
    def _require_text(cls, value: str) -> str:
        return _non_blank(value)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


class ServerSection(_Section):
    host: str
    port: int = Field(ge=1, le=65535)
    request_timeout_secs: float = Field(gt=0)

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:
        host = _non_blank(value)
        try:
            ipaddress.ip_address(host)
            return host
        except ValueError:
            pass
        if not _HOSTNAME_RE.match(host):
            raise ValueError("must be an IP address or hostname")
        return host


class DatabaseSection(_Section):
    url: str = Field(repr=False)
    min_connections: int = Field(gt=0)
    max_connections: int = Field(gt=0)
    connect_timeout_secs: float = Field(default=5.0, gt=0)

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        return _non_blank(value)


class AuthSection(_Section):
    signing_secret: str = Field(repr=False)
    access_token_ttl_minutes: int = Field(gt=0)
    refresh_token_ttl_minutes: int = Field(gt=0)
    one_time_password_ttl_minutes: int = Field(default=5, gt=0)
    issuer: str = "chatauth"

    @field_validator("signing_secret")
    @classmethod
    def _require_secret(cls, value: str) -> str:
        return _non_blank(value)


class ClientIntegrationsSection(_Section):
    allow_request_timeout_middleware: bool = True
    allow_logging_middleware: bool = True


class ObservabilitySection(_Section):
    log_level: str = "INFO"
    log_json: bool = True
    log_dev_mode: bool = False


class Settings(_Section):
    """Immutable configuration snapshot, built once at startup."""

    app: AppSection
    server: ServerSection
    database: DatabaseSection
    auth: AuthSection
    client_integrations: ClientIntegrationsSection = Field(
        default_factory=ClientIntegrationsSection
    )
    observability: ObservabilitySection = Field(default_factory=ObservabilitySection)

    @property
    def is_production(self) -> bool:
        return self.app.is_production


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``override`` applied key by key.

    Nested tables merge recursively; any other value in ``override`` replaces
    the one in ``base``. Neither input is modified.
    """
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def env_overrides(
    environ: Mapping[str, str],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = ENV_SEPARATOR,
) -> dict[str, Any]:
    """Turn ``APP__SECTION__FIELD=value`` variables into a nested tree.

    Names are matched case-insensitively and lower-cased into keys. Values
    stay strings; the typed models coerce them during validation.
    """
    marker = f"{prefix}{separator}".upper()
    tree: dict[str, Any] = {}
    for name, value in environ.items():
        if not name.upper().startswith(marker):
            continue
        path = [part.lower() for part in name[len(marker):].split(separator)]
        if not path or any(not part for part in path):
            continue
        node = tree
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = value
    return tree


def _format_loc(loc: Iterable[Any]) -> str:
    return ".".join(str(part) for part in loc)


def _cross_field_errors(settings: Settings) -> List[tuple[str, str]]:
    problems: List[tuple[str, str]] = []
    db = settings.database
    if db.min_connections > db.max_connections:
        problems.append(
            (
                "database.min_connections",
                f"must not exceed database.max_connections ({db.min_connections} > {db.max_connections})",
            )
        )
    auth = settings.auth
    if auth.access_token_ttl_minutes >= auth.refresh_token_ttl_minutes:
        problems.append(
            (
                "auth.access_token_ttl_minutes",
                "must be strictly less than auth.refresh_token_ttl_minutes",
            )
        )
    return problems


def load_and_validate(sources: Iterable[Mapping[str, Any]]) -> Settings:
    """Merge ``sources`` in ascending precedence and validate the result.

    Raises:
        ConfigError: naming the first offending field; ``errors`` lists all.
    """
    merged: dict[str, Any] = {}
    for layer in sources:
        merged = deep_merge(merged, layer)

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            field = _format_loc(err["loc"])
            if err["type"] == "missing" and len(err["loc"]) == 1:
                message = "section is missing"
            elif err["type"] == "missing":
                message = "is required"
            else:
                message = err["msg"]
            problems.append((field, message))
        field, message = problems[0]
        raise ConfigError(field, message, problems) from exc

    problems = _cross_field_errors(settings)
    if problems:
        field, message = problems[0]
        raise ConfigError(field, message, problems)
    return settings


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigError(str(path), "required configuration file is missing")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(str(path), f"invalid TOML: {exc}") from exc


def _with_dotenv(environ: Mapping[str, str], dotenv_dir: Path) -> dict[str, str]:
    # Real environment wins over .env, which wins over .env.<deploy env>
    deploy_env = environ.get(DEPLOY_ENV_VAR) or "development"
    layered: dict[str, str] = {}
    for candidate in (dotenv_dir / f".env.{deploy_env}", dotenv_dir / ".env"):
        if candidate.exists():
            values = {k: v for k, v in dotenv_values(candidate).items() if v is not None}
            layered.update(values)
    layered.update(environ)
    return layered


def load_settings(
    config_dir: str | Path = "config",
    environ: Optional[Mapping[str, str]] = None,
    *,
    dotenv_dir: Optional[str | Path] = ".",
) -> Settings:
    """Build the configuration snapshot from its four layers.

    Precedence, lowest first: ``base.toml``, ``<APP__ENV>.toml``,
    ``local.toml`` (optional), then ``APP__``-prefixed environment variables.
    """
    env = dict(os.environ if environ is None else environ)
    if dotenv_dir is not None:
        env = _with_dotenv(env, Path(dotenv_dir))

    env_name = (env.get(ENV_NAME_VAR) or "").strip()
    if not env_name:
        raise ConfigError(
            ENV_NAME_VAR,
            "environment variable is not set; set it to development, production, etc.",
        )

    root = Path(config_dir)
    layers = [
        {"app": {"environment": env_name}},
        _read_toml(root / "base.toml", required=True),
        _read_toml(root / f"{env_name}.toml", required=True),
        _read_toml(root / "local.toml", required=False),
        env_overrides(env),
    ]
    settings = load_and_validate(layers)
    logger.info(
        "config_loaded",
        environment=settings.app.environment,
        config_dir=str(root),
        local_override=(root / "local.toml").exists(),
    )
    return settings
