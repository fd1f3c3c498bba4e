"""Configuration resolution for gitlab-snippet."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

from .errors import ConfigError
from .logging import get_logger


CONFIG_ENV_PREFIX = "GITLAB_SNIPPET_"
API_VERSION = "v3"
# Snippet visibility: 20 is "public".
DEFAULT_VISIBILITY_LEVEL = 20
# Agent option keys holding a file system path to TLS material.
TLS_FILE_KEYS: Tuple[str, ...] = ("ca", "cert", "key", "pfx")

ProjectRef = Union[str, int]

logger = get_logger("gitlab_snippet.config")


def default_config_path() -> Path:
    return Path.home() / ".config" / "gitlab-snippet.json"


@dataclass(frozen=True)
class TlsMaterial:
    """TLS files read from disk, keyed the same way as agent options."""

    ca: Optional[bytes] = None
    cert: Optional[bytes] = None
    key: Optional[bytes] = None
    pfx: Optional[bytes] = None
    paths: Mapping[str, Path] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in TLS_FILE_KEYS)


@dataclass(frozen=True)
class EffectiveConfig:
    """Resolved, immutable configuration for a single run."""

    api_token: str = field(repr=False)
    api_host: str
    project_ref: ProjectRef
    api_scheme: str = "http"
    tls: Optional[TlsMaterial] = None
    agent_options: Mapping[str, Any] = field(default_factory=dict)
    visibility_level: int = DEFAULT_VISIBILITY_LEVEL
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def api_url(self) -> str:
        return f"{self.api_scheme}://{self.api_host}/api/{API_VERSION}"

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "api_token": "***REDACTED***" if self.api_token else None,
            "api_host": self.api_host,
            "api_scheme": self.api_scheme,
            "project_ref": self.project_ref,
            "tls_files": {key: str(path) for key, path in (self.tls.paths if self.tls else {}).items()},
            "agent_options": sorted(self.agent_options),
            "visibility_level": self.visibility_level,
            "timeout": self.timeout,
        }


def _validate_config(config: EffectiveConfig) -> None:
    if not config.api_token:
        raise ConfigError("failed to fetch access token from configuration")
    if not config.api_host:
        raise ConfigError("failed to fetch API host from configuration")
    if config.project_ref is None or config.project_ref == "":
        raise ConfigError("Project path/namespace, or project ID required")
    if config.api_scheme not in {"http", "https"}:
        raise ConfigError(f"api_scheme must be 'http' or 'https'; got {config.api_scheme}.")
    if config.tls is not None and not config.tls.is_empty() and config.api_scheme != "https":
        raise ConfigError("TLS material requires the https scheme.")
    if config.timeout is not None and config.timeout <= 0:
        raise ConfigError(f"timeout must be positive; got {config.timeout}.")


def resolve_config(
    config_path: Optional[Union[str, Path]] = None,
    project_override: Optional[ProjectRef] = None,
    timeout: Optional[float] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EffectiveConfig:
    """Build the effective configuration from file, environment and CLI values.

    Token and host come from the configuration file when it is readable and
    from the environment otherwise; the two sources are never merged. The
    project reference is looked up in order: CLI override, file, environment.
    """

    env = os.environ if environ is None else environ
    path = _coerce_path(
        config_path or env.get(f"{CONFIG_ENV_PREFIX}CONFIG") or default_config_path()
    )
    file_config = _load_file_config(path)

    if file_config is not None:
        logger.debug("Using configuration file", extra={"config_file": str(path)})
        token = file_config.get("token")
        host = file_config.get("host")
        agent_options = file_config.get("agentOptions") or {}
        file_project = file_config.get("project")
        file_timeout = file_config.get("timeout")
    else:
        logger.debug(
            "Configuration file not readable; falling back to environment",
            extra={"config_file": str(path)},
        )
        token = env.get(f"{CONFIG_ENV_PREFIX}TOKEN")
        host = env.get(f"{CONFIG_ENV_PREFIX}HOST")
        agent_options = {}
        file_project = None
        file_timeout = None

    if not token:
        raise ConfigError("failed to fetch access token from configuration")
    if not host:
        raise ConfigError("failed to fetch API host from configuration")

    project_ref = _first_defined(
        project_override, file_project, env.get(f"{CONFIG_ENV_PREFIX}PROJECT")
    )
    if project_ref is None:
        raise ConfigError("Project path/namespace, or project ID required")

    if not isinstance(agent_options, Mapping):
        raise ConfigError("agentOptions must be a JSON object.")
    tls = _load_tls_material(agent_options)
    passthrough = {k: v for k, v in agent_options.items() if k not in TLS_FILE_KEYS}

    config = EffectiveConfig(
        api_token=str(token),
        api_host=str(host),
        project_ref=project_ref,
        api_scheme="https" if tls is not None else "http",
        tls=tls,
        agent_options=passthrough,
        timeout=_coerce_timeout(timeout if timeout is not None else file_timeout),
    )
    logger.debug("Resolved configuration", extra={"config": config.logging_dict()})
    return config


def _load_file_config(path: Path) -> Optional[Dict[str, Any]]:
    if not path.is_file() or not os.access(path, os.R_OK):
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            parsed = yaml.safe_load(text)
        else:
            parsed = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to parse configuration file {path}: {exc}") from exc
    if not isinstance(parsed, Mapping):
        raise ConfigError(f"Configuration file {path} must contain a JSON object.")
    return dict(parsed)


def _load_tls_material(agent_options: Mapping[str, Any]) -> Optional[TlsMaterial]:
    loaded: Dict[str, bytes] = {}
    paths: Dict[str, Path] = {}
    for key in TLS_FILE_KEYS:
        value = agent_options.get(key)
        if value is None:
            continue
        path = _resolve_tls_path(key, value)
        try:
            loaded[key] = path.read_bytes()
        except OSError as exc:
            raise ConfigError(f"failed to read TLS {key} file {path}: {exc.strerror or exc}") from exc
        paths[key] = path
        logger.debug("Loaded TLS material", extra={"tls_key": key, "path": str(path)})
    if not loaded:
        return None
    return TlsMaterial(paths=paths, **loaded)


def _resolve_tls_path(key: str, value: Any) -> Path:
    if not isinstance(value, (str, os.PathLike)) or not str(value):
        raise ConfigError(f"agentOptions.{key} must be a file path.")
    return Path(value).expanduser().resolve()


def _first_defined(*values: Optional[ProjectRef]) -> Optional[ProjectRef]:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _coerce_timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"timeout must be a number of seconds; got {value!r}.") from exc


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()
