"""
Run configuration.

Values are resolved, highest priority first, from:
  1. explicit arguments (CLI flags)
  2. environment variables
  3. the YAML config file (``~/.gcp-graph-collector/config.yaml`` by default)
  4. the service account key file / ``google.auth.default()`` (project id only)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from collector.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".gcp-graph-collector"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "config.yaml"

READ_ONLY_SCOPES = ["https://www.googleapis.com/auth/cloud-platform.read-only"]


@dataclass
class CollectorConfig:
    project_id: str
    credentials_file: str | None = None
    server_url: str | None = None
    token: str | None = None
    disabled_steps: frozenset[str] = field(default_factory=frozenset)
    output: str | None = None

    def load_credentials(self) -> Any:
        """Return credentials for the Google clients.

        None means "let each client library pick up application default
        credentials".
        """
        if not self.credentials_file:
            return None

        from google.oauth2 import service_account

        try:
            return service_account.Credentials.from_service_account_file(
                self.credentials_file, scopes=READ_ONLY_SCOPES,
            )
        except (OSError, ValueError) as exc:
            raise ConfigError(
                f"Cannot load service account key {self.credentials_file}: {exc}"
            ) from exc


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config_file(path: str | Path | None = None) -> dict:
    """Load the YAML config file. A missing default file yields ``{}``."""
    explicit = path is not None
    path = Path(path) if explicit else DEFAULT_CONFIG_FILE

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (yaml.YAMLError, OSError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _project_from_key_file(credentials_file: str) -> str | None:
    try:
        with open(credentials_file) as fh:
            return json.load(fh).get("project_id")
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Could not read project_id from %s: %s", credentials_file, exc)
        return None


def _project_from_default_credentials() -> str | None:
    import google.auth
    from google.auth.exceptions import DefaultCredentialsError

    try:
        _credentials, project = google.auth.default(scopes=READ_ONLY_SCOPES)
    except DefaultCredentialsError as exc:
        logger.debug("google.auth.default() failed: %s", exc)
        return None
    return project


def _split_steps(value: Any) -> frozenset[str]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(s.strip() for s in value if s and s.strip())


def resolve_config(
    project_id: str | None = None,
    credentials_file: str | None = None,
    server_url: str | None = None,
    token: str | None = None,
    disabled_steps: list[str] | None = None,
    output: str | None = None,
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> CollectorConfig:
    """Build a ``CollectorConfig`` from arguments, environment and config file."""
    env = os.environ if environ is None else environ
    file_cfg = load_config_file(config_path)

    credentials_file = (
        credentials_file
        or env.get("GOOGLE_APPLICATION_CREDENTIALS")
        or file_cfg.get("credentials_file")
    )

    project_id = (
        project_id
        or env.get("GOOGLE_CLOUD_PROJECT")
        or env.get("GCLOUD_PROJECT")
        or file_cfg.get("project_id")
    )
    if not project_id and credentials_file:
        project_id = _project_from_key_file(credentials_file)
    if not project_id:
        project_id = _project_from_default_credentials()
    if not project_id:
        raise ConfigError(
            "Cannot determine GCP project. Pass --project, set "
            "GOOGLE_CLOUD_PROJECT, or configure gcloud with a default project."
        )

    if disabled_steps is None:
        disabled = _split_steps(
            env.get("COLLECTOR_DISABLED_STEPS") or file_cfg.get("disabled_steps")
        )
    else:
        disabled = _split_steps(disabled_steps)

    return CollectorConfig(
        project_id=project_id,
        credentials_file=credentials_file,
        server_url=server_url or env.get("COLLECTOR_SERVER_URL") or file_cfg.get("server_url"),
        token=token or env.get("COLLECTOR_TOKEN") or file_cfg.get("token"),
        disabled_steps=disabled,
        output=output or file_cfg.get("output"),
    )
