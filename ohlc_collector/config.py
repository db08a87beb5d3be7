"""
Configuration for the OHLC collector.

Configuration is a plain "secrets" dict (defaults, optionally overlaid by a
JSON file and environment variables) parsed into dataclasses with dacite.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from dacite import from_dict, Config, DaciteError

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "OHLC_COLLECTOR_CONFIG"

METADATA_PROJECT_URL = "http://metadata.google.internal/computeMetadata/v1/project/project-id"

ARCHIVE_BACKEND_LOCAL = "local"
ARCHIVE_BACKEND_GCS = "gcs"


@dataclass
class ArchiveSettings:
    backend: str
    prefix: str
    bucket: Optional[str] = None
    base_path: Optional[str] = None


@dataclass
class ReportSettings:
    slack_webhook_url: Optional[str] = None


@dataclass
class CollectorSecrets:
    base_url: str
    timeout_seconds: float
    db_path: str
    display_timezone: str
    function_name: str
    archive: ArchiveSettings
    report: ReportSettings
    project_id: Optional[str] = None


def default_secrets() -> Dict[str, Any]:
    """Return default collector configuration."""
    return {
        "base_url": "https://api.cryptowat.ch/markets",
        "timeout_seconds": 30,
        "db_path": "market_data.duckdb",
        "display_timezone": "Asia/Tokyo",
        "function_name": "CollectBtcMarketPrice",
        "project_id": None,
        "archive": {
            "backend": ARCHIVE_BACKEND_LOCAL,
            "prefix": "btc",
            "bucket": "market_data_accumlation",
            "base_path": "./archive"
        },
        "report": {
            "slack_webhook_url": None
        }
    }


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_secrets(data: Mapping[str, Any]) -> CollectorSecrets:
    """
    Parse a secrets dict into CollectorSecrets.

    :param data: Secrets dictionary, partial dicts are merged over the defaults
    :return: CollectorSecrets
    :raises ConfigError: if the dict does not describe a valid configuration
    """
    merged = _merge(default_secrets(), data)
    try:
        secrets = from_dict(
            data_class=CollectorSecrets,
            data=merged,
            config=Config(cast=[float], strict=True)
        )
    except (DaciteError, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid collector configuration: {e}") from e

    if secrets.archive.backend not in (ARCHIVE_BACKEND_LOCAL, ARCHIVE_BACKEND_GCS):
        raise ConfigError(f"Unknown archive backend: {secrets.archive.backend}")
    if secrets.archive.backend == ARCHIVE_BACKEND_GCS and not secrets.archive.bucket:
        raise ConfigError("GCS archive backend requires a bucket")
    if secrets.archive.backend == ARCHIVE_BACKEND_LOCAL and not secrets.archive.base_path:
        raise ConfigError("Local archive backend requires a base_path")
    if secrets.timeout_seconds <= 0:
        raise ConfigError("timeout_seconds must be positive")
    try:
        ZoneInfo(secrets.display_timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown display timezone: {secrets.display_timezone}") from e

    return secrets


def load_secrets(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> CollectorSecrets:
    """
    Load configuration from defaults, an optional JSON file and the environment.

    :param path: JSON config file; falls back to $OHLC_COLLECTOR_CONFIG
    :param environ: Environment mapping (defaults to os.environ)
    :return: CollectorSecrets
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    path = path or environ.get(CONFIG_PATH_ENV)
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

    overrides: Dict[str, Any] = {}
    if environ.get("PROJECT_ID"):
        overrides["project_id"] = environ["PROJECT_ID"]
    if environ.get("OHLC_COLLECTOR_DB_PATH"):
        overrides["db_path"] = environ["OHLC_COLLECTOR_DB_PATH"]
    if environ.get("SLACK_WEBHOOK_URL"):
        overrides["report"] = {"slack_webhook_url": environ["SLACK_WEBHOOK_URL"]}

    return parse_secrets(_merge(data, overrides))


def resolve_project_id(secrets: CollectorSecrets) -> str:
    """
    Resolve the cloud project id the collector runs under.

    Uses the configured project id when present, otherwise asks the GCE
    metadata server.

    :raises ConfigError: if no project id can be resolved
    """
    if secrets.project_id:
        return secrets.project_id

    try:
        response = requests.get(
            METADATA_PROJECT_URL,
            headers={"Metadata-Flavor": "Google"},
            timeout=secrets.timeout_seconds
        )
    except requests.RequestException as e:
        raise ConfigError(f"This process is not running on GCE: {e}") from e

    if response.status_code != 200 or not response.text.strip():
        raise ConfigError(f"Metadata server returned status {response.status_code}")

    project_id = response.text.strip()
    logger.info(f"Resolved project id from metadata server: {project_id}")
    return project_id
