"""Load Settings from YAML and the environment (with fallbacks)."""

from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path

import yaml

from .config import Settings

logger = logging.getLogger(__name__)

_CACHE: Settings | None = None

ENV_KEYS = {
    "jira_server": "JIRA_SERVER",
    "jira_email": "JIRA_EMAIL",
    "jira_token": "JIRA_API_TOKEN",
    "db_path": "DEVDASH_DB",
}


def _from_mapping(data: dict) -> Settings:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))
    return Settings(**{k: v for k, v in data.items() if k in known})


def load_settings(base_path: str | Path | None = None, *, reload: bool = False) -> Settings:
    """Return Settings built from ``devdash.yaml`` plus environment overrides.

    A missing or malformed file falls back to the defaults in ``config.py``.
    Environment variables win over the file so secrets can stay out of it.
    """
    global _CACHE
    if _CACHE is not None and not reload:
        return _CACHE
    base = Path(base_path or Path(__file__).resolve().parents[2])
    yaml_path = base / "devdash.yaml"
    data: dict = {}
    if yaml_path.exists():
        try:
            data = yaml.safe_load(yaml_path.read_text()) or {}
        except yaml.YAMLError as exc:
            logger.warning("Unreadable %s, using defaults: %s", yaml_path, exc)
            data = {}
        if not isinstance(data, dict):
            logger.warning("Expected a mapping in %s, using defaults", yaml_path)
            data = {}
    for attr, env in ENV_KEYS.items():
        value = os.environ.get(env)
        if value:
            data[attr] = value
    if "DEVDASH_DEV" in os.environ:
        data["dev_mode"] = os.environ["DEVDASH_DEV"].lower() in {"1", "true", "yes"}
    _CACHE = _from_mapping(data)
    return _CACHE
