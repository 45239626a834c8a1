"""Per-project scan configuration.

Tag matchers and ignore patterns live in the store (``tag_config`` and
``ignore_paths``). A configuration document has the same shape as
``ScanConfig`` and can be imported from JSON or from a repository-local
``.tagscan.toml``::

    ignore = ["node_modules", "^dist/"]

    [[tags]]
    name = "todo"
    match = ["TODO:", "@todo"]

Ignore patterns are regular expressions; match strings are literal.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import tomllib
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from tagscan.db import (
    get_project_by_id,
    list_ignore_paths,
    list_tag_config_rows,
    replace_scan_config,
)
from tagscan.models import ScanConfig

log = logging.getLogger(__name__)

CONFIG_FILENAME = ".tagscan.toml"

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "tags": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "match": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["name", "match"],
                "additionalProperties": False,
            },
        },
        "ignore": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["tags"],
    "additionalProperties": False,
}

DEFAULT_CONFIG: ScanConfig = {
    "tags": [
        {"name": "todo", "match": ["TODO:", "@todo", "todo!"]},
        {"name": "bug", "match": ["BUG:", "FIXME:", "@bug"]},
        {"name": "note", "match": ["NOTE:", "@note"]},
        {"name": "idea", "match": ["IDEA:", "@idea"]},
    ],
    "ignore": ["node_modules", r"\.git/", "^dist/", "^build/"],
}

_validator = Draft202012Validator(CONFIG_SCHEMA)


class ConfigError(ValueError):
    """Project configuration is missing or does not validate."""


def validate_config(document: Any) -> ScanConfig:
    """Check *document* against the config schema and normalize it.

    Raises ConfigError naming the most relevant offending location.
    """
    first = best_match(_validator.iter_errors(document))
    if first is not None:
        where = "/".join(str(p) for p in first.absolute_path) or "<root>"
        raise ConfigError(f"invalid config at {where}: {first.message}")
    for i, pattern in enumerate(document.get("ignore", [])):
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ConfigError(
                f"invalid config at ignore/{i}: {pattern!r} is not a valid pattern ({exc})"
            ) from exc
    return {
        "tags": [{"name": t["name"], "match": list(t["match"])} for t in document["tags"]],
        "ignore": list(document.get("ignore", [])),
    }


def load_config_file(path: Path) -> ScanConfig:
    """Read a config document from a ``.toml`` or JSON file."""
    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                document = tomllib.load(f)
        else:
            document = json.loads(path.read_text())
    except (OSError, tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"could not read {path}: {exc}") from exc
    return validate_config(document)


def load_repo_config(root: Path) -> ScanConfig | None:
    """Load ``.tagscan.toml`` from a checkout, or None if absent or unreadable."""
    path = root / CONFIG_FILENAME
    if not path.exists():
        return None
    try:
        return load_config_file(path)
    except ConfigError:
        log.warning("Failed to load %s", path, exc_info=True)
        return None


def get_project_config(conn: sqlite3.Connection, project_id: str) -> ScanConfig:
    """Assemble a project's stored tag matchers and ignore patterns.

    Matchers are grouped per tag, tags ordered by their first configured
    match string.
    """
    if get_project_by_id(conn, project_id) is None:
        raise ConfigError("project not found")
    try:
        rows = list_tag_config_rows(conn, project_id)
        ignore = list_ignore_paths(conn, project_id)
    except sqlite3.Error as exc:
        raise ConfigError(f"could not load config: {exc}") from exc

    grouped: dict[str, list[str]] = {}
    for row in rows:
        grouped.setdefault(row["name"], []).append(row["match"])
    document = {
        "tags": [{"name": name, "match": matches} for name, matches in grouped.items()],
        "ignore": ignore,
    }
    return validate_config(document)


def save_project_config(
    conn: sqlite3.Connection, project_id: str, owner_id: str, config: Any
) -> ScanConfig:
    """Validate *config* and make it the project's whole configuration."""
    validated = validate_config(config)
    replace_scan_config(
        conn,
        project_id,
        owner_id,
        [(tag["name"], tag["match"]) for tag in validated["tags"]],
        validated["ignore"],
    )
    log.info(
        "Saved config for project %s: %d tags, %d ignore patterns",
        project_id,
        len(validated["tags"]),
        len(validated["ignore"]),
    )
    return validated
