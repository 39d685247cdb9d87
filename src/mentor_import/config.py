"""mentor_import.config

YAML settings for the import pipeline.

Usage:
    from pathlib import Path
    from mentor_import.config import load_settings

    settings = load_settings(Path("config/import_settings.yml"))
    settings.max_data_rows  # 5000

Every key is optional; absent keys take the defaults below. Unknown keys and
ill-typed values raise SettingsValidationError.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ALLOWED_ROLES = ("participant", "tuteur", "formateur")
DEFAULT_NON_ELEVATED_ROLES = (
    "participant", "participantnonediteur", "concepteur", "formateur", "tuteur",
)

KNOWN_KEYS = frozenset({
    "max_data_rows",
    "allowed_roles",
    "lowest_role",
    "guarded_role",
    "non_elevated_roles",
    "platform_base_url",
    "report_dir",
    "mail_relay_url",
    "mail_sender",
})


class SettingsValidationError(ValueError):
    """Raised when a settings file fails schema validation."""


@dataclass
class ImportSettings:
    max_data_rows: int = 5000
    allowed_roles: tuple[str, ...] = DEFAULT_ALLOWED_ROLES
    lowest_role: str = "participant"
    guarded_role: str = "formateur"
    non_elevated_roles: tuple[str, ...] = DEFAULT_NON_ELEVATED_ROLES
    platform_base_url: str = "http://localhost"
    report_dir: Path = Path("./artifacts/import_reports")
    mail_relay_url: str | None = None
    mail_sender: str = "noreply@localhost"
    yaml_hash: str = field(default="", repr=False)


def load_settings(yaml_path: Path | None) -> ImportSettings:
    """Load and validate settings; None returns the defaults.

    Raises:
        SettingsValidationError: If any key is unknown or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return ImportSettings()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_settings(data)
    settings = ImportSettings(yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest())
    if "max_data_rows" in data:
        settings.max_data_rows = int(data["max_data_rows"])
    for key in ("allowed_roles", "non_elevated_roles"):
        if key in data:
            setattr(settings, key, tuple(str(v) for v in data[key]))
    for key in ("lowest_role", "guarded_role", "platform_base_url", "mail_sender"):
        if key in data:
            setattr(settings, key, str(data[key]))
    if data.get("mail_relay_url"):
        settings.mail_relay_url = str(data["mail_relay_url"])
    if "report_dir" in data:
        settings.report_dir = Path(str(data["report_dir"]))
    return settings


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the schema.

    Validates:
      - top level is a mapping with known keys only
      - max_data_rows is a positive integer
      - role lists are non-empty lists of strings
      - lowest_role and guarded_role are distinct allowed roles
    """
    if not isinstance(data, dict):
        raise SettingsValidationError("settings file must contain a mapping")

    unknown = set(data) - KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"unknown settings keys: {sorted(unknown)}")

    if "max_data_rows" in data:
        v = data["max_data_rows"]
        if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
            raise SettingsValidationError(f"max_data_rows must be a positive integer, got {v!r}")

    for key in ("allowed_roles", "non_elevated_roles"):
        if key in data:
            v = data[key]
            if not isinstance(v, list) or not v or not all(isinstance(x, str) for x in v):
                raise SettingsValidationError(f"{key} must be a non-empty list of strings")

    allowed = set(data.get("allowed_roles") or DEFAULT_ALLOWED_ROLES)
    lowest = data.get("lowest_role", "participant")
    guarded = data.get("guarded_role", "formateur")
    for key, value in (("lowest_role", lowest), ("guarded_role", guarded)):
        if value not in allowed:
            raise SettingsValidationError(f"{key} {value!r} is not in allowed_roles")
    if lowest == guarded:
        raise SettingsValidationError("lowest_role and guarded_role must differ")
