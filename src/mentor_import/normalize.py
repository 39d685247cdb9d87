"""Normalization functions for user-import CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata

# Characters refused in last/first names: markup, path and shell punctuation.
_NAME_FORBIDDEN_RE = re.compile(r"[/~`!@#$%^&*()_+={}\[\]|;:\"<>,.?\\]")

# Characters refused anywhere in an e-mail cell, even when quoted.
_EMAIL_FORBIDDEN_RE = re.compile(r"[()<>\";:\\,\[\]]")

_EMAIL_LOCAL_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*$")
_EMAIL_LABEL_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

# Replaced by '_' when turning an e-mail into a login name.
USERNAME_DISALLOWED = (
    "[", "!", "#", "$", "%", "&", "'", "*", "+", "-",
    "/", "=", "?", "^", ".", "{", "|", "}", "~", "`", "]",
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: clean_cell
# ---------------------------------------------------------------------------

def clean_cell(value: str | None) -> str:
    """Trim a CSV cell and drop every control/format/unassigned character.

    Returns "" rather than None so column positions stay aligned.
    """
    if value is None:
        return ""
    v = value.strip()
    return "".join(c for c in v if not unicodedata.category(c).startswith("C"))


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: forbidden characters
# ---------------------------------------------------------------------------

def has_forbidden_name_chars(*values: str | None) -> bool:
    """True if any of the given name cells holds a deny-listed character."""
    joined = "".join(v for v in values if v)
    return _NAME_FORBIDDEN_RE.search(joined) is not None


def has_forbidden_email_chars(value: str | None) -> bool:
    if not value:
        return False
    return _EMAIL_FORBIDDEN_RE.search(value) is not None


# ---------------------------------------------------------------------------
# Rule 5: is_valid_email
# ---------------------------------------------------------------------------

def is_valid_email(value: str | None) -> bool:
    """Syntax check for a bare addr-spec (no display name, no comments).

    Local part: dot-atom, at most 64 chars. Domain: at least two labels of
    letters, digits and inner hyphens, each at most 63 chars.
    """
    v = trim(value)
    if not v or len(v) > 254 or v.count("@") != 1:
        return False
    local, domain = v.split("@")
    if not local or len(local) > 64 or not _EMAIL_LOCAL_RE.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(_EMAIL_LABEL_RE.match(label) for label in labels)


# ---------------------------------------------------------------------------
# Rule 6: email_to_username_base
# ---------------------------------------------------------------------------

def email_to_username_base(email: str | None) -> str | None:
    """Lowercase the e-mail and replace disallowed login characters with '_'.

    The result is only a *base*: directory.derive_username appends a numeric
    suffix while the base is taken.
    """
    v = normalize_email(email)
    if v is None:
        return None
    for ch in USERNAME_DISALLOWED:
        v = v.replace(ch, "_")
    return v


# ---------------------------------------------------------------------------
# Helper: casefold_key
# ---------------------------------------------------------------------------

def casefold_key(value: str | None) -> str:
    """Key used for case-insensitive role and group-name comparisons."""
    return (trim(value) or "").casefold()
