"""mentor_import.directory

Identity Directory Gateway boundary.

The directory is the platform's shared, mutable account store. The import
pipeline reads it in bulk exactly twice per batch (by e-mail, then by
username) to build an IdentitySnapshot; every classification in the
preview pass is computed from that snapshot. The commit pass goes back to
the live directory, row by row, because earlier rows of the same batch may
have created the account a later row refers to.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import ContextManager, Iterable, Protocol

from mentor_import.normalize import email_to_username_base, normalize_email

# Placeholder stored on freshly provisioned accounts. It never matches a
# hashed password, so the account cannot log in until credentials are
# issued out of band.
UNUSABLE_CREDENTIAL = "to be generated"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Account:
    id: int
    email: str
    username: str
    suspended: bool = False
    firstname: str = ""
    lastname: str = ""


@dataclass(frozen=True)
class NewAccount:
    email: str
    username: str
    firstname: str
    lastname: str
    credential: str = UNUSABLE_CREDENTIAL
    main_entity_id: int | None = None


@dataclass(frozen=True)
class Entity:
    id: int
    name: str
    can_be_main_entity: bool = True


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class IdentityDirectory(Protocol):
    """Read side of the account store."""

    def find_by_emails(self, emails: set[str]) -> list[Account]:
        """Every account whose e-mail (case-insensitive) is in emails."""
        ...

    def find_by_usernames(self, usernames: set[str]) -> list[Account]:
        ...

    def username_exists(self, username: str) -> bool:
        ...

    def get_by_email(self, email: str) -> Account | None:
        """Live single lookup. Raises AmbiguousMatchError on several matches."""
        ...

    def get_by_id(self, account_id: int) -> Account | None:
        ...


class AccountStore(IdentityDirectory, Protocol):
    """Write side of the account store, used by the commit passes."""

    def row_scope(self, name: str) -> ContextManager[None]:
        """Unit of work around one row (a SAVEPOINT in PgPlatform)."""
        ...

    def create_account(self, new: NewAccount) -> Account:
        ...

    def reactivate(self, account_id: int) -> None:
        ...

    def suspend(self, account_id: int) -> None:
        ...

    def get_entity(self, entity_id: int) -> Entity | None:
        ...

    def get_main_entity(self, account_id: int) -> Entity | None:
        ...

    def get_highest_role(self, account_id: int) -> str | None:
        """Shortname of the most privileged platform-level role, if any."""
        ...

    def set_secondary_entities(self, account_id: int, entity_names: list[str]) -> None:
        ...


class PendingNameReservation(Protocol):
    """Answers whether a name is already spoken for by queued work."""

    def is_reserved(self, name: str) -> bool:
        ...

    def refresh(self) -> None:
        """Re-read the reservations; called once at the start of a commit batch."""
        ...


@dataclass
class NoReservations:
    def is_reserved(self, name: str) -> bool:
        return False

    def refresh(self) -> None:
        pass


# ---------------------------------------------------------------------------
# IdentitySnapshot
# ---------------------------------------------------------------------------

@dataclass
class IdentitySnapshot:
    """Point-in-time read of the directory for one batch of e-mails."""

    by_email: dict[str, list[Account]] = field(default_factory=dict)
    by_username: dict[str, list[Account]] = field(default_factory=dict)

    def matches_for_email(self, email: str) -> list[Account]:
        return list(self.by_email.get(normalize_email(email) or "", []))

    def claimants(self, email: str) -> list[Account]:
        """Distinct accounts holding email either as e-mail or as login name."""
        key = normalize_email(email) or ""
        seen: dict[int, Account] = {}
        for acc in [*self.by_email.get(key, []), *self.by_username.get(key, [])]:
            seen.setdefault(acc.id, acc)
        return list(seen.values())

    def claimants_with_derived_username(self, email: str) -> list[Account]:
        """Like claimants(), also counting the e-mail's derived login name."""
        key = normalize_email(email) or ""
        base = email_to_username_base(key) or ""
        seen: dict[int, Account] = {}
        for acc in [
            *self.by_email.get(key, []),
            *self.by_username.get(key, []),
            *self.by_username.get(base, []),
        ]:
            seen.setdefault(acc.id, acc)
        return list(seen.values())


def _index(accounts: Iterable[Account], attr: str) -> dict[str, list[Account]]:
    out: dict[str, list[Account]] = defaultdict(list)
    for acc in accounts:
        key = (getattr(acc, attr) or "").lower()
        if key:
            out[key].append(acc)
    return dict(out)


def fetch_snapshot(directory: IdentityDirectory, emails: Iterable[str]) -> IdentitySnapshot:
    """Build the batch snapshot with exactly two bulk directory queries.

    Usernames queried: the e-mails themselves (accounts using an address as
    login), their derived login bases, and the logins of every e-mail match.
    """
    email_set = {e for e in (normalize_email(x) for x in emails) if e}
    if not email_set:
        return IdentitySnapshot()

    by_email_list = directory.find_by_emails(email_set)
    usernames = set(email_set)
    usernames.update(b for b in (email_to_username_base(e) for e in email_set) if b)
    usernames.update(acc.username.lower() for acc in by_email_list if acc.username)
    by_username_list = directory.find_by_usernames(usernames)

    return IdentitySnapshot(
        by_email=_index(by_email_list, "email"),
        by_username=_index(by_username_list, "username"),
    )


# ---------------------------------------------------------------------------
# Username derivation
# ---------------------------------------------------------------------------

def derive_username(
    directory: IdentityDirectory,
    email: str,
    reservations: PendingNameReservation | None = None,
) -> str:
    """Return a login name free in the live directory for email.

    Tries the base, then base1, base2, ... Each candidate is checked against
    the directory (never cached: availability is live state) and against
    pending reservations.
    """
    base = email_to_username_base(email)
    if not base:
        raise ValueError(f"cannot derive a username from {email!r}")
    reservations = reservations or NoReservations()

    def taken(candidate: str) -> bool:
        return directory.username_exists(candidate) or reservations.is_reserved(candidate)

    if not taken(base):
        return base
    i = 1
    while taken(f"{base}{i}"):
        i += 1
    return f"{base}{i}"


# ---------------------------------------------------------------------------
# Secondary entities
# ---------------------------------------------------------------------------

def secondary_entities_for(entity: Entity | None, main_entity_id: int | None) -> list[str]:
    """Secondary affiliation an import into entity grants an account.

    A space that can be a main entity is only added when it is not already
    the account's main entity; a space that cannot be main is always added.
    """
    if entity is None:
        return []
    if not entity.can_be_main_entity or main_entity_id != entity.id:
        return [entity.name]
    return []
