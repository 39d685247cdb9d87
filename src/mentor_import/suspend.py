"""mentor_import.suspend

Suspension import: a one-column file of e-mails whose accounts must be
suspended, restricted to accounts attached to the selected entity and
holding no elevated platform role.

Lookups reuse the batch IdentitySnapshot (one query by e-mail, one by
username); an account matches a line when it holds the address as e-mail,
as login, or holds the address' derived login name.
"""

from __future__ import annotations

import logging
from typing import Iterable

from mentor_import.directory import AccountStore, Entity, fetch_snapshot
from mentor_import.normalize import (
    email_to_username_base,
    has_forbidden_email_chars,
    is_valid_email,
    normalize_email,
)
from mentor_import.parse import read_rows
from mentor_import.preview import PreviewResult
from mentor_import.shared import (
    ALREADY_SUSPENDED,
    INVALID_HEADER,
    MISSING_DATA,
    MSG_ALREADY_SUSPENDED,
    MSG_ELEVATED_ROLE,
    MSG_EMAIL_ALREADY_USED,
    MSG_INVALID_EMAIL,
    MSG_NOT_FOUND,
    MSG_WRONG_ENTITY,
    NO_VALID_ROWS,
    SUSPENDED,
    Diagnostic,
    FatalImportError,
    ImportCounters,
    Severity,
    failed_outcome,
)
from mentor_import.validate import ValidatedRow

log = logging.getLogger(__name__)


def preview_suspensions(
    data: bytes | str,
    delimiter_name: str,
    store: AccountStore,
    entity: Entity,
    non_elevated_roles: Iterable[str],
    max_data_rows: int = 5000,
) -> PreviewResult:
    parsed = read_rows(data, delimiter_name, max_data_rows)
    if parsed.header.cells != ["email"]:
        raise FatalImportError(
            INVALID_HEADER, 'invalid header: the expected header is "email"'
        )
    if not parsed.rows:
        raise FatalImportError(MISSING_DATA, "missing data: the file has no data rows")

    allowed_roles = set(non_elevated_roles)
    result = PreviewResult(mode="suspend_users", parsed=parsed, entity_id=entity.id)

    candidates: list[tuple[int, str]] = []
    for raw in parsed.rows:
        email = normalize_email(raw.cells[0]) if len(raw.cells) == 1 else None
        if not email or has_forbidden_email_chars(email) or not is_valid_email(email):
            result.diagnostics.append(Diagnostic(raw.line_number, Severity.ERROR, MSG_INVALID_EMAIL))
            continue
        candidates.append((raw.line_number, email))

    snapshot = fetch_snapshot(store, [email for _, email in candidates])

    for line, email in candidates:
        def reject(message: str) -> None:
            result.diagnostics.append(Diagnostic(line, Severity.ERROR, message))

        accounts = snapshot.claimants_with_derived_username(email)
        if not accounts:
            reject(MSG_NOT_FOUND)
            continue
        if len(accounts) > 1:
            reject(MSG_EMAIL_ALREADY_USED)
            continue
        account = accounts[0]
        if account.suspended:
            reject(MSG_ALREADY_SUSPENDED)
            continue
        main = store.get_main_entity(account.id)
        if main is None or main.id != entity.id:
            reject(MSG_WRONG_ENTITY.format(entity=entity.name))
            continue
        highest = store.get_highest_role(account.id)
        if highest and highest not in allowed_roles:
            reject(MSG_ELEVATED_ROLE)
            continue

        result.accepted.append(ValidatedRow(line_number=line, email=email, lastname="", firstname=""))
        result.valid_for_suspension += 1

    result.diagnostics.sort(key=lambda d: d.line)
    if not result.accepted:
        raise FatalImportError(
            NO_VALID_ROWS,
            "no valid rows: every line of the file was rejected",
            diagnostics=result.diagnostics,
        )
    return result


def commit_suspensions(
    store: AccountStore,
    rows: list[ValidatedRow],
    counters: ImportCounters,
    run_id: str = "",
) -> dict[int, str]:
    outcomes: dict[int, str] = {}
    for row in rows:
        try:
            with store.row_scope(f"suspend_{row.line_number}"):
                account = store.get_by_email(row.email)
                if account is None:
                    by_login = store.find_by_usernames(
                        {row.email, email_to_username_base(row.email) or row.email}
                    )
                    account = by_login[0] if len(by_login) == 1 else None
                if account is None:
                    outcomes[row.line_number] = failed_outcome(MSG_NOT_FOUND)
                    continue
                if account.suspended:
                    outcomes[row.line_number] = ALREADY_SUSPENDED
                    continue
                store.suspend(account.id)
                counters.accounts_suspended += 1
                outcomes[row.line_number] = SUSPENDED
        except Exception as exc:  # noqa: BLE001
            log.warning("line %s (%s): suspension failed: %s", row.line_number, row.email, exc)
            counters.commit_errors += 1
            counters.warnings.append(f"[{run_id}] line {row.line_number} {type(exc).__name__}: {exc}")
            outcomes[row.line_number] = failed_outcome(str(exc))
    return outcomes
