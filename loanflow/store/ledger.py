"""
Reference-ID Ledger.

Keeps one record per pipeline step inside ``Session.referenceLedger``. A step
may hold at most one open (non-terminal) reference; a new initiation while one
is open raises ``ConflictError``. Records are only replaced by that step's own
initiation, status refresh or deviation resolution.
"""
from typing import Any, Dict, Iterable, List, Optional

from loanflow.errors import ConflictError
from loanflow.observability.logging import log
from loanflow.store.models import BANK_ACCOUNT, KYC, MF_FETCH, MF_PLEDGE, LedgerEntry, Session
from loanflow.utils.time import now_ms

APPROVED = "APPROVED"
PENDING = "PENDING"
PENDING_CHECKER_APPROVAL = "PENDING_CHECKER_APPROVAL"
SUCCESS = "SUCCESS"

TERMINAL_STATUSES = {APPROVED, SUCCESS, "REJECTED", "FAILED", "EXPIRED"}
FAILED_STATUSES = {"REJECTED", "FAILED", "EXPIRED"}

# Steps whose deviation review counts as accepted while the checker decides
CHECKER_APPROVAL_ACCEPTED = {KYC, BANK_ACCOUNT}

# The portfolio fetch and pledge services report a validated OTP as SUCCESS
SUCCESS_ACCEPTED = {MF_FETCH, MF_PLEDGE}


def is_terminal(status: Optional[str]) -> bool:
    return (status or "").upper() in TERMINAL_STATUSES


def is_accepted(step: str, status: Optional[str]) -> bool:
    s = (status or "").upper()
    if s == APPROVED:
        return True
    if s == SUCCESS:
        return step in SUCCESS_ACCEPTED
    return s == PENDING_CHECKER_APPROVAL and step in CHECKER_APPROVAL_ACCEPTED


def is_failed(status: Optional[str]) -> bool:
    return (status or "").upper() in FAILED_STATUSES


class ReferenceLedger:
    """View over one session's ledger map."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def entries(self) -> Dict[str, LedgerEntry]:
        return self._session.referenceLedger

    def get(self, step: str) -> Optional[LedgerEntry]:
        return self.entries.get(step)

    def reference(self, step: str) -> Optional[str]:
        entry = self.get(step)
        return entry.referenceId if entry else None

    def open_reference(self, step: str) -> Optional[LedgerEntry]:
        entry = self.get(step)
        if entry and entry.referenceId and not is_terminal(entry.status):
            return entry
        return None

    def ensure_can_initiate(self, step: str) -> None:
        entry = self.open_reference(step)
        if entry is not None:
            raise ConflictError(step, entry.referenceId, entry.status)

    def record_initiation(
        self,
        step: str,
        reference_id: str,
        web_url: Optional[str] = None,
        status: Optional[str] = None,
        sub_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        self.ensure_can_initiate(step)
        entry = LedgerEntry(
            referenceId=reference_id,
            status=(status or PENDING).upper(),
            subStatus=sub_status,
            webUrl=web_url,
            details=dict(details or {}),
            updatedAtMs=now_ms(),
        )
        self.entries[step] = entry
        log(event="ledger_initiated", userId=self._session.userId, step=step,
            referenceId=reference_id, status=entry.status)
        return entry

    def record_status(
        self,
        step: str,
        status: str,
        sub_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        web_url: Optional[str] = None,
    ) -> LedgerEntry:
        entry = self.get(step)
        if entry is None or not entry.referenceId:
            # Status for a step that was never initiated is a caller bug
            raise KeyError(f"No reference recorded for step {step}")
        entry.status = (status or entry.status or PENDING).upper()
        entry.subStatus = sub_status
        if details:
            entry.details.update(details)
        if web_url:
            entry.webUrl = web_url
        entry.updatedAtMs = now_ms()
        log(event="ledger_status", userId=self._session.userId, step=step,
            referenceId=entry.referenceId, status=entry.status, subStatus=sub_status)
        return entry

    def is_accepted(self, step: str) -> bool:
        entry = self.get(step)
        return bool(entry and entry.referenceId and is_accepted(step, entry.status))

    def missing_or_unaccepted(self, steps: Iterable[str]) -> List[str]:
        return [s for s in steps if not self.is_accepted(s)]

    def references(self) -> Dict[str, Optional[str]]:
        return {k: v.referenceId for k, v in self.entries.items()}
