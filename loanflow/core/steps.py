"""
Guided onboarding: one pure handler per step plus the engine that runs them.

A handler reads the session and the sanitized user text and returns a
Transition. It never performs I/O; any provider work is described as
ExternalCall items that the engine dispatches in order through the Action
Router. If every call succeeds the optional ``resolve`` callback picks the
next step from the envelopes; the first failure keeps the session where it is.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from loanflow.core import state_machine as sm
from loanflow.core.actions import (
    BANK_DOCUMENT_TYPES, KYC_DOCUMENT_TYPES, MANDATE_MAX_AMOUNT, eligible_funds, pledgeable_value, required_for_loan,
)
from loanflow.core.dispatcher import failure_envelope
from loanflow.errors import OnboardingError, user_message_for
from loanflow.observability.logging import log
from loanflow.settings import settings
from loanflow.store.ledger import ReferenceLedger, is_accepted, is_failed, is_terminal
from loanflow.store.models import (
    AGREEMENT, BANK_ACCOUNT, EMAIL, KFS, KYC, MANDATE, MF_PLEDGE, MOBILE, Session,
)
from loanflow.utils import validators as v
from loanflow.utils.time import iso_date_years_from

Envelopes = List[Dict[str, Any]]
Resolver = Callable[[Session, Envelopes], Tuple[str, str]]


@dataclass(frozen=True)
class ExternalCall:
    action: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    next_step: str
    message: str
    calls: Tuple[ExternalCall, ...] = ()
    resolve: Optional[Resolver] = None
    # Session fields set once the transition is accepted
    updates: Dict[str, Any] = field(default_factory=dict)
    # Input failed a local format/range check; counts as a failed attempt
    invalid: bool = False
    # Feed the same input to the next step (first message already carries contact details)
    replay: bool = False


@dataclass
class StepResult:
    step: str
    message: str
    ok: bool = True
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    actions: List[str] = field(default_factory=list)
    replay: bool = False


def _stay(session: Session, message: str, invalid: bool = False) -> Transition:
    return Transition(session.currentStep, message, invalid=invalid)


def _settled(session: Session, step: str) -> bool:
    """Accepted with a final status; nothing left to initiate or re-check."""
    entry = ReferenceLedger(session).get(step)
    return bool(entry and entry.referenceId and is_accepted(step, entry.status) and is_terminal(entry.status))


def _has_deviation(data: Dict[str, Any]) -> bool:
    if data.get("deviationDetails"):
        return True
    return (data.get("subStatus") or "").upper().endswith("_MISMATCH")


def _fmt_money(amount: float) -> str:
    return f"₹{amount:,.2f}"


CONTACT_PROMPT = "Please share your mobile number and email, for example: mobile: 9876543210, email: you@example.com"
BANK_PROMPT = (
    "Please share your bank details, for example: "
    "account: 123456789012, ifsc: HDFC0001234, bank: HDFC Bank, type: savings"
)
KYC_CONSENT_PROMPT = "Next we need to complete your KYC. Shall we start? (yes/no)"
YES_NO = "Please reply yes or no."


# Contact

def handle_init(session: Session, text: str) -> Transition:
    greeting = "Welcome! Let's set up your loan against mutual funds."
    if v.parse_contact(text) is not None:
        return Transition(sm.COLLECT_CONTACT, greeting, replay=True)
    return Transition(sm.COLLECT_CONTACT, f"{greeting} {CONTACT_PROMPT}")


def handle_collect_contact(session: Session, text: str) -> Transition:
    contact = v.parse_contact(text)
    if contact is None:
        return _stay(session, f"I couldn't read a valid mobile number and email. {CONTACT_PROMPT}", invalid=True)
    mobile, email = contact
    ledger = ReferenceLedger(session)
    calls = []
    if not session.opportunityId:
        calls.append(ExternalCall("create_lead", {"mobile": mobile, "email": email}))
    # A partially failed earlier attempt may already hold one of the two references
    if ledger.open_reference(MOBILE) is None and not ledger.is_accepted(MOBILE):
        calls.append(ExternalCall("create_mobile_verification_log", {"verifiedValue": mobile}))
    if ledger.open_reference(EMAIL) is None and not ledger.is_accepted(EMAIL):
        calls.append(ExternalCall("create_email_verification_log", {"verifiedValue": email}))
    return Transition(
        sm.VERIFY_CONTACT,
        "Thanks! We've started verifying your mobile number and email. Reply 'done' once you've completed both.",
        tuple(calls),
    )


def _resolve_contact(session: Session, envelopes: Envelopes) -> Tuple[str, str]:
    ledger = ReferenceLedger(session)
    if ledger.is_accepted(MOBILE) and ledger.is_accepted(EMAIL):
        return sm.ASK_MF_CONSENT, (
            "Your contact details are verified. Would you like to pledge your mutual funds "
            "to get a better loan limit? (yes/no)"
        )
    failed = [s for s in (MOBILE, EMAIL) if ledger.get(s) and is_failed(ledger.get(s).status)]
    if failed:
        return sm.COLLECT_CONTACT, f"Verification failed for {' and '.join(failed)}. {CONTACT_PROMPT}"
    pending = [s for s in (MOBILE, EMAIL) if not ledger.is_accepted(s)]
    return sm.VERIFY_CONTACT, f"We're still waiting for {' and '.join(pending)} verification. Reply 'done' once completed."


def handle_verify_contact(session: Session, text: str) -> Transition:
    ledger = ReferenceLedger(session)
    calls = tuple(
        ExternalCall("get_verification_log_status", {"verificationType": kind})
        for step, kind in ((MOBILE, "MOBILE"), (EMAIL, "EMAIL"))
        if not ledger.is_accepted(step)
    )
    return Transition(sm.VERIFY_CONTACT, "", calls, resolve=_resolve_contact)


# Mutual funds

def handle_ask_mf_consent(session: Session, text: str) -> Transition:
    answer = v.parse_consent(text)
    if answer is True:
        return Transition(sm.COLLECT_PAN, "Great. Please share your PAN (for example ABCDE1234F).")
    if answer is False:
        return Transition(sm.ASK_KYC_CONSENT, f"No problem. {KYC_CONSENT_PROMPT}")
    return _stay(session, YES_NO)


def handle_collect_pan(session: Session, text: str) -> Transition:
    pan = v.parse_pan(text)
    if pan is None:
        return _stay(session, "That doesn't look like a valid PAN. It should look like ABCDE1234F.", invalid=True)
    return Transition(
        sm.MF_FETCH_OTP,
        "We've sent an OTP to your registered mobile number. Please enter the 6-digit OTP.",
        (ExternalCall("send_otp_fetch_mf_portfolio", {"pan": pan, "provider": "MFC"}),),
    )


def portfolio_summary(session: Session) -> str:
    lines = []
    for h in session.portfolio:
        flag = "eligible" if h.get("availableForPledge") else "not eligible"
        lines.append(f"- {h.get('schemeName') or h.get('isin')}: {_fmt_money(h.get('currentValue') or 0)} ({flag})")
    if not lines:
        return "We couldn't find any mutual fund holdings."
    lines.append(f"Total pledgeable value: {_fmt_money(pledgeable_value(session))}")
    return "Your portfolio:\n" + "\n".join(lines)


def _resolve_portfolio(session: Session, envelopes: Envelopes) -> Tuple[str, str]:
    return sm.SHOW_MF_DETAILS, f"{portfolio_summary(session)}\nWould you like to pledge your eligible funds? (yes/no)"


def handle_mf_fetch_otp(session: Session, text: str) -> Transition:
    otp = v.parse_otp(text)
    if otp is None:
        return _stay(session, "Please enter the 6-digit OTP you received.", invalid=True)
    return Transition(
        sm.SHOW_MF_DETAILS, "",
        (ExternalCall("validate_otp_fetch_mf_portfolio", {"otp": otp}), ExternalCall("get_fetch_mf_details")),
        resolve=_resolve_portfolio,
    )


def handle_show_mf_details(session: Session, text: str) -> Transition:
    answer = v.parse_consent(text)
    if answer is None:
        return _stay(session, YES_NO)
    limit = pledgeable_value(session)
    if answer is False:
        return Transition(sm.ASK_KYC_CONSENT, f"Okay, we'll skip the pledge. {KYC_CONSENT_PROMPT}")
    if limit <= 0:
        return Transition(sm.ASK_KYC_CONSENT, f"None of your holdings can be pledged right now. {KYC_CONSENT_PROMPT}")
    return Transition(
        sm.COLLECT_PLEDGE_AMOUNT,
        f"You can pledge up to {_fmt_money(limit)}. How much would you like to pledge?",
    )


def handle_collect_pledge_amount(session: Session, text: str) -> Transition:
    amount = v.parse_amount(text)
    limit = pledgeable_value(session)
    if amount is None or amount <= 0 or amount > limit:
        return _stay(
            session,
            f"Please enter an amount greater than 0 and up to {_fmt_money(limit)}.",
            invalid=True,
        )
    funds = eligible_funds(session)
    return Transition(
        sm.CONFIRM_PLEDGE,
        f"You'd like to pledge {_fmt_money(amount)} across {len(funds)} eligible fund(s). Shall I proceed? (yes/no)",
        updates={"pledgeAmount": amount},
    )


def handle_confirm_pledge(session: Session, text: str) -> Transition:
    answer = v.parse_consent(text)
    if answer is None:
        return _stay(session, YES_NO)
    if answer is False:
        return Transition(sm.COLLECT_PLEDGE_AMOUNT, "No problem. How much would you like to pledge instead?")
    if ReferenceLedger(session).open_reference(MF_PLEDGE) is not None:
        return Transition(sm.MF_PLEDGE_OTP, "We've already sent an OTP for this pledge. Please enter the 6-digit OTP.")
    return Transition(
        sm.MF_PLEDGE_OTP,
        "We've sent an OTP to confirm the pledge. Please enter the 6-digit OTP.",
        (ExternalCall("send_otp_pledge_mf_portfolio", {"amount": session.pledgeAmount}),),
    )


def handle_mf_pledge_otp(session: Session, text: str) -> Transition:
    otp = v.parse_otp(text)
    if otp is None:
        return _stay(session, "Please enter the 6-digit OTP you received for the pledge.", invalid=True)
    return Transition(
        sm.ASK_KYC_CONSENT,
        f"Your funds are pledged. {KYC_CONSENT_PROMPT}",
        (ExternalCall("validate_otp_pledge_mf_portfolio", {"otp": otp}), ExternalCall("get_pledged_mf_details")),
    )


# KYC

def handle_ask_kyc_consent(session: Session, text: str) -> Transition:
    answer = v.parse_consent(text)
    if answer is True:
        return Transition(sm.INITIATE_KYC, "")
    if answer is False:
        return _stay(session, "KYC is required to continue with your loan. Reply yes whenever you're ready.")
    return _stay(session, YES_NO)


def _link_message(what: str, url: Optional[str]) -> str:
    if url:
        return f"Please complete your {what} here: {url}\nReply 'done' once finished."
    return f"Your {what} has been started. Reply 'done' once finished."


def _resolve_initiated(step: str, next_step: str, what: str) -> Resolver:
    def resolve(session: Session, envelopes: Envelopes) -> Tuple[str, str]:
        entry = ReferenceLedger(session).get(step)
        return next_step, _link_message(what, entry.webUrl if entry else None)
    return resolve


def handle_initiate_kyc(session: Session, text: str) -> Transition:
    if _settled(session, KYC):
        return Transition(sm.VERIFY_KYC, "", replay=True)
    entry = ReferenceLedger(session).open_reference(KYC)
    if entry is not None:
        return Transition(sm.VERIFY_KYC, _link_message("KYC", entry.webUrl))
    return Transition(sm.VERIFY_KYC, "", (ExternalCall("initiate_kyc"),), resolve=_resolve_initiated(KYC, sm.VERIFY_KYC, "KYC"))


def _resolve_verification(
    step: str,
    accepted: Tuple[str, str],
    retry: Tuple[str, str],
    deviation: Optional[Tuple[str, str]] = None,
    what: str = "",
) -> Resolver:
    def resolve(session: Session, envelopes: Envelopes) -> Tuple[str, str]:
        entry = ReferenceLedger(session).get(step)
        status = entry.status if entry else None
        data = (envelopes[-1].get("data") or {}) if envelopes else {}
        if is_accepted(step, status):
            return accepted
        if deviation is not None and _has_deviation(data):
            return deviation
        if is_failed(status):
            return retry
        return session.currentStep, f"Your {what} is still {str(status or 'pending').lower().replace('_', ' ')}. " + (
            _link_message(what, entry.webUrl if entry else None)
        )
    return resolve


def _document_prompt(kinds) -> str:
    return f"Please send one of {', '.join(kinds)} as an https link, for example: {kinds[0]} https://files.example.com/doc.pdf"


def handle_verify_kyc(session: Session, text: str) -> Transition:
    if _settled(session, KYC):
        if _settled(session, BANK_ACCOUNT):
            return Transition(sm.COLLECT_BANK_DETAILS, "Your KYC is already complete.", replay=True)
        return Transition(sm.COLLECT_BANK_DETAILS, f"Your KYC is already complete. {BANK_PROMPT}")
    return Transition(
        sm.VERIFY_KYC, "", (ExternalCall("get_kyc_status"),),
        resolve=_resolve_verification(
            KYC,
            accepted=(sm.COLLECT_BANK_DETAILS, f"Your KYC is complete. {BANK_PROMPT}"),
            retry=(sm.INITIATE_KYC, "Your KYC could not be completed. Let's start it again."),
            deviation=(sm.HANDLE_KYC_DEVIATION,
                       f"We found a mismatch in your KYC details. {_document_prompt(KYC_DOCUMENT_TYPES)}"),
            what="KYC",
        ),
    )


def handle_kyc_deviation(session: Session, text: str) -> Transition:
    doc = v.parse_document(text, KYC_DOCUMENT_TYPES)
    if doc is None:
        return _stay(session, _document_prompt(KYC_DOCUMENT_TYPES), invalid=True)
    return Transition(
        sm.VERIFY_KYC,
        "Thanks, your document has been submitted for review. Reply 'done' to check your KYC status.",
        (ExternalCall("handle_kyc_deviation", doc),),
    )


# Bank

def handle_collect_bank_details(session: Session, text: str) -> Transition:
    if _settled(session, BANK_ACCOUNT):
        return Transition(sm.VERIFY_BANK, "", replay=True)
    if ReferenceLedger(session).open_reference(BANK_ACCOUNT) is not None:
        return Transition(sm.VERIFY_BANK, "We're already verifying your account. Reply 'done' to check the status.")
    details = v.parse_bank_details(text)
    if details is None:
        return _stay(session, f"I couldn't read valid bank details. {BANK_PROMPT}", invalid=True)
    return Transition(
        sm.VERIFY_BANK,
        "We're verifying your account with a small deposit. Reply 'done' in a minute to check the status.",
        (ExternalCall("initiate_bank_verification", details),),
    )


def handle_verify_bank(session: Session, text: str) -> Transition:
    if _settled(session, BANK_ACCOUNT):
        return Transition(sm.SETUP_MANDATE, "Your bank account is already verified.")
    return Transition(
        sm.VERIFY_BANK, "", (ExternalCall("get_bank_verification_status"),),
        resolve=_resolve_verification(
            BANK_ACCOUNT,
            accepted=(sm.SETUP_MANDATE, "Your bank account is verified."),
            retry=(sm.COLLECT_BANK_DETAILS, f"We couldn't verify that account. {BANK_PROMPT}"),
            deviation=(sm.HANDLE_BANK_DEVIATION,
                       f"The name on your bank account doesn't match. {_document_prompt(BANK_DOCUMENT_TYPES)}"),
            what="bank verification",
        ),
    )


def handle_bank_deviation(session: Session, text: str) -> Transition:
    doc = v.parse_document(text, BANK_DOCUMENT_TYPES)
    if doc is None:
        return _stay(session, _document_prompt(BANK_DOCUMENT_TYPES), invalid=True)
    return Transition(
        sm.VERIFY_BANK,
        "Thanks, your document has been submitted for review. Reply 'done' to check your bank verification.",
        (ExternalCall("handle_bank_deviation", doc),),
    )


# Mandate, agreement, loan

def mandate_params(session: Session, today: Optional[date] = None) -> Dict[str, Any]:
    amount = session.pledgeAmount or settings.MANDATE_DEFAULT_AMOUNT
    today = today or date.today()
    return {
        "mandateType": settings.MANDATE_TYPE,
        "mandateAmount": min(float(amount), float(MANDATE_MAX_AMOUNT)),
        "startDate": today.isoformat(),
        "endDate": iso_date_years_from(settings.MANDATE_TENURE_YEARS),
    }


def handle_setup_mandate(session: Session, text: str) -> Transition:
    if _settled(session, MANDATE):
        return Transition(sm.VERIFY_MANDATE, "", replay=True)
    entry = ReferenceLedger(session).open_reference(MANDATE)
    if entry is not None:
        return Transition(sm.VERIFY_MANDATE, _link_message("mandate setup", entry.webUrl))
    return Transition(
        sm.VERIFY_MANDATE, "", (ExternalCall("setup_mandate", mandate_params(session)),),
        resolve=_resolve_initiated(MANDATE, sm.VERIFY_MANDATE, "mandate setup"),
    )


def handle_verify_mandate(session: Session, text: str) -> Transition:
    if _settled(session, MANDATE):
        return Transition(sm.SETUP_AGREEMENT, "Your repayment mandate is already active.")
    return Transition(
        sm.VERIFY_MANDATE, "", (ExternalCall("get_mandate_status"),),
        resolve=_resolve_verification(
            MANDATE,
            accepted=(sm.SETUP_AGREEMENT, "Your repayment mandate is active."),
            retry=(sm.SETUP_MANDATE, "The mandate registration didn't go through. Let's try again."),
            what="mandate setup",
        ),
    )


def _agreement_links(session: Session) -> str:
    ledger = ReferenceLedger(session)
    parts = []
    for step, label in ((AGREEMENT, "loan agreement"), (KFS, "key fact statement")):
        entry = ledger.get(step)
        if entry and entry.webUrl and not ledger.is_accepted(step):
            parts.append(f"{label}: {entry.webUrl}")
    links = ("\n" + "\n".join(parts)) if parts else ""
    return f"Please sign your loan documents.{links}\nReply 'done' once signed."


def handle_setup_agreement(session: Session, text: str) -> Transition:
    ledger = ReferenceLedger(session)
    if _settled(session, AGREEMENT) and _settled(session, KFS):
        return Transition(sm.VERIFY_AGREEMENT, "", replay=True)
    if ledger.open_reference(AGREEMENT) or ledger.open_reference(KFS):
        return Transition(sm.VERIFY_AGREEMENT, _agreement_links(session))
    return Transition(
        sm.VERIFY_AGREEMENT, "", (ExternalCall("setup_agreement_and_kfs"),),
        resolve=lambda s, envs: (sm.VERIFY_AGREEMENT, _agreement_links(s)),
    )


def _resolve_agreement(session: Session, envelopes: Envelopes) -> Tuple[str, str]:
    ledger = ReferenceLedger(session)
    if ledger.is_accepted(AGREEMENT) and ledger.is_accepted(KFS):
        return sm.CREATE_LOAN, "Your documents are signed."
    if any(is_failed(ledger.get(s).status) for s in (AGREEMENT, KFS) if ledger.get(s)):
        return sm.SETUP_AGREEMENT, "The signing session expired or failed. Let's generate your documents again."
    return sm.VERIFY_AGREEMENT, _agreement_links(session)


def handle_verify_agreement(session: Session, text: str) -> Transition:
    ledger = ReferenceLedger(session)
    calls = tuple(
        ExternalCall(action)
        for step, action in ((AGREEMENT, "get_agreement_status"), (KFS, "get_kfs_status"))
        if not ledger.is_accepted(step)
    )
    return Transition(sm.VERIFY_AGREEMENT, "", calls, resolve=_resolve_agreement)


LOAN_RECOVERY = {
    MOBILE: sm.VERIFY_CONTACT,
    EMAIL: sm.VERIFY_CONTACT,
    MF_PLEDGE: sm.CONFIRM_PLEDGE,
    KYC: sm.VERIFY_KYC,
    BANK_ACCOUNT: sm.VERIFY_BANK,
    MANDATE: sm.VERIFY_MANDATE,
    AGREEMENT: sm.VERIFY_AGREEMENT,
    KFS: sm.VERIFY_AGREEMENT,
}


def handle_create_loan(session: Session, text: str) -> Transition:
    missing = ReferenceLedger(session).missing_or_unaccepted(required_for_loan(session))
    if missing:
        # Earliest unfinished step in flow order
        target = min((LOAN_RECOVERY[s] for s in missing), key=sm.STEPS.index)
        log(event="loan_blocked", userId=session.userId, missing=missing, toStep=target)
        hint = "Reply yes to confirm your pledge again." if target == sm.CONFIRM_PLEDGE else "Reply 'done' to check the status."
        return Transition(
            target, f"We can't create your loan account yet: {', '.join(missing)} still needs to be completed. {hint}"
        )
    return Transition(
        sm.DONE, "", (ExternalCall("create_loan_account"),),
        resolve=lambda s, envs: (sm.DONE, f"Congratulations! Your loan account {s.loanAccountId} has been created."),
    )


def handle_done(session: Session, text: str) -> Transition:
    return Transition(sm.DONE, f"Your loan account {session.loanAccountId} is ready. Is there anything else I can help with?")


HANDLERS: Dict[str, Callable[[Session, str], Transition]] = {
    sm.INIT: handle_init,
    sm.COLLECT_CONTACT: handle_collect_contact,
    sm.VERIFY_CONTACT: handle_verify_contact,
    sm.ASK_MF_CONSENT: handle_ask_mf_consent,
    sm.COLLECT_PAN: handle_collect_pan,
    sm.MF_FETCH_OTP: handle_mf_fetch_otp,
    sm.SHOW_MF_DETAILS: handle_show_mf_details,
    sm.COLLECT_PLEDGE_AMOUNT: handle_collect_pledge_amount,
    sm.CONFIRM_PLEDGE: handle_confirm_pledge,
    sm.MF_PLEDGE_OTP: handle_mf_pledge_otp,
    sm.ASK_KYC_CONSENT: handle_ask_kyc_consent,
    sm.INITIATE_KYC: handle_initiate_kyc,
    sm.VERIFY_KYC: handle_verify_kyc,
    sm.HANDLE_KYC_DEVIATION: handle_kyc_deviation,
    sm.COLLECT_BANK_DETAILS: handle_collect_bank_details,
    sm.VERIFY_BANK: handle_verify_bank,
    sm.HANDLE_BANK_DEVIATION: handle_bank_deviation,
    sm.SETUP_MANDATE: handle_setup_mandate,
    sm.VERIFY_MANDATE: handle_verify_mandate,
    sm.SETUP_AGREEMENT: handle_setup_agreement,
    sm.VERIFY_AGREEMENT: handle_verify_agreement,
    sm.CREATE_LOAN: handle_create_loan,
    sm.DONE: handle_done,
}


class StepEngine:
    def __init__(self, router, handlers: Optional[Dict[str, Callable[[Session, str], Transition]]] = None):
        self.router = router
        self.handlers = handlers or HANDLERS

    async def advance(self, session: Session, text: str) -> StepResult:
        """
        Run the current step's handler on ``text``, then any auto steps it lands
        in. Messages from each hop are joined into one reply.
        """
        messages: List[str] = []
        actions: List[str] = []
        data: Dict[str, Any] = {}

        result = await self._run(session, text)
        for _ in range(len(sm.STEPS)):
            if result.message:
                messages.append(result.message)
            actions.extend(result.actions)
            data.update(result.data)
            moved = session.currentStep != result.step
            if not result.ok or not moved:
                break
            if session.currentStep in sm.AUTO_STEPS:
                result = await self._run(session, "")
            elif result.replay:
                result = await self._run(session, text)
            else:
                break

        return StepResult(
            step=session.currentStep,
            message="\n\n".join(messages),
            ok=result.ok,
            data=data,
            error=result.error,
            actions=actions,
        )

    async def _run(self, session: Session, text: str) -> StepResult:
        step = session.currentStep
        handler = self.handlers[step]
        t = handler(session, text)

        if t.invalid:
            self._count_failure(session, step)
            return StepResult(step=step, message=t.message)

        envelopes: Envelopes = []
        for call in t.calls:
            try:
                env = await self.router.dispatch(call.action, call.params, session)
            except OnboardingError as e:
                env = failure_envelope(e)
            envelopes.append(env)
            if not env.get("success"):
                return self._failed(session, step, call, env, [c.action for c in t.calls[:len(envelopes)]])

        next_step, message = t.next_step, t.message
        if t.resolve is not None:
            next_step, message = t.resolve(session, envelopes)
        self._apply(session, step, next_step, t.updates)
        if t.resolve is not None and next_step != step and not sm.is_forward(step, next_step):
            # The provider rejected or expired the work; going back is a failed attempt at this step
            self._count_failure(session, step)

        data: Dict[str, Any] = {}
        for env in envelopes:
            data.update(env.get("data") or {})
        return StepResult(step=step, message=message, data=data,
                          actions=[c.action for c in t.calls], replay=t.replay)

    def _apply(self, session: Session, step: str, next_step: str, updates: Dict[str, Any]) -> None:
        sm.assert_transition(step, next_step)
        for k, val in updates.items():
            setattr(session, k, val)
        if sm.is_forward(step, next_step):
            session.failedAttempts.pop(step, None)
        if next_step != step:
            log(event="step_transition", userId=session.userId, fromStep=step, toStep=next_step)
        session.currentStep = next_step

    @staticmethod
    def _count_failure(session: Session, step: str) -> int:
        session.failedAttempts[step] = session.failedAttempts.get(step, 0) + 1
        return session.failedAttempts[step]

    def _failed(self, session: Session, step: str, call: ExternalCall, env: Dict[str, Any], actions: List[str]) -> StepResult:
        attempts = self._count_failure(session, step)
        error = env.get("error") or {}
        log(event="step_call_failed", userId=session.userId, step=step, action=call.action,
            errorType=error.get("code"), error=(env.get("message") or "")[:300],
            references=ReferenceLedger(session).references(), failedAttempts=attempts)
        text = user_message_for(error.get("code") or "ExecutionError", env.get("message") or "")
        return StepResult(step=step, message=text, ok=False, error=error, actions=actions)
