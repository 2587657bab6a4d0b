# Onboarding step constants and the transition graph.
# Handlers live in loanflow.core.steps; this module is data only.

from typing import Dict, FrozenSet

from loanflow.errors import InvalidTransitionError

INIT = "INIT"

# Contact: lead creation, mobile + email verification logs
COLLECT_CONTACT = "COLLECT_CONTACT"
VERIFY_CONTACT = "VERIFY_CONTACT"

# Optional mutual-fund branch
ASK_MF_CONSENT = "ASK_MF_CONSENT"
COLLECT_PAN = "COLLECT_PAN"
MF_FETCH_OTP = "MF_FETCH_OTP"
SHOW_MF_DETAILS = "SHOW_MF_DETAILS"
COLLECT_PLEDGE_AMOUNT = "COLLECT_PLEDGE_AMOUNT"
CONFIRM_PLEDGE = "CONFIRM_PLEDGE"
MF_PLEDGE_OTP = "MF_PLEDGE_OTP"

# KYC
ASK_KYC_CONSENT = "ASK_KYC_CONSENT"
INITIATE_KYC = "INITIATE_KYC"
VERIFY_KYC = "VERIFY_KYC"
HANDLE_KYC_DEVIATION = "HANDLE_KYC_DEVIATION"

# Bank account (penny drop)
COLLECT_BANK_DETAILS = "COLLECT_BANK_DETAILS"
VERIFY_BANK = "VERIFY_BANK"
HANDLE_BANK_DEVIATION = "HANDLE_BANK_DEVIATION"

# Mandate, agreement + KFS, loan account
SETUP_MANDATE = "SETUP_MANDATE"
VERIFY_MANDATE = "VERIFY_MANDATE"
SETUP_AGREEMENT = "SETUP_AGREEMENT"
VERIFY_AGREEMENT = "VERIFY_AGREEMENT"
CREATE_LOAN = "CREATE_LOAN"

DONE = "DONE"

STEPS = (
    INIT, COLLECT_CONTACT, VERIFY_CONTACT,
    ASK_MF_CONSENT, COLLECT_PAN, MF_FETCH_OTP, SHOW_MF_DETAILS, COLLECT_PLEDGE_AMOUNT, CONFIRM_PLEDGE, MF_PLEDGE_OTP,
    ASK_KYC_CONSENT, INITIATE_KYC, VERIFY_KYC, HANDLE_KYC_DEVIATION,
    COLLECT_BANK_DETAILS, VERIFY_BANK, HANDLE_BANK_DEVIATION,
    SETUP_MANDATE, VERIFY_MANDATE, SETUP_AGREEMENT, VERIFY_AGREEMENT, CREATE_LOAN,
    DONE,
)

# Every path from INIT to DONE passes through these
MANDATORY_STEPS = (
    COLLECT_CONTACT, VERIFY_CONTACT, ASK_KYC_CONSENT, INITIATE_KYC, VERIFY_KYC,
    COLLECT_BANK_DETAILS, VERIFY_BANK, SETUP_MANDATE, VERIFY_MANDATE,
    SETUP_AGREEMENT, VERIFY_AGREEMENT, CREATE_LOAN,
)

# Action steps that need no user input; run as soon as they are entered
AUTO_STEPS = frozenset({INITIATE_KYC, SETUP_MANDATE, SETUP_AGREEMENT, CREATE_LOAN})


def _edges(step: str, *targets: str) -> FrozenSet[str]:
    # Staying put (invalid input, failed call, still pending) is always allowed
    return frozenset((step,) + targets)


# Where a blocked loan submission sends the session to finish the missing work
LOAN_RECOVERY_STEPS = frozenset({
    VERIFY_CONTACT, CONFIRM_PLEDGE, VERIFY_KYC, VERIFY_BANK, VERIFY_MANDATE, VERIFY_AGREEMENT,
})

# Edges that send the session back to redo earlier work
RETREATS: Dict[str, FrozenSet[str]] = {
    VERIFY_CONTACT: frozenset({COLLECT_CONTACT}),
    CONFIRM_PLEDGE: frozenset({COLLECT_PLEDGE_AMOUNT}),
    VERIFY_KYC: frozenset({INITIATE_KYC}),
    VERIFY_BANK: frozenset({COLLECT_BANK_DETAILS}),
    VERIFY_MANDATE: frozenset({SETUP_MANDATE}),
    VERIFY_AGREEMENT: frozenset({SETUP_AGREEMENT}),
    CREATE_LOAN: LOAN_RECOVERY_STEPS,
}


TRANSITIONS: Dict[str, FrozenSet[str]] = {
    INIT: frozenset({COLLECT_CONTACT}),
    COLLECT_CONTACT: _edges(COLLECT_CONTACT, VERIFY_CONTACT),
    VERIFY_CONTACT: _edges(VERIFY_CONTACT, ASK_MF_CONSENT, COLLECT_CONTACT),

    ASK_MF_CONSENT: _edges(ASK_MF_CONSENT, COLLECT_PAN, ASK_KYC_CONSENT),
    COLLECT_PAN: _edges(COLLECT_PAN, MF_FETCH_OTP),
    MF_FETCH_OTP: _edges(MF_FETCH_OTP, SHOW_MF_DETAILS),
    SHOW_MF_DETAILS: _edges(SHOW_MF_DETAILS, COLLECT_PLEDGE_AMOUNT, ASK_KYC_CONSENT),
    COLLECT_PLEDGE_AMOUNT: _edges(COLLECT_PLEDGE_AMOUNT, CONFIRM_PLEDGE),
    CONFIRM_PLEDGE: _edges(CONFIRM_PLEDGE, MF_PLEDGE_OTP, COLLECT_PLEDGE_AMOUNT),
    MF_PLEDGE_OTP: _edges(MF_PLEDGE_OTP, ASK_KYC_CONSENT),

    ASK_KYC_CONSENT: _edges(ASK_KYC_CONSENT, INITIATE_KYC),
    INITIATE_KYC: _edges(INITIATE_KYC, VERIFY_KYC),
    VERIFY_KYC: _edges(VERIFY_KYC, COLLECT_BANK_DETAILS, HANDLE_KYC_DEVIATION, INITIATE_KYC),
    HANDLE_KYC_DEVIATION: _edges(HANDLE_KYC_DEVIATION, VERIFY_KYC),

    COLLECT_BANK_DETAILS: _edges(COLLECT_BANK_DETAILS, VERIFY_BANK),
    VERIFY_BANK: _edges(VERIFY_BANK, SETUP_MANDATE, HANDLE_BANK_DEVIATION, COLLECT_BANK_DETAILS),
    HANDLE_BANK_DEVIATION: _edges(HANDLE_BANK_DEVIATION, VERIFY_BANK),

    SETUP_MANDATE: _edges(SETUP_MANDATE, VERIFY_MANDATE),
    VERIFY_MANDATE: _edges(VERIFY_MANDATE, SETUP_AGREEMENT, SETUP_MANDATE),
    SETUP_AGREEMENT: _edges(SETUP_AGREEMENT, VERIFY_AGREEMENT),
    VERIFY_AGREEMENT: _edges(VERIFY_AGREEMENT, CREATE_LOAN, SETUP_AGREEMENT),
    CREATE_LOAN: _edges(CREATE_LOAN, DONE, *sorted(LOAN_RECOVERY_STEPS)),

    DONE: frozenset({DONE}),
}


def can_transition(source: str, target: str) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


def assert_transition(source: str, target: str) -> None:
    if not can_transition(source, target):
        raise InvalidTransitionError(source, target)


def is_forward(source: str, target: str) -> bool:
    """True when a move leaves ``source`` without going back to redo earlier work."""
    return target != source and target not in RETREATS.get(source, frozenset())
