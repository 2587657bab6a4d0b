from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Ledger step names
MOBILE = "mobile"
EMAIL = "email"
MF_FETCH = "mfFetch"
MF_PLEDGE = "mfPledge"
KYC = "kyc"
BANK_ACCOUNT = "bankAccount"
MANDATE = "mandate"
AGREEMENT = "agreement"
KFS = "kfs"
LOAN_ACCOUNT = "loanAccount"

LEDGER_STEPS = (MOBILE, EMAIL, MF_FETCH, MF_PLEDGE, KYC, BANK_ACCOUNT, MANDATE, AGREEMENT, KFS, LOAN_ACCOUNT)

# Message telemetry states
PROCESSING = "PROCESSING"
SENT = "SENT"
DELIVERED = "DELIVERED"
ERROR = "ERROR"


@dataclass
class UserInfo:
    mobile: Optional[str] = None
    email: Optional[str] = None
    pan: Optional[str] = None
    name: Optional[str] = None


@dataclass
class LedgerEntry:
    referenceId: Optional[str] = None
    status: Optional[str] = None
    subStatus: Optional[str] = None
    webUrl: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    updatedAtMs: int = 0


@dataclass
class MessageStatus:
    lastMessageId: Optional[str] = None
    status: Optional[str] = None
    functionName: Optional[str] = None
    timestampMs: int = 0


@dataclass
class Session:
    userId: str = ""
    opportunityId: Optional[str] = None

    # Step machine position (see loanflow.core.state_machine)
    currentStep: str = "INIT"

    userInfo: UserInfo = field(default_factory=UserInfo)
    referenceLedger: Dict[str, LedgerEntry] = field(default_factory=dict)

    # Append-only: {"role", "content", "timestamp"}
    conversationHistory: List[dict] = field(default_factory=list)

    failedAttempts: Dict[str, int] = field(default_factory=dict)

    lastInteractionTime: Optional[float] = None
    sessionDuration: float = 0.0

    messageStatus: MessageStatus = field(default_factory=MessageStatus)

    # Mutual-fund working set
    portfolio: List[dict] = field(default_factory=list)
    pledgeAmount: Optional[float] = None
    pledgeTaken: bool = False

    # Bank account details as submitted for penny-drop
    bankDetails: Dict[str, Any] = field(default_factory=dict)

    loanAccountId: Optional[str] = None

    def append_turn(self, role: str, content: str, timestamp_ms: int) -> None:
        self.conversationHistory.append({"role": role, "content": content, "timestamp": timestamp_ms})

    def user_turns(self) -> List[str]:
        return [t.get("content") or "" for t in self.conversationHistory if t.get("role") == "user"]
