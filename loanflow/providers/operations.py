"""
Provider operation table: action name -> HTTP method and path template.

Path placeholders are filled from (and removed from) the request params; the
rest of the params become the JSON body for POST/PUT.
"""
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote


@dataclass(frozen=True)
class Operation:
    method: str
    path: str
    long_running: bool = False

    def placeholders(self) -> Tuple[str, ...]:
        return tuple(f for _, f, _, _ in string.Formatter().parse(self.path) if f)

    def render(self, params: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        params = dict(params or {})
        values = {}
        for name in self.placeholders():
            value = params.pop(name, None)
            if value in (None, ""):
                raise KeyError(f"Missing path parameter {name} for {self.path}")
            values[name] = quote(str(value), safe="")
        path = self.path.format(**values)
        body = params if self.method in ("POST", "PUT") else None
        return path, body


OPERATIONS: Dict[str, Operation] = {
    "create_lead": Operation("POST", "/lead"),

    "create_mobile_verification_log": Operation("POST", "/utility/verification/log"),
    "create_email_verification_log": Operation("POST", "/utility/verification/log"),
    "get_verification_log_status": Operation("GET", "/utility/verification/log/{utilityReferenceId}"),

    "send_otp_fetch_mf_portfolio": Operation("POST", "/mutualFund/fetch/trigger-otp"),
    "validate_otp_fetch_mf_portfolio": Operation("POST", "/mutualFund/fetch/{fetchRequestId}/validate-otp"),
    "get_fetch_mf_details": Operation("GET", "/mutualFund/fetch/{fetchRequestId}", long_running=True),

    "send_otp_pledge_mf_portfolio": Operation("POST", "/mutualFund/pledge/trigger-otp"),
    "validate_otp_pledge_mf_portfolio": Operation("POST", "/mutualFund/pledge/{pledgeRequestId}/verify-otp"),
    "get_pledged_mf_details": Operation("GET", "/mutualFund/pledge/{pledgeRequestId}"),

    "initiate_kyc": Operation("POST", "/utility/kyc/init"),
    "get_kyc_status": Operation("GET", "/utility/kyc/{utilityReferenceId}"),
    "handle_kyc_deviation": Operation("POST", "/utility/review", long_running=True),

    "initiate_bank_verification": Operation("POST", "/utility/bank/verification/init"),
    "get_bank_verification_status": Operation("GET", "/utility/bank/verification/{utilityReferenceId}"),
    "handle_bank_deviation": Operation("POST", "/utility/review", long_running=True),

    "setup_mandate": Operation("POST", "/opportunities/{opportunityId}/mandates"),
    "get_mandate_status": Operation("GET", "/utility/mandate/{utilityReferenceId}"),

    "setup_agreement_and_kfs": Operation("POST", "/opportunity/{opportunityId}/loan/contract", long_running=True),
    "get_agreement_status": Operation("GET", "/utility/agreement/{utilityReferenceId}"),
    "get_kfs_status": Operation("GET", "/utility/kfs/{utilityReferenceId}"),

    "create_loan_account": Operation("POST", "/opportunity/{opportunityId}/submit", long_running=True),
}
