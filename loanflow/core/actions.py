"""
Action catalog.

Each action names exactly one provider operation and declares:
- the pydantic model its params must satisfy,
- the retry operation class of the call site,
- what it does to the Reference-ID Ledger (initiate / status / deviation),
- an optional fold that copies result fields into the session.

The same models produce the JSON schemas handed to the intent resolver.
"""
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from loanflow.core.retry import API, UPLOAD, VERIFICATION
from loanflow.errors import PreconditionError, ValidationError
from loanflow.providers.client import ProviderResult
from loanflow.settings import settings
from loanflow.store.ledger import SUCCESS, ReferenceLedger, is_failed
from loanflow.store.models import (
    AGREEMENT, BANK_ACCOUNT, EMAIL, KFS, KYC, LOAN_ACCOUNT, MANDATE, MF_FETCH, MF_PLEDGE, MOBILE, Session,
)
from loanflow.utils import validators as v
from loanflow.utils.time import now_ms

# Ledger effects
INITIATE = "initiate"
STATUS = "status"
DEVIATION = "deviation"

KYC_DOCUMENT_TYPES = ("DRIVING_LICENSE", "ELECTION_CARD", "PASSPORT", "OTHER_DOCUMENT")
BANK_DOCUMENT_TYPES = ("CANCELLED_CHEQUE", "PASSBOOK", "BANK_STATEMENT")
DEVIATION_REASONS = ("NAME_MISMATCH", "PHOTO_MISMATCH", "ADDRESS_MISMATCH", "DOCUMENT_UNCLEAR", "OTHER")

LOAN_REQUIRED_STEPS = (MOBILE, EMAIL, KYC, BANK_ACCOUNT, MANDATE, AGREEMENT, KFS)

SUBMITTED_DATA_TYPES = {
    MOBILE: "MOBILE_VERIFICATION_LOG",
    EMAIL: "EMAIL_VERIFICATION_LOG",
    KYC: "KYC",
    BANK_ACCOUNT: "BANK_ACCOUNT",
    MANDATE: "MANDATE",
    AGREEMENT: "AGREEMENT",
    KFS: "KFS",
    MF_PLEDGE: "MF_PLEDGE",
}

MANDATE_MAX_AMOUNT = 10_000_000


def _default_redirect() -> str:
    return settings.REDIRECT_URL


class ActionParams(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class _Opportunity(ActionParams):
    opportunityId: str = Field(min_length=1, description="Opportunity (loan application) id")


class _Reference(ActionParams):
    utilityReferenceId: str = Field(min_length=1, description="Reference id returned by the initiation call")


# Contact

class CreateLeadParams(ActionParams):
    mobile: str = Field(pattern=v.MOBILE_RE.pattern, description="10-digit mobile number")
    email: str = Field(pattern=v.EMAIL_RE.pattern, description="Email address")


class MobileVerificationLogParams(_Opportunity):
    verificationType: ClassVar[str] = "MOBILE"

    verifiedValue: str = Field(pattern=v.MOBILE_RE.pattern, description="Mobile number being verified")
    consent: str = Field(default="Customer consented to contact verification")
    verificationMethod: Literal["OTP", "LINK"] = "OTP"

    def to_payload(self) -> Dict[str, Any]:
        ts = now_ms()
        return {
            "customerConsent": {"approvalTimestamp": ts, "consent": self.consent, "consentStatus": "APPROVED"},
            "opportunityId": self.opportunityId,
            "verificationMethod": self.verificationMethod,
            "verificationStatus": "PENDING",
            "verificationTimestamp": ts,
            "verificationType": self.verificationType,
            "verifiedValue": self.verifiedValue,
        }


class EmailVerificationLogParams(MobileVerificationLogParams):
    verificationType: ClassVar[str] = "EMAIL"

    verifiedValue: str = Field(pattern=v.EMAIL_RE.pattern, description="Email address being verified")


class VerificationLogStatusParams(_Reference):
    verificationType: Literal["MOBILE", "EMAIL"]


# Mutual funds

class SendOtpFetchMfParams(ActionParams):
    pan: str = Field(pattern=v.PAN_RE.pattern, description="PAN, e.g. ABCDE1234F")
    mobileNumber: str = Field(pattern=v.MOBILE_RE.pattern)
    provider: Literal["MFC"] = "MFC"

    @field_validator("pan", mode="before")
    @classmethod
    def _upper_pan(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class ValidateOtpFetchMfParams(ActionParams):
    fetchRequestId: str = Field(min_length=1)
    otp: str = Field(pattern=v.OTP_RE.pattern, description="6-digit OTP")


class FetchMfDetailsParams(ActionParams):
    fetchRequestId: str = Field(min_length=1)


class PledgeFund(BaseModel):
    isin: str = Field(min_length=1)
    folioNumber: str = Field(min_length=1)
    provider: Literal["CAMS", "KFIN"] = "CAMS"
    units: float = Field(gt=0)
    modeOfHolding: Literal["SI", "JO", "AS"] = "SI"


class SendOtpPledgeMfParams(_Opportunity):
    mobileNumber: str = Field(pattern=v.MOBILE_RE.pattern)
    provider: Literal["CAMS", "KFIN"] = "CAMS"
    funds: List[PledgeFund] = Field(min_length=1)
    amount: Optional[float] = Field(default=None, gt=0, description="Amount the customer wants to pledge")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"amount"})


class ValidateOtpPledgeMfParams(ActionParams):
    pledgeRequestId: str = Field(min_length=1)
    otp: str = Field(pattern=v.OTP_RE.pattern)


class PledgedMfDetailsParams(ActionParams):
    pledgeRequestId: str = Field(min_length=1)


# KYC and bank

class InitiateKycParams(_Opportunity):
    redirectionUrl: str = Field(default_factory=_default_redirect, pattern=v.HTTPS_URL_RE.pattern)


class KycStatusParams(_Reference):
    pass


class KycDeviationParams(_Reference):
    utilityType: ClassVar[str] = "KYC"

    documentType: Literal["DRIVING_LICENSE", "ELECTION_CARD", "PASSPORT", "OTHER_DOCUMENT"]
    fileUrl: str = Field(pattern=v.HTTPS_URL_RE.pattern, description="https link to the document")
    deviationReason: Literal["NAME_MISMATCH", "PHOTO_MISMATCH", "ADDRESS_MISMATCH", "DOCUMENT_UNCLEAR", "OTHER"] = "OTHER"
    remarks: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "utilityReferenceId": self.utilityReferenceId,
            "utilityType": self.utilityType,
            "status": "PENDING_CHECKER_APPROVAL",
            "submittedDocuments": [{"documentType": self.documentType, "fileUrl": self.fileUrl}],
            "deviationReason": self.deviationReason,
            "remarks": self.remarks or f"{self.documentType} submitted for {self.deviationReason}",
        }


class BankDeviationParams(KycDeviationParams):
    utilityType: ClassVar[str] = "BANK_ACCOUNT"

    documentType: Literal["CANCELLED_CHEQUE", "PASSBOOK", "BANK_STATEMENT"]


class InitiateBankVerificationParams(_Opportunity):
    bankAccountNumber: str = Field(pattern=v.ACCOUNT_RE.pattern, description="9 to 18 digit account number")
    ifscCode: str = Field(pattern=v.IFSC_RE.pattern, description="IFSC, e.g. HDFC0001234")
    bankName: Optional[str] = None
    bankAccountType: Literal["SAVINGS_ACCOUNT", "CURRENT_ACCOUNT"] = "SAVINGS_ACCOUNT"

    @field_validator("ifscCode", mode="before")
    @classmethod
    def _upper_ifsc(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class BankStatusParams(_Reference):
    pass


# Mandate, agreement, loan

class SetupMandateParams(_Opportunity):
    bankAccountVerificationId: str = Field(min_length=1)
    mandateType: Literal["API_MANDATE", "PHYSICAL_MANDATE", "UPI_MANDATE", "ESIGN_MANDATE"] = "API_MANDATE"
    mandateAmount: float = Field(gt=0, le=MANDATE_MAX_AMOUNT)
    endDate: str = Field(description="YYYY-MM-DD, 5 to 40 years from today")
    startDate: Optional[str] = Field(default=None, pattern=v.ISO_DATE_RE.pattern)
    mandateFrequency: Literal["DAILY", "WEEKLY", "MONTHLY", "ADHOC"] = "ADHOC"
    redirectionUrl: str = Field(default_factory=_default_redirect, pattern=v.HTTPS_URL_RE.pattern)

    @field_validator("endDate")
    @classmethod
    def _end_date_window(cls, value):
        try:
            return v.require_years_ahead(value, 5, 40)
        except ValidationError as e:
            raise ValueError(e.message) from None


class MandateStatusParams(_Reference):
    pass


class SetupAgreementParams(_Opportunity):
    redirectionUrl: str = Field(default_factory=_default_redirect, pattern=v.HTTPS_URL_RE.pattern)


class AgreementStatusParams(_Reference):
    pass


class KfsStatusParams(_Reference):
    pass


class SubmittedData(BaseModel):
    dataType: str = Field(min_length=1)
    utilityReferenceId: str = Field(min_length=1)


class CreateLoanAccountParams(_Opportunity):
    submittedDataList: List[SubmittedData] = Field(min_length=1)


# Portfolio helpers

def normalize_holdings(details: Dict[str, Any]) -> List[dict]:
    raw = details.get("funds") or details.get("holdings") or (details.get("portfolioDetails") or {}).get("funds") or []
    out = []
    for h in raw:
        if not isinstance(h, dict):
            continue
        out.append({
            "schemeName": h.get("schemeName") or h.get("name") or "",
            "isin": h.get("isin") or "",
            "folioNumber": str(h.get("folioNumber") or ""),
            "provider": (h.get("provider") or "CAMS").upper(),
            "units": float(h.get("units") or 0),
            "currentValue": float(h.get("currentValue") or h.get("value") or 0),
            "availableForPledge": bool(h.get("availableForPledge", h.get("isPledgeable", False))),
        })
    return out


def pledgeable_value(session: Session) -> float:
    return round(sum(h.get("currentValue") or 0 for h in session.portfolio if h.get("availableForPledge")), 2)


def eligible_funds(session: Session) -> List[dict]:
    funds = []
    for h in session.portfolio:
        if not h.get("availableForPledge"):
            continue
        provider = h.get("provider") if h.get("provider") in ("CAMS", "KFIN") else "CAMS"
        funds.append({
            "isin": h.get("isin"),
            "folioNumber": h.get("folioNumber"),
            "provider": provider,
            "units": h.get("units"),
            "modeOfHolding": "SI",
        })
    return funds


def required_for_loan(session: Session) -> Tuple[str, ...]:
    return LOAN_REQUIRED_STEPS + ((MF_PLEDGE,) if session.pledgeTaken else ())


def submitted_data_list(session: Session) -> List[dict]:
    ledger = ReferenceLedger(session)
    return [
        {"dataType": SUBMITTED_DATA_TYPES[step], "utilityReferenceId": ledger.reference(step)}
        for step in required_for_loan(session)
        if ledger.reference(step)
    ]


# Local guards (raise before any provider call)

def _loan_precondition(session: Session) -> None:
    missing = ReferenceLedger(session).missing_or_unaccepted(required_for_loan(session))
    if missing:
        raise PreconditionError(missing)


def _pledge_guard(session: Session, params: SendOtpPledgeMfParams) -> None:
    limit = pledgeable_value(session)
    if params.amount is not None and params.amount > limit:
        raise ValidationError(
            f"Pledge amount must be more than 0 and at most {limit:,.2f}", field="amount"
        )


def _refused(result: ProviderResult) -> bool:
    return is_failed(result.status)


def _not_validated(result: ProviderResult) -> bool:
    return (result.status or "").upper() != SUCCESS


# Folds

def _fold_lead(session: Session, params: CreateLeadParams, result: ProviderResult) -> None:
    session.opportunityId = result.details.get("opportunityId") or result.referenceId or session.opportunityId
    session.userInfo.mobile = params.mobile
    session.userInfo.email = params.email


def _fold_mobile(session: Session, params, result: ProviderResult) -> None:
    session.userInfo.mobile = params.verifiedValue


def _fold_email(session: Session, params, result: ProviderResult) -> None:
    session.userInfo.email = params.verifiedValue


def _fold_mf_otp(session: Session, params: SendOtpFetchMfParams, result: ProviderResult) -> None:
    session.userInfo.pan = params.pan
    session.userInfo.mobile = session.userInfo.mobile or params.mobileNumber


def _fold_portfolio(session: Session, params, result: ProviderResult) -> Dict[str, Any]:
    session.portfolio = normalize_holdings(result.details)
    return {"portfolio": session.portfolio, "pledgeableValue": pledgeable_value(session)}


def _fold_pledge_otp(session: Session, params: SendOtpPledgeMfParams, result: ProviderResult) -> None:
    if params.amount is not None:
        session.pledgeAmount = params.amount


def _fold_pledged(session: Session, params, result: ProviderResult) -> None:
    session.pledgeTaken = True


def _fold_bank(session: Session, params: InitiateBankVerificationParams, result: ProviderResult) -> None:
    session.bankDetails = {
        "bankAccountNumber": params.bankAccountNumber,
        "ifscCode": params.ifscCode,
        "bankName": params.bankName or params.ifscCode[:4],
        "bankAccountType": params.bankAccountType,
    }


def _fold_loan(session: Session, params, result: ProviderResult) -> Dict[str, Any]:
    session.loanAccountId = result.details.get("fenixLoanAccountId") or result.referenceId
    return {"loanAccountId": session.loanAccountId}


def split_contract_references(result: ProviderResult) -> Dict[str, ProviderResult]:
    """
    One loan-contract call opens two references. Accepts either nested
    ``{"agreement": {...}, "kfs": {...}}`` or flat ``agreementUtilityReferenceId`` /
    ``kfsUtilityReferenceId`` keys.
    """
    d = result.details
    out = {}
    for step in (AGREEMENT, KFS):
        nested = d.get(step) if isinstance(d.get(step), dict) else {}
        ref = nested.get("utilityReferenceId") or d.get(f"{step}UtilityReferenceId")
        if not ref:
            continue
        out[step] = ProviderResult(
            referenceId=str(ref),
            status=(nested.get("status") or d.get(f"{step}Status") or result.status),
            subStatus=nested.get("subStatus"),
            webUrl=nested.get("webUrl") or d.get(f"{step}WebUrl") or result.webUrl,
            details=nested,
        )
    return out


@dataclass(frozen=True)
class ActionSpec:
    name: str
    description: str
    params_model: Type[ActionParams]
    operation_class: str = API
    ledger_step: Optional[str] = None
    effect: Optional[str] = None
    opens: Tuple[str, ...] = ()
    fold: Optional[Callable[..., Optional[Dict[str, Any]]]] = None
    precondition: Optional[Callable[[Session], None]] = None
    guard: Optional[Callable[[Session, Any], None]] = None
    step_for: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None
    # A 2xx reply whose status still means the provider refused the request
    rejects: Optional[Callable[[ProviderResult], bool]] = None

    def resolve_step(self, raw: Dict[str, Any]) -> Optional[str]:
        if self.step_for is not None:
            return self.step_for(raw)
        return self.ledger_step

    def tool_schema(self) -> Dict[str, Any]:
        schema = self.params_model.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": schema},
        }


def _contact_step(raw: Dict[str, Any]) -> Optional[str]:
    kind = str(raw.get("verificationType") or "").upper()
    return {"MOBILE": MOBILE, "EMAIL": EMAIL}.get(kind)


_SPECS = (
    ActionSpec("create_lead", "Create the loan opportunity for a customer's mobile and email",
               CreateLeadParams, fold=_fold_lead),
    ActionSpec("create_mobile_verification_log", "Start mobile number verification",
               MobileVerificationLogParams, ledger_step=MOBILE, effect=INITIATE, fold=_fold_mobile),
    ActionSpec("create_email_verification_log", "Start email verification",
               EmailVerificationLogParams, ledger_step=EMAIL, effect=INITIATE, fold=_fold_email),
    ActionSpec("get_verification_log_status", "Check mobile or email verification status",
               VerificationLogStatusParams, VERIFICATION, effect=STATUS, step_for=_contact_step),

    ActionSpec("send_otp_fetch_mf_portfolio", "Send an OTP to fetch the customer's mutual fund portfolio",
               SendOtpFetchMfParams, ledger_step=MF_FETCH, effect=INITIATE, fold=_fold_mf_otp, rejects=_refused),
    ActionSpec("validate_otp_fetch_mf_portfolio", "Validate the portfolio fetch OTP",
               ValidateOtpFetchMfParams, ledger_step=MF_FETCH, effect=STATUS, rejects=_refused),
    ActionSpec("get_fetch_mf_details", "Get the fetched mutual fund portfolio",
               FetchMfDetailsParams, VERIFICATION, ledger_step=MF_FETCH, effect=STATUS, fold=_fold_portfolio),
    ActionSpec("send_otp_pledge_mf_portfolio", "Send an OTP to pledge eligible mutual funds",
               SendOtpPledgeMfParams, ledger_step=MF_PLEDGE, effect=INITIATE,
               fold=_fold_pledge_otp, guard=_pledge_guard, rejects=_refused),
    ActionSpec("validate_otp_pledge_mf_portfolio", "Validate the pledge OTP",
               ValidateOtpPledgeMfParams, ledger_step=MF_PLEDGE, effect=STATUS,
               rejects=_not_validated),
    ActionSpec("get_pledged_mf_details", "Get pledged mutual fund details",
               PledgedMfDetailsParams, VERIFICATION, ledger_step=MF_PLEDGE, effect=STATUS,
               fold=_fold_pledged, rejects=_refused),

    ActionSpec("initiate_kyc", "Start digital KYC and return the KYC link",
               InitiateKycParams, ledger_step=KYC, effect=INITIATE),
    ActionSpec("get_kyc_status", "Check KYC status",
               KycStatusParams, VERIFICATION, ledger_step=KYC, effect=STATUS),
    ActionSpec("handle_kyc_deviation", "Submit a supporting document for a KYC deviation",
               KycDeviationParams, UPLOAD, ledger_step=KYC, effect=DEVIATION),

    ActionSpec("initiate_bank_verification", "Start penny-drop verification of a bank account",
               InitiateBankVerificationParams, ledger_step=BANK_ACCOUNT, effect=INITIATE, fold=_fold_bank),
    ActionSpec("get_bank_verification_status", "Check bank account verification status",
               BankStatusParams, VERIFICATION, ledger_step=BANK_ACCOUNT, effect=STATUS),
    ActionSpec("handle_bank_deviation", "Submit a supporting document for a bank verification deviation",
               BankDeviationParams, UPLOAD, ledger_step=BANK_ACCOUNT, effect=DEVIATION),

    ActionSpec("setup_mandate", "Register the repayment mandate",
               SetupMandateParams, ledger_step=MANDATE, effect=INITIATE),
    ActionSpec("get_mandate_status", "Check mandate registration status",
               MandateStatusParams, VERIFICATION, ledger_step=MANDATE, effect=STATUS),

    ActionSpec("setup_agreement_and_kfs", "Generate the loan agreement and key fact statement for signing",
               SetupAgreementParams, ledger_step=AGREEMENT, effect=INITIATE, opens=(AGREEMENT, KFS)),
    ActionSpec("get_agreement_status", "Check loan agreement signing status",
               AgreementStatusParams, VERIFICATION, ledger_step=AGREEMENT, effect=STATUS),
    ActionSpec("get_kfs_status", "Check key fact statement signing status",
               KfsStatusParams, VERIFICATION, ledger_step=KFS, effect=STATUS),

    ActionSpec("create_loan_account", "Submit the application and create the loan account",
               CreateLoanAccountParams, ledger_step=LOAN_ACCOUNT, effect=INITIATE,
               fold=_fold_loan, precondition=_loan_precondition),
)

CATALOG: Dict[str, ActionSpec] = {s.name: s for s in _SPECS}


def tool_catalog() -> List[Dict[str, Any]]:
    return [s.tool_schema() for s in _SPECS]
