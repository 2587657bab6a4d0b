"""
Action Router.

Maps one structured action request onto its provider operation. Bad input,
conflicting initiations, unmet preconditions and unknown names are raised
before anything touches the network. Provider-side failures come back inside
the uniform envelope ``{success, message, data, error}``.
"""
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from loanflow.core.actions import (
    CATALOG, DEVIATION, DEVIATION_REASONS, INITIATE, STATUS, ActionSpec,
    eligible_funds, split_contract_references, submitted_data_list,
)
from loanflow.core.retry import RetryExecutor
from loanflow.errors import (
    ApiError, AuthenticationError, ExecutionError, OnboardingError, TransientProviderError,
    UnknownActionError, ValidationError,
)
from loanflow.observability.logging import log
from loanflow.store.ledger import PENDING_CHECKER_APPROVAL, ReferenceLedger
from loanflow.store.models import BANK_ACCOUNT, EMAIL, MF_FETCH, MF_PLEDGE, MOBILE, Session


def success_envelope(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data or {}, "error": None}


def failure_envelope(err: OnboardingError) -> Dict[str, Any]:
    error = err.to_dict()
    if isinstance(err, TransientProviderError):
        # Retries are exhausted by now; callers only see the upstream failure
        error["code"] = ApiError.__name__
        error["transient"] = True
    return {"success": False, "message": err.message, "data": None, "error": error}


def _session_defaults(spec: ActionSpec, session: Session, step: Optional[str]) -> Dict[str, Any]:
    ledger = ReferenceLedger(session)
    fields = spec.params_model.model_fields
    defaults: Dict[str, Any] = {
        "opportunityId": session.opportunityId,
        "mobile": session.userInfo.mobile,
        "mobileNumber": session.userInfo.mobile,
        "email": session.userInfo.email,
        "pan": session.userInfo.pan,
        "fetchRequestId": ledger.reference(MF_FETCH),
        "pledgeRequestId": ledger.reference(MF_PLEDGE),
        "bankAccountVerificationId": ledger.reference(BANK_ACCOUNT),
    }
    if step:
        defaults["utilityReferenceId"] = ledger.reference(step)
    if "verifiedValue" in fields:
        defaults["verifiedValue"] = {MOBILE: session.userInfo.mobile, EMAIL: session.userInfo.email}.get(step)
    if "deviationReason" in fields and step:
        entry = ledger.get(step)
        sub = (entry.subStatus or "").upper() if entry else ""
        defaults["deviationReason"] = sub if sub in DEVIATION_REASONS else None
    if "funds" in fields:
        defaults["funds"] = eligible_funds(session) or None
    if "submittedDataList" in fields:
        defaults["submittedDataList"] = submitted_data_list(session) or None
    return {k: val for k, val in defaults.items() if k in fields and val is not None}


def _validate(spec: ActionSpec, raw: Dict[str, Any]):
    try:
        return spec.params_model.model_validate(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc") or ()) or None
        raise ValidationError(f"Invalid {field or 'parameters'}: {first.get('msg')}", field=field) from None


class ActionRouter:
    def __init__(self, provider, executor: Optional[RetryExecutor] = None, catalog: Optional[Dict[str, ActionSpec]] = None):
        self.provider = provider
        self.executor = executor or RetryExecutor()
        self.catalog = catalog or CATALOG

    def spec(self, name: str) -> ActionSpec:
        spec = self.catalog.get(name)
        if spec is None:
            raise UnknownActionError(name)
        return spec

    async def dispatch(self, name: str, params: Optional[Dict[str, Any]], session: Session) -> Dict[str, Any]:
        spec = self.spec(name)
        if spec.precondition is not None:
            spec.precondition(session)

        raw = dict(params or {})
        step = spec.resolve_step(raw)
        for k, val in _session_defaults(spec, session, step).items():
            if raw.get(k) in (None, "", []):
                raw[k] = val
        model = _validate(spec, raw)
        if spec.guard is not None:
            spec.guard(session, model)

        ledger = ReferenceLedger(session)
        if spec.effect == INITIATE:
            for s in spec.opens or (step,):
                ledger.ensure_can_initiate(s)

        context = {"userId": session.userId, "action": name, "step": step,
                   "referenceId": ledger.reference(step) if step else None}
        payload = model.to_payload()
        try:
            result = await self.executor.execute(
                lambda: self.provider.call(name, payload), spec.operation_class, **context
            )
        except (AuthenticationError, ApiError) as e:
            return self._failed(e, context)
        except Exception as e:
            wrapped = ExecutionError(f"Unexpected error while running {name}: {type(e).__name__}")
            wrapped.attempts = getattr(e, "attempts", 1)
            return self._failed(wrapped, context)

        if spec.rejects is not None and spec.rejects(result):
            # Refused replies leave the ledger as it was
            reason = result.details.get("failureReason") or result.subStatus
            message = f"{name} returned {result.status or 'no status'}" + (f": {reason}" if reason else "")
            return self._failed(
                ApiError(message, details={"status": result.status, "subStatus": result.subStatus}), context
            )

        data: Dict[str, Any] = {
            "referenceId": result.referenceId,
            "status": result.status,
            "subStatus": result.subStatus,
            "webUrl": result.webUrl,
        }
        if "deviationDetails" in result.details:
            data["deviationDetails"] = result.details.get("deviationDetails")

        if spec.effect == INITIATE:
            if spec.opens:
                opened = split_contract_references(result)
                missing = [s for s in spec.opens if s not in opened]
                if missing:
                    return self._failed(ExecutionError(f"{name} returned no reference for {', '.join(missing)}"), context)
                for s, r in opened.items():
                    ledger.record_initiation(s, r.referenceId, web_url=r.webUrl, status=r.status, sub_status=r.subStatus)
                data["references"] = {s: r.referenceId for s, r in opened.items()}
            else:
                if not result.referenceId:
                    return self._failed(ExecutionError(f"{name} returned no reference id"), context)
                ledger.record_initiation(step, result.referenceId, web_url=result.webUrl,
                                         status=result.status, sub_status=result.subStatus)
        elif spec.effect in (STATUS, DEVIATION) and step and ledger.get(step) is not None:
            status = result.status
            if spec.effect == DEVIATION:
                status = status or PENDING_CHECKER_APPROVAL
            details = {"deviationDetails": result.details["deviationDetails"]} if result.details.get("deviationDetails") else None
            ledger.record_status(step, status, sub_status=result.subStatus, details=details, web_url=result.webUrl)

        if spec.fold is not None:
            extra = spec.fold(session, model, result)
            if extra:
                data.update(extra)

        log(event="action_dispatched", userId=session.userId, action=name, step=step,
            referenceId=result.referenceId, status=result.status)
        return success_envelope(f"{name} completed", data)

    @staticmethod
    def _failed(err: OnboardingError, context: Dict[str, Any]) -> Dict[str, Any]:
        log(event="action_failed", errorType=err.code, error=err.message[:300],
            attempts=getattr(err, "attempts", 1), **context)
        return failure_envelope(err)
