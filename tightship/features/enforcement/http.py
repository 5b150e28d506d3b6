"""
HTTP boundary for subscription policies.

Routes declare a policy as a dependency:

    @router.post("/restaurants")
    def create(body: ..., ctx: EnforcementContext = Depends(SubscriptionGuard(policy))):
        ...

A denial raises EntitlementDeniedError, rendered by
entitlement_denied_handler. Api-call tracking is attached as a background
task, so it only runs once the handler has produced a response.
"""
from typing import Optional

from fastapi import BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from tightship.api.deps import get_enforcement_service
from tightship.core.auth import get_optional_user_id
from tightship.core.logging import get_request_id, log_event
from tightship.features.enforcement.denials import EntitlementDeniedError, denial_payload
from tightship.features.enforcement.policy import SubscriptionPolicy
from tightship.features.enforcement.service import EnforcementContext, EnforcementService


class SubscriptionGuard:
    def __init__(self, policy: SubscriptionPolicy):
        self.policy = policy

    def __call__(
        self,
        request: Request,
        background_tasks: BackgroundTasks,
        user_id: Optional[str] = Depends(get_optional_user_id),
        enforcement: EnforcementService = Depends(get_enforcement_service),
    ) -> EnforcementContext:
        ctx = enforcement.authorize(user_id, self.policy)
        request.state.organization_id = ctx.organization_id
        if self.policy.track_api_call:
            background_tasks.add_task(enforcement.record_api_call, ctx.organization_id)
        return ctx


async def entitlement_denied_handler(request: Request, exc: EntitlementDeniedError):
    rid = exc.request_id or getattr(request.state, "request_id", None) or get_request_id()
    log_event(
        "warning",
        "entitlement.denied",
        request_id=rid,
        organization_id=getattr(request.state, "organization_id", None),
        user_id=getattr(request.state, "user_id", None),
        event_type="entitlement.denied",
        error_code=exc.code,
        extra={"status": exc.status_code},
    )
    payload = {**denial_payload(exc.denial), "request_id": rid}
    response = JSONResponse(status_code=exc.status_code, content=payload)
    if rid:
        response.headers["x-request-id"] = rid
    return response
