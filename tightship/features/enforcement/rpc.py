"""
RPC boundary for subscription policies.

The middleware expects RpcContext.values["enforcement"] (seeded by the API's
context provider). Denials become RpcError with the same semantic fields the
HTTP body carries; tracking runs after the procedure returns.
"""
from typing import Any, Callable

from tightship.core.rpc import Middleware, RpcContext, RpcError
from tightship.features.enforcement.denials import (
    EntitlementDeniedError,
    denial_fields,
    denial_message,
    rpc_code,
)
from tightship.features.enforcement.policy import SubscriptionPolicy
from tightship.features.enforcement.service import EnforcementService


def subscription_middleware(policy: SubscriptionPolicy) -> Middleware:
    def middleware(ctx: RpcContext, call_next: Callable[[], Any]) -> Any:
        enforcement: EnforcementService = ctx.values["enforcement"]
        try:
            granted = enforcement.authorize(ctx.user_id, policy)
        except EntitlementDeniedError as exc:
            raise RpcError(
                rpc_code(exc.denial),
                denial_message(exc.denial),
                cause=denial_fields(exc.denial),
            ) from exc

        ctx.values["subscription"] = granted
        result = call_next()
        if policy.track_api_call:
            enforcement.record_api_call(granted.organization_id)
        return result

    return middleware

