"""Denial rendering is a pure function of the variant."""
from datetime import datetime, timedelta, timezone

import pydantic
import pytest

from tightship.features.enforcement.denials import (
    DenialKind,
    EntitlementDeniedError,
    Expired,
    FeatureDenied,
    GracePeriodRestricted,
    Inactive,
    LimitExceeded,
    NoOrganization,
    Unauthenticated,
    denial_fields,
    denial_message,
    denial_payload,
    http_status,
    rpc_code,
)
from tightship.features.grace_period.service import grace_period_for
from tightship.models.plan import LimitType
from tightship.models.subscription import SubscriptionStatus

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
GRACE = grace_period_for(NOW - timedelta(days=2), NOW)

CASES = [
    (Unauthenticated(), "Unauthorized", 401, "UNAUTHORIZED"),
    (NoOrganization(), "No organization found. Please create an organization first.", 400, "BAD_REQUEST"),
    (Inactive(status=SubscriptionStatus.PAST_DUE), "Active subscription required", 402, "FORBIDDEN"),
    (Expired(expired_at=NOW), "Subscription has expired", 402, "FORBIDDEN"),
    (
        GracePeriodRestricted(operation="write", reason="Operation 'write' is not allowed", grace_period=GRACE),
        "Operation 'write' is not allowed",
        402,
        "FORBIDDEN",
    ),
    (
        FeatureDenied(feature="bulkOperations", current_plan="Starter"),
        "This feature (bulkOperations) requires a higher subscription tier",
        403,
        "FORBIDDEN",
    ),
    (
        LimitExceeded(limit_type=LimitType.PRODUCTS, current_usage=200, limit=200, requested_amount=1),
        "products limit exceeded. Current: 200, Limit: 200, Requested: 1",
        402,
        "FORBIDDEN",
    ),
]


@pytest.mark.parametrize("denial, message, status, code", CASES)
def test_message_status_and_rpc_code(denial, message, status, code):
    assert denial_message(denial) == message
    assert http_status(denial) == status
    assert rpc_code(denial) == code


@pytest.mark.parametrize("denial", [case[0] for case in CASES])
def test_every_denial_carries_code_and_upgrade_url(denial):
    payload = denial_payload(denial)
    assert payload["error"] == denial_message(denial)
    assert payload["code"] == denial.kind.value
    assert payload["upgradeUrl"] == "/billing"


def test_limit_payload_fields():
    payload = denial_payload(
        LimitExceeded(limit_type=LimitType.RESTAURANTS, current_usage=3, limit=3, requested_amount=2)
    )
    assert payload["currentUsage"] == 3
    assert payload["limit"] == 3
    assert payload["requestedAmount"] == 2
    assert payload["limitType"] == "restaurants"


def test_status_specific_fields():
    assert denial_fields(Inactive(status=SubscriptionStatus.CANCELLED))["subscriptionStatus"] == "CANCELLED"
    assert denial_fields(FeatureDenied(feature="x", current_plan="Free"))["currentPlan"] == "Free"
    assert denial_fields(Expired(expired_at=NOW))["expiredAt"] == NOW.isoformat()


def test_grace_period_info_is_rendered():
    fields = denial_fields(GracePeriodRestricted(operation="write", reason="no", grace_period=GRACE))
    assert fields["gracePeriodInfo"] == {
        "inGracePeriod": True,
        "daysRemaining": 5,
        "expiredDate": (NOW - timedelta(days=2)).isoformat(),
        "gracePeriodEnd": (NOW + timedelta(days=5)).isoformat(),
    }


def test_error_wraps_denial():
    denial = FeatureDenied(feature="whiteLabel", current_plan="Professional")
    exc = EntitlementDeniedError(denial)
    assert exc.denial is denial
    assert exc.status_code == 403
    assert exc.code == DenialKind.FEATURE_DENIED.value
    assert exc.message == "This feature (whiteLabel) requires a higher subscription tier"


def test_denials_are_frozen_validated_models():
    denial = LimitExceeded(limit_type="products", current_usage=50, limit=50, requested_amount=1)
    assert denial.limit_type is LimitType.PRODUCTS
    assert denial == LimitExceeded(limit_type=LimitType.PRODUCTS, current_usage=50, limit=50, requested_amount=1)
    assert denial.kind == DenialKind.LIMIT_EXCEEDED
    assert "kind" not in denial.model_dump()

    with pytest.raises(pydantic.ValidationError):
        denial.limit = 500
