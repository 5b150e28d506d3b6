"""
Menu API: the gated entry points.

Creating restaurants and products is where plan limits bite. Each route
declares its SubscriptionPolicy; the guard resolves the caller's
organization and either hands the route an EnforcementContext or rejects
the request with a denial body.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tightship.api.deps import get_repository, get_subscription_service
from tightship.core.errors import NotFoundError, ValidationError
from tightship.features.enforcement.denials import EntitlementDeniedError, LimitExceeded
from tightship.features.enforcement.http import SubscriptionGuard
from tightship.features.enforcement.policy import LimitRequirement, SubscriptionPolicy
from tightship.features.enforcement.service import EnforcementContext
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.store.repository import SubscriptionRepository
from tightship.models.menu import Product, ProductType, Restaurant
from tightship.models.plan import LimitType

logger = logging.getLogger("tightship.menu")

router = APIRouter(prefix="/api/menu", tags=["menu"])

READ_MENU = SubscriptionPolicy(allow_trial=True, operation="read", track_api_call=True)
CREATE_RESTAURANT = SubscriptionPolicy(
    require_limit=LimitRequirement(LimitType.RESTAURANTS),
    operation="write",
)
CREATE_PRODUCT = SubscriptionPolicy(
    require_limit=LimitRequirement(LimitType.PRODUCTS),
    track_api_call=True,
    operation="write",
)
CREATE_VARIANT = SubscriptionPolicy(track_api_call=True, operation="write")
BULK_IMPORT = SubscriptionPolicy(require_feature="bulkOperations", track_api_call=True, operation="write")


class CreateRestaurantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class CreateProductRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    product_type: ProductType = ProductType.STANDALONE


class CreateVariantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class BulkImportRequest(BaseModel):
    products: List[CreateProductRequest] = Field(..., min_length=1, max_length=1000)


def _owned_restaurant(repository: SubscriptionRepository, restaurant_id: str, organization_id: str) -> Restaurant:
    restaurant = repository.get_restaurant(restaurant_id)
    if restaurant is None or restaurant.organization_id != organization_id:
        raise NotFoundError("Restaurant not found")
    return restaurant


@router.get("/restaurants/{restaurant_id}")
def get_restaurant(
    restaurant_id: str,
    ctx: EnforcementContext = Depends(SubscriptionGuard(READ_MENU)),
    repository: SubscriptionRepository = Depends(get_repository),
) -> Restaurant:
    return _owned_restaurant(repository, restaurant_id, ctx.organization_id)


@router.post("/restaurants", status_code=201)
def create_restaurant(
    body: CreateRestaurantRequest,
    ctx: EnforcementContext = Depends(SubscriptionGuard(CREATE_RESTAURANT)),
    repository: SubscriptionRepository = Depends(get_repository),
) -> Restaurant:
    restaurant = repository.create_restaurant(ctx.organization_id, body.name)
    logger.info(
        "[menu] restaurant created",
        extra={"organization_id": ctx.organization_id, "restaurant_id": restaurant.restaurant_id},
    )
    return restaurant


@router.post("/restaurants/{restaurant_id}/products", status_code=201)
def create_product(
    restaurant_id: str,
    body: CreateProductRequest,
    ctx: EnforcementContext = Depends(SubscriptionGuard(CREATE_PRODUCT)),
    repository: SubscriptionRepository = Depends(get_repository),
) -> Product:
    _owned_restaurant(repository, restaurant_id, ctx.organization_id)
    if body.product_type == ProductType.VARIANT:
        raise ValidationError("Variants are created under their parent product")
    return repository.create_product(restaurant_id, body.name, product_type=body.product_type)


@router.post("/products/{product_id}/variants", status_code=201)
def create_variant(
    product_id: str,
    body: CreateVariantRequest,
    ctx: EnforcementContext = Depends(SubscriptionGuard(CREATE_VARIANT)),
    repository: SubscriptionRepository = Depends(get_repository),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> Product:
    parent = repository.get_product(product_id)
    if parent is None or parent.product_type != ProductType.PARENT:
        raise NotFoundError("Parent product not found")
    _owned_restaurant(repository, parent.restaurant_id, ctx.organization_id)

    check = subscriptions.check_variant_limit(ctx.organization_id, product_id)
    if not check.allowed:
        raise ValidationError(check.message)

    return repository.create_product(
        parent.restaurant_id,
        body.name,
        product_type=ProductType.VARIANT,
        parent_product_id=product_id,
    )


@router.post("/restaurants/{restaurant_id}/products/bulk", status_code=201)
def bulk_import_products(
    restaurant_id: str,
    body: BulkImportRequest,
    ctx: EnforcementContext = Depends(SubscriptionGuard(BULK_IMPORT)),
    repository: SubscriptionRepository = Depends(get_repository),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """All-or-nothing: the whole batch must fit the products limit."""
    _owned_restaurant(repository, restaurant_id, ctx.organization_id)
    if any(item.product_type == ProductType.VARIANT for item in body.products):
        raise ValidationError("Variants are created under their parent product")

    check = subscriptions.check_limit(ctx.organization_id, LimitType.PRODUCTS, len(body.products))
    if not check.allowed:
        raise EntitlementDeniedError(
            LimitExceeded(
                limit_type=check.limit_type,
                current_usage=check.current_usage or 0,
                limit=check.limit,
                requested_amount=check.requested_amount,
            )
        )

    created = [
        repository.create_product(restaurant_id, item.name, product_type=item.product_type)
        for item in body.products
    ]
    return {"created": len(created), "products": created}
