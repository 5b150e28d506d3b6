"""
RPC procedures for menu clients.

Same gates as the HTTP menu routes, expressed as procedure middleware.
Served under /rpc by main.py.
"""
from pydantic import BaseModel, Field

from tightship.api.deps import get_rpc_context_values
from tightship.core.errors import NotFoundError
from tightship.core.rpc import RpcContext, RpcRouter
from tightship.features.enforcement.policy import LimitRequirement, SubscriptionPolicy
from tightship.features.enforcement.rpc import subscription_middleware
from tightship.models.menu import ProductType
from tightship.models.plan import LimitType

rpc = RpcRouter()


class CreateRestaurantInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class CreateProductInput(BaseModel):
    restaurant_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    product_type: ProductType = ProductType.STANDALONE


def _organization_id(ctx: RpcContext) -> str:
    return ctx.values["subscription"].organization_id


@rpc.procedure(
    "subscription.status",
    middlewares=[subscription_middleware(SubscriptionPolicy(allow_trial=True))],
)
def subscription_status(ctx: RpcContext, _input):
    status = ctx.values["subscription"].status
    return {
        "subscription": status.subscription,
        "isActive": status.is_active,
        "isExpired": status.is_expired,
        "daysUntilExpiry": status.days_until_expiry,
    }


@rpc.procedure(
    "restaurants.create",
    input_model=CreateRestaurantInput,
    middlewares=[
        subscription_middleware(
            SubscriptionPolicy(require_limit=LimitRequirement(LimitType.RESTAURANTS), operation="write")
        )
    ],
)
def create_restaurant(ctx: RpcContext, data: CreateRestaurantInput):
    return ctx.values["repository"].create_restaurant(_organization_id(ctx), data.name)


@rpc.procedure(
    "products.create",
    input_model=CreateProductInput,
    middlewares=[
        subscription_middleware(
            SubscriptionPolicy(
                require_limit=LimitRequirement(LimitType.PRODUCTS),
                track_api_call=True,
                operation="write",
            )
        )
    ],
)
def create_product(ctx: RpcContext, data: CreateProductInput):
    repository = ctx.values["repository"]
    restaurant = repository.get_restaurant(data.restaurant_id)
    if restaurant is None or restaurant.organization_id != _organization_id(ctx):
        raise NotFoundError("Restaurant not found")
    return repository.create_product(data.restaurant_id, data.name, product_type=data.product_type)


router = rpc.as_api_router(prefix="/rpc", context_values=get_rpc_context_values)
