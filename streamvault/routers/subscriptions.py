"""直播订阅 API 路由。"""

from fastapi import APIRouter, Depends, HTTPException

from streamvault.models.subscription import Subscription
from streamvault.routers.deps import get_runtime
from streamvault.schemas.job import SubscriptionCreate, SubscriptionResponse, SubscriptionUpdate
from streamvault.workers.background import Runtime

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _save(runtime: Runtime, subscription: Subscription) -> SubscriptionResponse:
    runtime.store.upsert(subscription)
    runtime.events.publish("subscriptions", subscription)
    return SubscriptionResponse.model_validate(subscription)


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(runtime: Runtime = Depends(get_runtime)) -> list[SubscriptionResponse]:
    subscriptions = runtime.store.find(Subscription, order_by=Subscription.created_at)
    return [SubscriptionResponse.model_validate(s) for s in subscriptions]


@router.post("", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    body: SubscriptionCreate, runtime: Runtime = Depends(get_runtime)
) -> SubscriptionResponse:
    """新增订阅，下一次轮询即会检查。"""
    subscription = Subscription(**body.model_dump())
    return _save(runtime, subscription)


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    runtime: Runtime = Depends(get_runtime),
) -> SubscriptionResponse:
    subscription = runtime.store.get(Subscription, subscription_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="订阅不存在")
    for key, value in body.model_dump(exclude_unset=True).items():
        setattr(subscription, key, value)
    return _save(runtime, subscription)


@router.delete("/{subscription_id}", status_code=204)
async def delete_subscription(subscription_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    if not runtime.store.delete(Subscription, subscription_id):
        raise HTTPException(status_code=404, detail="订阅不存在")
