from __future__ import annotations

import uuid
from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.billing.enforcement import count_agents
from ghl_sync.billing.models import Subscription
from ghl_sync.billing.schemas import (
    SubscriptionRead,
    TenantListResponse,
    TenantRead,
    TenantStats,
    UpgradeRequest,
)
from ghl_sync.billing.service import subscription_service
from ghl_sync.core.auth import AuthUser, require_admin
from ghl_sync.core.database import get_db
from ghl_sync.errors import InvalidTransitionError, UnknownPlanError
from ghl_sync.integrations.models import CONNECTION_ENABLED
from ghl_sync.integrations.repository import find_connection
from ghl_sync.workspace.models import Account


router = APIRouter(prefix="/admin/ghl/tenants", tags=["ghl-admin"])


def _load_subscription(db: Session, account_id: uuid.UUID) -> Subscription:
    subscription = subscription_service.get_for_account(db, account_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
    return subscription


def _tenant(db: Session, account: Account, subscription: Subscription) -> TenantRead:
    connection = find_connection(db, account.id)
    return TenantRead(
        account_id=account.id,
        name=account.name,
        ghl_location_id=account.ghl_location_id,
        connection_status=connection.status if connection else None,
        agents_count=count_agents(db, account.id),
        subscription=SubscriptionRead.model_validate(subscription),
        usage=subscription_service.usage_summary(subscription),
    )


@router.get("", response_model=TenantListResponse)
def list_tenants(
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> TenantListResponse:
    rows = db.execute(
        select(Account, Subscription).join(Subscription, Subscription.account_id == Account.id).order_by(Account.created_at)
    ).all()
    tenants = [_tenant(db, account, subscription) for account, subscription in rows]
    stats = TenantStats(
        total=len(tenants),
        by_status=dict(Counter(item.subscription.status for item in tenants)),
        by_plan=dict(Counter(item.subscription.plan for item in tenants)),
        connected=sum(1 for item in tenants if item.connection_status == CONNECTION_ENABLED),
    )
    return TenantListResponse(tenants=tenants, stats=stats)


@router.post("/{account_id}/upgrade", response_model=SubscriptionRead)
def upgrade_tenant(
    account_id: uuid.UUID,
    payload: UpgradeRequest,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> SubscriptionRead:
    subscription = _load_subscription(db, account_id)
    try:
        subscription_service.upgrade_to(db, subscription, payload.plan)
    except UnknownPlanError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    db.commit()
    return SubscriptionRead.model_validate(subscription)


@router.post("/{account_id}/suspend", response_model=SubscriptionRead)
def suspend_tenant(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> SubscriptionRead:
    subscription = _load_subscription(db, account_id)
    try:
        subscription_service.suspend(db, subscription)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    db.commit()
    return SubscriptionRead.model_validate(subscription)


@router.post("/{account_id}/reactivate", response_model=SubscriptionRead)
def reactivate_tenant(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> SubscriptionRead:
    subscription = _load_subscription(db, account_id)
    try:
        subscription_service.activate(db, subscription)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    db.commit()
    return SubscriptionRead.model_validate(subscription)


@router.post("/{account_id}/reset-usage", response_model=SubscriptionRead)
def reset_tenant_usage(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> SubscriptionRead:
    subscription = _load_subscription(db, account_id)
    subscription_service.reset_monthly_usage(db, subscription)
    db.commit()
    return SubscriptionRead.model_validate(subscription)
