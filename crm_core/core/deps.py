from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from crm_core.core.config import settings
from crm_core.db.session import SessionLocal
from crm_core.services.dispatch_service import CampaignDispatcher
from crm_core.services.messaging_provider import get_messaging_provider
from crm_core.services.reconciliation_service import DeliveryReconciler


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(session_factory: sessionmaker = Depends(get_session_factory)) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_dispatcher(session_factory: sessionmaker = Depends(get_session_factory)) -> CampaignDispatcher:
    return CampaignDispatcher(
        session_factory,
        provider=get_messaging_provider(settings.messaging_provider_default),
        batch_size=settings.campaign_batch_size,
        max_workers=settings.campaign_dispatch_max_workers,
        send_timeout_seconds=settings.campaign_send_timeout_seconds,
        refresh_segment_on_start=settings.campaign_refresh_segment_on_start,
        claim_ttl_seconds=settings.campaign_dispatch_claim_ttl_seconds,
    )


def get_reconciler(session_factory: sessionmaker = Depends(get_session_factory)) -> DeliveryReconciler:
    return DeliveryReconciler(session_factory)
