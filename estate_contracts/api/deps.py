# estate_contracts/api/deps.py
from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException

from estate_contracts.core.clock import Clock, SystemClock
from estate_contracts.core.config import Settings, get_settings
from estate_contracts.db.session import SessionLocal
from estate_contracts.services.contract_lifecycle import ContractLifecycleEngine
from estate_contracts.services.escrow_lifecycle import EscrowLifecycleEngine
from estate_contracts.services.notifications import LoggingNotificationPort, NotificationDispatcher

_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def get_escrow_engine(
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> EscrowLifecycleEngine:
    return EscrowLifecycleEngine(settings=settings, clock=clock)


def get_contract_engine(
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
    escrow: EscrowLifecycleEngine = Depends(get_escrow_engine),
) -> ContractLifecycleEngine:
    return ContractLifecycleEngine(settings=settings, clock=clock, escrow=escrow)


def get_dispatcher(
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> NotificationDispatcher:
    return NotificationDispatcher(
        LoggingNotificationPort(),
        max_attempts=settings.notification_max_attempts,
        batch_size=settings.notification_batch_size,
        claim_seconds=settings.notification_claim_seconds,
        clock=clock,
    )


def parse_uuid(raw: str, name: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be UUID.")


def get_session_factory():
    # background tasks open their own session; the request's is closed by then
    return SessionLocal
