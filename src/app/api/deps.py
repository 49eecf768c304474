"""FastAPI dependency injection for the sync engine.

The lifespan builds one SyncContainer and stores it on ``app.state``;
these dependencies hand its components to endpoint signatures.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.app.sync.audit import ReconciliationAuditor
from src.app.sync.container import SyncContainer
from src.app.sync.ledger import AutoRetrySweeper, FailureLedger
from src.app.sync.orchestrator import SyncOrchestrator
from src.app.sync.runs import SyncRunService


def get_container(request: Request) -> SyncContainer:
    """Get the sync container built at startup."""
    container = getattr(request.app.state, "sync", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return container


def get_orchestrator(container: SyncContainer = Depends(get_container)) -> SyncOrchestrator:
    return container.orchestrator


def get_runs(container: SyncContainer = Depends(get_container)) -> SyncRunService:
    return container.runs


def get_ledger(container: SyncContainer = Depends(get_container)) -> FailureLedger:
    return container.ledger


def get_sweeper(container: SyncContainer = Depends(get_container)) -> AutoRetrySweeper:
    return container.sweeper


def get_auditor(container: SyncContainer = Depends(get_container)) -> ReconciliationAuditor:
    return container.auditor
