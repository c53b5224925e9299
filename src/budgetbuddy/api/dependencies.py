from fastapi import HTTPException, Request

from budgetbuddy.services.rules import RuleService
from budgetbuddy.services.sessions import SyncSessionManager


def get_session_manager(request: Request) -> SyncSessionManager:
    manager = getattr(request.app.state, "session_manager", None)
    if not manager:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return manager


def get_rule_service(request: Request) -> RuleService:
    service = getattr(request.app.state, "rule_service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service
