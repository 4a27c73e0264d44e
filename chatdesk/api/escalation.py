from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from chatdesk.api.dependencies import api_key_protection, get_services
from chatdesk.escalation.models import EscalationStatus
from chatdesk.escalation.notifier import AgentAction

router = APIRouter(dependencies=[Depends(api_key_protection)], tags=["Escalations"])


class ResolveRequest(BaseModel):
    agent_id: Optional[str] = None


@router.get("/escalations/{escalation_id}")
async def get_escalation(escalation_id: str, request: Request):
    record = get_services(request).store.find_by_escalation_id(escalation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Escalation not found")
    return {"success": True, "escalation": record.to_dict()}


@router.get("/escalations/user/{user_id}")
async def get_active_escalation(user_id: str, request: Request):
    record = get_services(request).store.find_active_by_user(user_id)
    return {"success": True, "escalated": record is not None, "escalation": record.to_dict() if record else None}


@router.post("/escalations/{escalation_id}/resolve")
async def resolve_escalation(escalation_id: str, request: Request, body: Optional[ResolveRequest] = None):
    """Resolve from outside Slack; the notice is refreshed the same way the button does it."""
    services = get_services(request)
    record = services.store.find_by_escalation_id(escalation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Escalation not found")
    if record.status == EscalationStatus.RESOLVED:
        return {"success": True, "changed": False, "escalation": record.to_dict()}

    actor = (body.agent_id if body else None) or "api"
    # Every open status may move to RESOLVED, so this never hits an invalid transition.
    updated = await services.notifier.on_agent_action(escalation_id, AgentAction.RESOLVE, actor=actor)
    return {"success": True, "changed": True, "escalation": updated.to_dict() if updated else None}
