from fastapi import APIRouter, Depends, HTTPException, Query, Request

from chatdesk.api.dependencies import api_key_protection, get_services

router = APIRouter(prefix="/chat", dependencies=[Depends(api_key_protection)], tags=["Chat"])


@router.get("/history/{user_id}")
async def chat_history(user_id: str, request: Request, limit: int = Query(default=50, ge=1, le=500)):
    history = get_services(request).chat_store.get_chat_history(user_id, limit=limit)
    return {"user_id": user_id, "count": len(history), "history": history}


@router.get("/stats/{user_id}")
async def chat_stats(user_id: str, request: Request):
    stats = get_services(request).chat_store.get_user_stats(user_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="User not found")
    return stats
