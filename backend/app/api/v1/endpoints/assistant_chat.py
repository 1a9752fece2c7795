"""
Assistant chat endpoint.

POST   /assistant-chat   → grounded reply + citations for the authenticated user
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.v1.deps import get_current_user_id, require_openai
from app.core.logger import logger
from app.db.database import get_db
from app.db.schemas import ChatRequest, ChatResponse
from app.services.chat_service import chat_service
from app.utils.exceptions import AllModelsFailedError

router = APIRouter()


@router.post(
    "",
    response_model=ChatResponse,
    summary="Chat with the NSW legal assistant",
    dependencies=[Depends(require_openai)],
)
async def assistant_chat(
    body: ChatRequest,
    request: Request,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    ip_address = request.headers.get("x-forwarded-for") or (request.client.host if request.client else None)
    try:
        return await chat_service.chat(db, user_id, body, ip_address=ip_address)
    except (AllModelsFailedError, SQLAlchemyError) as exc:
        logger.error("Chat request failed for user %s: %s", user_id, exc)
        return JSONResponse(status_code=500, content={"error": "Chat request failed", "details": str(exc)})
