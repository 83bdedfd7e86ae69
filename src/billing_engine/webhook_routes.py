"""
Webhook routes - payment gateway event ingestion
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import logging

from .db.engine import get_db
from .exceptions import WebhookRejected
from .services.webhook_service import get_webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    db: Session = Depends(get_db),
    x_signature: Optional[str] = Header(None, alias="X-Signature")
):
    """
    Payment gateway webhook endpoint
    
    Returns 400 for a missing signature or malformed body and 401 for a bad
    signature. Any authenticated, parseable delivery is acknowledged with 200,
    including deliveries whose processing failed internally (those are logged
    and left unrecorded so a redelivery can retry them).
    """
    body = await request.body()
    
    try:
        outcome = get_webhook_service(db).handle_webhook(body, x_signature)
    except WebhookRejected as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={"code": e.code, "message": e.message}
        )
    
    return JSONResponse(status_code=200, content=outcome.to_dict())
