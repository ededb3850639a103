from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ghl_sync.core.database import get_db
from ghl_sync.errors import SignatureError
from ghl_sync.integrations.config import load_integration_config
from ghl_sync.jobs.queue import get_job_queue
from ghl_sync.webhooks.gateway import WebhookGateway
from ghl_sync.webhooks.signature import SIGNATURE_HEADER, SignatureVerifier


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


# sync handler: the config lookup and inline job execution block
@router.post("/ghl")
def receive_ghl_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    config = load_integration_config(db)
    gateway = WebhookGateway(SignatureVerifier.from_config(config), get_job_queue())
    try:
        result = gateway.handle(body, request.headers.get(SIGNATURE_HEADER))
    except SignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")
    return {"status": "ok", "event": result.event.value if result.event else "ignored"}
