from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlmodel import Session
from ..db import get_session
from ..pipeline import DeliveryRequest, WebhookError, process_delivery

router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

def _source_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None

@router.options("")
def webhook_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)

@router.post("")
async def receive_zapsign_webhook(request: Request, session: Session = Depends(get_session)):
    delivery = DeliveryRequest(
        body=await request.body(),
        url=str(request.url),
        user_agent=request.headers.get("user-agent"),
        source_ip=_source_ip(request),
        headers=dict(request.headers),
    )
    try:
        outcome = await run_in_threadpool(process_delivery, session, delivery)
    except WebhookError as exc:
        return JSONResponse(
            {"error": exc.error, "message": exc.message},
            status_code=exc.status_code,
            headers=CORS_HEADERS,
        )
    except Exception as exc:
        return JSONResponse(
            {"error": "Internal server error", "message": str(exc)},
            status_code=500,
            headers=CORS_HEADERS,
        )
    return JSONResponse(
        {
            "success": True,
            "contract_id": outcome.contract_id,
            "message": "Webhook processed successfully",
            "client_linked": outcome.client_linked,
        },
        headers=CORS_HEADERS,
    )
