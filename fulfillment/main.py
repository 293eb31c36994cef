import stripe
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from fulfillment.config import get_settings
from fulfillment.database import Base, engine
from fulfillment.exceptions import FulfillmentError, ReaderBusy
from fulfillment.logging_config import setup_logging
from fulfillment.routes import get_workflow, router
from fulfillment.workflow import FulfillmentWorkflow

settings = get_settings()
setup_logging(settings.log_level)
logger = structlog.get_logger(__name__)

app = FastAPI(title="Order Fulfillment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, ReaderBusy) else None
    logger.info(
        "request_failed",
        path=request.url.path,
        error=exc.error_code,
        transient=exc.transient,
        **exc.context,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            get_settings().stripe_webhook_secret
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event.type == "payment_intent.succeeded":
        intent = event.data.object
        try:
            # Blocking store I/O and retry backoff stay off the event loop
            await run_in_threadpool(workflow.record_processor_capture, intent.id)
        except FulfillmentError as e:
            logger.warning("webhook_capture_not_recorded", intent_id=intent.id, error=e.error_code)

    return {"ok": True}
