import logging

import stripe
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from medspa_pos import audit, compliance, stripe_service
from medspa_pos.checkout import apply_intent_event
from medspa_pos.config import CORS_ORIGINS, LOG_LEVEL
from medspa_pos.database import SessionLocal, init_db
from medspa_pos.routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="MedSpa POS Payment Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Payments"])
app.include_router(audit.router, prefix="/api/audit-logs", tags=["Audit Logs"])
app.include_router(compliance.router, prefix="/api/compliance-alerts", tags=["Compliance Alerts"])

init_db()

INTENT_EVENTS = {
    "payment_intent.succeeded": "completed",
    "payment_intent.payment_failed": "failed",
}


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe_service.construct_event(payload, stripe_signature)
    except ValueError:
        logger.error("Stripe webhook: invalid payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.error.SignatureVerificationError:
        logger.error("Stripe webhook: invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    status = INTENT_EVENTS.get(event["type"])
    if status is None:
        logger.info(f"Unhandled Stripe event type: {event['type']}")
        return {"ok": True}

    intent = event["data"]["object"]
    db = SessionLocal()
    try:
        apply_intent_event(db, intent["id"], status)
    finally:
        db.close()
    return {"ok": True}
