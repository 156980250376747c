import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from cashback_engine import FeePolicy
from config import Settings, configure_logging, get_settings
from db.store import PostgresStore
from errors import InvalidEventError, NotFoundError, VerificationError
from payment_events import (
    ACCOUNT_UPDATED,
    FAILED,
    SUCCEEDED,
    PaymentEvent,
    require_metadata,
    verify_and_parse,
)
from settlement_engine import SettlementEngine

logger = logging.getLogger(__name__)


# ---------
# pydantic models (requests)
# ---------

class ProcessTransactionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Purchasing user")
    business_id: str = Field(..., min_length=1, description="Business the purchase was made at")
    amount: Decimal = Field(..., gt=0, description="Gross amount in major units (e.g. 100.00)")
    order_id: str = Field(..., min_length=1, description="Order id, used as the idempotency key")


# ---------
# event dispatch
# ---------

def _status(result_applied: bool) -> str:
    return "processed" if result_applied else "already_processed"


def handle_event(engine: SettlementEngine, event: PaymentEvent) -> Dict[str, Any]:
    """
    route a verified event to the settlement engine.
    unknown kinds are acknowledged so the processor does not retry them.
    """
    response: Dict[str, Any] = {"received": True, "type": event.type}

    if event.kind == SUCCEEDED:
        business_id, user_id = require_metadata(event)
        result = engine.settle(event.payment_id, event.amount, business_id, user_id)
        response["status"] = _status(result.applied)
        response["settlement"] = result.to_dict()
        return response

    if event.kind == FAILED:
        # nothing was credited for it, so there is nothing to undo
        logger.warning("payment %s failed, not settled", event.payment_id)
        response["status"] = "skipped"
        return response

    if event.kind == ACCOUNT_UPDATED:
        updated = engine.sync_business_account(event.account)
        response["status"] = "processed" if updated else "skipped"
        return response

    logger.info("unhandled event type: %s", event.type)
    response["status"] = "skipped"
    return response


# ---------
# app factory
# ---------

def create_app(settings: Optional[Settings] = None, store=None) -> FastAPI:
    """
    settings: defaults to the environment (see config.Settings.from_env)
    store: defaults to PostgresStore(settings.database_url); tests pass a MemoryStore
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if store is None:
        store = PostgresStore(settings.database_url)
    engine = SettlementEngine(store, FeePolicy.from_settings(settings))

    app = FastAPI(title="Loya Cashback Settlement", version="0.1.0")
    app.state.settings = settings
    app.state.engine = engine

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/webhook/stripe")
    async def stripe_webhook(request: Request):
        """
        stripe webhook receiver.

        400: bad signature, malformed body, missing metadata, unknown user/business
        500: anything else, so stripe redelivers (safe: settlement is idempotent)
        """
        if not settings.stripe_webhook_secret:
            raise HTTPException(status_code=500, detail="Stripe webhook secret not configured")

        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            event = verify_and_parse(
                payload,
                signature,
                settings.stripe_webhook_secret,
                settings.webhook_tolerance_seconds,
            )
        except VerificationError as e:
            logger.warning("webhook verification failed: %s", e)
            raise HTTPException(status_code=400, detail=str(e))
        except InvalidEventError as e:
            logger.error("rejected stripe event: %s", e)
            raise HTTPException(status_code=400, detail=str(e))

        try:
            return await run_in_threadpool(handle_event, engine, event)
        except ValueError as e:
            # missing metadata, unknown user/business: upstream integration bug
            logger.error("rejected %s event %s: %s", event.type, event.event_id, e)
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("webhook handler failed for event %s", event.event_id)
            raise HTTPException(status_code=500, detail="Webhook handler failed")

    @app.post("/api/transactions/process")
    def process_transaction(payload: ProcessTransactionRequest):
        """
        manual settlement path (no processor involved).
        order_id plays the role of the payment id, so resubmitting is a no-op.
        """
        try:
            result = engine.settle(
                payload.order_id,
                payload.amount,
                payload.business_id,
                payload.user_id,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("manual settlement failed for order %s", payload.order_id)
            raise HTTPException(status_code=500, detail="Internal server error")

        return {"status": _status(result.applied), "settlement": result.to_dict()}

    @app.post("/api/wallets/reconcile")
    def reconcile_wallet(
        user_id: str = Query(..., description="Wallet owner"),
        business_id: str = Query(..., description="Business the wallet belongs to"),
    ):
        """recompute a wallet balance from its transactions and return it."""
        try:
            wallet = engine.reconcile_wallet(user_id, business_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception:
            logger.exception("reconcile failed for user %s business %s", user_id, business_id)
            raise HTTPException(status_code=500, detail="Internal server error")

        return wallet.to_dict()

    return app


app = create_app()
