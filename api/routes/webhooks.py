"""Webhook endpoints for payment providers."""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import get_polar_processor
from api.services.payment_engine import InvalidSignatureError, UserNotFoundError
from api.services.polar_provider import (
    PolarWebhookProcessor,
    WebhookNotConfiguredError,
    WebhookValidationError,
    parse_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _order_id_hint(raw_body: bytes) -> Optional[str]:
    """Order id for error responses, when the body is readable at all."""
    try:
        data = parse_event(raw_body).get("data")
    except WebhookValidationError:
        return None
    return data.get("id") if isinstance(data, dict) else None


@router.post("/polar")
async def handle_polar_webhook(
    request: Request,
    polar_signature: Optional[str] = Header(None, alias="polar-signature"),
    processor: PolarWebhookProcessor = Depends(get_polar_processor),
):
    """
    Handle Polar webhook events.

    Polar redelivers on any non-2xx response, so only transient failures
    return 5xx. Redeliveries of a processed order are acknowledged
    without crediting again.
    """
    from api.services.metrics import WebhookTimer, track_webhook_event

    body = await request.body()

    with WebhookTimer("polar"):
        try:
            order, outcome = await processor.process(body, polar_signature)
        except WebhookNotConfiguredError:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Webhook not configured"},
            )
        except InvalidSignatureError:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": "Invalid signature"},
            )
        except WebhookValidationError as e:
            logger.warning(f"Polar webhook rejected: {e}")
            track_webhook_event("polar", "order.created", "invalid")
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
        except UserNotFoundError as e:
            logger.error(f"Polar webhook for unknown user: {e}")
            track_webhook_event("polar", "order.created", "user_not_found")
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "User not found", "orderId": _order_id_hint(body)},
            )
        except Exception as e:
            logger.error(f"Polar webhook processing error: {e}")
            track_webhook_event("polar", "order.created", "error")
            # 500 so Polar retries; crediting is idempotent per order
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Webhook processing failed", "orderId": _order_id_hint(body)},
            )

    if order is None:
        return {"received": True, "processed": False}

    logger.info(
        f"Polar webhook processed: order={order.order_id}, user={order.user_id}, "
        f"credits={order.credits}, duplicate={outcome.already_processed}"
    )
    return {
        "received": True,
        "processed": True,
        "orderId": order.order_id,
        "newBalance": outcome.new_balance,
    }


@router.get("/polar")
async def polar_webhook_health():
    return {
        "status": "healthy",
        "service": "polar-webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
