"""Telegram webhook route.

Security:
- Requests must carry X-Telegram-Bot-Api-Secret-Token matching
  TELEGRAM_WEBHOOK_SECRET (fail-closed unless APP_ENV=local)
- Chat ids and message text exist only in memory during processing
- Logs contain NO PII
"""

import hmac
from typing import Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from clientportal.container import PortalContainer
from clientportal.observability.correlation import get_correlation_id
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import safe_log_context
from clientportal.telegram.updates import InboundCallback, InvalidUpdateError, normalize

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def _container(request: Request) -> PortalContainer:
    return request.app.state.container


def _secret_ok(container: PortalContainer, provided: str | None, correlation_id: str) -> bool:
    expected = container.config.telegram.webhook_secret or ""
    if not expected:
        if container.config.is_local:
            logger.warning(
                "TELEGRAM_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "TELEGRAM_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "telegram webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


@router.post("/telegram")
async def telegram_webhook(
    request: Request,
    x_secret: str | None = Header(None, alias=SECRET_HEADER),
) -> Response:
    """Receive one Telegram update.

    Returns:
        200 OK if processed, ignored or duplicate.
        400 Bad Request if the body is not a valid update.
        401 Unauthorized if secret validation fails.
    """
    correlation_id = get_correlation_id()
    container = _container(request)

    if not _secret_ok(container, x_secret, correlation_id):
        return Response(status_code=401, content="unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    if not isinstance(payload, dict):
        return Response(status_code=400, content="invalid payload shape")

    try:
        inbound = normalize(payload)
    except InvalidUpdateError:
        logger.warning(
            "invalid telegram update shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload shape")

    if inbound is None:
        return Response(status_code=200, content="ignored")

    if not container.dedupe.first_seen(inbound.update_id):
        logger.info(
            "duplicate telegram update",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, update_id=inbound.update_id
                )
            },
        )
        return Response(status_code=200, content="duplicate")

    logger.info(
        "telegram update received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                update_id=inbound.update_id,
                kind="callback" if isinstance(inbound, InboundCallback) else "message",
            )
        },
    )

    try:
        await run_in_threadpool(container.dispatcher.handle, inbound)
    except Exception:
        # always 200: the update id is already recorded as seen
        logger.exception(
            "telegram update processing failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, update_id=inbound.update_id
                )
            },
        )

    return Response(status_code=200, content="ok")
