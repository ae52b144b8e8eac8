import httpx
import asyncio
import logging
import time
from order_placement.core.config import settings
from order_placement.core.metrics import webhook_deliveries, webhook_duration

logger = logging.getLogger(__name__)


async def send_webhook(payload: dict, retries: int | None = None, url: str | None = None) -> bool:

    if retries is None:
        retries = settings.WEBHOOK_RETRIES
    url = url or settings.NOTIFICATION_WEBHOOK_URL

    backoff = 1.0
    event = payload.get("event")

    for attempt in range(1, retries + 1):
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT) as client:
                response = await client.post(url, json=payload)

                if 200 <= response.status_code < 300:
                    webhook_deliveries.labels(status="success", retry_count=str(attempt - 1)).inc()
                    webhook_duration.labels(status="success").observe(time.time() - start_time)
                    logger.info(f"Webhook {event} delivered for order {payload.get('order_id')}")
                    return True
                else:
                    logger.warning(
                        f"Webhook delivery failed (attempt {attempt}/{retries}): "
                        f"Status {response.status_code} for {event}"
                    )
        except httpx.TimeoutException:
            logger.warning(f"Webhook timeout (attempt {attempt}/{retries}) for {event}")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery error (attempt {attempt}/{retries}): {e} for {event}")

        webhook_duration.labels(status="failure").observe(time.time() - start_time)
        if attempt < retries:
            await asyncio.sleep(backoff)
            backoff *= 2.0

    webhook_deliveries.labels(status="failure", retry_count=str(retries)).inc()
    logger.error(f"Webhook delivery failed after {retries} attempts for {event}")
    return False
