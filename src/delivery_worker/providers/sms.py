"""SMS delivery provider (dev stub)."""

import logging
import math
import re
from decimal import Decimal
from uuid import uuid4

from delivery_shared.events import DeliveryJob

from delivery_worker.errors import DeliveryError, ErrorKind
from delivery_worker.providers.base import DeliveryProvider, DeliveryResult

logger = logging.getLogger(__name__)

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")
_SEGMENT_LENGTH = 160
_COST_PER_SEGMENT = Decimal("0.0075")


class SMSProvider(DeliveryProvider):
    """Stub SMS provider that logs instead of sending.

    Ready for integration with an SMS gateway: replace the send() body
    with the gateway call and classify its HTTP status with
    DeliveryError.from_http_status.
    """

    name = "sms-gateway"

    def send(self, job: DeliveryJob) -> DeliveryResult:
        if not _E164.match(job.recipient):
            return DeliveryResult(
                success=False,
                provider=self.name,
                error=DeliveryError(
                    ErrorKind.VALIDATION,
                    f"Phone number is not E.164: {job.recipient!r}",
                    code="invalid_number",
                    provider=self.name,
                ),
            )

        body = job.content or ""
        segments = max(1, math.ceil(len(body) / _SEGMENT_LENGTH))
        preview = body[:50] if body else "(empty)"
        logger.info(
            "SMS sent (stub)",
            extra={
                "notification_id": str(job.id),
                "body_preview": preview,
                "segments": segments,
            },
        )
        return DeliveryResult(
            success=True,
            message_id=f"SM{uuid4().hex}",
            cost=_COST_PER_SEGMENT * segments,
            provider=self.name,
            response={"segments": segments, "to": job.recipient},
        )
