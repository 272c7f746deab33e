"""Chat/media delivery provider (dev stub)."""

import logging
from decimal import Decimal
from uuid import uuid4

from delivery_shared.events import DeliveryJob

from delivery_worker.errors import DeliveryError, ErrorKind
from delivery_worker.providers.base import DeliveryProvider, DeliveryResult

logger = logging.getLogger(__name__)

_COST_PER_MESSAGE = Decimal("0.005")
_COST_PER_MEDIA = Decimal("0.01")


class ChatProvider(DeliveryProvider):
    """Stub chat provider that logs instead of sending.

    Attachments are sent as media messages after the text body.
    """

    name = "chat-api"

    def send(self, job: DeliveryJob) -> DeliveryResult:
        if not job.content and not job.metadata.attachments:
            raise DeliveryError(
                ErrorKind.VALIDATION,
                "Chat message has neither text nor media",
                provider=self.name,
            )

        media = [a.filename for a in job.metadata.attachments]
        logger.info(
            "Chat message sent (stub)",
            extra={"notification_id": str(job.id), "media": media},
        )
        return DeliveryResult(
            success=True,
            message_id=f"wamid.{uuid4().hex}",
            cost=_COST_PER_MESSAGE + _COST_PER_MEDIA * len(media),
            provider=self.name,
            response={"media_count": len(media)},
        )
