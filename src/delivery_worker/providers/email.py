"""Email delivery provider (dev stub)."""

import logging
from uuid import uuid4

from pydantic import EmailStr, TypeAdapter, ValidationError

from delivery_shared.events import DeliveryJob

from delivery_worker.errors import DeliveryError, ErrorKind
from delivery_worker.providers.base import DeliveryProvider, DeliveryResult

logger = logging.getLogger(__name__)

_ADDRESS = TypeAdapter(EmailStr)


class EmailProvider(DeliveryProvider):
    """Stub email provider that logs instead of sending.

    Ready for integration with an SMTP relay: replace the send() body
    with the actual relay call and map its failures onto DeliveryError.
    """

    name = "smtp"

    def send(self, job: DeliveryJob) -> DeliveryResult:
        try:
            _ADDRESS.validate_python(job.recipient)
        except ValidationError:
            raise DeliveryError(
                ErrorKind.VALIDATION,
                f"Invalid email address: {job.recipient!r}",
                provider=self.name,
            ) from None

        subject = job.subject or "(no subject)"
        attachments = [a.filename for a in job.metadata.attachments]
        message_id = f"<{uuid4().hex}@delivery.local>"
        logger.info(
            "Email sent (stub)",
            extra={
                "notification_id": str(job.id),
                "subject": subject,
                "attachments": attachments,
                "cc": len(job.metadata.cc),
                "bcc": len(job.metadata.bcc),
            },
        )
        return DeliveryResult(
            success=True,
            message_id=message_id,
            provider=self.name,
            response={"accepted": [job.recipient], "subject": subject},
        )
