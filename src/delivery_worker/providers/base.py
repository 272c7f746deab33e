"""Abstract delivery provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from delivery_shared.events import DeliveryJob

from delivery_worker.errors import DeliveryError, ErrorKind


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one provider call."""

    success: bool
    message_id: str | None = None
    cost: Decimal = Decimal("0")
    provider: str | None = None
    error: DeliveryError | None = None
    response: dict[str, Any] = field(default_factory=dict)

    def raise_for_error(self) -> "DeliveryResult":
        """Return self on success, raise the classified error otherwise."""
        if self.success:
            return self
        raise self.error or DeliveryError(
            ErrorKind.UNKNOWN,
            "Provider reported failure without an error",
            provider=self.provider,
        )


class DeliveryProvider(ABC):
    """Base class for all channel delivery providers.

    Failures are classified here, at the adapter boundary: either return
    ``DeliveryResult(success=False, error=DeliveryError(...))`` or raise a
    :class:`DeliveryError`.  Anything else escaping ``send`` is treated as
    ``ErrorKind.UNKNOWN``.
    """

    name: str = "provider"

    @abstractmethod
    def send(self, job: DeliveryJob) -> DeliveryResult:
        """Attempt to deliver one job."""
