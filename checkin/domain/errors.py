"""
Error types shared by the scheduling and delivery layers.
"""

from enum import Enum
from typing import Optional


class ConfigurationError(ValueError):
    """A reminder's schedule cannot be evaluated as configured."""


class DeliveryErrorCategory(str, Enum):
    """Carrier failure categories."""
    INVALID_ADDRESS = "invalid_address"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT_REJECTION = "permanent_rejection"
    CARRIER_CONFIGURATION = "carrier_configuration"


PERMANENT_CATEGORIES = frozenset({
    DeliveryErrorCategory.INVALID_ADDRESS,
    DeliveryErrorCategory.PERMANENT_REJECTION,
})


class DeliveryError(Exception):
    """Raised by a delivery gateway when a message could not be handed to the carrier."""

    def __init__(
        self,
        category: DeliveryErrorCategory,
        detail: str,
        carrier_code: Optional[int] = None
    ):
        super().__init__(f"{category.value}: {detail}")
        self.category = category
        self.detail = detail
        self.carrier_code = carrier_code

    @property
    def is_permanent(self) -> bool:
        """Whether the recipient address itself is the problem."""
        return self.category in PERMANENT_CATEGORIES
