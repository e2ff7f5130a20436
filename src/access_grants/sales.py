"""Sales gate shared by the purchase path and the operator surface."""

import logging

logger = logging.getLogger(__name__)


class SalesGate:
    """Process-wide switch that blocks paid purchases.

    Trials are not affected. Flipping the gate takes effect on the next
    purchase attempt.
    """

    def __init__(self, blocked: bool = False):
        self._blocked = blocked

    @property
    def blocked(self) -> bool:
        return self._blocked

    def set_blocked(self, blocked: bool) -> None:
        self._blocked = blocked
        logger.info(f"Sales {'blocked' if blocked else 'open'}")

    def toggle(self) -> bool:
        """Flip the gate and return the new ``blocked`` value."""
        self.set_blocked(not self._blocked)
        return self._blocked
