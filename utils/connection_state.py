"""Connection state tracking for the ControlPlane poll loop.

The poll loop counts consecutive failed polls; once the budget is spent the
runner gives up. A successful poll resets the count.
"""

from .logging import create_contextual_logger


class ConnectionStateManager:
    """Tracks consecutive poll failures against a fixed budget."""

    def __init__(self, max_consecutive_failures: int):
        self.max_consecutive_failures = max_consecutive_failures
        self.logger = create_contextual_logger(__name__, service="connection_state")
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def mark_success(self) -> None:
        """Mark a successful poll."""
        if self._consecutive_failures > 0:
            self.logger.info(
                "Connection stabilized after failures",
                recovered_from_failures=self._consecutive_failures,
            )
        self._consecutive_failures = 0

    def mark_failure(self) -> None:
        """Mark a failed poll."""
        self._consecutive_failures += 1
        self.logger.warning(
            "Poll failure recorded",
            consecutive_failures=self._consecutive_failures,
            max_consecutive_failures=self.max_consecutive_failures,
        )

    def is_exhausted(self) -> bool:
        """True once the consecutive failure budget is spent."""
        return self._consecutive_failures >= self.max_consecutive_failures
