import logging
import threading

from gsfleet.errors import ShutdownInProgress

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Tracks in-flight operations so the process can stop without abandoning them.

    ``run`` executes an action in the caller's thread while it is tracked.
    ``on_shutdown_wait`` stops admitting new actions and blocks until every
    tracked action has settled. Nothing in flight is ever cancelled.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._tokens: set[object] = set()
        self._draining = False

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._tokens)

    def run(self, action, *args, **kwargs):
        token = object()
        with self._cond:
            if self._draining:
                logger.info("Rejecting action, shutdown in progress")
                raise ShutdownInProgress()
            self._tokens.add(token)
        try:
            return action(*args, **kwargs)
        finally:
            with self._cond:
                self._tokens.discard(token)
                remaining = len(self._tokens)
                self._cond.notify_all()
            logger.debug("Action settled, %d remaining", remaining)

    def begin_drain(self) -> None:
        """Refuse new actions from now on without waiting for tracked ones."""
        with self._cond:
            if not self._draining:
                logger.info("Draining, new actions will be refused")
            self._draining = True

    def on_shutdown_wait(self, timeout: float | None = None) -> bool:
        """Begin draining and wait for tracked actions. Returns False on timeout."""
        with self._cond:
            self._draining = True
            logger.info("Shutdown initiated, waiting for %d action(s)", len(self._tokens))
            settled = self._cond.wait_for(lambda: not self._tokens, timeout=timeout)
            if settled:
                self._tokens.clear()
                logger.info("All actions settled")
            else:
                logger.warning("Shutdown wait timed out with %d action(s) in flight", len(self._tokens))
            return settled
