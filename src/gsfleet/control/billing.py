"""Charges owners for the servers they keep running."""

import logging
from collections import Counter

from gsfleet.control.interfaces import CreditLedger, EventLog, FleetRepository
from gsfleet.errors import ReclamationError

logger = logging.getLogger(__name__)


class ConsumeCredits:
    """Takes ``credits_per_server`` from each owner for every active server they hold.

    One call is one billing period. Returns the credits taken per owner.
    """

    name = "credit-consumption"

    def __init__(
        self,
        fleet: FleetRepository,
        credits: CreditLedger,
        event_log: EventLog,
        credits_per_server: float = 1,
    ):
        self.fleet = fleet
        self.credits = credits
        self.event_log = event_log
        self.credits_per_server = credits_per_server

    def execute(self) -> dict[str, float]:
        servers_per_owner = Counter(r.owner_id for r in self.fleet.list_all() if r.is_active)
        consumed: dict[str, float] = {}
        errors: list[Exception] = []
        for owner_id, count in servers_per_owner.items():
            amount = count * self.credits_per_server
            try:
                remaining = self.credits.subtract(owner_id, amount)
            except Exception as e:
                logger.exception("Could not subtract credits from %s", owner_id)
                errors.append(e)
                continue
            consumed[owner_id] = amount
            logger.info("Subtracted %g credit(s) from %s, %g left", amount, owner_id, remaining)

        if errors:
            self.event_log.append(f"Error during credit consumption: {errors[0]}", "system")
            raise ReclamationError(self.name, errors)
        return consumed
