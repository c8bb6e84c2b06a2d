import logging

from gsfleet.control.interfaces import ActivityRepository, EventLog, FleetRepository, Provisioner
from gsfleet.errors import UserError

logger = logging.getLogger(__name__)

DELETE_INSTANCE_TASK = "delete-instance"


class DeleteInstance:
    """Deprovisions an instance and removes its rows. Missing instances are a no-op.

    Registered as the processor for ``delete-instance`` tasks.
    """

    def __init__(
        self,
        fleet: FleetRepository,
        activity: ActivityRepository,
        provisioner: Provisioner,
        event_log: EventLog,
    ):
        self.fleet = fleet
        self.activity = activity
        self.provisioner = provisioner
        self.event_log = event_log

    def execute(self, instance_id: str, reason: str = "") -> bool:
        record = self.fleet.find_by_id(instance_id)
        if record is None:
            logger.info("Instance %s was already deleted, skipping", instance_id)
            return False

        self.provisioner.destroy(instance_id=instance_id, region=record.region)

        def remove(fleet: FleetRepository) -> bool:
            if fleet.find_by_id(instance_id) is None:
                return False
            fleet.delete(instance_id)
            self.activity.delete(instance_id)
            return True

        if not self.fleet.run_in_transaction(remove):
            logger.info("Instance %s no longer exists, skipping cleanup", instance_id)
            return False

        message = f"Server {instance_id} deleted in region {record.region}."
        if reason:
            message = f"Server {instance_id} deleted in region {record.region} ({reason})."
        self.event_log.append(message, record.owner_id)
        logger.info("Instance %s deleted", instance_id)
        return True

    def process(self, payload: dict) -> bool:
        return self.execute(payload["instance_id"], reason=payload.get("reason", ""))


class TerminateForOwner:
    """Explicit termination requested by the owner."""

    def __init__(self, fleet: FleetRepository, delete_instance: DeleteInstance, event_log: EventLog):
        self.fleet = fleet
        self.delete_instance = delete_instance
        self.event_log = event_log

    def execute(self, owner_id: str, instance_id: str | None = None) -> str:
        if instance_id is None:
            owned = [r for r in self.fleet.list_by_owner(owner_id) if r.is_active]
            if not owned:
                raise UserError("You don't have any servers running.")
            instance_id = owned[0].id

        record = self.fleet.find_by_id(instance_id)
        if record is None or record.owner_id != owner_id:
            self.event_log.append(
                "User tried to delete a server but it does not exist or does not belong to them.",
                owner_id,
            )
            raise UserError(f"Server with ID {instance_id} does not exist or does not belong to you.")

        self.delete_instance.execute(instance_id, reason="terminated by owner")
        return instance_id
