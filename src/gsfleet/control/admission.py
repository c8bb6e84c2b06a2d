import logging
import uuid

from gsfleet.control.interfaces import (
    BanList,
    CreditLedger,
    EventLog,
    FleetRepository,
    GuildParameters,
    IdentityDirectory,
    Provisioner,
)
from gsfleet.control.state import InstanceRecord
from gsfleet.errors import UserError
from gsfleet.games.registry import get_variant

logger = logging.getLogger(__name__)


class AdmissionController:
    """Creates a game server for an owner, one active server per owner."""

    def __init__(
        self,
        fleet: FleetRepository,
        provisioner: Provisioner,
        identities: IdentityDirectory,
        credits: CreditLedger,
        event_log: EventLog,
        guilds: GuildParameters | None = None,
        billing_enabled: bool = False,
        bans: BanList | None = None,
    ):
        self.fleet = fleet
        self.provisioner = provisioner
        self.identities = identities
        self.credits = credits
        self.event_log = event_log
        self.guilds = guilds
        self.billing_enabled = billing_enabled
        self.bans = bans

    def execute(self, region: str, variant: str, owner_id: str, guild_id: str | None = None) -> InstanceRecord:
        identity = self.identities.get_identity(owner_id)
        if not identity:
            raise UserError(
                "Before creating a server, please link your Steam ID. "
                "It is required to give you admin access to the server."
            )

        if self.bans:
            reason = self.bans.find_ban(identity, owner_id)
            if reason is not None:
                logger.warning("Banned owner %s (%s) tried to create a server", owner_id, identity)
                raise UserError(
                    f"You are banned and cannot create servers. Reason: {reason or 'No reason provided'}"
                )

        if get_variant(variant) is None:
            raise UserError(f"Unknown variant: {variant}")

        if self.billing_enabled:
            balance = self.credits.get_balance(owner_id)
            if not balance or balance <= 0:
                self.event_log.append("User tried to create a server but has no credits.", owner_id)
                raise UserError(
                    "You do not have enough credits to start a server (insufficient credits)."
                )

        instance_id = uuid.uuid4().hex[:12]

        def reserve(fleet: FleetRepository) -> InstanceRecord:
            active = [r for r in fleet.list_by_owner(owner_id) if r.is_active]
            if active:
                raise UserError(
                    "You already have a server running. Please terminate it before creating a new one."
                )
            placeholder = InstanceRecord(
                id=instance_id, owner_id=owner_id, region=region,
                variant=variant, guild_id=guild_id, status="pending",
            )
            fleet.upsert(placeholder)
            return placeholder

        # The pending row must exist before provisioning so a crash still leaves
        # something the pending reaper can clean up.
        placeholder = self.fleet.run_in_transaction(reserve)
        logger.info("Reserved instance %s for owner %s in %s (%s)", instance_id, owner_id, region, variant)

        overrides = self.guilds.get_overrides(guild_id) if self.guilds else {}
        try:
            deployed = self.provisioner.deploy(
                instance_id=instance_id, region=region, variant=variant,
                owner_id=owner_id, owner_identity=identity, overrides=overrides,
            )
        except Exception:
            logger.exception("Provisioning failed for instance %s, leaving pending reservation", instance_id)
            raise

        record = InstanceRecord(
            id=instance_id, owner_id=owner_id, region=region, variant=variant,
            guild_id=guild_id, status="ready",
            host=deployed.host, port=deployed.port,
            tv_host=deployed.tv_host, tv_port=deployed.tv_port,
            rcon_password=deployed.rcon_password,
            server_password=deployed.server_password,
            created_at=placeholder.created_at,
        )

        def promote(fleet: FleetRepository) -> bool:
            if fleet.find_by_id(instance_id) is None:
                return False
            fleet.upsert(record)
            return True

        if not self.fleet.run_in_transaction(promote):
            logger.warning("Reservation %s vanished during provisioning, destroying the new server", instance_id)
            self.provisioner.destroy(instance_id=instance_id, region=region)
            raise UserError("Your server was terminated while it was being created.")

        self.event_log.append(f"User created a server in region {region} with variant {variant}", owner_id)
        logger.info("Instance %s is ready at %s", instance_id, record.connection_string)
        return record
