"""Wires the controller together and owns its background scheduler."""

import logging
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gsfleet.config import Settings
from gsfleet.control.admission import AdmissionController
from gsfleet.control.billing import ConsumeCredits
from gsfleet.control.deletion import DELETE_INSTANCE_TASK, DeleteInstance, TerminateForOwner
from gsfleet.control.interfaces import HealthProbe, Notifier, Provisioner
from gsfleet.control.probe import RconProbe
from gsfleet.control.provisioner import Ec2Provisioner
from gsfleet.control.reapers import (
    CreditExhaustionReaper,
    EmptyServerReaper,
    LongRunningServerReaper,
    PendingServerReaper,
)
from gsfleet.control.shutdown import ShutdownCoordinator
from gsfleet.control.state import (
    ActivityState,
    CreditState,
    EventLogFile,
    FleetState,
    InstanceRecord,
    OwnerState,
)
from gsfleet.control.task_queue import TaskQueue
from gsfleet.errors import ShutdownInProgress, UserError
from gsfleet.games.status import ProbeStatus, parse_status

logger = logging.getLogger(__name__)


class LogNotifier:
    """Notifier that writes owner messages to the log. Swap in a chat integration in production."""

    def notify(self, owner_id: str, message: str) -> None:
        logger.info("Notify %s: %s", owner_id, message)


class FleetService:
    def __init__(
        self,
        settings: Settings,
        provisioner: Provisioner,
        probe: HealthProbe,
        notifier: Notifier | None = None,
        clock=None,
    ):
        self.settings = settings
        state_dir = Path(settings.state_dir)
        self.fleet = FleetState(state_dir)
        self.activity = ActivityState(state_dir, self.fleet.lock)
        self.credits = CreditState(state_dir, self.fleet.lock)
        self.owners = OwnerState(state_dir, self.fleet.lock)
        self.event_log = EventLogFile(state_dir)
        self.provisioner = provisioner
        self.probe = probe
        self.notifier = notifier or LogNotifier()

        self.coordinator = ShutdownCoordinator()
        self.queue = TaskQueue(self.coordinator, tick_seconds=settings.queue_tick_seconds)

        self.admission = AdmissionController(
            fleet=self.fleet, provisioner=provisioner, identities=self.owners,
            credits=self.credits, event_log=self.event_log, guilds=self.owners,
            billing_enabled=settings.billing_enabled, bans=self.owners,
        )
        self.delete_instance = DeleteInstance(self.fleet, self.activity, provisioner, self.event_log)
        self.terminate_for_owner = TerminateForOwner(self.fleet, self.delete_instance, self.event_log)
        self.queue.register_processor(DELETE_INSTANCE_TASK, self.delete_instance.process)

        common = dict(
            fleet=self.fleet, activity=self.activity, provisioner=provisioner,
            probe=probe, event_log=self.event_log, notifier=self.notifier,
            rcon_port=settings.rcon_port, probe_timeout_ms=settings.probe_timeout_ms,
        )
        if clock is not None:
            common["clock"] = clock
        self.reapers = {
            "empty": EmptyServerReaper(
                queue=self.queue, default_idle_minutes=settings.default_idle_minutes, **common,
            ),
            "pending": PendingServerReaper(timeout_minutes=settings.pending_timeout_minutes, **common),
            "long-running": LongRunningServerReaper(
                warn_hours=settings.long_running_warn_hours,
                max_hours=settings.long_running_max_hours, **common,
            ),
            "credit": CreditExhaustionReaper(
                credits=self.credits, low_balance_threshold=settings.low_balance_threshold, **common,
            ),
        }
        intervals = {
            "empty": settings.empty_interval,
            "pending": settings.pending_interval,
            "long-running": settings.long_running_interval,
            "credit": settings.credit_interval,
        }
        self.consume_credits = ConsumeCredits(
            self.fleet, self.credits, self.event_log, credits_per_server=settings.credits_per_server,
        )

        self.scheduler = BackgroundScheduler()
        for name, reaper in self.reapers.items():
            if name == "credit" and not settings.billing_enabled:
                continue
            self._schedule(f"{name}-reaper", intervals[name], reaper.execute)
        if settings.billing_enabled:
            self._schedule(ConsumeCredits.name, settings.credit_consumption_interval, self.consume_credits.execute)

    def _schedule(self, job_id: str, seconds: float, action) -> None:
        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=seconds),
            args=[job_id, action],
            id=job_id,
            name=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.debug("Scheduled %s every %ss", job_id, seconds)

    def _run_job(self, job_id: str, action) -> None:
        try:
            self.coordinator.run(action)
        except ShutdownInProgress:
            logger.info("Skipped %s, shutdown in progress", job_id)
        except Exception:
            logger.exception("%s cycle failed", job_id)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, notifier: Notifier | None = None, on_status=None):
        import gsfleet.games.tf2  # noqa: F401

        settings = settings or Settings()
        provisioner = Ec2Provisioner(key_dir=Path(settings.state_dir) / "keys", on_status=on_status)
        return cls(settings, provisioner=provisioner, probe=RconProbe(), notifier=notifier)

    def start(self) -> None:
        self.queue.start()
        self.scheduler.start()
        logger.info("Fleet service started")

    def shutdown(self, timeout: float | None = None) -> bool:
        """Refuse new work, stop scheduling, then wait for every in-flight action to settle.

        Jobs already running are not waited on here; the coordinator tracks them.
        """
        logger.info("Shutting down fleet service")
        self.coordinator.begin_drain()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.queue.stop()
        return self.coordinator.on_shutdown_wait(timeout)

    def create(self, owner_id: str, variant: str, region: str | None = None, guild_id: str | None = None) -> InstanceRecord:
        region = region or self.settings.default_region
        return self.coordinator.run(self.admission.execute, region, variant, owner_id, guild_id)

    def terminate(self, owner_id: str, instance_id: str | None = None) -> str:
        return self.coordinator.run(self.terminate_for_owner.execute, owner_id, instance_id)

    def reap(self, policy: str) -> None:
        reaper = self.reapers.get(policy)
        if reaper is None:
            raise UserError(f"Unknown policy: {policy}. Choose from {', '.join(self.reapers)}.")
        self.coordinator.run(reaper.execute)

    def list_instances(self, owner_id: str | None = None) -> list[InstanceRecord]:
        if owner_id:
            return self.fleet.list_by_owner(owner_id)
        return self.fleet.list_all()

    def status(self, instance_id: str) -> ProbeStatus:
        """Probe a ready instance and return its parsed status."""
        record = self.fleet.find_by_id(instance_id)
        if record is None:
            raise UserError(f"Server with ID {instance_id} does not exist.")
        if record.status != "ready":
            raise UserError(f"Server {instance_id} is still {record.status}.")
        transcript = self.probe.query(
            host=record.host, port=self.settings.rcon_port, password=record.rcon_password,
            command="status", timeout_ms=self.settings.probe_timeout_ms,
        )
        return parse_status(transcript)
