"""Periodic reclamation policies.

Each reaper runs one cycle per ``execute()`` call. A failure on one instance
is logged and does not stop the cycle; all failures are raised together as a
``ReclamationError`` once the cycle is done. Deleting an instance that is
already gone is a no-op, so reapers may race each other safely.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

from gsfleet.control.deletion import DELETE_INSTANCE_TASK
from gsfleet.control.interfaces import (
    ActivityRepository,
    CreditLedger,
    EventLog,
    FleetRepository,
    HealthProbe,
    Notifier,
    Provisioner,
)
from gsfleet.control.state import ActivityRecord, InstanceRecord, utcnow
from gsfleet.control.task_queue import RetryPolicy, TaskQueue
from gsfleet.errors import ReclamationError
from gsfleet.games.registry import idle_minutes_for
from gsfleet.games.status import parse_status

logger = logging.getLogger(__name__)

DELETE_RETRY = RetryPolicy(
    max_retries=10,
    initial_delay_ms=60_000,
    max_delay_ms=600_000,
    backoff_multiplier=2,
)


class _Reaper:
    name = "reaper"

    def __init__(
        self,
        fleet: FleetRepository,
        activity: ActivityRepository,
        provisioner: Provisioner,
        probe: HealthProbe,
        event_log: EventLog,
        notifier: Notifier,
        rcon_port: int = 27015,
        probe_timeout_ms: int = 5000,
        clock=utcnow,
        max_workers: int = 8,
    ):
        self.fleet = fleet
        self.activity = activity
        self.provisioner = provisioner
        self.probe = probe
        self.event_log = event_log
        self.notifier = notifier
        self.rcon_port = rcon_port
        self.probe_timeout_ms = probe_timeout_ms
        self.clock = clock
        self.max_workers = max_workers

    def execute(self) -> None:
        raise NotImplementedError

    def _query(self, record: InstanceRecord, command: str) -> str:
        return self.probe.query(
            host=record.host, port=self.rcon_port, password=record.rcon_password,
            command=command, timeout_ms=self.probe_timeout_ms,
        )

    def _say(self, record: InstanceRecord, message: str) -> None:
        self._query(record, f"say {message}")

    def _say_best_effort(self, record: InstanceRecord, message: str) -> None:
        try:
            self._say(record, message)
        except Exception as e:
            logger.warning("Could not send notice to instance %s: %s", record.id, e)

    def _notify_owner(self, owner_id: str, message: str) -> None:
        # Owners can block direct messages; delivery is best effort.
        try:
            self.notifier.notify(owner_id, message)
        except Exception as e:
            logger.info("Could not notify owner %s: %s", owner_id, e)

    def _remove(self, record: InstanceRecord) -> None:
        self.provisioner.destroy(instance_id=record.id, region=record.region)
        self.fleet.delete(record.id)
        self.activity.delete(record.id)

    def _run_all(self, calls: list) -> list[BaseException]:
        """Run ``(fn, record)`` pairs concurrently and collect their failures."""
        if not calls:
            return []
        errors = []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=self.name) as pool:
            futures = [(pool.submit(fn, record), record) for fn, record in calls]
            for future, record in futures:
                try:
                    future.result()
                except Exception as e:
                    logger.error("%s failed for instance %s: %s", self.name, record.id, e)
                    errors.append(e)
        return errors

    def _raise_if_failed(self, errors: list[BaseException]) -> None:
        if errors:
            raise ReclamationError(self.name, errors)


class EmptyServerReaper(_Reaper):
    """Reclaims ready instances that have had no players for their variant's idle time."""

    name = "empty-server-reaper"

    def __init__(self, *args, queue: TaskQueue, default_idle_minutes: int = 10, **kwargs):
        super().__init__(*args, **kwargs)
        self.queue = queue
        self.default_idle_minutes = default_idle_minutes

    def execute(self) -> None:
        now = self.clock()
        servers = self.fleet.list_all("ready")
        activities = {a.instance_id: a for a in self.activity.list_all()}

        # Eviction uses the state written by the previous cycle; probing below
        # only prepares the next one.
        to_probe = []
        for server in servers:
            activity = activities.setdefault(server.id, ActivityRecord(instance_id=server.id))
            idle_minutes = idle_minutes_for(server.variant, self.default_idle_minutes)
            if activity.empty_since and now - activity.empty_since >= timedelta(minutes=idle_minutes):
                self._evict(server, idle_minutes)
                continue
            to_probe.append(server)

        errors = self._run_all([
            (lambda server: self._check(server, activities[server.id], now), server)
            for server in to_probe
        ])
        self._raise_if_failed(errors)

    def _evict(self, server: InstanceRecord, idle_minutes: int) -> None:
        if self._delete_queued(server.id):
            logger.debug("Delete for instance %s already queued", server.id)
            return
        logger.info("Terminating instance %s after %d minutes empty", server.id, idle_minutes)
        message = f"Your server {server.id} has been terminated due to inactivity for {idle_minutes} minutes."

        def on_success(deleted):
            if deleted:
                self._notify_owner(server.owner_id, message)

        def on_error(error):
            logger.error("Failed to delete instance %s: %s", server.id, error)

        self.queue.enqueue(
            DELETE_INSTANCE_TASK,
            {"instance_id": server.id, "reason": f"empty for {idle_minutes} minutes"},
            on_success=on_success, on_error=on_error, retry=DELETE_RETRY,
        )

    def _delete_queued(self, instance_id: str) -> bool:
        return any(
            t.type == DELETE_INSTANCE_TASK and t.payload.get("instance_id") == instance_id
            for t in self.queue.pending()
        )

    def _check(self, server: InstanceRecord, activity: ActivityRecord, now: datetime) -> None:
        try:
            status = parse_status(self._query(server, "status"))
        except Exception as e:
            # Unreachable servers count as empty so they cannot run forever, but a
            # countdown that already started is never reset.
            logger.warning("Status probe failed for instance %s: %s", server.id, e)
            if activity.empty_since is None:
                activity.empty_since = now
        else:
            if status.player_count == 0:
                if activity.empty_since is None:
                    logger.info("Instance %s is empty", server.id)
                    activity.empty_since = now
            else:
                if activity.empty_since is not None:
                    logger.info("Instance %s is no longer empty", server.id)
                activity.empty_since = None

        activity.last_checked_at = now

        def write(fleet: FleetRepository) -> None:
            if fleet.find_by_id(server.id) is None:
                logger.info("Instance %s no longer exists, skipping activity update", server.id)
                return
            self.activity.upsert(activity)

        self.fleet.run_in_transaction(write)


class PendingServerReaper(_Reaper):
    """Reclaims instances stuck in ``pending``, i.e. provisioning that crashed or hung."""

    name = "pending-server-reaper"

    def __init__(self, *args, timeout_minutes: int = 10, **kwargs):
        super().__init__(*args, **kwargs)
        self.timeout = timedelta(minutes=timeout_minutes)
        self.timeout_minutes = timeout_minutes

    def execute(self) -> None:
        now = self.clock()
        stale = [r for r in self.fleet.list_all("pending") if now - r.created_at >= self.timeout]
        errors = []
        for record in stale:
            try:
                self._evict(record)
            except Exception as e:
                logger.error("Failed to terminate pending instance %s: %s", record.id, e)
                errors.append(e)
        self._raise_if_failed(errors)

    def _evict(self, record: InstanceRecord) -> None:
        self._remove(record)
        message = (
            f"Server {record.id} terminated after being stuck in pending "
            f"for over {self.timeout_minutes} minutes."
        )
        self.event_log.append(message, record.owner_id or "system")
        logger.info(message)
        if record.owner_id:
            self._notify_owner(
                record.owner_id,
                f"Your server {record.id} was terminated after being stuck in pending "
                f"for over {self.timeout_minutes} minutes.",
            )


class LongRunningServerReaper(_Reaper):
    """Warns instances nearing the runtime cap and reclaims those past it."""

    name = "long-running-server-reaper"

    def __init__(self, *args, warn_hours: float = 9, max_hours: float = 10, **kwargs):
        super().__init__(*args, **kwargs)
        self.warn_after = timedelta(hours=warn_hours)
        self.max_age = timedelta(hours=max_hours)
        self.max_hours = max_hours

    def execute(self) -> None:
        now = self.clock()
        servers = self.fleet.list_all("ready")
        calls = []
        for server in servers:
            age = now - server.created_at
            if age >= self.max_age:
                calls.append((self._terminate, server))
            elif age >= self.warn_after:
                calls.append((self._warn, server))
        self._raise_if_failed(self._run_all(calls))

    def _warn(self, server: InstanceRecord) -> None:
        self._say(
            server,
            "The server has been running for too long and will be automatically "
            f"terminated when it reaches {self.max_hours:g} hours",
        )

    def _terminate(self, server: InstanceRecord) -> None:
        self._say_best_effort(server, "The server has been running for too long and is now being terminated.")
        self._remove(server)
        message = f"Server {server.id} terminated for exceeding {self.max_hours:g} hours runtime."
        self.event_log.append(message, server.owner_id)
        logger.info(message)


class CreditExhaustionReaper(_Reaper):
    """Warns owners running low on credits and reclaims servers of owners with none left."""

    name = "credit-exhaustion-reaper"

    def __init__(self, *args, credits: CreditLedger, low_balance_threshold: float = 10, **kwargs):
        super().__init__(*args, **kwargs)
        self.credits = credits
        self.low_balance_threshold = low_balance_threshold

    def execute(self) -> None:
        servers = self.fleet.list_all("ready")
        self._raise_if_failed(self._run_all([(self._check, server) for server in servers]))

    def _check(self, server: InstanceRecord) -> None:
        balance = self.credits.get_balance(server.owner_id)
        if balance <= 0:
            self._terminate(server)
        elif balance <= self.low_balance_threshold:
            self._say(
                server,
                f"You have only {balance:g} credits left. "
                "The server will be terminated if you run out of credits.",
            )

    def _terminate(self, server: InstanceRecord) -> None:
        self._say_best_effort(server, "Your server is being terminated due to lack of credits.")
        self._remove(server)
        message = f"Server {server.id} terminated due to lack of credits."
        self.event_log.append(message, server.owner_id)
        logger.info(message)
        self._notify_owner(server.owner_id, f"Your server {server.id} was terminated because you ran out of credits.")
