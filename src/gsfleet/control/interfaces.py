"""Collaborator contracts the fleet controller depends on.

The JSON-file stores in ``gsfleet.control.state``, the AWS provisioner and the
RCON probe are the shipped implementations; any object with the same methods
works.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol, TypeVar

from gsfleet.control.state import ActivityRecord, InstanceRecord

T = TypeVar("T")


@dataclass
class DeployedServer:
    instance_id: str
    region: str
    variant: str
    host: str
    port: int
    tv_host: str = ""
    tv_port: int | None = None
    rcon_password: str = ""
    server_password: str = ""
    extra: dict[str, str] = field(default_factory=dict)


class FleetRepository(Protocol):
    def upsert(self, record: InstanceRecord) -> None: ...
    def delete(self, instance_id: str) -> None: ...
    def find_by_id(self, instance_id: str) -> InstanceRecord | None: ...
    def list_all(self, status: str | None = None) -> list[InstanceRecord]: ...
    def list_by_owner(self, owner_id: str) -> list[InstanceRecord]: ...
    def run_in_transaction(self, fn: Callable[["FleetRepository"], T]) -> T: ...


class ActivityRepository(Protocol):
    def upsert(self, activity: ActivityRecord) -> None: ...
    def delete(self, instance_id: str) -> None: ...
    def find_by_id(self, instance_id: str) -> ActivityRecord | None: ...
    def list_all(self) -> list[ActivityRecord]: ...


class Provisioner(Protocol):
    def deploy(
        self, *, instance_id: str, region: str, variant: str, owner_id: str,
        owner_identity: str, overrides: dict[str, str],
    ) -> DeployedServer: ...

    def destroy(self, *, instance_id: str, region: str) -> None: ...


class HealthProbe(Protocol):
    def query(self, *, host: str, port: int, password: str, command: str, timeout_ms: int) -> str: ...


class CreditLedger(Protocol):
    def get_balance(self, owner_id: str) -> float: ...
    def subtract(self, owner_id: str, amount: float) -> float: ...


class EventLog(Protocol):
    def append(self, message: str, actor_id: str) -> None: ...


class Notifier(Protocol):
    def notify(self, owner_id: str, message: str) -> None: ...


class IdentityDirectory(Protocol):
    def get_identity(self, owner_id: str) -> str | None: ...


class BanList(Protocol):
    def find_ban(self, identity: str, owner_id: str) -> str | None: ...


class GuildParameters(Protocol):
    def get_overrides(self, guild_id: str | None) -> dict[str, str]: ...
