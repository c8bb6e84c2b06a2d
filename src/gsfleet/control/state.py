import fcntl
import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path

from gsfleet.config import DEFAULT_STATE_DIR


ACTIVE_STATUSES = ("pending", "ready")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class InstanceRecord:
    id: str
    owner_id: str
    region: str
    variant: str
    status: str = "pending"
    guild_id: str | None = None
    host: str = ""
    port: int | None = None
    tv_host: str = ""
    tv_port: int | None = None
    rcon_password: str = ""
    server_password: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def connection_string(self) -> str:
        if self.host and self.port:
            return f"{self.host}:{self.port}"
        return self.host

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = _to_iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceRecord":
        data = dict(data)
        data["created_at"] = _from_iso(data.get("created_at")) or utcnow()
        return cls(**data)


@dataclass
class ActivityRecord:
    instance_id: str
    empty_since: datetime | None = None
    last_checked_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "empty_since": _to_iso(self.empty_since),
            "last_checked_at": _to_iso(self.last_checked_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityRecord":
        return cls(
            instance_id=data["instance_id"],
            empty_since=_from_iso(data.get("empty_since")),
            last_checked_at=_from_iso(data.get("last_checked_at")),
        )


_locks: dict[Path, "StateLock"] = {}
_locks_mutex = threading.Lock()


class StateLock:
    """Exclusive lock over a state directory, shared by every store in it.

    Uses ``flock`` so separate controller processes on the same host serialize
    too. Re-entrant per thread, so a store call made inside a transaction does
    not deadlock.
    """

    def __init__(self, state_dir: Path):
        self.path = state_dir / ".lock"
        self._local = threading.local()

    @contextmanager
    def hold(self):
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return
        with open(self.path, "a") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            self._local.depth = 1
            try:
                yield
            finally:
                self._local.depth = 0
                fcntl.flock(fh, fcntl.LOCK_UN)

    @classmethod
    def for_dir(cls, state_dir: Path) -> "StateLock":
        key = Path(state_dir).resolve()
        with _locks_mutex:
            if key not in _locks:
                _locks[key] = cls(key)
            return _locks[key]


class _JsonStore:
    filename = ""

    def __init__(self, state_dir: Path = DEFAULT_STATE_DIR, lock: StateLock | None = None):
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / self.filename
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock = lock or StateLock.for_dir(self.state_dir)

    def _load(self) -> dict[str, dict]:
        if not self.state_file.exists():
            return {}
        return json.loads(self.state_file.read_text())

    def _save_all(self, data: dict[str, dict]) -> None:
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.state_file)

    def run_in_transaction(self, fn):
        """Run ``fn(self)`` while holding the state lock and return its result."""
        with self.lock.hold():
            return fn(self)


class FleetState(_JsonStore):
    filename = "instances.json"

    def upsert(self, record: InstanceRecord) -> None:
        with self.lock.hold():
            data = self._load()
            data[record.id] = record.to_dict()
            self._save_all(data)

    def delete(self, instance_id: str) -> None:
        with self.lock.hold():
            data = self._load()
            if data.pop(instance_id, None) is not None:
                self._save_all(data)

    def find_by_id(self, instance_id: str) -> InstanceRecord | None:
        with self.lock.hold():
            data = self._load()
        if instance_id in data:
            return InstanceRecord.from_dict(data[instance_id])
        return None

    def list_all(self, status: str | None = None) -> list[InstanceRecord]:
        with self.lock.hold():
            data = self._load()
        records = [InstanceRecord.from_dict(v) for v in data.values()]
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    def list_by_owner(self, owner_id: str) -> list[InstanceRecord]:
        return [r for r in self.list_all() if r.owner_id == owner_id]


class ActivityState(_JsonStore):
    filename = "activity.json"

    def upsert(self, activity: ActivityRecord) -> None:
        with self.lock.hold():
            data = self._load()
            data[activity.instance_id] = activity.to_dict()
            self._save_all(data)

    def delete(self, instance_id: str) -> None:
        with self.lock.hold():
            data = self._load()
            if data.pop(instance_id, None) is not None:
                self._save_all(data)

    def find_by_id(self, instance_id: str) -> ActivityRecord | None:
        with self.lock.hold():
            data = self._load()
        if instance_id in data:
            return ActivityRecord.from_dict(data[instance_id])
        return None

    def list_all(self) -> list[ActivityRecord]:
        with self.lock.hold():
            data = self._load()
        return [ActivityRecord.from_dict(v) for v in data.values()]


class CreditState(_JsonStore):
    filename = "credits.json"

    def get_balance(self, owner_id: str) -> float:
        with self.lock.hold():
            return float(self._load().get(owner_id, {}).get("balance", 0))

    def set_balance(self, owner_id: str, balance: float) -> None:
        with self.lock.hold():
            data = self._load()
            data[owner_id] = {"balance": balance}
            self._save_all(data)

    def subtract(self, owner_id: str, amount: float) -> float:
        """Take ``amount`` off the balance and return what is left. Balances may go negative."""
        with self.lock.hold():
            data = self._load()
            balance = float(data.get(owner_id, {}).get("balance", 0)) - amount
            data[owner_id] = {"balance": balance}
            self._save_all(data)
            return balance


class OwnerState(_JsonStore):
    """Owner identities (e.g. a Steam ID), bans and per-guild environment overrides."""

    filename = "owners.json"

    def get_identity(self, owner_id: str) -> str | None:
        with self.lock.hold():
            return self._load().get("identities", {}).get(owner_id) or None

    def bind_identity(self, owner_id: str, identity: str) -> None:
        with self.lock.hold():
            data = self._load()
            data.setdefault("identities", {})[owner_id] = identity
            self._save_all(data)

    def ban(self, key: str, reason: str = "") -> None:
        """Ban an owner id or an in-game identity from creating servers."""
        with self.lock.hold():
            data = self._load()
            data.setdefault("bans", {})[key] = reason
            self._save_all(data)

    def unban(self, key: str) -> None:
        with self.lock.hold():
            data = self._load()
            if data.get("bans", {}).pop(key, None) is not None:
                self._save_all(data)

    def find_ban(self, identity: str, owner_id: str) -> str | None:
        """Return the ban reason if either key is banned, else None."""
        with self.lock.hold():
            bans = self._load().get("bans", {})
        for key in (identity, owner_id):
            if key in bans:
                return bans[key]
        return None

    def get_overrides(self, guild_id: str | None) -> dict[str, str]:
        if not guild_id:
            return {}
        with self.lock.hold():
            return dict(self._load().get("guilds", {}).get(guild_id, {}))

    def set_overrides(self, guild_id: str, overrides: dict[str, str]) -> None:
        with self.lock.hold():
            data = self._load()
            data.setdefault("guilds", {})[guild_id] = dict(overrides)
            self._save_all(data)


class EventLogFile:
    """Append-only JSON-lines audit trail of fleet events."""

    def __init__(self, state_dir: Path = DEFAULT_STATE_DIR):
        self.path = Path(state_dir) / "events.jsonl"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = threading.Lock()

    def append(self, message: str, actor_id: str) -> None:
        line = json.dumps({"at": utcnow().isoformat(), "actor_id": actor_id, "message": message})
        with self._mutex, open(self.path, "a") as fh:
            fh.write(line + "\n")

    def tail(self, count: int = 20) -> list[dict]:
        if not self.path.exists():
            return []
        lines = self.path.read_text().splitlines()[-count:]
        return [json.loads(line) for line in lines if line.strip()]
