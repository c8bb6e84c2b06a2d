import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError

import gsfleet.games.tf2  # noqa: F401
from gsfleet.config import Settings
from gsfleet.control.interfaces import DeployedServer
from gsfleet.control.state import (
    ActivityRecord,
    ActivityState,
    CreditState,
    EventLogFile,
    FleetState,
    InstanceRecord,
    OwnerState,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

EMPTY_STATUS = """hostname: TF2-QuickServer | Virginia
version : 9543365/24 9543365 secure
udp/ip  : 169.254.173.35:13768  (local: 0.0.0.0:27015)  (public IP from Steam: 44.200.128.3)
map     : cp_badlands at: 0 x, 0 y, 0 z
tags    : cp
players : 0 humans, 0 bots (25 max)
edicts  : 416 used of 2048 max
# userid name                uniqueid            connected ping loss state  adr
"""

OCCUPIED_STATUS = """hostname: TF2-QuickServer | Virginia
version : 9543365/24 9543365 secure
udp/ip  : 169.254.173.35:13768  (local: 0.0.0.0:27015)  (public IP from Steam: 44.200.128.3)
steamid : [A:1:1871475725:44792] (90264374594008077)
map     : cp_badlands at: 0 x, 0 y, 0 z
tags    : cp
sourcetv:  169.254.173.35:13768, delay 30.0s  (local: 0.0.0.0:27020)
players : 1 humans, 1 bots (25 max)
edicts  : 426 used of 2048 max
# userid name                uniqueid            connected ping loss state  adr
#      2 "TF2-QuickServer TV | Virginia @" BOT                       active
#      3 "sonikro"           [U:1:29162964]      00:20       60    0 active 169.254.249.16:18930
"""


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "uses_moto: test uses moto @mock_aws (allows boto3 calls)"
    )


@pytest.fixture(autouse=True)
def _block_real_aws(request, monkeypatch):
    """Prevent any test from making real AWS API calls."""
    if request.node.get_closest_marker("uses_moto"):
        return

    def _blocked_client(service, *a, **kw):
        raise RuntimeError(
            f"Unmocked boto3.client('{service}') call! "
            f"Add a @patch or fixture mock for this AWS call."
        )

    def _blocked_resource(service, *a, **kw):
        raise RuntimeError(
            f"Unmocked boto3.resource('{service}') call! "
            f"Add a @patch or fixture mock for this AWS call."
        )

    monkeypatch.setattr(boto3, "client", _blocked_client)
    monkeypatch.setattr(boto3, "resource", _blocked_resource)


@pytest.fixture(autouse=True)
def _reset_logging():
    """The CLI installs its own handler on the gsfleet logger; undo it so caplog keeps working."""
    yield
    logger = logging.getLogger("gsfleet")
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# ── Record factories ──


@pytest.fixture
def make_instance_record():
    """Factory for InstanceRecord with sensible defaults. Override any field via kwargs."""
    def _make(**overrides):
        defaults = dict(
            id="srv-1", owner_id="owner-1", region="us-east-1",
            variant="standard-competitive", status="ready",
            host="54.1.2.3", port=27015, tv_host="54.1.2.3", tv_port=27020,
            rcon_password="rcon-pw", server_password="pw", created_at=NOW,
        )
        defaults.update(overrides)
        return InstanceRecord(**defaults)
    return _make


@pytest.fixture
def make_deployed_server():
    def _make(**overrides):
        defaults = dict(
            instance_id="srv-1", region="us-east-1", variant="standard-competitive",
            host="54.1.2.3", port=27015, tv_host="54.1.2.3", tv_port=27020,
            rcon_password="rcon-pw", server_password="pw",
        )
        defaults.update(overrides)
        return DeployedServer(**defaults)
    return _make


@pytest.fixture
def make_client_error():
    """Factory for botocore ClientError."""
    def _make(code: str, message: str = "error"):
        return ClientError({"Error": {"Code": code, "Message": message}}, "TestOp")
    return _make


# ── Shared stores and collaborators ──


@pytest.fixture
def stores(tmp_path):
    """JSON stores in a temp dir, sharing one lock like the service wires them."""
    fleet = FleetState(tmp_path)
    return SimpleNamespace(
        fleet=fleet,
        activity=ActivityState(tmp_path, fleet.lock),
        credits=CreditState(tmp_path, fleet.lock),
        owners=OwnerState(tmp_path, fleet.lock),
        event_log=EventLogFile(tmp_path),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(state_dir=tmp_path / "state")


@pytest.fixture
def reaper_deps(stores):
    """Keyword arguments shared by every reaper, with mocked provisioner/probe/notifier."""
    return dict(
        fleet=stores.fleet,
        activity=stores.activity,
        provisioner=MagicMock(),
        probe=MagicMock(),
        event_log=stores.event_log,
        notifier=MagicMock(),
        clock=lambda: NOW,
        max_workers=2,
    )


def activity(instance_id, empty_since=None, last_checked_at=None):
    return ActivityRecord(instance_id=instance_id, empty_since=empty_since, last_checked_at=last_checked_at)


def minutes_ago(minutes):
    return NOW - timedelta(minutes=minutes)


class FakeClock:
    """Monotonic seconds clock the TaskQueue can be driven with."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
