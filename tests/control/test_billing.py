from unittest.mock import MagicMock

import pytest

from gsfleet.control.billing import ConsumeCredits
from gsfleet.errors import ReclamationError


@pytest.fixture
def consume(stores):
    return ConsumeCredits(stores.fleet, stores.credits, stores.event_log)


def test_charges_each_owner_per_server(stores, consume, make_instance_record):
    stores.credits.set_balance("alice", 10)
    stores.credits.set_balance("bob", 10)
    stores.fleet.upsert(make_instance_record(id="a1", owner_id="alice"))
    stores.fleet.upsert(make_instance_record(id="a2", owner_id="alice", status="pending"))
    stores.fleet.upsert(make_instance_record(id="b1", owner_id="bob"))

    assert consume.execute() == {"alice": 2, "bob": 1}
    assert stores.credits.get_balance("alice") == 8
    assert stores.credits.get_balance("bob") == 9


def test_no_servers_no_charge(stores, consume):
    stores.credits.set_balance("alice", 10)
    assert consume.execute() == {}
    assert stores.credits.get_balance("alice") == 10


def test_balance_can_go_negative(stores, consume, make_instance_record):
    stores.fleet.upsert(make_instance_record(id="a1", owner_id="alice"))
    consume.execute()
    assert stores.credits.get_balance("alice") == -1


def test_custom_rate(stores, make_instance_record):
    stores.credits.set_balance("alice", 10)
    stores.fleet.upsert(make_instance_record(id="a1", owner_id="alice"))
    ConsumeCredits(stores.fleet, stores.credits, stores.event_log, credits_per_server=2.5).execute()
    assert stores.credits.get_balance("alice") == 7.5


def test_failed_charge_does_not_stop_others(stores, make_instance_record):
    stores.fleet.upsert(make_instance_record(id="a1", owner_id="alice"))
    stores.fleet.upsert(make_instance_record(id="b1", owner_id="bob"))
    ledger = MagicMock()

    def subtract(owner_id, amount):
        if owner_id == "alice":
            raise OSError("disk full")
        return 5.0

    ledger.subtract.side_effect = subtract

    with pytest.raises(ReclamationError) as excinfo:
        ConsumeCredits(stores.fleet, ledger, stores.event_log).execute()

    assert len(excinfo.value.errors) == 1
    ledger.subtract.assert_any_call("bob", 1)
    last = stores.event_log.tail(1)[0]
    assert last["actor_id"] == "system"
    assert "disk full" in last["message"]
