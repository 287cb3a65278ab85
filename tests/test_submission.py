from __future__ import annotations

import logging
import threading

import pytest

from autopilot_treasury.constants import AUTOMATION_VALIDATOR_ADDRESS, OWNER_VALIDATOR_ADDRESS
from autopilot_treasury.exceptions import ConfirmationTimeout
from autopilot_treasury.relay import OperationStatus
from autopilot_treasury.signing import AutomationIdentity, OwnerIdentity
from autopilot_treasury.submission import OperationLeases, await_confirmation, submit
from autopilot_treasury.user_operation import UserOperation

from conftest import ACCOUNT_ADDRESS

OPERATION_ID = "0x" + "ab" * 32


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedRelay:
    """Returns ``None`` for the first ``pending`` polls, then ``status``."""

    def __init__(self, pending, status=None):
        self.pending = pending
        self.status = status
        self.polls = 0
        self.submitted = []

    def submit(self, operation):
        self.submitted.append(operation)
        return OPERATION_ID

    def get_receipt(self, operation_id):
        self.polls += 1
        if self.polls <= self.pending:
            return None
        return self.status


def _status(success=True):
    return OperationStatus(OPERATION_ID, success, transaction_hash="0x" + "cd" * 32, reason=None if success else "boom")


def test_submit_refuses_unsigned_operations():
    relay = ScriptedRelay(0)

    with pytest.raises(ValueError):
        submit(relay, UserOperation(sender=ACCOUNT_ADDRESS, nonce=0))
    assert relay.submitted == []


def test_submit_returns_the_relay_id(caplog):
    relay = ScriptedRelay(0)
    caplog.set_level(logging.INFO, logger="autopilot_treasury.submission")

    assert submit(relay, UserOperation(sender=ACCOUNT_ADDRESS, nonce=0, signature=b"\x01")) == OPERATION_ID
    assert OPERATION_ID in caplog.text


def test_await_confirmation_polls_at_the_interval():
    clock = FakeClock()
    relay = ScriptedRelay(pending=3, status=_status())

    status = await_confirmation(relay, OPERATION_ID, timeout=60, poll_interval=2, sleep=clock.sleep, clock=clock)

    assert status.success
    assert relay.polls == 4
    assert clock.sleeps == [2, 2, 2]


def test_await_confirmation_returns_reverted_status(caplog):
    clock = FakeClock()
    relay = ScriptedRelay(pending=0, status=_status(success=False))

    status = await_confirmation(relay, OPERATION_ID, sleep=clock.sleep, clock=clock)

    assert not status.success
    assert "reverted" in caplog.text


def test_await_confirmation_times_out():
    clock = FakeClock()
    relay = ScriptedRelay(pending=1000)

    with pytest.raises(ConfirmationTimeout) as excinfo:
        await_confirmation(relay, OPERATION_ID, timeout=5, poll_interval=2, sleep=clock.sleep, clock=clock)

    assert excinfo.value.operation_id == OPERATION_ID
    assert clock.sleeps == [2, 2, 1]
    assert clock.now == 5


def test_await_confirmation_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        await_confirmation(ScriptedRelay(0, _status()), OPERATION_ID, poll_interval=0)


def test_leases_serialise_one_identity_but_not_others(automation_account, owner_account):
    leases = OperationLeases()
    automation = AutomationIdentity(AUTOMATION_VALIDATOR_ADDRESS, account=automation_account)
    owner = OwnerIdentity(OWNER_VALIDATOR_ADDRESS, account=owner_account)

    with leases.hold(ACCOUNT_ADDRESS, automation):
        assert leases.is_held(ACCOUNT_ADDRESS, automation)
        assert not leases.is_held(ACCOUNT_ADDRESS, owner)
        assert not leases.is_held("0x" + "c3" * 20, automation)
        with leases.hold(ACCOUNT_ADDRESS, owner):
            assert leases.active() == 2
    assert not leases.is_held(ACCOUNT_ADDRESS, automation)


def test_released_leases_are_forgotten(automation_account):
    leases = OperationLeases()
    automation = AutomationIdentity(AUTOMATION_VALIDATOR_ADDRESS, account=automation_account)

    for index in range(20):
        with leases.hold("0x" + f"{index:040x}", automation):
            assert leases.active() == 1
    assert leases.active() == 0

    with pytest.raises(RuntimeError):
        with leases.hold(ACCOUNT_ADDRESS, automation):
            raise RuntimeError("build failed")
    assert leases.active() == 0


def test_leases_block_concurrent_holders(automation_account):
    leases = OperationLeases()
    automation = AutomationIdentity(AUTOMATION_VALIDATOR_ADDRESS, account=automation_account)
    order = []
    entered = threading.Event()

    def contender():
        entered.set()
        with leases.hold(ACCOUNT_ADDRESS, automation):
            order.append("contender")

    with leases.hold(ACCOUNT_ADDRESS, automation):
        worker = threading.Thread(target=contender)
        worker.start()
        entered.wait(timeout=5)
        order.append("holder")
    worker.join(timeout=5)

    assert order == ["holder", "contender"]
