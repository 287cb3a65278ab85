from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from autopilot_treasury.automation import AutomationService
from autopilot_treasury.builder import OperationBuilder
from autopilot_treasury.constants import CHAIN_ID, ENTRY_POINT_ADDRESS, TREASURY_MODULE_ADDRESS, USDC_ADDRESS
from autopilot_treasury.exceptions import RelayError
from autopilot_treasury.nonce import KernelNonceKeyV3
from autopilot_treasury.scheduler import MAX_ERROR_COUNT, Scheduler, TaskStatus

from conftest import ACCOUNT_ADDRESS, DAI, DAI_ADDRESS, ROUTER_ADDRESS, USDC


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FailingService:
    def __init__(self, reverted=False):
        self.reverted = reverted
        self.calls = 0

    def submit_rebalance(self, wallet, asset):
        self.calls += 1
        if self.reverted:
            return SimpleNamespace(success=False, operation_id="0x01", status=SimpleNamespace(reason="AA24"))
        raise RelayError("eth_sendUserOperation", "bundler unavailable")


def _service(deployment, relay):
    builder = OperationBuilder(
        relay,
        deployment.entry_point,
        entry_point=ENTRY_POINT_ADDRESS,
        chain_id=CHAIN_ID,
        codec=KernelNonceKeyV3(),
        module_address=TREASURY_MODULE_ADDRESS,
    )
    return AutomationService(builder, relay, deployment.automation_identity(), sleep=lambda seconds: None)


def test_add_task_validates_input():
    scheduler = Scheduler(clock=FakeClock())

    with pytest.raises(ValueError, match="wallet"):
        scheduler.add_task("0x1234")
    with pytest.raises(ValueError, match="action"):
        scheduler.add_task(ACCOUNT_ADDRESS, "flush")
    with pytest.raises(ValueError, match="router"):
        scheduler.add_task(ACCOUNT_ADDRESS, "sweep")
    with pytest.raises(ValueError):
        scheduler.add_task(ACCOUNT_ADDRESS, interval=0)
    assert scheduler.list_tasks() == []


def test_task_lifecycle():
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)

    first = scheduler.add_task(ACCOUNT_ADDRESS.lower(), interval=60)
    second = scheduler.add_task(ACCOUNT_ADDRESS, "sweep", router=ROUTER_ADDRESS, dust_assets=[DAI_ADDRESS])

    assert (first.id, second.id) == ("task_1", "task_2")
    assert first.wallet == ACCOUNT_ADDRESS
    assert first.next_run_at == 60
    assert scheduler.get_task("task_2").dust_assets == (DAI_ADDRESS,)
    assert scheduler.remove_task("task_1")
    assert not scheduler.remove_task("task_1")
    assert [task.id for task in scheduler.list_tasks()] == ["task_2"]
    assert scheduler.run_task("task_9").message == "Task not found: task_9"


def test_tick_runs_only_due_tasks(deployment, local_relay):
    clock = FakeClock()
    scheduler = Scheduler(_service(deployment, local_relay), clock=clock)
    task = scheduler.add_task(ACCOUNT_ADDRESS, interval=60)
    deployment.fund(1000 * USDC)

    runs, _ = scheduler.tick()
    assert runs == []
    assert deployment.liquid() == 1000 * USDC

    clock.now = 60
    (run,), _ = scheduler.tick()

    assert run.success
    assert run.operation_id in local_relay.receipts
    assert deployment.liquid() == 100 * USDC
    assert task.status is TaskStatus.COMPLETED
    assert (task.last_run_at, task.next_run_at) == (60, 120)


def test_sweep_task_consolidates_dust(deployment, local_relay):
    clock = FakeClock()
    scheduler = Scheduler(_service(deployment, local_relay), clock=clock)
    task = scheduler.add_task(ACCOUNT_ADDRESS, "sweep", router=ROUTER_ADDRESS, dust_assets=[DAI_ADDRESS])
    deployment.fund(5 * DAI, token=DAI_ADDRESS)

    run = scheduler.run_task(task.id)

    assert run.success
    assert deployment.chain.balance_of(DAI_ADDRESS, ACCOUNT_ADDRESS) == 0
    assert deployment.liquid() == 4_985_000


def test_repeated_failures_disable_the_task(caplog):
    clock = FakeClock()
    service = FailingService()
    scheduler = Scheduler(service, clock=clock)
    task = scheduler.add_task(ACCOUNT_ADDRESS, interval=10)
    caplog.set_level(logging.WARNING)

    for _ in range(MAX_ERROR_COUNT):
        clock.now = task.next_run_at
        (run,), _ = scheduler.tick()
        assert not run.success

    assert task.status is TaskStatus.ERROR
    assert task.error_count == MAX_ERROR_COUNT
    assert not task.enabled
    assert "bundler unavailable" in task.last_error
    assert "disabled after" in caplog.text

    clock.now = task.next_run_at
    assert scheduler.tick()[0] == []
    assert service.calls == MAX_ERROR_COUNT

    scheduler.set_task_enabled(task.id, True)
    assert (task.status, task.error_count, task.enabled) == (TaskStatus.IDLE, 0, True)


def test_reverted_operations_count_as_failures():
    scheduler = Scheduler(FailingService(reverted=True), clock=FakeClock())
    task = scheduler.add_task(ACCOUNT_ADDRESS)

    run = scheduler.run_task(task.id)

    assert not run.success
    assert run.operation_id == "0x01"
    assert task.error_count == 1
    assert "AA24" in task.last_error


def test_success_resets_the_error_count(deployment, local_relay):
    scheduler = Scheduler(FailingService(), clock=FakeClock())
    task = scheduler.add_task(ACCOUNT_ADDRESS)
    scheduler.run_task(task.id)
    assert task.error_count == 1

    scheduler.service = _service(deployment, local_relay)
    assert scheduler.run_task(task.id).success
    assert (task.error_count, task.last_error) == (0, None)


def test_registry_check_rebalances_wallets_with_surplus(deployment, local_relay):
    scheduler = Scheduler(_service(deployment, local_relay), deployment.module, clock=FakeClock())
    scheduler.register_wallet(ACCOUNT_ADDRESS.lower())
    scheduler.register_wallet(ACCOUNT_ADDRESS)
    deployment.fund(1000 * USDC)

    _, registry = scheduler.tick()

    assert scheduler.wallets == [ACCOUNT_ADDRESS]
    assert [check.surplus for check in registry.checks] == [900 * USDC]
    assert [result.success for result in registry.results] == [True]
    assert deployment.module.yield_balance(ACCOUNT_ADDRESS, USDC_ADDRESS) == 900 * USDC

    _, registry = scheduler.tick()
    assert registry.results == []
    assert scheduler.unregister_wallet(ACCOUNT_ADDRESS)
    assert not scheduler.unregister_wallet(ACCOUNT_ADDRESS)


def test_registry_errors_are_reported_per_wallet(deployment):
    scheduler = Scheduler(FailingService(), deployment.module, clock=FakeClock())
    scheduler.register_wallet(ACCOUNT_ADDRESS)
    deployment.fund(500 * USDC)

    _, registry = scheduler.tick()

    assert registry.results == []
    assert "bundler unavailable" in registry.errors[ACCOUNT_ADDRESS]


def test_simulation_mode_submits_nothing(deployment, caplog):
    scheduler = Scheduler(reader=deployment.module, clock=FakeClock())
    task = scheduler.add_task(ACCOUNT_ADDRESS)
    scheduler.register_wallet(ACCOUNT_ADDRESS)
    deployment.fund(1000 * USDC)
    caplog.set_level(logging.INFO)

    run = scheduler.run_task(task.id)
    _, registry = scheduler.tick()

    assert run.success and run.simulated
    assert registry.results == []
    assert deployment.liquid() == 1000 * USDC
    assert "[simulation] would submit rebalance" in caplog.text


def test_status_and_run_loop():
    clock = FakeClock()
    scheduler = Scheduler(tick_interval=30, clock=clock, sleep=clock.sleep)
    scheduler.add_task(ACCOUNT_ADDRESS)
    disabled = scheduler.add_task(ACCOUNT_ADDRESS)
    scheduler.set_task_enabled(disabled.id, False)

    assert scheduler.status().next_tick_at is None
    assert scheduler.run_forever(max_ticks=3) == 3
    assert clock.sleeps == [30, 30]

    status = scheduler.status().as_dict()
    assert status["simulation"] is True
    assert (status["task_count"], status["enabled_task_count"]) == (2, 1)
    assert (status["last_tick_at"], status["next_tick_at"]) == (60, 90)


def test_stop_ends_the_loop():
    scheduler = Scheduler(clock=FakeClock())
    scheduler._sleep = lambda seconds: scheduler.stop()

    assert scheduler.run_forever() == 1
