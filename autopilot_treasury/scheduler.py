"""Periodic maintenance for automation-enabled wallets.

Two things happen on every :meth:`Scheduler.tick`:

* tasks whose ``next_run_at`` has passed run their action (rebalance or
  sweep) through the :class:`~autopilot_treasury.automation.AutomationService`;
* every registered wallet is checked against the treasury, and a rebalance
  is submitted for each one holding liquid funds above its threshold.

A task that fails :data:`MAX_ERROR_COUNT` times in a row is disabled until it
is re-enabled by hand. Without a service the scheduler runs in simulation
mode: it logs what it would submit and submits nothing.

Tasks live in memory only.
"""
from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .automation import AutomationResult, AutomationService
from .constants import USDC_ADDRESS
from .encoding import to_checksum
from .exceptions import ConfigurationError, ConfirmationTimeout, RelayError, StrategyQueryError, TreasuryError
from .maintenance import TreasuryReader, WalletCheck, check_wallets, format_units

_LOGGER = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 30.0
DEFAULT_TASK_INTERVAL = 5 * 60.0
MAX_ERROR_COUNT = 5
TASK_ACTIONS = ("rebalance", "sweep")

# Failures a single task or wallet check may hit without stopping the others.
TASK_ERRORS = (ConfigurationError, ConfirmationTimeout, RelayError, StrategyQueryError, TreasuryError, ValueError)


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class SchedulerTask:
    id: str
    wallet: str
    action: str
    asset: str
    interval: float
    next_run_at: float
    router: Optional[str] = None
    dust_assets: Tuple[str, ...] = ()
    enabled: bool = True
    status: TaskStatus = TaskStatus.IDLE
    error_count: int = 0
    last_run_at: Optional[float] = None
    last_error: Optional[str] = None

    def is_due(self, now: float) -> bool:
        return self.enabled and self.status is not TaskStatus.RUNNING and self.next_run_at <= now

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet": self.wallet,
            "action": self.action,
            "asset": self.asset,
            "interval": self.interval,
            "enabled": self.enabled,
            "status": self.status.value,
            "error_count": self.error_count,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class TaskRun:
    task_id: str
    success: bool
    message: str
    operation_id: Optional[str] = None
    simulated: bool = False


@dataclass(frozen=True)
class SchedulerStatus:
    simulation: bool
    tick_interval: float
    task_count: int
    enabled_task_count: int
    registered_wallets: int
    last_tick_at: Optional[float]

    @property
    def next_tick_at(self) -> Optional[float]:
        if self.last_tick_at is None:
            return None
        return self.last_tick_at + self.tick_interval

    def as_dict(self) -> Dict[str, Any]:
        return {
            "simulation": self.simulation,
            "tick_interval": self.tick_interval,
            "task_count": self.task_count,
            "enabled_task_count": self.enabled_task_count,
            "registered_wallets": self.registered_wallets,
            "last_tick_at": self.last_tick_at,
            "next_tick_at": self.next_tick_at,
        }


@dataclass
class RegistryCheck:
    checks: List[WalletCheck] = field(default_factory=list)
    results: List[AutomationResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def _short(wallet: str) -> str:
    return f"{wallet[:6]}...{wallet[-4:]}"


class Scheduler:
    def __init__(
        self,
        service: Optional[AutomationService] = None,
        reader: Optional[TreasuryReader] = None,
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        asset: str = USDC_ADDRESS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.service = service
        self.reader = reader
        self.tick_interval = tick_interval
        self.asset = to_checksum(asset)
        self._clock = clock
        self._sleep = sleep
        self._tasks: Dict[str, SchedulerTask] = {}
        self._wallets: List[str] = []
        self._ids = itertools.count(1)
        self._last_tick_at: Optional[float] = None
        self._stopped = False

    @property
    def simulation(self) -> bool:
        return self.service is None

    # -- tasks --------------------------------------------------------------------

    def add_task(
        self,
        wallet: str,
        action: str = "rebalance",
        *,
        asset: Optional[str] = None,
        interval: float = DEFAULT_TASK_INTERVAL,
        router: Optional[str] = None,
        dust_assets: Sequence[str] = (),
    ) -> SchedulerTask:
        try:
            wallet = to_checksum(wallet)
        except ValueError as exc:
            raise ValueError(f"Invalid wallet address: {wallet!r}") from exc
        if action not in TASK_ACTIONS:
            raise ValueError(f"Invalid action {action!r}; expected one of {', '.join(TASK_ACTIONS)}")
        if interval <= 0:
            raise ValueError("Task interval must be positive")
        if action == "sweep" and (router is None or not dust_assets):
            raise ValueError("Sweep tasks need a router and at least one dust asset")

        task = SchedulerTask(
            id=f"task_{next(self._ids)}",
            wallet=wallet,
            action=action,
            asset=to_checksum(asset) if asset else self.asset,
            interval=interval,
            next_run_at=self._clock() + interval,
            router=to_checksum(router) if router else None,
            dust_assets=tuple(to_checksum(dust) for dust in dust_assets),
        )
        self._tasks[task.id] = task
        _LOGGER.info("Added %s: %s for %s every %gs", task.id, action, wallet, interval)
        return task

    def remove_task(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        _LOGGER.info("Removed %s for %s", task_id, task.wallet)
        return True

    def get_task(self, task_id: str) -> Optional[SchedulerTask]:
        return self._tasks.get(task_id)

    def list_tasks(self) -> List[SchedulerTask]:
        return list(self._tasks.values())

    def set_task_enabled(self, task_id: str, enabled: bool) -> Optional[SchedulerTask]:
        """Enable or disable a task; re-enabling a failed task clears its error count."""

        task = self._tasks.get(task_id)
        if task is None:
            return None
        task.enabled = enabled
        if enabled and task.status is TaskStatus.ERROR:
            task.status = TaskStatus.IDLE
            task.error_count = 0
        _LOGGER.info("%s %s", task_id, "enabled" if enabled else "disabled")
        return task

    def _submit(self, task: SchedulerTask) -> AutomationResult:
        if self.service is None:
            raise ConfigurationError("No automation service configured")
        if task.action == "sweep":
            return self.service.submit_sweep_dust(task.wallet, task.router or "", task.asset, list(task.dust_assets))
        return self.service.submit_rebalance(task.wallet, task.asset)

    def _record_failure(self, task: SchedulerTask, error: str) -> None:
        task.status = TaskStatus.ERROR
        task.error_count += 1
        task.last_error = error
        _LOGGER.warning("%s failed (%d in a row): %s", task.id, task.error_count, error)
        if task.error_count >= MAX_ERROR_COUNT:
            task.enabled = False
            _LOGGER.error("%s disabled after %d consecutive errors", task.id, MAX_ERROR_COUNT)

    def run_task(self, task_id: str) -> TaskRun:
        """Run one task now, whether or not it is due."""

        task = self._tasks.get(task_id)
        if task is None:
            return TaskRun(task_id, False, f"Task not found: {task_id}")

        task.status = TaskStatus.RUNNING
        started = self._clock()
        message = f"{_short(task.wallet)} -> {task.action}"
        operation_id: Optional[str] = None
        error: Optional[str] = None
        if self.simulation:
            _LOGGER.info("[simulation] %s: would submit %s", task_id, message)
        else:
            try:
                result = self._submit(task)
            except TASK_ERRORS as exc:
                error = str(exc)
            else:
                operation_id = result.operation_id
                if not result.success:
                    error = f"operation {operation_id} reverted: {result.status.reason}"

        task.last_run_at = started
        task.next_run_at = self._clock() + task.interval
        if error is not None:
            self._record_failure(task, error)
            return TaskRun(task_id, False, f"Error: {error}", operation_id=operation_id)
        task.status = TaskStatus.COMPLETED
        task.error_count = 0
        task.last_error = None
        return TaskRun(task_id, True, message, operation_id=operation_id, simulated=self.simulation)

    # -- registry -----------------------------------------------------------------

    def register_wallet(self, wallet: str) -> str:
        wallet = to_checksum(wallet)
        if wallet not in self._wallets:
            self._wallets.append(wallet)
        return wallet

    def unregister_wallet(self, wallet: str) -> bool:
        wallet = to_checksum(wallet)
        if wallet not in self._wallets:
            return False
        self._wallets.remove(wallet)
        return True

    @property
    def wallets(self) -> List[str]:
        return list(self._wallets)

    def check_registry(self) -> RegistryCheck:
        """Rebalance every registered wallet whose liquid balance exceeds its threshold."""

        outcome = RegistryCheck()
        if self.reader is None or not self._wallets:
            return outcome
        try:
            outcome.checks = check_wallets(self.reader, self._wallets, self.asset)
        except TASK_ERRORS as exc:
            _LOGGER.warning("Checking %d wallet(s) failed: %s", len(self._wallets), exc)
            outcome.errors["*"] = str(exc)
            return outcome

        pending = [check for check in outcome.checks if check.needs_rebalance]
        if not pending:
            _LOGGER.debug("All %d wallet(s) balanced", len(outcome.checks))
            return outcome
        for check in pending:
            _LOGGER.info(
                "%s: balance=%s threshold=%s surplus=%s",
                _short(check.wallet),
                format_units(check.checking_balance),
                format_units(check.threshold),
                format_units(check.surplus),
            )
            if self.service is None:
                _LOGGER.info("[simulation] would submit rebalance for %s", _short(check.wallet))
                continue
            try:
                outcome.results.append(self.service.submit_rebalance(check.wallet, self.asset))
            except TASK_ERRORS as exc:
                _LOGGER.warning("Rebalance for %s failed: %s", check.wallet, exc)
                outcome.errors[check.wallet] = str(exc)
        return outcome

    # -- loop ---------------------------------------------------------------------

    def due_tasks(self) -> List[SchedulerTask]:
        now = self._clock()
        return [task for task in self._tasks.values() if task.is_due(now)]

    def tick(self) -> Tuple[List[TaskRun], RegistryCheck]:
        self._last_tick_at = self._clock()
        due = self.due_tasks()
        if due:
            _LOGGER.info("Processing %d due task(s) of %d", len(due), len(self._tasks))
        runs = [self.run_task(task.id) for task in due]
        return runs, self.check_registry()

    def run_forever(self, max_ticks: Optional[int] = None) -> int:
        """Tick every ``tick_interval`` seconds until :meth:`stop`; returns the ticks run."""

        self._stopped = False
        _LOGGER.info(
            "Scheduler started (tick %gs, %s)", self.tick_interval, "simulation" if self.simulation else "submitting"
        )
        ticks = 0
        while not self._stopped and (max_ticks is None or ticks < max_ticks):
            self.tick()
            ticks += 1
            if self._stopped or (max_ticks is not None and ticks >= max_ticks):
                break
            self._sleep(self.tick_interval)
        _LOGGER.info("Scheduler stopped after %d tick(s)", ticks)
        return ticks

    def stop(self) -> None:
        self._stopped = True

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            simulation=self.simulation,
            tick_interval=self.tick_interval,
            task_count=len(self._tasks),
            enabled_task_count=sum(1 for task in self._tasks.values() if task.enabled),
            registered_wallets=len(self._wallets),
            last_tick_at=self._last_tick_at,
        )


__all__ = [
    "DEFAULT_TASK_INTERVAL",
    "DEFAULT_TICK_INTERVAL",
    "MAX_ERROR_COUNT",
    "RegistryCheck",
    "Scheduler",
    "SchedulerStatus",
    "SchedulerTask",
    "TaskRun",
    "TaskStatus",
]
