"""Submit signed operations and wait for their receipts."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from .encoding import to_checksum
from .exceptions import ConfirmationTimeout
from .relay import OperationStatus
from .signing import SigningIdentity
from .user_operation import AnyUserOperation

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 2.0


class SubmissionRelay(Protocol):
    def submit(self, operation: AnyUserOperation) -> str: ...

    def get_receipt(self, operation_id: str) -> Optional[OperationStatus]: ...


def submit(relay: SubmissionRelay, operation: AnyUserOperation) -> str:
    if not operation.signature:
        raise ValueError("Refusing to submit an unsigned operation")
    operation_id = relay.submit(operation)
    _LOGGER.info("Submitted operation %s for %s", operation_id, operation.sender)
    return operation_id


def await_confirmation(
    relay: SubmissionRelay,
    operation_id: str,
    *,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> OperationStatus:
    """Poll for a receipt at a fixed interval; raises :class:`ConfirmationTimeout` past ``timeout``."""

    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")
    deadline = clock() + timeout
    while True:
        status = relay.get_receipt(operation_id)
        if status is not None:
            if status.success:
                _LOGGER.info("Operation %s confirmed in %s", operation_id, status.transaction_hash)
            else:
                _LOGGER.warning("Operation %s included but reverted: %s", operation_id, status.reason)
            return status
        remaining = deadline - clock()
        if remaining <= 0:
            raise ConfirmationTimeout(operation_id, timeout)
        sleep(min(poll_interval, remaining))


class _Lease:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class OperationLeases:
    """One lock per ``(account, identity)`` held from nonce fetch through submission.

    Two builds for the same identity would otherwise read the same nonce and
    the second submission would be rejected. Different identities on the same
    account use different nonce sequences and never contend. A lease is
    forgotten once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._leases: Dict[Tuple[str, str], _Lease] = {}

    def active(self) -> int:
        with self._guard:
            return len(self._leases)

    def is_held(self, account: str, identity: SigningIdentity) -> bool:
        with self._guard:
            lease = self._leases.get((to_checksum(account), identity.address))
        return lease is not None and lease.lock.locked()

    @contextmanager
    def hold(self, account: str, identity: SigningIdentity) -> Iterator[None]:
        key = (to_checksum(account), identity.address)
        with self._guard:
            lease = self._leases.setdefault(key, _Lease())
            lease.holders += 1
        try:
            with lease.lock:
                yield
        finally:
            with self._guard:
                lease.holders -= 1
                if lease.holders == 0:
                    del self._leases[key]


__all__ = [
    "DEFAULT_CONFIRMATION_TIMEOUT",
    "DEFAULT_POLL_INTERVAL",
    "OperationLeases",
    "SubmissionRelay",
    "await_confirmation",
    "submit",
]
