"""Cooperative cancellation and polling for long-running fleet work."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from fleet.exceptions import AbortedError, ConnectivityError
from fleet.utils import log

T = TypeVar("T")


class CancelToken:
    """Cancellation signal checked at every suspension point.

    Cancellation is requested either in-process with cancel() or externally
    by creating the abort marker file. It is advisory: a remote command that
    is already running is allowed to finish.
    """

    def __init__(self, abort_file: Optional[Path] = None) -> None:
        self.abort_file = abort_file
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.abort_file is not None and self.abort_file.exists()

    def check(self) -> None:
        if self._event.is_set():
            raise AbortedError("Operation cancelled")
        if self.abort_file is not None and self.abort_file.exists():
            raise AbortedError(f"Aborting due to presence of {self.abort_file}")

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising if cancellation is requested."""
        if self._event.wait(seconds):
            raise AbortedError("Operation cancelled")
        self.check()


def poll_until(
    predicate: Callable[[], Optional[T]],
    token: CancelToken,
    interval: float,
    label: str,
    timeout: Optional[float] = None,
) -> T:
    """Call predicate every interval seconds until it returns a truthy value.

    There is no deadline unless timeout is given; only the token ends the wait.
    """
    started = time.monotonic()
    attempts = 0
    while True:
        token.check()
        result = predicate()
        if result:
            if attempts:
                log("DEBUG", f"{label}: done after {attempts} retries")
            return result
        attempts += 1
        if timeout is not None and time.monotonic() - started >= timeout:
            raise ConnectivityError(f"Timed out waiting for {label}")
        if attempts == 1:
            log("INFO", f"Waiting for {label}...")
        token.sleep(interval)
