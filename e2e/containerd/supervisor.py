"""Supervision of a long-running child process used as a test dependency."""

from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum, auto
from queue import Empty, Queue
from signal import SIGINT
from subprocess import DEVNULL, Popen
from tempfile import NamedTemporaryFile
from threading import Thread
from typing import Optional

from dev.lib.util import codeMessage, warn

# Number of readiness probe attempts before giving up.
READY_ATTEMPTS = 6
# How long a process gets to exit after the graceful signal before it's killed.
GRACE_PERIOD = timedelta(seconds=1)


class State(Enum):
    """Lifecycle of a managed process, as far as the supervisor can tell."""

    STARTING = auto()
    RUNNING = auto()
    # Exited on its own, without being asked to.
    EXITED = auto()
    SIGNAL_SENT = auto()
    # Exited after being signalled (or killed).
    TERMINATED = auto()


class HarnessError(RuntimeError):
    """A failure that should abort the test relying on the harness."""


class StartError(HarnessError):
    pass


class EarlyExitError(HarnessError):
    """The managed process exited before it became ready."""

    def __init__(self, name: str, status: int, logs: str):
        super().__init__(
            f'{codeMessage(status, f"{name} exited unexpectedly")}\nLogs:\n{logs}'
        )
        self.status = status
        self.logs = logs


class ReadinessTimeoutError(HarnessError):
    """The readiness probe never succeeded, although the process is still alive."""

    def __init__(self, name: str, waited: timedelta, logs: str):
        super().__init__(
            f'Failed to wait for {name} to be ready after {int(waited.total_seconds())}s'
            f'\nLogs:\n{logs}'
        )
        self.waited = waited
        self.logs = logs


def squareBackoff(attempt: int) -> timedelta:
    """Wait `attempt²` seconds after a failed attempt: 0, 1, 4, 9, 16, 25, ..."""
    return timedelta(seconds=attempt * attempt)


class ManagedProcess:
    """
    A child process started in the background and owned by the test that started it.

    Standard error is redirected to a temporary file for diagnostics.
    A daemon thread waits for the process to exit
    and delivers the exit status exactly once into a single-slot queue,
    which the readiness probe and the shutdown path poll without blocking.
    """

    def __init__(self, path: str, *args: str, name: Optional[str] = None):
        self.name = name or path
        self._state = State.STARTING
        self._exitStatus = None
        self._finalLogs = None
        self._logs = NamedTemporaryFile(prefix='managed-process-', suffix='.log')
        try:
            self._process = Popen(
                [path, *args], stdin=DEVNULL, stdout=DEVNULL, stderr=self._logs
            )
        except OSError as e:
            self._logs.close()
            raise StartError(f'Failed to start {self.name}: {e}') from e

        # Capacity one: the waiter never blocks, and the status stays put until read.
        self._exited = Queue(maxsize=1)
        self._waiter = Thread(
            target=_waitForExit,
            args=(self._process, self._exited),
            daemon=True,  # Shut down the thread if the parent process exits.
        )
        self._waiter.start()
        self._state = State.RUNNING

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def state(self) -> State:
        # Pick up a pending exit notification, if there is one.
        self.exitStatus()
        return self._state

    def exitStatus(self) -> Optional[int]:
        """Return the exit status if the process has exited, otherwise `None`. Never blocks."""
        if self._exitStatus is None:
            try:
                self._observeExit(self._exited.get(block=False))
            except Empty:
                pass
        return self._exitStatus

    def _awaitExit(self, timeout: Optional[timedelta]) -> Optional[int]:
        """Wait up to `timeout` (forever if `None`) for the exit status."""
        if self._exitStatus is None:
            seconds = None if timeout is None else max(timeout.total_seconds(), 0)
            try:
                self._observeExit(self._exited.get(timeout=seconds))
            except Empty:
                pass
        return self._exitStatus

    def _observeExit(self, status: int):
        self._exitStatus = status
        if self._state is State.SIGNAL_SENT:
            self._state = State.TERMINATED
        else:
            self._state = State.EXITED

    def logs(self) -> str:
        """Return everything the process has written to standard error so far."""
        if self._finalLogs is not None:
            return self._finalLogs
        return _readFile(self._logs.name).decode(errors='replace')

    def probeReady(
        self,
        probe: Callable[[], bool],
        attempts: int = READY_ATTEMPTS,
        backoff: Callable[[int], timedelta] = squareBackoff,
    ) -> bool:
        """
        Run `probe` until it returns true, backing off between attempts.

        Raise `EarlyExitError` as soon as the process is found to have exited.
        Return false if every attempt failed and the process is still alive.
        """
        for attempt in range(attempts):
            self._raiseIfExited()
            if probe():
                return True
            # Wake up early if the process exits while backing off.
            self._awaitExit(backoff(attempt))
        self._raiseIfExited()
        return False

    def waitReady(
        self,
        probe: Callable[[], bool],
        attempts: int = READY_ATTEMPTS,
        backoff: Callable[[int], timedelta] = squareBackoff,
    ):
        """Like `probeReady`, but raise `ReadinessTimeoutError` instead of returning false."""
        start = datetime.now()
        if not self.probeReady(probe, attempts, backoff):
            raise ReadinessTimeoutError(self.name, datetime.now() - start, self.logs())

    def _raiseIfExited(self):
        status = self.exitStatus()
        if status is not None:
            raise EarlyExitError(self.name, status, self.logs())

    def stop(self, grace: timedelta = GRACE_PERIOD):
        """
        Interrupt the process, and kill it if it's still running after the grace period.

        Does nothing if the process already exited.
        Failures are reported on the console rather than raised,
        since this usually runs during cleanup.
        """
        if self.exitStatus() is not None:
            return
        try:
            self._process.send_signal(SIGINT)
        except OSError as e:
            warn(f'Failed to signal {self.name}: {e}')
            return
        self._state = State.SIGNAL_SENT

        if self._awaitExit(grace) is None:
            try:
                self._process.kill()
            except OSError as e:
                warn(f'Failed to kill {self.name}: {e}')
            self._awaitExit(None)
        self._waiter.join()

    def close(self):
        """Stop the process and discard the log file, keeping a final copy of the logs."""
        try:
            self.stop()
        finally:
            if not self._logs.closed:
                self._finalLogs = self.logs()
                self._logs.close()


def _waitForExit(process: Popen, exited: Queue):
    exited.put(process.wait())


def _readFile(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()
