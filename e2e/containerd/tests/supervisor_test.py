"""Tests for supervising a long-running child process."""

from datetime import datetime, timedelta
from signal import SIGKILL
from unittest import TestCase, main
from unittest.mock import patch

from e2e.containerd.supervisor import (
    EarlyExitError,
    ManagedProcess,
    ReadinessTimeoutError,
    StartError,
    State,
    squareBackoff,
)
from e2e.containerd.tests.fakes import pythonScript, waitFor

# Runs until it's interrupted (or killed).
SLEEPER = """
import time
time.sleep(60)
"""

# Refuses to be interrupted, and says so once it's ready to refuse.
STUBBORN = """
import signal, sys, time
signal.signal(signal.SIGINT, signal.SIG_IGN)
sys.stderr.write('ignoring interrupts\\n')
sys.stderr.flush()
time.sleep(60)
"""

CRASHER = """
import sys
sys.stderr.write('boom\\n')
sys.exit(3)
"""


def quarterBackoff(attempt: int) -> timedelta:
    """The default backoff, four times faster."""
    return squareBackoff(attempt) / 4


class ProbeCounter:
    """A probe that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.calls > self.failures


class ManagedProcessTest(TestCase):
    def start(self, source: str) -> ManagedProcess:
        process = ManagedProcess(*pythonScript(source), name='child')
        self.addCleanup(process.close)
        return process

    def test_squareBackoff(self):
        self.assertEqual(
            [squareBackoff(attempt).total_seconds() for attempt in range(6)],
            [0, 1, 4, 9, 16, 25],
        )

    def test_Start_MissingExecutable(self):
        with self.assertRaises(StartError):
            ManagedProcess('/this/does/not/exist/containerd')

    def test_Start_Running(self):
        process = self.start(SLEEPER)

        self.assertEqual(process.state, State.RUNNING)
        self.assertIsNone(process.exitStatus())
        self.assertGreater(process.pid, 0)

    def test_ReadyAfterFailedProbes(self):
        process = self.start(SLEEPER)
        probe = ProbeCounter(failures=2)

        start = datetime.now()
        ready = process.probeReady(probe, backoff=quarterBackoff)
        elapsed = datetime.now() - start

        self.assertTrue(ready)
        self.assertEqual(probe.calls, 3)
        # Backed off 0s then 0.25s, but never the 1s before a 4th attempt.
        self.assertGreaterEqual(elapsed, timedelta(seconds=0.25))
        self.assertLess(elapsed, timedelta(seconds=1))
        self.assertEqual(process.state, State.RUNNING)

    def test_ReadinessTimeout(self):
        process = self.start(SLEEPER)
        probe = ProbeCounter(failures=10)

        self.assertFalse(
            process.probeReady(probe, attempts=3, backoff=lambda _: timedelta(0))
        )
        self.assertEqual(probe.calls, 3)

        with self.assertRaises(ReadinessTimeoutError):
            process.waitReady(probe, attempts=2, backoff=lambda _: timedelta(0))
        self.assertEqual(probe.calls, 5)
        # Giving up on readiness is the caller's business; the process keeps running.
        self.assertIsNone(process.exitStatus())

    def test_EarlyExit_FailsFast(self):
        process = self.start(CRASHER)
        probe = ProbeCounter(failures=10)

        start = datetime.now()
        with self.assertRaises(EarlyExitError) as context:
            process.waitReady(probe)
        elapsed = datetime.now() - start

        # Waking up on exit means never sitting through the 4s backoff (let alone 55s).
        self.assertLess(elapsed, timedelta(seconds=4))
        self.assertLess(probe.calls, 6)
        self.assertEqual(context.exception.status, 3)
        self.assertIn('boom', context.exception.logs)
        self.assertIn('boom', str(context.exception))
        self.assertEqual(process.state, State.EXITED)

    def test_ExitNotificationDeliveredOnce(self):
        process = self.start(CRASHER)

        waitFor(lambda: process.exitStatus() is not None)

        # Every later check sees the same status, and nothing is left in the slot.
        for _ in range(3):
            self.assertEqual(process.exitStatus(), 3)
        self.assertTrue(process._exited.empty())
        self.assertEqual(process.state, State.EXITED)

    def test_Stop_AfterExitDoesNothing(self):
        process = self.start(CRASHER)
        waitFor(lambda: process.exitStatus() is not None)

        with (
            patch.object(process._process, 'send_signal') as sendSignal,
            patch.object(process._process, 'kill') as kill,
        ):
            process.stop()
            process.stop()

        sendSignal.assert_not_called()
        kill.assert_not_called()
        self.assertEqual(process.state, State.EXITED)

    def test_Stop_Graceful(self):
        process = self.start(SLEEPER)

        with patch.object(process._process, 'kill') as kill:
            process.stop()

        kill.assert_not_called()
        self.assertIsNotNone(process.exitStatus())
        self.assertEqual(process.state, State.TERMINATED)
        self.assertFalse(process._waiter.is_alive())

    def test_Stop_EscalatesToKill(self):
        process = self.start(STUBBORN)
        waitFor(lambda: 'ignoring interrupts' in process.logs())
        grace = timedelta(seconds=0.25)

        start = datetime.now()
        with patch.object(
            process._process, 'kill', wraps=process._process.kill
        ) as kill:
            process.stop(grace)
        elapsed = datetime.now() - start

        kill.assert_called_once()
        self.assertGreaterEqual(elapsed, grace)
        # Returns only after the exit has been confirmed.
        self.assertEqual(process.exitStatus(), -SIGKILL)
        self.assertEqual(process.state, State.TERMINATED)
        self.assertFalse(process._waiter.is_alive())

    def test_Stop_SignalFailureIsNotFatal(self):
        process = self.start(SLEEPER)

        with patch.object(
            process._process, 'send_signal', side_effect=PermissionError('nope')
        ):
            process.stop()

        # Nothing was raised, and the process was left alone.
        self.assertIsNone(process.exitStatus())
        self.assertEqual(process.state, State.RUNNING)

    def test_Close_KeepsLogs(self):
        process = self.start(CRASHER)
        waitFor(lambda: process.exitStatus() is not None)

        process.close()

        self.assertEqual(process.logs(), 'boom\n')

    def test_ContextManager(self):
        with ManagedProcess(*pythonScript(SLEEPER)) as process:
            self.assertEqual(process.state, State.RUNNING)

        self.assertEqual(process.state, State.TERMINATED)


if __name__ == '__main__':
    main()
