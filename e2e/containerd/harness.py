"""Test harness and helper functions for pulling images through a real containerd."""

from datetime import timedelta
from itertools import chain
from os import getenv, getgid, getuid
from os.path import join as joinPath
from platform import machine
from shutil import rmtree
from subprocess import DEVNULL, PIPE, STDOUT, CompletedProcess, TimeoutExpired, run
from sys import stderr
from tempfile import mkdtemp
from unittest import TestCase

import grpc
from tomlkit import comment, document, nl, table
from tomlkit import dumps as dumpToml

from dev.lib.util import codeMessage, runWithStderr
from e2e.containerd.cases import PullCase
from e2e.containerd.supervisor import HarnessError, ManagedProcess

# Paths to the repository checkout and the directory holding installed containerd versions.
REPO_ROOT = getenv('E2E_REPO_ROOT', '.')
BIN_DIR = getenv('E2E_BIN_DIR', joinPath(REPO_ROOT, 'bin'))
# Script that downloads a containerd release into a directory.
INSTALLER_PATH = joinPath(REPO_ROOT, 'hack', 'tools', 'e2e-setup-containerd.sh')

# Every containerd release the redirector is tested against.
CONTAINERD_VERSIONS = ['1.7.29', '2.1.5', '2.2.0']

# How long a single `ctr` invocation may take before it counts as a failure.
_probeTimeout = timedelta(seconds=10)
_pullTimeout = timedelta(minutes=5)

# `platform.machine()` names that differ from their Go counterparts.
_goArchitectures = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'i386': '386',
    'i686': '386',
    'ppc64le': 'ppc64le',
    's390x': 's390x',
}

NRI_PLUGIN = 'io.containerd.nri.v1.nri'


class InstallError(HarnessError):
    pass


def goArch(name: str = None) -> str:
    """Return the Go architecture name (`GOARCH`) for a machine type, by default this one."""
    name = (name or machine()).lower()
    return _goArchitectures.get(name, name)


def installDirFor(version: str) -> str:
    return joinPath(BIN_DIR, f'containerd-{version}')


def installContainerd(version: str, installDir: str, arch: str = None):
    """Install containerd and `ctr` for the given version into `installDir`."""
    try:
        runWithStderr(
            INSTALLER_PATH,
            env={
                'CONTAINERD_VERSION': version,
                'CONTAINERD_INSTALL_DIR': installDir,
                'CONTAINERD_ARCH': arch or goArch(),
            },
        )
    except (OSError, RuntimeError) as e:
        raise InstallError(f'Failed to install containerd {version}: {e}') from e


def writeConfig(path: str, uid: int, gid: int, nriSocketPath: str):
    """
    Write a containerd config that keeps each test instance's paths isolated.

    The GRPC socket is owned by the given user and group,
    so a rootless containerd can still serve `ctr`.
    """
    config = document()
    config.add(comment('Generated at test runtime for isolated paths'))

    grpcTable = table()
    grpcTable.add('uid', uid)
    grpcTable.add('gid', gid)
    config.add('grpc', grpcTable)
    config.add(nl())

    # Parallel tests must not share the default NRI socket.
    nri = table()
    nri.add('socket_path', nriSocketPath)
    plugins = table(is_super_table=True)
    plugins.add(NRI_PLUGIN, nri)
    config.add('plugins', plugins)

    with open(path, 'w') as file:
        file.write(dumpToml(config))


def containerdArgs(
    installDir: str, configPath: str, tmpDir: str, socketAddress: str
) -> list[str]:
    return [
        joinPath(installDir, 'containerd'),
        f'--config={configPath}',
        f'--root={joinPath(tmpDir, "root")}',
        f'--state={joinPath(tmpDir, "state")}',
        f'--address={socketAddress}',
        '--log-level=trace',
    ]


def ctrArgs(installDir: str, socketAddress: str, *args: str) -> list[str]:
    return [joinPath(installDir, 'ctr'), f'--address={socketAddress}', *args]


def pullArgs(installDir: str, socketAddress: str, ref: str) -> list[str]:
    return ctrArgs(installDir, socketAddress, 'content', 'fetch', ref)


def commandProbe(*args: str, timeout: timedelta = _probeTimeout):
    """Return a probe that succeeds when the given command exits with status 0."""

    def probe() -> bool:
        try:
            result = run(
                args, stdout=DEVNULL, stderr=DEVNULL, timeout=timeout.total_seconds()
            )
        except (OSError, TimeoutExpired):
            # Not installed yet, or hung: neither means ready.
            return False
        return result.returncode == 0

    return probe


def versionProbe(installDir: str, socketAddress: str):
    return commandProbe(*ctrArgs(installDir, socketAddress, 'version'))


def grpcProbe(socketAddress: str, timeout: timedelta = _probeTimeout):
    """Return a probe that succeeds once a gRPC channel to the UNIX socket connects."""

    def probe() -> bool:
        with grpc.insecure_channel(
            f'unix://{socketAddress}',
            # Set authority: https://github.com/grpc/grpc/issues/34305.
            options=[('grpc.default_authority', 'localhost')],
        ) as channel:
            try:
                grpc.channel_ready_future(channel).result(
                    timeout=timeout.total_seconds()
                )
            except grpc.FutureTimeoutError:
                return False
        return True

    return probe


class ContainerdTester:
    """Manager for one rootless containerd instance, which only needs to pull images.

    Every instance gets its own temporary directory
    holding the config, sockets, and content store,
    so instances (even of the same version) can run side by side.
    """

    def __init__(self, version: str, install: bool = True, probe=None):
        self.version = version
        self.installDir = installDirFor(version)
        if install:
            installContainerd(version, self.installDir)

        self.tmpDir = mkdtemp(prefix='containerd-')
        try:
            self.socketAddress = joinPath(self.tmpDir, 'containerd.sock')
            self.configPath = joinPath(self.tmpDir, 'containerd-config.toml')
            writeConfig(
                self.configPath,
                getuid(),
                getgid(),
                joinPath(self.tmpDir, 'nri.sock'),
            )
            self.containerd = ManagedProcess(
                *containerdArgs(
                    self.installDir, self.configPath, self.tmpDir, self.socketAddress
                ),
                name=f'containerd {version}',
            )
            try:
                self.containerd.waitReady(
                    probe or versionProbe(self.installDir, self.socketAddress)
                )
            except BaseException:
                self.containerd.close()
                raise
        except BaseException:
            rmtree(self.tmpDir, ignore_errors=True)
            raise

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        try:
            self.containerd.close()
        finally:
            rmtree(self.tmpDir, ignore_errors=True)

    def pullArgs(self, ref: str) -> list[str]:
        return pullArgs(self.installDir, self.socketAddress, ref)

    def pull(self, ref: str) -> CompletedProcess:
        """Fetch the content for an image reference, capturing combined output."""
        return run(
            self.pullArgs(ref),
            stdout=PIPE,
            stderr=STDOUT,
            text=True,
            timeout=_pullTimeout.total_seconds(),
        )

    def printLogs(self, testCase: TestCase):
        """Print the containerd logs to standard error, if there are any."""
        logs = self.containerd.logs().splitlines(keepends=True)
        if len(logs) > 0:
            testName = testCase.id().split('.')[-1]
            header = f'\ncontainerd {self.version} logs for {testName}:\n'
            message = '> '.join(chain((header,), logs))
            print(message, file=stderr)


def checkPull(testCase: TestCase, case: PullCase, result: CompletedProcess):
    """Assert that a pull went the way the case expects, showing the output if not."""
    output = result.stdout or ''
    if case.expectSuccess:
        testCase.assertEqual(
            result.returncode,
            0,
            codeMessage(
                result.returncode, f'Failed to pull {case.ref()}:\n{output}'
            ),
        )
    else:
        testCase.assertNotEqual(
            result.returncode,
            0,
            f'Expected pulling {case.ref()} to fail, but it succeeded:\n{output}',
        )
