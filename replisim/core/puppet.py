"""
Puppet records and puppet process lifecycle.

A puppet is one peer under test: a name in the script, an identity on the
network and, while running, an external process launched through its
implementation's ``sim-shim.sh``. The shim receives the puppet directory and
RPC port as arguments and reads ``CAPS``, ``HOPS`` and, for fixture-backed
puppets, ``SECRET`` and ``LOG_OFFSET`` from its environment.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

from loguru import logger

from replisim.client.transport import PuppetEndpoint
from replisim.datastructures.type_aliases import (
    CapsKey,
    DurationSeconds,
    FeedId,
    HopCount,
    HostAddress,
    MessageCount,
    MultiserverAddress,
    PuppetName,
    SecretFolder,
    SequenceNumber,
    Timestamp,
)

from .errors import ProcessError
from .logging import puppet_logger
from .port_allocator import PortPair

# exit codes a shim may report after we asked it to stop
_EXPECTED_EXIT_CODES = frozenset({0, 130, -signal.SIGINT, -signal.SIGKILL})


def trim_feed_id(feed_id: FeedId) -> str:
    """``@<key>.ed25519`` -> ``<key>``"""
    return feed_id.replace("@", "").replace(".ed25519", "")


@dataclass(slots=True)
class PuppetProcess:
    """Process and log-file handles of a running puppet.

    Owned by exactly one ``Puppet`` and released exactly once by
    ``shutdown``.
    """

    process: asyncio.subprocess.Process
    log_file: BinaryIO
    log_path: Path
    pump_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    async def shutdown(self, grace: DurationSeconds) -> list[str]:
        """Interrupt the process, force-kill it after ``grace`` seconds.

        Always joins the process and closes the log file. Problems are
        returned for the caller to report instead of being raised.
        """
        problems: list[str] = []
        try:
            if os.name == "nt":
                self.process.kill()
            else:
                self.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace)
        except TimeoutError:
            problems.append(
                f"process {self.pid} ignored the interrupt for {grace}s, killing it"
            )
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()

        if self.process.returncode not in _EXPECTED_EXIT_CODES:
            problems.append(
                f"failure when stopping puppet: exit code {self.process.returncode}"
            )

        try:
            if self.pump_task is not None:
                await self.pump_task
        except Exception as e:
            problems.append(f"failure when copying puppet output: {e}")
        finally:
            try:
                self.log_file.close()
            except OSError as e:
                problems.append(f"failure when closing logfile {self.log_path}: {e}")
        return problems


async def _pump_output(
    stream: asyncio.StreamReader,
    log_file: BinaryIO,
    mirror: BinaryIO | None,
    log: Any = logger,
) -> None:
    """Copy process output into the log file and, while it accepts data, the mirror.

    A mirror that fails (a closed pipe on our stdout) is dropped; the process
    output keeps being drained into the log.
    """
    while chunk := await stream.read(4096):
        log_file.write(chunk)
        log_file.flush()
        if mirror is None:
            continue
        try:
            mirror.write(chunk)
            mirror.flush()
        except (OSError, ValueError) as e:
            log.warning("Stopped mirroring output: {}", e)
            mirror = None


@dataclass(slots=True)
class Puppet:
    name: PuppetName
    caps: CapsKey
    hops: HopCount

    feed_id: FeedId | None = None
    directory: Path | None = None
    ports: PortPair | None = None

    # optimistic count of messages authored through this puppet
    seqno: SequenceNumber = 0

    # fixture linkage
    secret_folder: SecretFolder | None = None
    omit_offset: bool = False
    all_offsets: bool = False

    # metrics
    total_messages: MessageCount = 0
    total_time: DurationSeconds = 0.0
    slept: DurationSeconds = 0.0
    last_start: Timestamp | None = None

    process: PuppetProcess | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return f"[{self.name}@{self.seqno}] {self.feed_id}"

    @property
    def log(self) -> Any:
        return puppet_logger(self.name)

    @property
    def is_running(self) -> bool:
        return self.process is not None

    @property
    def uses_fixtures(self) -> bool:
        return bool(self.feed_id) and bool(self.secret_folder)

    @property
    def active_time(self) -> DurationSeconds:
        return max(0.0, self.total_time - self.slept)

    def bump_seqno(self) -> None:
        self.seqno += 1

    def add_sleep(self, seconds: DurationSeconds) -> None:
        self.slept += seconds

    def start_timer(self, now: Timestamp) -> None:
        self.last_start = now

    def stop_timer(self, now: Timestamp) -> None:
        if self.last_start is None:
            return
        self.total_time += now - self.last_start
        self.last_start = None

    def endpoint(self, host: HostAddress = "localhost") -> PuppetEndpoint:
        if self.ports is None or self.directory is None:
            raise ProcessError(f"{self.name} has never been started")
        return PuppetEndpoint(
            host=host,
            port=self.ports.primary,
            caps=self.caps,
            secret_path=self.directory / "secret",
        )

    def multiserver_address(self, host: HostAddress = "localhost") -> MultiserverAddress:
        if self.ports is None or not self.feed_id:
            raise ProcessError(f"{self.name} has no known address yet")
        return f"net:{host}:{self.ports.primary}~shs:{trim_feed_id(self.feed_id)}"

    def environment(self, fixtures_dir: Path | None) -> dict[str, str]:
        env = dict(os.environ)
        env["CAPS"] = self.caps
        env["HOPS"] = str(self.hops)
        if fixtures_dir is not None and self.uses_fixtures:
            assert self.secret_folder is not None
            # SECRET and LOG_OFFSET are independent so a puppet can restore
            # from its secret alone
            env["SECRET"] = str(fixtures_dir / self.secret_folder / "secret")
            if not self.omit_offset:
                folder = "puppet-all" if self.all_offsets else self.secret_folder
                env["LOG_OFFSET"] = str(fixtures_dir / folder / "flume" / "log.offset")
        return env

    async def spawn(
        self,
        shim: Path,
        log_path: Path,
        *,
        fixtures_dir: Path | None = None,
        verbose: bool = False,
        mirror: BinaryIO | None = None,
    ) -> None:
        """Launch the puppet process. Returns as soon as it is spawned.

        With ``verbose`` the output is also copied to ``mirror``, our own stdout
        unless given.
        """
        if self.is_running:
            raise ProcessError(f"{self.name} is already running")
        if self.directory is None or self.ports is None:
            raise ProcessError(f"{self.name} has no directory or port assigned")

        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            log_file = log_path.open("ab")
        except OSError as e:
            raise ProcessError(f"could not create log file {log_path}") from e

        try:
            process = await asyncio.create_subprocess_exec(
                str(shim),
                str(self.directory),
                str(self.ports.primary),
                env=self.environment(fixtures_dir),
                stdout=asyncio.subprocess.PIPE if verbose else log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            log_file.close()
            raise ProcessError(
                f"failure when creating puppet, see {log_path} for information"
            ) from e

        pump_task = None
        if verbose:
            assert process.stdout is not None
            pump_task = asyncio.create_task(
                _pump_output(
                    process.stdout,
                    log_file,
                    mirror if mirror is not None else sys.stdout.buffer,
                    self.log,
                ),
                name=f"puppet-output-{self.name}",
            )

        self.process = PuppetProcess(
            process=process,
            log_file=log_file,
            log_path=log_path,
            pump_task=pump_task,
        )
        self.log.debug("Spawned as pid {} on port {}", process.pid, self.ports.primary)

    async def terminate(self, grace: DurationSeconds) -> list[str]:
        """Stop the running process; see ``PuppetProcess.shutdown``."""
        if self.process is None:
            raise ProcessError(f"{self.name} is not running")
        process, self.process = self.process, None
        problems = await process.shutdown(grace)
        for problem in problems:
            self.log.warning("{}", problem)
        return problems
