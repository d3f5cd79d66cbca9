"""
Instruction-driven execution engine.

The ``Simulator`` owns the puppet registry and scans a parsed script in
source order. Every instruction ends in exactly one of three outcomes:

- success: ``ok <n> - <line>``, optionally followed by ``#`` diagnostics
- failure: ``not ok <n> - <line>`` plus diagnostics; the scan continues
- abort: ``Bail out! <reason> (<line>)``; the scan stops

Whatever the outcome of the scan, the shutdown path (summary, per-puppet
metrics, stopping every running puppet) always runs.

Time only passes through ``Simulator.sleep`` so that every running puppet's
sleep accumulator advances by exactly the requested duration. Tests inject a
fake ``sleep`` and ``clock`` to run scripts without wall-clock delays.
"""

from __future__ import annotations

import asyncio
import shutil
import signal
import time
from collections.abc import Awaitable, Callable, Iterable
from functools import partial
from pathlib import Path

from loguru import logger

from replisim.client.puppet_client import PuppetClient, describe_assumption
from replisim.client.transport import TransportFactory
from replisim.datastructures.type_aliases import (
    DurationSeconds,
    PuppetName,
    Timestamp,
)

from .config import SHIM_FILENAME, SimulatorSettings, validate_caps
from .content_parser import parse_content
from .errors import (
    AssertionFailure,
    ConfigurationError,
    ParseError,
    ProcessError,
    SimulationError,
    TransportError,
)
from .fixtures import IdentityMap, load_identities
from .instruction import (
    CapsArgs,
    Command,
    HopsArgs,
    Instruction,
    LoadArgs,
    LogArgs,
    Payload,
    PublishArgs,
    PuppetArg,
    PuppetPair,
    SequenceArgs,
    StartArgs,
    WaitArgs,
    parse_script,
)
from .logging import instruction_context
from .port_allocator import PortAllocator
from .puppet import Puppet
from .tap import TapReporter

type Handler = Callable[[Payload], Awaitable[str | None]]

METRICS_FORMAT = "{:<12} {:>12} {:>12} {:>12}"
PUPPET_DIR_NAME = "puppets"


def format_duration(seconds: DurationSeconds) -> str:
    return f"{seconds:.3f}s"


def prepare_puppet_dir(out_dir: Path) -> Path:
    """Wipe and recreate the puppet output directory.

    The directory is always named ``puppets``; any other ``out_dir`` gets a
    ``puppets`` child so an unrelated folder is never removed.
    """
    if out_dir.name != PUPPET_DIR_NAME:
        out_dir = out_dir / PUPPET_DIR_NAME
    out_dir = out_dir.resolve()
    try:
        shutil.rmtree(out_dir, ignore_errors=False)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise ConfigurationError(f"could not clear puppet directory {out_dir}: {e}") from e
    out_dir.mkdir(parents=True)
    return out_dir


class Simulator:
    def __init__(
        self,
        settings: SimulatorSettings,
        transport_factory: TransportFactory,
        *,
        reporter: TapReporter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], Timestamp] = time.monotonic,
        port_allocator: PortAllocator | None = None,
        identities: IdentityMap | None = None,
    ) -> None:
        self.settings = settings
        self.client = PuppetClient(transport_factory)
        self.reporter = reporter or TapReporter()
        self.port_allocator = port_allocator or PortAllocator(
            settings.base_port, max_attempts=settings.max_port_attempts
        )
        self.identities = identities
        self.puppets: dict[PuppetName, Puppet] = {}
        self.instructions: list[Instruction] = []
        self.current: Instruction | None = None
        self.puppet_dir: Path | None = None
        self.slept: DurationSeconds = 0.0

        self._sleep = sleep
        self._clock = clock
        self._cancelled = False
        self._shut_down = False

        self._handlers: dict[Command, Handler] = {
            Command.COMMENT: self._do_comment,
            Command.ENTER: self._do_enter,
            Command.LOAD: self._do_load,
            Command.HOPS: self._do_hops,
            Command.CAPS: self._do_caps,
            Command.SKIPOFFSET: self._do_skipoffset,
            Command.ALLOFFSETS: self._do_alloffsets,
            Command.START: self._do_start,
            Command.STOP: self._do_stop,
            Command.LOG: self._do_log,
            Command.WAIT: self._do_wait,
            Command.WAITUNTIL: self._do_waituntil,
            Command.FOLLOW: partial(self._do_follow, following=True),
            Command.UNFOLLOW: partial(self._do_follow, following=False),
            Command.ISFOLLOWING: partial(self._do_isfollowing, expected=True),
            Command.ISNOTFOLLOWING: partial(self._do_isfollowing, expected=False),
            Command.POST: self._do_post,
            Command.PUBLISH: self._do_publish,
            Command.CONNECT: partial(self._do_connect, disconnect=False),
            Command.DISCONNECT: partial(self._do_connect, disconnect=True),
            Command.HAS: self._do_has,
        }

    # -- cancellation -----------------------------------------------------

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        """Request cancellation. Calling it again has no further effect."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("Cancellation requested: {}", reason or "no reason given")
        if reason:
            self.reporter.diagnostic(reason)

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    self.cancel,
                    f"received shutdown signal, shutting down (signal {sig.name})",
                )
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install handler for {} here", sig.name)
                continue
            installed.append(sig)
        return installed

    def _remove_signal_handlers(self, installed: Iterable[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    # -- time -------------------------------------------------------------

    async def sleep(self, seconds: DurationSeconds) -> None:
        """Sleep and credit ``seconds`` to every running puppet."""
        await self._sleep(seconds)
        self.slept += seconds
        for puppet in self.puppets.values():
            if puppet.is_running:
                puppet.add_sleep(seconds)

    # -- setup ------------------------------------------------------------

    def prepare(self) -> None:
        if self.puppet_dir is None:
            self.puppet_dir = prepare_puppet_dir(self.settings.out_dir)
        if self.identities is None and self.settings.fixtures_dir is not None:
            self.identities = load_identities(self.settings.fixtures_dir)

    def puppet(self, name: PuppetName) -> Puppet:
        try:
            return self.puppets[name]
        except KeyError:
            raise ConfigurationError(
                f"there is no puppet declared as {name}\n"
                f"possible fix: add `enter {name}` before other statements"
            ) from None

    # -- main loop --------------------------------------------------------

    async def run(self, lines: Iterable[str]) -> bool:
        """Execute a script. Returns ``True`` when every instruction passed."""
        self.reporter.version()
        started = self._clock()
        installed = self._install_signal_handlers()
        completed = False
        try:
            self.instructions = parse_script(lines)
            self.prepare()
            for instruction in self.instructions:
                if self._cancelled:
                    self.reporter.diagnostic("Context canceled, stopping execution")
                    break
                self.current = instruction
                await self.execute(instruction)
            else:
                completed = True
        except SimulationError as e:
            self._bail(e)
        finally:
            try:
                if completed:
                    self.reporter.plan(len(self.instructions))
                await self.shutdown(started)
            finally:
                self._remove_signal_handlers(installed)
        return completed and self.reporter.success

    def _bail(self, error: SimulationError) -> None:
        if self.current is not None:
            context = self.current.line
        elif isinstance(error, ParseError):
            context = error.line
        else:
            context = ""
        reason = str(error).replace("\n", "; ")
        logger.error("Aborting run: {}", reason)
        self.reporter.bail_out(f"{reason} ({context})" if context else reason)

    async def execute(self, instruction: Instruction) -> None:
        """Run one instruction and report its outcome.

        Fatal errors propagate to ``run``; instruction errors are reported
        here.
        """
        handler = self._handlers[instruction.command]
        with instruction_context(instruction.index):
            logger.debug("Executing {}", instruction.line)
            try:
                note = await handler(instruction.payload)
            except SimulationError as e:
                if e.fatal:
                    raise
                logger.info("Instruction failed: {}", e)
                self.reporter.not_ok(instruction.index, instruction.line, str(e))
                return
        self.reporter.ok(instruction.index, instruction.line)
        if note:
            self.reporter.diagnostic(note)

    # -- configuration commands -------------------------------------------

    async def _do_comment(self, payload: Payload) -> str | None:
        return None

    async def _do_enter(self, payload: Payload) -> str | None:
        assert isinstance(payload, PuppetArg)
        if payload.name in self.puppets:
            raise ConfigurationError(f"puppet {payload.name} was declared twice")
        self.puppets[payload.name] = Puppet(
            name=payload.name, caps=self.settings.caps, hops=self.settings.hops
        )
        return None

    async def _do_load(self, payload: Payload) -> str | None:
        assert isinstance(payload, LoadArgs)
        if self.identities is None:
            raise ConfigurationError(
                "no fixtures provided with --fixtures, yet tried to load feed "
                f"{payload.feed_id} from log.offset"
            )
        puppet = self.puppet(payload.name)
        feed = self.identities.get(payload.feed_id)
        if feed is None:
            raise ConfigurationError(f"cannot find id {payload.feed_id} in the fixtures")
        if puppet.feed_id and puppet.feed_id != payload.feed_id:
            raise ConfigurationError(
                f"{puppet.name} already has feed id {puppet.feed_id}"
            )
        puppet.feed_id = payload.feed_id
        puppet.secret_folder = feed.folder
        puppet.seqno = max(puppet.seqno, feed.latest)
        return None

    async def _do_hops(self, payload: Payload) -> str | None:
        assert isinstance(payload, HopsArgs)
        self.puppet(payload.name).hops = payload.hops
        return None

    async def _do_caps(self, payload: Payload) -> str | None:
        assert isinstance(payload, CapsArgs)
        puppet = self.puppet(payload.name)
        puppet.caps = validate_caps(payload.caps)
        return None

    async def _do_skipoffset(self, payload: Payload) -> str | None:
        assert isinstance(payload, PuppetArg)
        self.puppet(payload.name).omit_offset = True
        return None

    async def _do_alloffsets(self, payload: Payload) -> str | None:
        assert isinstance(payload, PuppetArg)
        self.puppet(payload.name).all_offsets = True
        return None

    # -- lifecycle commands -----------------------------------------------

    async def _do_start(self, payload: Payload) -> str | None:
        assert isinstance(payload, StartArgs)
        puppet = self.puppet(payload.name)
        implementation = self.settings.implementations.get(payload.implementation)
        if implementation is None:
            raise ConfigurationError(
                "no such language implementation passed to simulator on startup "
                f"({payload.implementation})"
            )
        if puppet.is_running:
            raise ProcessError(f"{puppet.name} is already running")

        assert self.puppet_dir is not None
        if puppet.ports is None:
            puppet.ports = await self.port_allocator.acquire()
        puppet.directory = self.puppet_dir / f"{payload.implementation}-{puppet.name}"

        await puppet.spawn(
            implementation / SHIM_FILENAME,
            self.puppet_dir / f"{puppet.name}.txt",
            fixtures_dir=self.settings.fixtures_dir,
            verbose=self.settings.verbose,
        )
        puppet.start_timer(self._clock())
        await self.sleep(self.settings.start_settle)

        if not puppet.uses_fixtures:
            feed_id = await self.client.whoami(puppet)
            if puppet.feed_id and puppet.feed_id != feed_id:
                raise AssertionFailure(
                    f"{puppet.name} came back with a different identity",
                    expected=puppet.feed_id,
                    actual=feed_id,
                )
            puppet.feed_id = feed_id

        messages = await self.client.count_messages(puppet)
        return (
            f"{puppet.name} ({messages} messages) has id {puppet.feed_id}\n"
            f"logging to {puppet.name}.txt"
        )

    async def _do_stop(self, payload: Payload) -> str | None:
        assert isinstance(payload, PuppetArg)
        puppet = self.puppet(payload.name)
        if not puppet.is_running:
            raise ProcessError(f"cannot stop {puppet.name}: it is not running")
        notes = await self._stop_puppet(puppet)
        notes.append(f"{puppet.name} has been stopped")
        return "\n".join(notes)

    async def _stop_puppet(self, puppet: Puppet) -> list[str]:
        notes: list[str] = []
        try:
            await self.client.count_messages(puppet)
        except SimulationError as e:
            notes.append(
                f"{puppet.name} had an error when trying to count db messages ({e})"
            )
        notes.append(f"stopping {puppet.name} ({puppet.feed_id})")
        try:
            notes.extend(await puppet.terminate(self.settings.stop_grace))
        finally:
            puppet.stop_timer(self._clock())
        return notes

    async def _do_log(self, payload: Payload) -> str | None:
        assert isinstance(payload, LogArgs)
        return await self.client.read_log(self.puppet(payload.name), payload.amount)

    async def _do_wait(self, payload: Payload) -> str | None:
        assert isinstance(payload, WaitArgs)
        await self.sleep(payload.milliseconds / 1000)
        return None

    # -- network commands -------------------------------------------------

    async def _do_connect(
        self, payload: Payload, *, disconnect: bool
    ) -> str | None:
        assert isinstance(payload, PuppetPair)
        src, dst = self.puppet(payload.src), self.puppet(payload.dst)
        if disconnect:
            await self.client.disconnect(src, dst)
        else:
            await self.client.connect(src, dst)
        await self.sleep(self.settings.connect_settle)
        return None

    async def _do_follow(self, payload: Payload, *, following: bool) -> str | None:
        assert isinstance(payload, PuppetPair)
        src, dst = self.puppet(payload.src), self.puppet(payload.dst)
        try:
            await self.client.publish_follow(src, dst, following)
        finally:
            src.bump_seqno()
        return None

    async def _do_post(self, payload: Payload) -> str | None:
        assert isinstance(payload, PuppetArg)
        puppet = self.puppet(payload.name)
        try:
            await self.client.publish_post(puppet)
        finally:
            puppet.bump_seqno()
        return None

    async def _do_publish(self, payload: Payload) -> str | None:
        assert isinstance(payload, PublishArgs)
        puppet = self.puppet(payload.name)
        try:
            await self.client.publish_content(puppet, parse_content(payload.content))
        finally:
            puppet.bump_seqno()
        return None

    async def _do_isfollowing(
        self, payload: Payload, *, expected: bool
    ) -> str | None:
        assert isinstance(payload, PuppetPair)
        src, dst = self.puppet(payload.src), self.puppet(payload.dst)
        actual = await self.client.is_following(src, dst)
        if actual != expected:
            if expected:
                message = f"{src.feed_id} did not follow {dst.feed_id}"
            else:
                message = f"{src.feed_id} should not follow {dst.feed_id}"
            raise AssertionFailure(message, expected=expected, actual=actual)
        return None

    async def _do_has(self, payload: Payload) -> str | None:
        assert isinstance(payload, SequenceArgs)
        src, dst = self.puppet(payload.src), self.puppet(payload.target.name)
        return await self.client.check_has(src, dst, payload.target)

    async def _do_waituntil(self, payload: Payload) -> str | None:
        assert isinstance(payload, SequenceArgs)
        src, dst = self.puppet(payload.src), self.puppet(payload.target.name)
        sequence = payload.target.resolve(dst.seqno)
        policy = self.settings.waituntil_retry

        def report_attempt(attempt: int, error: TransportError) -> None:
            self.reporter.diagnostic(
                f"waituntil had an error on attempt {attempt}/{policy.max_attempts} ({error})"
            )

        try:
            await policy.run(
                lambda: self.client.wait_until(
                    src, dst, sequence, timeout=self.settings.waituntil_timeout
                ),
                sleep=self.sleep,
                is_cancelled=lambda: self._cancelled,
                on_failure=report_attempt,
            )
        except TransportError as e:
            raise TransportError(
                f"{src.name} expected {dst.name}@{sequence}: {e}"
            ) from e
        return describe_assumption(dst, payload.target)

    # -- shutdown ---------------------------------------------------------

    async def log_metrics(self) -> None:
        """Per-puppet time and message metrics, longest-running first."""
        now = self._clock()
        for puppet in self.puppets.values():
            if not puppet.is_running:
                continue
            puppet.stop_timer(now)
            try:
                await self.client.count_messages(puppet)
            except SimulationError as e:
                self.reporter.diagnostic(
                    f"{puppet.name} had an error when trying to count db messages ({e})"
                )

        self.reporter.diagnostic(
            METRICS_FORMAT.format("Puppet", "Total time", "Active time", "# messages")
        )
        ranked = sorted(
            self.puppets.values(), key=lambda p: p.total_time, reverse=True
        )
        for puppet in ranked:
            self.reporter.diagnostic(
                METRICS_FORMAT.format(
                    puppet.name,
                    format_duration(puppet.total_time),
                    format_duration(puppet.active_time),
                    puppet.total_messages,
                )
            )

    async def shutdown(self, started: Timestamp) -> None:
        """Report the summary and metrics, then stop every running puppet."""
        if self._shut_down:
            return
        self._shut_down = True

        elapsed = self._clock() - started
        self.reporter.diagnostic("End of simulation")
        self.reporter.diagnostic(f"Total time: {format_duration(elapsed)}")
        self.reporter.diagnostic(
            f"Active time: {format_duration(max(0.0, elapsed - self.slept))}"
        )
        self.reporter.diagnostic(f"Puppet count: {len(self.puppets)}")

        await self.log_metrics()

        running = [p for p in self.puppets.values() if p.is_running]
        if running:
            self.reporter.diagnostic("Closing all puppets")
        for puppet in running:
            try:
                problems = await puppet.terminate(self.settings.stop_grace)
                self.reporter.diagnostic("\n".join(problems))
            except ProcessError as e:
                self.reporter.diagnostic(str(e))
