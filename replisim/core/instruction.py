"""
Instruction model for the simulator's test scripts.

A script is UTF-8 text with one instruction per line. Commas are stripped,
the line is split on whitespace, the first token names the command and the
remaining tokens are its positional arguments. Parsing validates each
command's arity and argument types up front, so the engine only ever sees
well-formed instructions.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from replisim.datastructures.type_aliases import (
    CommandArgs,
    DurationMilliseconds,
    FeedId,
    HopCount,
    ImplementationName,
    LineNumber,
    PuppetName,
    SequenceNumber,
)

from .errors import ParseError

LATEST = "latest"


class Command(StrEnum):
    ENTER = "enter"
    LOAD = "load"
    HOPS = "hops"
    CAPS = "caps"
    SKIPOFFSET = "skipoffset"
    ALLOFFSETS = "alloffsets"
    START = "start"
    STOP = "stop"
    LOG = "log"
    WAIT = "wait"
    WAITUNTIL = "waituntil"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    ISFOLLOWING = "isfollowing"
    ISNOTFOLLOWING = "isnotfollowing"
    POST = "post"
    PUBLISH = "publish"
    DISCONNECT = "disconnect"
    CONNECT = "connect"
    HAS = "has"
    COMMENT = "comment"


COMMAND_ALIASES: dict[str, Command] = {"#": Command.COMMENT}


@dataclass(frozen=True, slots=True)
class SequenceTarget:
    """The ``<name>@<seqno|latest>`` argument of ``has`` and ``waituntil``."""

    name: PuppetName
    seqno: SequenceNumber | None  # None means "latest"

    @property
    def is_latest(self) -> bool:
        return self.seqno is None

    def resolve(self, latest: SequenceNumber) -> SequenceNumber:
        return latest if self.seqno is None else self.seqno

    def render(self) -> str:
        return f"{self.name}@{LATEST if self.seqno is None else self.seqno}"

    @classmethod
    def parse(cls, arg: str, *, command: str = "", line: str = "") -> SequenceTarget:
        name, sep, value = arg.partition("@")
        if not sep:
            raise ParseError(
                f"{command} statement was missing @<seqno> ({arg})", line=line
            )
        if not name:
            raise ParseError(
                f"{command} statement was missing a puppet name ({arg})", line=line
            )
        if value == LATEST:
            return cls(name=name, seqno=None)
        if not value.isdecimal():
            raise ParseError(
                f"expected keyword 'latest' or a number after @, was {value!r}",
                line=line,
            )
        return cls(name=name, seqno=int(value))


# Typed payloads. The engine dispatches on Instruction.command and reads the
# payload type that command is guaranteed to carry.


@dataclass(frozen=True, slots=True)
class PuppetArg:
    name: PuppetName


@dataclass(frozen=True, slots=True)
class PuppetPair:
    src: PuppetName
    dst: PuppetName


@dataclass(frozen=True, slots=True)
class LoadArgs:
    name: PuppetName
    feed_id: FeedId


@dataclass(frozen=True, slots=True)
class HopsArgs:
    name: PuppetName
    hops: HopCount


@dataclass(frozen=True, slots=True)
class CapsArgs:
    name: PuppetName
    caps: str


@dataclass(frozen=True, slots=True)
class StartArgs:
    name: PuppetName
    implementation: ImplementationName


@dataclass(frozen=True, slots=True)
class LogArgs:
    name: PuppetName
    amount: int


@dataclass(frozen=True, slots=True)
class WaitArgs:
    milliseconds: DurationMilliseconds


@dataclass(frozen=True, slots=True)
class SequenceArgs:
    src: PuppetName
    target: SequenceTarget


@dataclass(frozen=True, slots=True)
class PublishArgs:
    name: PuppetName
    content: str


@dataclass(frozen=True, slots=True)
class CommentArgs:
    text: str


type Payload = (
    PuppetArg
    | PuppetPair
    | LoadArgs
    | HopsArgs
    | CapsArgs
    | StartArgs
    | LogArgs
    | WaitArgs
    | SequenceArgs
    | PublishArgs
    | CommentArgs
)


@dataclass(frozen=True, slots=True)
class Instruction:
    command: Command
    args: CommandArgs
    line: str
    index: LineNumber
    payload: Payload

    def first(self) -> str:
        if not self.args:
            raise ParseError(
                f"command was missing its first argument ({self.line}:{self.index})",
                line=self.line,
                index=self.index,
            )
        return self.args[0]

    def second(self) -> str:
        if len(self.args) < 2:
            raise ParseError(
                f"{self.command} was missing its second argument on line {self.index}",
                line=self.line,
                index=self.index,
            )
        return self.args[1]

    def render(self) -> str:
        """Canonical script line for this instruction."""
        return " ".join((self.command.value, *self.args))

    def __str__(self) -> str:
        return f"{self.index} {self.line}"


def _integer(instr_command: str, value: str, line: str, what: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ParseError(
            f"{instr_command} expected {what} to be an integer, was {value!r}",
            line=line,
        ) from e


def _build_payload(command: Command, raw: Instruction) -> Payload:
    line = raw.line
    match command:
        case Command.COMMENT:
            return CommentArgs(text=" ".join(raw.args))
        case (
            Command.ENTER
            | Command.SKIPOFFSET
            | Command.ALLOFFSETS
            | Command.STOP
            | Command.POST
        ):
            return PuppetArg(name=raw.first())
        case Command.LOAD:
            return LoadArgs(name=raw.first(), feed_id=raw.second())
        case Command.HOPS:
            return HopsArgs(
                name=raw.first(),
                hops=_integer(command, raw.second(), line, "hops"),
            )
        case Command.CAPS:
            return CapsArgs(name=raw.first(), caps=raw.second())
        case Command.START:
            return StartArgs(name=raw.first(), implementation=raw.second())
        case Command.LOG:
            return LogArgs(
                name=raw.first(),
                amount=_integer(command, raw.second(), line, "the message count"),
            )
        case Command.WAIT:
            milliseconds = _integer(command, raw.first(), line, "milliseconds")
            if milliseconds < 0:
                raise ParseError(f"wait duration must be non-negative ({line})")
            return WaitArgs(milliseconds=milliseconds)
        case Command.HAS | Command.WAITUNTIL:
            return SequenceArgs(
                src=raw.first(),
                target=SequenceTarget.parse(raw.second(), command=command, line=line),
            )
        case Command.PUBLISH:
            raw.second()
            return PublishArgs(name=raw.first(), content=" ".join(raw.args[1:]))
        case (
            Command.FOLLOW
            | Command.UNFOLLOW
            | Command.ISFOLLOWING
            | Command.ISNOTFOLLOWING
            | Command.CONNECT
            | Command.DISCONNECT
        ):
            return PuppetPair(src=raw.first(), dst=raw.second())
    raise ParseError(f"no argument rules for command {command}")


def parse_line(line: str, index: LineNumber) -> Instruction:
    """Parse a single script line. ``index`` is the 1-based line number."""
    parts = line.replace(",", "").split()
    if not parts:
        raise ParseError(
            f"line {index} was empty; empty lines are not allowed",
            line=line,
            index=index,
        )

    name, args = parts[0], tuple(parts[1:])
    command = COMMAND_ALIASES.get(name)
    if command is None:
        try:
            command = Command(name)
        except ValueError as e:
            raise ParseError(
                f"unknown simulator command {name!r} on line {index}",
                line=line,
                index=index,
            ) from e

    # arity checks need the accessors, so build a payload-less shell first
    shell = Instruction(
        command=command,
        args=args,
        line=line,
        index=index,
        payload=CommentArgs(text=""),
    )
    try:
        payload = _build_payload(command, shell)
    except ParseError as e:
        raise ParseError(str(e), line=line, index=index) from e
    return Instruction(
        command=command, args=args, line=line, index=index, payload=payload
    )


def parse_script(lines: Iterable[str]) -> list[Instruction]:
    """Parse every line of a script.

    Lines are stripped of surrounding whitespace. A blank line anywhere raises
    ``ParseError``; a trailing newline at the end of the file is not a line.
    """
    return [parse_line(line.strip(), index) for index, line in enumerate(lines, 1)]


def split_script(text: str) -> list[str]:
    """Split script text into lines, dropping only the final line terminator."""
    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    return lines
