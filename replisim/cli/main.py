#!/usr/bin/env python3
"""
Main CLI entry point for replisim.

Commands:
- run: execute a simulator script against one or more implementations
- expectations: compute which peers every peer should replicate
- generate: build a simulator script from a fixtures folder
- hops: show the follow traversal around each focus puppet
"""

import asyncio
import sys
from pathlib import Path
from typing import NoReturn, TextIO

import click
from loguru import logger
from rich.console import Console
from rich.tree import Tree

from replisim.client.websocket_transport import websocket_transport_factory
from replisim.core.config import (
    DEFAULT_BASE_PORT,
    DEFAULT_CAPS,
    DEFAULT_HOPS,
    ExpectationSettings,
    GeneratorSettings,
    SimulatorSettings,
    validate_caps,
)
from replisim.core.errors import SimulationError
from replisim.core.fixtures import (
    load_expectations,
    load_identities,
    write_expectations,
)
from replisim.core.instruction import split_script
from replisim.core.logging import configure_logging
from replisim.core.simulator import Simulator
from replisim.datastructures.type_aliases import ExpectationMap
from replisim.generation.generator import ScriptGenerator
from replisim.generation.traversal import discover_edges
from replisim.replication.expectations import compute_expectations, expectation_path
from replisim.replication.follow_graph import FollowGraph

# stdout belongs to TAP output and generated scripts
console = Console(stderr=True)
out_console = Console()


def setup_logging(level: str, debug_scopes: tuple[str, ...] = ()) -> None:
    """Setup logging configuration."""
    configure_logging(level, debug_scopes=debug_scopes, colorize=sys.stderr.isatty())


def fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for diagnostics written to stderr",
)
@click.option(
    "--debug-scope",
    multiple=True,
    help="Enable debug logging for a module (core.simulator) or a puppet (puppet:alice)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, debug_scope: tuple[str, ...]) -> None:
    """
    replisim: replication simulator for gossip protocol implementations.

    Spawns puppet peers, drives their connections from a script and checks
    what they replicated. Results are reported as TAP on stdout.
    """
    setup_logging(log_level.upper(), debug_scope)
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level.upper()


@cli.command()
@click.option(
    "--spec",
    "script_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Simulator script to run",
)
@click.option(
    "--caps",
    default=DEFAULT_CAPS,
    show_default=True,
    help="Network capability key passed to every puppet",
)
@click.option(
    "--fixtures",
    "fixtures_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Fixtures folder prepared by the log-splicing tool",
)
@click.option(
    "--out",
    "out_dir",
    default=Path("./puppets"),
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Output folder for puppet data and logs; wiped on every run",
)
@click.option(
    "--port",
    "base_port",
    default=DEFAULT_BASE_PORT,
    show_default=True,
    type=click.IntRange(1, 65534),
    help="First port handed out to puppets",
)
@click.option(
    "--hops",
    default=DEFAULT_HOPS,
    show_default=True,
    type=click.IntRange(min=0),
    help="Default hops setting of every puppet",
)
@click.option(
    "--verbose", "-v", is_flag=True, help="Mirror puppet output to stdout"
)
@click.argument(
    "implementations",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
def run(
    script_path: Path,
    caps: str,
    fixtures_dir: Path | None,
    out_dir: Path,
    base_port: int,
    hops: int,
    verbose: bool,
    implementations: tuple[Path, ...],
) -> None:
    """Run a simulator script.

    IMPLEMENTATIONS are folders that each contain a sim-shim.sh launcher;
    scripts refer to them by folder name in `start` statements.
    """
    try:
        settings = SimulatorSettings.with_implementations(
            list(implementations),
            caps=validate_caps(caps),
            hops=hops,
            base_port=base_port,
            fixtures_dir=fixtures_dir.resolve() if fixtures_dir else None,
            out_dir=out_dir,
            verbose=verbose,
        )
    except SimulationError as e:
        fail(str(e))

    try:
        lines = split_script(script_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        fail(f"could not read script {script_path}: {e}")

    logger.info(
        "Running {} ({} lines) with implementations {}",
        script_path,
        len(lines),
        ", ".join(settings.implementations),
    )
    simulator = Simulator(settings, websocket_transport_factory)
    passed = asyncio.run(simulator.run(lines))
    sys.exit(0 if passed else 1)


@cli.command()
@click.argument(
    "graph_path", type=click.Path(exists=True, path_type=Path)
)
@click.option(
    "--hops",
    "max_hops",
    default=DEFAULT_HOPS,
    show_default=True,
    type=click.IntRange(min=0),
    help="How many hops replication reaches",
)
@click.option(
    "--replicate-blocked",
    is_flag=True,
    help="Expect blocked peers to be replicated anyway",
)
@click.option(
    "--out",
    "out_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to write the expectations [default: expectations.json next to the graph]",
)
def expectations(
    graph_path: Path, max_hops: int, replicate_blocked: bool, out_path: Path | None
) -> None:
    """Compute replication expectations from a follow graph.

    GRAPH_PATH is follow-graph.json or a folder containing it.
    """
    try:
        graph = FollowGraph.load(graph_path)
        result = compute_expectations(
            graph,
            ExpectationSettings(max_hops=max_hops, replicate_blocked=replicate_blocked),
        )
        target = out_path or expectation_path(graph_path)
        write_expectations(target, result)
    except SimulationError as e:
        fail(str(e))
    console.print(f"[green]Wrote expectations for {len(result)} peers to {target}[/green]")


@cli.command()
@click.argument(
    "fixtures_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.option(
    "--sbot",
    "implementation",
    default="ssb-server",
    show_default=True,
    help="Implementation every generated `start` uses",
)
@click.option(
    "--focused",
    "focused_count",
    default=2,
    show_default=True,
    type=click.IntRange(min=1),
    help="Number of puppets in the focus group",
)
@click.option("--hops", "max_hops", default=DEFAULT_HOPS, show_default=True, type=click.IntRange(min=0))
@click.option("--seed", default=0, show_default=True, type=int, help="Focus group shuffle seed")
@click.option(
    "--passes", default=2, show_default=True, type=click.IntRange(min=1),
    help="How many times the connection sweep runs",
)
@click.option("--replicate-blocked", is_flag=True)
@click.option(
    "--expectations",
    "expectations_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Use an existing expectations.json instead of computing one",
)
@click.option(
    "--out",
    "sink",
    default="-",
    type=click.File("w"),
    help="Where to write the script [default: stdout]",
)
def generate(
    fixtures_dir: Path,
    implementation: str,
    focused_count: int,
    max_hops: int,
    seed: int,
    passes: int,
    replicate_blocked: bool,
    expectations_path: Path | None,
    sink: TextIO,
) -> None:
    """Generate a simulator script from a fixtures folder.

    FIXTURES_DIR must contain follow-graph.json and secret-ids.json. Unless
    --expectations is given, expectations.json is computed and written there.
    """
    try:
        graph = FollowGraph.load(fixtures_dir)
        identities = load_identities(fixtures_dir)
        expected: ExpectationMap
        if expectations_path is not None:
            expected = load_expectations(expectations_path)
        else:
            expected = compute_expectations(
                graph,
                ExpectationSettings(
                    max_hops=max_hops, replicate_blocked=replicate_blocked
                ),
            )
            write_expectations(expectation_path(fixtures_dir), expected)
        generator = ScriptGenerator(
            graph,
            identities,
            expected,
            GeneratorSettings(
                implementation=implementation,
                focused_count=focused_count,
                max_hops=max_hops,
                seed=seed,
                passes=passes,
            ),
        )
        generator.write(sink)
    except SimulationError as e:
        fail(str(e))


@cli.command()
@click.argument(
    "fixtures_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.option("--hops", "max_hops", default=DEFAULT_HOPS, show_default=True, type=click.IntRange(min=0))
@click.option("--focused", "focused_count", default=2, show_default=True, type=click.IntRange(min=1))
@click.option("--seed", default=0, show_default=True, type=int)
def hops(fixtures_dir: Path, max_hops: int, focused_count: int, seed: int) -> None:
    """Show the follows discovered around each focus puppet."""
    try:
        graph = FollowGraph.load(fixtures_dir)
        identities = load_identities(fixtures_dir)
        generator = ScriptGenerator(
            graph,
            identities,
            {},
            GeneratorSettings(focused_count=focused_count, max_hops=max_hops, seed=seed),
        )
    except SimulationError as e:
        fail(str(e))

    for name in generator.focus_group:
        root = Tree(f"[bold]{name}[/bold]")
        nodes = {generator.ids[name]: root}
        for edge in discover_edges(graph, generator.ids[name], max_hops):
            label = generator.name_of(edge.dst) or edge.dst
            parent = nodes.get(edge.src, root)
            nodes.setdefault(edge.dst, parent.add(f"{edge.depth} {label}"))
        out_console.print(root)


def main() -> None:
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
