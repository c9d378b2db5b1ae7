"""Command-line interface for qemu-argv.

Usage:
    qemu-argv vm.json                      # Preview against a current binary
    qemu-argv vm.json --caps caps.json     # Preview against a cached capability set
    qemu-argv vm.json --json | jq .argv    # Machine-readable output
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from qemu_argv import (
    ArgumentSequence,
    ConfigUnsupportedError,
    DryRunResourceBroker,
    LocalResourceBroker,
    ResourceError,
    SynthesisError,
    SynthesisOptions,
    __version__,
    all_capabilities,
    build_command_line,
    load_capabilities,
    load_definition,
)
from qemu_argv._logging import configure_logging
from qemu_argv.platform_utils import HostOS, detect_host_os

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_CONFIG_UNSUPPORTED = 3
EXIT_INTERNAL_ERROR = 4
EXIT_RESOURCE_ERROR = 5


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]
    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)
    return "\n".join(lines)


def format_shell(result: ArgumentSequence) -> str:
    """Render as a shell command: env prefix, binary, then one option per line."""
    lines: list[str] = [f"{name}={shlex.quote(value)}" for name, value in result.env]
    current: list[str] = []
    for token in result.argv:
        if token.startswith("-") and current:
            lines.append(shlex.join(current))
            current = []
        current.append(token)
    if current:
        lines.append(shlex.join(current))
    return " \\\n".join(lines)


def format_result_json(result: ArgumentSequence) -> str:
    output = {
        "argv": list(result.argv),
        "fds": [{"fd": p.fd, "policy": p.policy.value} for p in result.fds],
        "env": dict(result.env),
    }
    if result.clock is not None:
        output["clock"] = result.clock.model_dump(mode="json")
    return json.dumps(output, indent=2)


async def synthesize(
    definition: Path,
    caps_file: Path | None,
    *,
    live: bool,
    json_output: bool,
    options: SynthesisOptions,
) -> int:
    """Load inputs, run one synthesis pass and print the result."""
    try:
        vm = await load_definition(definition)
        caps = await load_capabilities(caps_file) if caps_file else all_capabilities()
    except ValidationError as e:
        click.echo(format_error("Invalid input", str(e), ["Check the JSON against the model schema"]), err=True)
        return EXIT_CLI_ERROR
    except OSError as e:
        click.echo(format_error("Cannot read input", str(e)), err=True)
        return EXIT_CLI_ERROR

    broker = LocalResourceBroker() if live else DryRunResourceBroker()
    try:
        result = await build_command_line(vm, caps, broker=broker, options=options)
    except ConfigUnsupportedError as e:
        click.echo(
            format_error(
                "Configuration not supported",
                e.message,
                [
                    "Check the capability set matches the target binary",
                    "Pass --caps with a file queried from the binary",
                ],
            ),
            err=True,
        )
        return EXIT_CONFIG_UNSUPPORTED
    except ResourceError as e:
        click.echo(format_error("Resource error", e.message, ["Retry without --live to preview"]), err=True)
        return EXIT_RESOURCE_ERROR
    except SynthesisError as e:
        click.echo(format_error("Synthesis failed", e.message), err=True)
        return EXIT_INTERNAL_ERROR

    click.echo(format_result_json(result) if json_output else format_shell(result))
    return EXIT_SUCCESS


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("definition", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--caps",
    "caps_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Capability set JSON (default: every known capability)",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--live", is_flag=True, help="Open real log files and sockets instead of placeholders")
@click.option("-S", "--paused", is_flag=True, help="Start with vCPUs stopped")
@click.option("--incoming", help="Incoming migration URI, or 'defer'")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("-v", "--verbose", is_flag=True, help="Log every synthesis phase")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-argv")
def main(
    definition: Path,
    caps_file: Path | None,
    json_output: bool,
    live: bool,
    paused: bool,
    incoming: str | None,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Print the emulator command line for a resolved VM definition.

    DEFINITION is a JSON document of the VM definition model with
    addresses and aliases already assigned.

    Examples:

    \b
      qemu-argv vm.json
      qemu-argv vm.json --caps qemu-9.2.json --json
      qemu-argv vm.json -S --incoming defer
    """
    if quiet and verbose:
        raise click.UsageError("--quiet and --verbose are mutually exclusive")
    if live and detect_host_os() is HostOS.UNKNOWN:
        raise click.UsageError("--live needs a Linux or macOS host")
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING, quiet=quiet)

    try:
        options = SynthesisOptions(start_paused=paused, incoming=incoming)
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    exit_code = asyncio.run(
        synthesize(definition, caps_file, live=live, json_output=json_output, options=options)
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
