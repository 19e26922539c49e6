"""hookgate CLI for inspecting and exercising hook bundles - Tyro implementation."""

import json
import logging
import sys
import threading
from pathlib import Path
from typing import Annotated

import attrs
import tyro
from rich.console import Console
from rich.table import Table

from hookgate.bundle import Bundle, Stage, load_bundle
from hookgate.config import HookGateConfig, get_config, set_config_instance
from hookgate.drivers import HookCall, create_driver
from hookgate.exceptions import HookExecutionError, ManifestError
from hookgate.models import LiveRequest
from hookgate.objects import SessionObject
from hookgate.pipeline.codec import encode_request


# Subcommand definitions using attrs
@attrs.define
class Validate:
    """Validate a bundle and show its hook bindings."""

    bundle_dir: Annotated[Path, tyro.conf.Positional]
    """Directory containing manifest.json."""


@attrs.define
class Call:
    """Invoke one hook of a bundle and print the objects it returns."""

    bundle_dir: Annotated[Path, tyro.conf.Positional]
    """Directory containing manifest.json."""

    hook: Annotated[str, tyro.conf.Positional]
    """Name of the hook to call."""

    stage: Stage = Stage.PRE
    """Stage to call the hook as."""

    method: Annotated[str, tyro.conf.arg(aliases=["-X"])] = "GET"
    """HTTP method of the sample request."""

    path: str = "/"
    """Path of the sample request."""

    header: Annotated[list[str], tyro.conf.arg(aliases=["-H"])] = attrs.field(factory=list)
    """Request header as 'Name: value' (repeatable)."""

    body: Annotated[str, tyro.conf.arg(aliases=["-d"])] = ""
    """Request body."""

    json: bool = False
    """Print plain JSON without highlighting."""


# Type alias for all subcommands
Command = (
    Annotated[Validate, tyro.conf.subcommand(name="validate")]
    | Annotated[Call, tyro.conf.subcommand(name="call")]
)


def setup_logging(debug: bool = False) -> None:
    """Configure logging with 100-character text width."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)-20s - %(levelname)-8s - %(message).100s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def parse_header(value: str) -> tuple[str, str]:
    """Split a 'Name: value' header argument.

    Raises:
        ValueError: If the argument has no colon or an empty name
    """
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise ValueError(f"Invalid header '{value}', expected 'Name: value'")
    return name.strip(), header_value.strip()


def load_config(config_dir: Path | None) -> HookGateConfig:
    if config_dir is None:
        return get_config()
    config = HookGateConfig.from_yaml(config_dir / "hookgate.yaml")
    set_config_instance(config)
    return config


def bindings_table(bundle: Bundle, available: set[str]) -> Table:
    table = Table(title=f"Bundle {bundle.id} (driver: {bundle.driver})", show_header=True, show_lines=True)
    table.add_column("Stage", style="cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Hook", style="yellow")
    table.add_column("Resolved")
    for stage in Stage:
        for binding in bundle.hooks_for(stage):
            resolved = "[green]yes[/green]" if binding.name in available else "[red]no[/red]"
            table.add_row(stage.value, str(binding.order), binding.name, resolved)
    return table


def validate_bundle(config: HookGateConfig, bundle_dir: Path, console: Console) -> int:
    """Load a bundle, resolve its hooks and print the bindings.

    Returns:
        Process exit code
    """
    try:
        bundle = load_bundle(bundle_dir)
        with create_driver(bundle.driver, config.coprocess) as driver:
            available = driver.available_hooks(bundle)
            console.print(bindings_table(bundle, available))
            driver.bind(bundle)
    except ManifestError as e:
        console.print(f"[red]Invalid bundle:[/red] {e.detail}")
        return 1
    console.print(f"[green]Bundle {bundle.id} is valid[/green]")
    return 0


def call_hook(config: HookGateConfig, cmd: Call, console: Console) -> int:
    """Run one hook through its driver against a sample request.

    Returns:
        Process exit code
    """
    try:
        headers = dict(parse_header(h) for h in cmd.header)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 2

    try:
        bundle = load_bundle(cmd.bundle_dir)
    except ManifestError as e:
        console.print(f"[red]Invalid bundle:[/red] {e.detail}")
        return 1

    live = LiveRequest(method=cmd.method.upper(), url=cmd.path, headers=headers, body=cmd.body.encode("utf-8"))
    call = HookCall(
        bundle=bundle,
        stage=cmd.stage,
        hook_name=cmd.hook,
        request=encode_request(live, cmd.stage, cmd.hook),
        session=SessionObject(),
    )

    cancel = threading.Event()
    with create_driver(bundle.driver, config.coprocess) as driver:
        try:
            result = driver.invoke(call, config.coprocess.hook_timeout, cancel)
        except HookExecutionError as e:
            console.print(f"[red]Hook failed:[/red] {e.detail}")
            return 1
        except KeyboardInterrupt:
            cancel.set()
            return 130

    output = {
        "request": result.request.to_dict(),
        "session": result.session.to_dict(),
        "metadata": result.metadata,
    }
    if cmd.json:
        print(json.dumps(output, indent=2))
    else:
        console.print_json(data=output)
    return 0


def main(
    cmd: Annotated[Command, tyro.conf.arg(name="")],
    *,
    config_dir: Annotated[Path | None, tyro.conf.arg(help="Configuration directory")] = None,
    debug: bool = False,
) -> None:
    """hookgate - out-of-process hook dispatch for an API gateway.

    Validates bundles and calls individual hooks through their drivers.
    """
    config = load_config(config_dir)
    setup_logging(debug or config.debug)
    console = Console()

    if isinstance(cmd, Validate):
        sys.exit(validate_bundle(config, cmd.bundle_dir, console))

    elif isinstance(cmd, Call):
        sys.exit(call_hook(config, cmd, console))


def entry_point() -> None:
    """Entry point for the hookgate command."""
    tyro.cli(main)


if __name__ == "__main__":
    entry_point()
