"""
Command-line interface for the Proxmox provider.
Runs the provisioning pipeline locally and inspects placement decisions.
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .cancellation import CancelToken
from .config import ProxmoxSettings, get_provider_settings, get_settings
from .errors import OperationCancelled, ProviderError
from .image_cache import image_url, image_volume_name
from .image_factory import ImageFactoryClient
from .node_selector import NodeSelector, memory_free_ratio, pick_node
from .provision import Provisioner
from .proxmox_api import ProxmoxClient
from .runner import LocalContext, PipelineRunner, StateStore, load_machine_config
from .selector_expr import parse
from .storage_selector import STORAGE_SCHEMA, storage_bindings

app = typer.Typer(
    name="proxmox-provider",
    help="Provision Talos VMs on Proxmox VE",
    add_completion=False,
)
console = Console()

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "info", json_logs: bool = False) -> None:
    """Configure structlog; logs go to stderr so command output stays clean."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def install_signal_handlers(cancel: CancelToken) -> None:
    """Cancel the token on SIGINT/SIGTERM instead of killing the process mid-call."""

    def _handler(signum: int, frame: object) -> None:
        cancel.cancel(f"received {signal.Signals(signum).name}")

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _settings(ctx: typer.Context) -> ProxmoxSettings:
    try:
        return get_settings(ctx.obj.get("config_file"))
    except (ValueError, FileNotFoundError) as e:
        console.print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(1)


def _client(settings: ProxmoxSettings) -> ProxmoxClient:
    try:
        return ProxmoxClient.from_settings(settings)
    except ValueError as e:
        console.print(f"❌ Cannot connect to Proxmox: {e}")
        raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file with a 'proxmox' section"),
    log_level: str = typer.Option("info", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    configure_logging(log_level, json_logs)
    ctx.obj = {"config_file": config_file}


# === PROVISIONING COMMANDS ===


@app.command()
def provision(
    ctx: typer.Context,
    request_id: str = typer.Option(..., help="Machine request id, used as the VM name"),
    machine_config: Path = typer.Option(..., exists=True, dir_okay=False, help="Machine config YAML"),
    talos_version: str = typer.Option(..., help="Talos version, e.g. v1.12.0"),
    state_file: Path = typer.Option(Path("state.yaml"), "--state", help="Provisioning state file"),
    join_config: Optional[Path] = typer.Option(None, exists=True, dir_okay=False, help="Talos join config"),
    request_set: Optional[str] = typer.Option(None, help="Machine request set id"),
) -> None:
    """Run the provisioning pipeline until the VM is started."""
    settings = _settings(ctx)
    client = _client(settings)
    provider_settings = get_provider_settings()
    store = StateStore(state_file)

    try:
        context = LocalContext(
            request_id=request_id,
            provider_data=load_machine_config(machine_config),
            state=store.load(),
            factory=ImageFactoryClient(provider_settings.image_factory_url, timeout=settings.timeout),
            talos_version=talos_version,
            join_config=join_config.read_text() if join_config else "",
            request_set_id=request_set,
        )
        provisioner = Provisioner(
            client,
            factory_url=provider_settings.image_factory_url,
            deprovision_poll_interval=provider_settings.deprovision_poll_interval,
        )
        runner = PipelineRunner(provisioner.provision_steps(), store, provider_settings.max_step_attempts)

        cancel = CancelToken()
        install_signal_handlers(cancel)
        runner.run(context, cancel)
    except OperationCancelled as e:
        console.print(f"⚠️  Provisioning cancelled: {e.reason}")
        raise typer.Exit(130)
    except (ProviderError, ValueError) as e:
        console.print(f"❌ Provisioning failed: {e}")
        raise typer.Exit(1)

    state = context.state
    console.print(f"✅ VM {state.vmid} started on node {state.node} (uuid {state.uuid})")


@app.command()
def deprovision(
    ctx: typer.Context,
    request_id: str = typer.Option(..., help="Machine request id"),
    state_file: Path = typer.Option(Path("state.yaml"), "--state", help="Provisioning state file"),
) -> None:
    """Stop and delete the VM recorded in the state file."""
    client = _client(_settings(ctx))
    provider_settings = get_provider_settings()
    store = StateStore(state_file)

    try:
        state = store.load()
        provisioner = Provisioner(client, deprovision_poll_interval=provider_settings.deprovision_poll_interval)
        cancel = CancelToken()
        install_signal_handlers(cancel)
        provisioner.deprovision(state, request_id, cancel)
    except OperationCancelled as e:
        console.print(f"⚠️  Deprovisioning cancelled: {e.reason}")
        raise typer.Exit(130)
    except (ProviderError, ValueError) as e:
        console.print(f"❌ Deprovisioning failed: {e}")
        raise typer.Exit(1)

    store.delete()
    console.print(f"✅ Machine {request_id} removed")


# === INSPECTION COMMANDS ===


@app.command()
def nodes(
    ctx: typer.Context,
    request_set: Optional[str] = typer.Option(None, help="Count sibling VMs of this request set"),
) -> None:
    """Show cluster nodes and which one would be picked."""
    client = _client(_settings(ctx))
    raw_nodes = client.list_nodes()
    if not raw_nodes:
        console.print("❌ No nodes available")
        raise typer.Exit(1)

    statuses = NodeSelector(client).node_statuses(raw_nodes, request_set, CancelToken())
    siblings = {s.name: s.same_request_set_vms for s in statuses}
    picked = pick_node(statuses).name

    table = Table(title="Proxmox Nodes")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Memory Free", justify="right")
    table.add_column("Siblings", justify="right")
    table.add_column("Pick", style="green")

    for node in raw_nodes:
        name = node["node"]
        table.add_row(
            name,
            str(node.get("status", "unknown")),
            f"{memory_free_ratio(node):.1%}",
            str(siblings[name]),
            "✓" if name == picked else "",
        )

    console.print(table)


@app.command()
def storage(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node name"),
    selector: str = typer.Argument(..., help='Selector, e.g. \'storageType == "lvmthin"\''),
) -> None:
    """Evaluate a storage selector against a node's storage pools."""
    try:
        predicate = parse(selector, STORAGE_SCHEMA)
    except ProviderError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    client = _client(_settings(ctx))
    table = Table(title=f"Storage on {node}")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Available (GiB)", justify="right")
    table.add_column("Match", style="green")

    first = None
    for pool in client.list_storages(node):
        try:
            matched = predicate.evaluate(storage_bindings(pool))
        except ProviderError as e:
            console.print(f"❌ {pool.name}: {e}")
            raise typer.Exit(1)
        if matched and first is None:
            first = pool.name
        table.add_row(pool.name, pool.type, f"{pool.available / 1024**3:.1f}", "✓" if matched else "")

    console.print(table)
    if first is None:
        console.print(f'❌ No matches for the condition "{selector}"')
        raise typer.Exit(1)
    console.print(f"Selected: [bold]{first}[/bold]")


@app.command("image-name")
def image_name(
    schematic: str = typer.Argument(..., help="Image schematic id"),
    talos_version: str = typer.Argument(..., help="Talos version"),
    factory_url: Optional[str] = typer.Option(None, help="Image factory base URL"),
) -> None:
    """Print the image URL and the cached ISO file name for it."""
    url = image_url(factory_url or get_provider_settings().image_factory_url, schematic, talos_version)
    console.print(f"URL:  {url}")
    console.print(f"ISO:  {image_volume_name(url)}")


if __name__ == "__main__":
    app()
