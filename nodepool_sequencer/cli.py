#!/usr/bin/env python3
"""
Command line entry point.

    nodepool-sequencer serve [--simulate]
    nodepool-sequencer validate request.json
    nodepool-sequencer run request.json
    nodepool-sequencer watch <session-id> --server http://127.0.0.1:8080
    nodepool-sequencer uncordon <pool> --cluster <cluster>
    nodepool-sequencer pools --cluster <cluster> --resource-group <rg>
"""
import json
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple

import requests
import typer
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from nodepool_sequencer import __version__
from nodepool_sequencer.errors import SequencerError, ValidationError
from nodepool_sequencer.logger_config import setup_logger
from nodepool_sequencer.models import NodePoolRef, SequenceRequest, SessionStatus
from nodepool_sequencer.orchestrator import Orchestrator
from nodepool_sequencer.settings import Settings
from nodepool_sequencer.validator import validate_request

app = typer.Typer(help="Migrate workloads between Kubernetes node pools")


def _settings() -> Settings:
    settings = Settings.from_env()
    setup_logger("nodepool-sequencer", settings.log_level, settings.log_file)
    return settings


def _load_request(path: Path) -> Dict:
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError) as e:
        typer.echo(f"Cannot read {path}: {e}", err=True)
        raise typer.Exit(code=2)


def _kube_operator(settings: Settings):
    from nodepool_sequencer.kube import KubernetesNodeOperator

    return KubernetesNodeOperator(settings)


def format_event(event: Dict) -> str:
    node = ""
    if event.get("node_name"):
        node = f" [{event.get('node_index')}/{event.get('node_total')}] {event['node_name']}"
    line = f"{event['progress_percent']:6.2f}% {event['phase_name']:<10} {event['status']:<9}{node} {event['message']}"
    if event.get("error"):
        line += f" ({event['error']})"
    return line


def iter_sse(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Yield (event, data) pairs from the lines of a text/event-stream"""
    event, data = "message", []
    for line in lines:
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].strip())
    if data:
        yield event, "\n".join(data)


def http_session() -> requests.Session:
    session = requests.Session()
    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504]
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@app.command()
def serve(
    simulate: bool = typer.Option(False, help="Run against an in-memory demo cluster"),
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Run the HTTP API"""
    import uvicorn

    from nodepool_sequencer.api import create_app

    settings = _settings()
    if simulate:
        from nodepool_sequencer.testing import InMemoryNodeOperator

        logger.warning("Running against the in-memory demo cluster")
        operator = InMemoryNodeOperator.demo()
    else:
        operator = _kube_operator(settings)
    orchestrator = Orchestrator(operator, settings)
    uvicorn.run(create_app(orchestrator), host=host or settings.host, port=port or settings.port)


@app.command()
def validate(file: Path = typer.Argument(..., help="Sequence request JSON")):
    """Check a sequence request without touching the cluster"""
    try:
        request = SequenceRequest.from_dict(_load_request(file))
        ok, errors = validate_request(request)
    except ValidationError as e:
        ok, errors = False, e.errors
    if not ok:
        for error in errors:
            typer.echo(f"  [FAIL] {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"  [OK] {request.origin.ref.name} -> {request.dest.ref.name}")


@app.command()
def run(file: Path = typer.Argument(..., help="Sequence request JSON")):
    """Execute a sequence in-process against the current kube context"""
    settings = _settings()
    orchestrator = Orchestrator(_kube_operator(settings), settings)
    try:
        session = orchestrator.create_session(_load_request(file), start=False)
    except SequencerError as e:
        typer.echo(f"Rejected: {e}", err=True)
        raise typer.Exit(code=1)

    subscription = orchestrator.subscribe(session.id)
    orchestrator.start(session)
    for event in subscription:
        typer.echo(format_event(event.to_dict()))
    orchestrator.wait(session.id)

    typer.echo(f"Session {session.id}: {session.status.value}")
    if session.status != SessionStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def watch(
    session_id: str = typer.Argument(..., help="Session to follow"),
    server: str = typer.Option("http://127.0.0.1:8080", help="Sequencer API base URL"),
):
    """Follow the progress stream of a running session"""
    http = http_session()
    url = f"{server.rstrip('/')}/api/v1/nodepools/sequence/progress"
    with http.get(url, params={"session_id": session_id}, stream=True, timeout=(10, None)) as response:
        if response.status_code != 200:
            typer.echo(f"Stream failed ({response.status_code}): {response.text}", err=True)
            raise typer.Exit(code=1)
        for event, data in iter_sse(response.iter_lines(decode_unicode=True)):
            payload = json.loads(data)
            if event == "close":
                typer.echo(payload.get("message", "closed"))
                status = payload.get("status")
                raise typer.Exit(code=0 if status in (None, SessionStatus.COMPLETED.value) else 1)
            typer.echo(format_event(payload))


@app.command()
def uncordon(
    pool: str = typer.Argument(..., help="Node pool name"),
    cluster: str = typer.Option(..., help="Cluster name"),
    resource_group: str = typer.Option("", help="Azure resource group"),
    subscription: str = typer.Option("", help="Azure subscription"),
):
    """Make every node of a pool schedulable again (recovery after a failed drain)"""
    settings = _settings()
    orchestrator = Orchestrator(_kube_operator(settings), settings)
    ref = NodePoolRef(name=pool, cluster=cluster, resource_group=resource_group, subscription=subscription)
    nodes = orchestrator.uncordon_pool(ref)
    typer.echo(f"Uncordoned {len(nodes)} nodes in {ref}")


@app.command()
def pools(
    cluster: str = typer.Option(..., help="Cluster name"),
    resource_group: str = typer.Option(..., help="Azure resource group"),
    subscription: str = typer.Option("", help="Azure subscription"),
):
    """List the node pools of a cluster"""
    settings = _settings()
    orchestrator = Orchestrator(_kube_operator(settings), settings)
    try:
        found = orchestrator.list_node_pools(cluster, resource_group, subscription)
    except SequencerError as e:
        typer.echo(f"  [FAIL] {e}", err=True)
        raise typer.Exit(code=1)
    for pool in found:
        scaling = f"autoscale {pool.min_nodes}-{pool.max_nodes}" if pool.autoscaling_enabled else "manual"
        mode = " system" if pool.is_system else ""
        typer.echo(f"{pool.name:<16} {pool.node_count:>4} nodes  {scaling:<16} {pool.status}{mode}")


@app.command()
def version():
    """Print the installed version"""
    typer.echo(__version__)


def main():
    app()


if __name__ == "__main__":
    main()
