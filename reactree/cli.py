"""CLI entrypoint for ReAcTree."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from reactree.core.config import AppConfig, load_config
from reactree.core.exceptions import ConfigError, ReactreeError
from reactree.core.factory import ComponentBundle, ComponentFactory
from reactree.memory.episodes import fingerprint_request
from reactree.orchestrator.metrics import analyze_metrics, latest_run_metrics
from reactree.tree.builder import load_plan


def _setup_logging(config: Optional[AppConfig], verbose: bool = False) -> None:
    """Apply logging configuration from the loaded config."""
    level_name = config.logging.level if config else "INFO"
    fmt = config.logging.format if config else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _config(ctx: click.Context) -> AppConfig:
    obj = ctx.obj
    if obj.get("config") is None:
        try:
            obj["config"] = load_config(config_dir=obj["config_dir"], env=obj["env"])
        except ConfigError as exc:
            raise click.ClickException(str(exc)) from exc
    return obj["config"]


def _bundle(ctx: click.Context) -> ComponentBundle:
    try:
        bundle = ComponentFactory.create(config=_config(ctx))
    except ReactreeError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.call_on_close(lambda: ComponentFactory.close(bundle))
    return bundle


def _parse_overrides(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a dict, YAML-typing each value."""
    overrides: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--set")
        overrides[key.strip()] = yaml.safe_load(raw) if raw.strip() else None
    return overrides


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml and overlays.",
)
@click.option("--env", default=None, help="Optional config overlay environment.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """ReAcTree hierarchical workflow orchestration."""
    ctx.ensure_object(dict)
    ctx.obj.update({"verbose": verbose, "config_dir": config_dir, "env": env, "config": None})
    try:
        config = load_config(config_dir=config_dir, env=env)
    except ConfigError:
        config = None
    ctx.obj["config"] = config
    _setup_logging(config, verbose=verbose)


@cli.command("run")
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML/JSON plan: a task tree, or {request, configuration, tree}.",
)
@click.option("--request", "request_text", default=None, help="Request text (defaults to the plan's).")
@click.option("--set", "overrides", multiple=True, help="Run configuration override, key=value.")
@click.option(
    "--out",
    "out_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the run summary JSON here.",
)
@click.pass_context
def run_plan(
    ctx: click.Context,
    plan_path: Path,
    request_text: Optional[str],
    overrides: tuple[str, ...],
    out_path: Optional[Path],
) -> None:
    """Execute a plan and print its RunSummary."""
    try:
        document = load_plan(plan_path)
    except ReactreeError as exc:
        raise click.ClickException(str(exc)) from exc

    if "tree" in document:
        tree = document["tree"]
        configuration = dict(document.get("configuration") or {})
        request_text = request_text or document.get("request")
    else:
        tree = document
        configuration = {}
    configuration.update(_parse_overrides(overrides))
    request_text = request_text or str(tree.get("description") or tree.get("id") or plan_path.stem)

    bundle = _bundle(ctx)
    try:
        summary = bundle.orchestrator.run(request_text, configuration=configuration, plan=tree)
    except ReactreeError as exc:
        raise click.ClickException(str(exc)) from exc

    text = summary.model_dump_json(indent=2)
    if out_path is not None:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
    click.echo(text)

    color = "green" if summary.completed else "red"
    click.echo(click.style(f"Run {summary.run_id}: {summary.outcome.value}", fg=color), err=True)
    if not summary.completed:
        ctx.exit(1)


@cli.command("episodes")
@click.option("--prefix", default="", help="Request text; matched by fingerprint prefix.")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def list_episodes(ctx: click.Context, prefix: str, limit: int) -> None:
    """List recorded episodes, newest first."""
    bundle = _bundle(ctx)
    try:
        episodes = list(bundle.store.find_episodes(fingerprint_request(prefix), limit=limit))
    except ReactreeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json([
        {
            "episode_id": ep.episode_id,
            "run_id": ep.run_id,
            "outcome": ep.outcome.value,
            "request_fingerprint": ep.request_fingerprint,
            "duration_seconds": ep.duration_seconds,
            "total_retries": ep.total_retries,
            "timestamp": ep.timestamp.isoformat(),
        }
        for ep in episodes
    ])


@cli.command("memory")
@click.argument("run_id")
@click.option("--fact-type", default=None, help="Show every record of one fact_type, newest first.")
@click.pass_context
def show_memory(ctx: click.Context, run_id: str, fact_type: Optional[str]) -> None:
    """Print the working-memory snapshot of a run."""
    bundle = _bundle(ctx)
    try:
        if fact_type:
            _echo_json([r.model_dump(mode="json") for r in bundle.store.history(run_id, fact_type)])
        else:
            _echo_json(bundle.store.snapshot(run_id))
    except ReactreeError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("metrics")
@click.option("--run-id", default=None, help="Show raw node metrics for one run instead.")
@click.option("--latest", is_flag=True, default=False, help="Show raw node metrics for the latest run.")
@click.pass_context
def show_metrics(ctx: click.Context, run_id: Optional[str], latest: bool) -> None:
    """Print aggregated workflow metrics."""
    path = Path(_config(ctx).metrics.jsonl_path)
    if run_id or latest:
        _echo_json([vars(m) for m in latest_run_metrics(path, run_id)])
        return
    analysis = analyze_metrics(path)
    if not analysis.get("total_executions"):
        click.echo("No metrics found. Run some workflows first.", err=True)
    _echo_json(analysis)


def main() -> None:
    """Entry point used by `reactree` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
