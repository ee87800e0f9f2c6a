"""
Lifeworld CLI - Main Entry Point

Command-line interface for the convergence engine.

Usage:
    lifeworld metrics                  # Current cognitive metrics
    lifeworld anomalies                # Anomaly warnings for the current graph
    lifeworld converge -t 0.9          # Oracle-backed convergence run
    lifeworld predict -p 0.7           # Early collapse of predicted pairs
    lifeworld forecast                 # Drift forecast
    lifeworld status                   # Scheduler status and temporal coherence
    lifeworld history -n 20            # Merge ledger
    lifeworld invariants               # Stabilized concepts
    lifeworld serve                    # Start the REST API
"""

import asyncio
import json
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Optional

import click

from lifeworld.core.config import load_config
from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.logging_config import configure_logging
from lifeworld.core.metrics import detect_anomalies, format_metrics_for_display
from lifeworld.cli.formatters import (
    format_concept_table,
    format_convergence_result,
    format_forecast,
    format_history_table,
    format_predictive_result,
    format_predictive_state,
    format_scheduler_status,
    format_warnings,
)


# ============================================================================
# Engine Lifecycle
# ============================================================================

def build_engine(config_path: Optional[Path] = None) -> ConvergenceEngine:
    return ConvergenceEngine.from_config(load_config(config_path))


@asynccontextmanager
async def engine_context(config_path: Optional[Path] = None):
    """
    Async context manager for the engine lifecycle (no background scheduler).

    Usage:
        async with engine_context(config_path) as engine:
            snapshot = await engine.get_metrics()
    """
    engine = build_engine(config_path)
    try:
        await engine.initialize()
        yield engine
    finally:
        await engine.close()


def with_engine(func: Callable) -> Callable:
    """
    Run an async ``(ctx, engine, ...)`` command body with a live engine.
    """
    @wraps(func)
    def wrapper(ctx, *args, **kwargs):
        config_path = Path(ctx.obj["config_path"]) if ctx.obj.get("config_path") else None

        async def run():
            async with engine_context(config_path) as engine:
                return await func(ctx, engine, *args, **kwargs)

        return asyncio.run(run())

    return wrapper


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


json_option = click.option("--json", "output_json", is_flag=True, help="Output as JSON")


# ============================================================================
# CLI Group and Main Entry
# ============================================================================

@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config.yaml file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """
    Lifeworld - Semantic Convergence & Metrics Engine CLI
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config

    configure_logging("DEBUG" if verbose else "WARNING", json_format=False, enqueue=False)


# ============================================================================
# Metrics
# ============================================================================

@cli.command()
@json_option
@click.pass_context
def metrics(ctx, output_json: bool):
    """Compute the current cognitive metrics."""
    @with_engine
    async def _metrics(ctx, engine):
        result = await engine.get_metrics_with_history()
        current = result["current"]
        if output_json:
            _echo_json({
                "metrics": current.to_dict(),
                "trend": result["trend"],
                "warnings": result["warnings"],
            })
            return
        click.echo(format_metrics_for_display(current))
        click.echo(f"Trend: {result['trend']}")
        click.echo(format_warnings(result["warnings"]))

    return _metrics(ctx)


@cli.command()
@json_option
@click.pass_context
def anomalies(ctx, output_json: bool):
    """Evaluate anomaly rules against the current metrics."""
    @with_engine
    async def _anomalies(ctx, engine):
        snapshot = await engine.get_metrics()
        warnings = detect_anomalies(snapshot)
        if output_json:
            _echo_json({"warnings": warnings})
        else:
            click.echo(format_warnings(warnings))

    return _anomalies(ctx)


# ============================================================================
# Convergence
# ============================================================================

@cli.command()
@click.option("--threshold", "-t", type=float, default=None, help="Similarity threshold (default from config)")
@json_option
@click.pass_context
def converge(ctx, threshold: Optional[float], output_json: bool):
    """Run oracle-backed convergence now."""
    @with_engine
    async def _converge(ctx, engine):
        result = await engine.run_convergence(threshold)
        if output_json:
            _echo_json(result.to_dict())
        else:
            click.echo(format_convergence_result(result))

    return _converge(ctx)


@cli.command()
@click.option("--threshold", "-p", type=float, default=None, help="Probability threshold (default from config)")
@json_option
@click.pass_context
def predict(ctx, threshold: Optional[float], output_json: bool):
    """Collapse predicted convergences early."""
    @with_engine
    async def _predict(ctx, engine):
        result = await engine.run_predictive_convergence(threshold)
        if output_json:
            _echo_json(result.to_dict())
        else:
            click.echo(format_predictive_result(result))

    return _predict(ctx)


@cli.command()
@click.option("--state", "show_state", is_flag=True, help="Show the full predictive state instead")
@json_option
@click.pass_context
def forecast(ctx, show_state: bool, output_json: bool):
    """Show the drift forecast."""
    @with_engine
    async def _forecast(ctx, engine):
        if show_state:
            state = await engine.get_predictive_state()
            if output_json:
                _echo_json(state.to_dict())
            else:
                click.echo(format_predictive_state(state))
            return

        result = await engine.get_drift_forecast()
        if output_json:
            _echo_json(result.to_dict())
        else:
            click.echo(format_forecast(result))

    return _forecast(ctx)


@cli.command()
@json_option
@click.pass_context
def status(ctx, output_json: bool):
    """Show scheduler status and temporal coherence."""
    @with_engine
    async def _status(ctx, engine):
        result = await engine.get_scheduler_status()
        if output_json:
            _echo_json(result.to_dict())
        else:
            click.echo(format_scheduler_status(result))

    return _status(ctx)


@cli.command()
@click.option("--limit", "-n", type=int, default=30, help="Number of ledger rows")
@json_option
@click.pass_context
def history(ctx, limit: int, output_json: bool):
    """List the merge ledger, newest first."""
    @with_engine
    async def _history(ctx, engine):
        events = await engine.get_convergence_history(limit)
        if output_json:
            _echo_json([e.to_dict() for e in events])
        else:
            click.echo(format_history_table(events))

    return _history(ctx)


@cli.command()
@json_option
@click.pass_context
def invariants(ctx, output_json: bool):
    """List semantic invariants."""
    @with_engine
    async def _invariants(ctx, engine):
        concepts = await engine.identify_semantic_invariants()
        if output_json:
            _echo_json([c.to_dict() for c in concepts])
        else:
            click.echo(format_concept_table(concepts))

    return _invariants(ctx)


# ============================================================================
# Server
# ============================================================================

@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Start the REST API with the background scheduler."""
    import uvicorn

    from lifeworld.api.main import create_app

    config_path = Path(ctx.obj["config_path"]) if ctx.obj.get("config_path") else None
    config = load_config(config_path)
    app = create_app(config)
    uvicorn.run(app, host=host or config.api.host, port=port or config.api.port)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
