"""
CLI Output Formatters

Tables and colored panels for CLI commands.
"""

from typing import List

from tabulate import tabulate

from lifeworld.core.models import (
    Concept,
    ConvergenceResult,
    DriftForecast,
    MergeEvent,
    PredictiveConvergenceResult,
    PredictiveState,
    SchedulerStatus,
)


class Colors:
    """ANSI color codes for terminal output."""
    OKBLUE = "\033[94m"
    OKGREEN = "\033[92m"
    WARNING = "\033[93m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"
    BOLD = "\033[1m"

    @staticmethod
    def green(text: str) -> str:
        return f"{Colors.OKGREEN}{text}{Colors.ENDC}"

    @staticmethod
    def red(text: str) -> str:
        return f"{Colors.FAIL}{text}{Colors.ENDC}"

    @staticmethod
    def yellow(text: str) -> str:
        return f"{Colors.WARNING}{text}{Colors.ENDC}"

    @staticmethod
    def blue(text: str) -> str:
        return f"{Colors.OKBLUE}{text}{Colors.ENDC}"

    @staticmethod
    def bold(text: str) -> str:
        return f"{Colors.BOLD}{text}{Colors.ENDC}"


def format_warnings(warnings: List[str]) -> str:
    if not warnings:
        return Colors.green("No anomalies detected.")
    return "\n".join(Colors.yellow(f"! {w}") for w in warnings)


def format_convergence_result(result: ConvergenceResult) -> str:
    return (
        f"{Colors.bold('Merged:')} {result.merged_count}  "
        f"{Colors.bold('Concepts:')} {result.total_concepts}  "
        f"{Colors.bold('Compression:')} {result.compression_rate * 100:.1f}%"
    )


def format_history_table(events: List[MergeEvent]) -> str:
    if not events:
        return "No convergence history."

    headers = ["When", "Absorbed", "Survivor", "Similarity", "Before", "After", "Reason"]
    rows = [
        [
            e.merged_at.strftime("%Y-%m-%d %H:%M"),
            e.from_concept_id,
            e.to_concept_id,
            f"{e.similarity_score}%",
            e.total_concepts_before,
            e.total_concepts_after,
            e.reason[:50] + "..." if len(e.reason) > 50 else e.reason,
        ]
        for e in events
    ]
    return tabulate(rows, headers=headers, tablefmt="grid")


def format_concept_table(concepts: List[Concept]) -> str:
    if not concepts:
        return "No concepts found."

    headers = ["ID", "Name", "Category", "Density", "Occurrences"]
    rows = [[c.id, c.name, c.cluster, c.semantic_density, c.occurrences] for c in concepts]
    return tabulate(rows, headers=headers, tablefmt="grid")


def format_predictive_state(state: PredictiveState) -> str:
    lines = [
        f"{Colors.bold('Entropy trend:')} {state.entropy_trend} (velocity {state.drift_velocity:+.3f})",
        f"{Colors.bold('System stability:')} {state.system_stability * 100:.1f}%",
    ]
    if state.predicted_convergences:
        rows = [
            [
                p.concept1,
                p.concept2,
                f"{p.probability * 100:.0f}%",
                "n/a" if p.estimated_time < 0 else f"{p.estimated_time:.1f}h",
            ]
            for p in state.predicted_convergences
        ]
        lines.append(tabulate(rows, headers=["Concept", "Target", "Probability", "ETA"], tablefmt="grid"))
    for rec in state.recommendations:
        lines.append(Colors.blue(f"> {rec}"))
    return "\n".join(lines)


def format_predictive_result(result: PredictiveConvergenceResult) -> str:
    lines = [f"{Colors.bold('Early collapses:')} {result.merged_count}"]
    lines.extend(f"  {pair}" for pair in result.early_collapses)
    return "\n".join(lines)


def format_forecast(forecast: DriftForecast) -> str:
    color = {
        "stable": Colors.green,
        "converging": Colors.blue,
        "drifting": Colors.yellow,
        "fragmenting": Colors.red,
    }.get(forecast.current_state, str)

    lines = [
        f"{Colors.bold('State:')} {color(forecast.current_state.upper())}  "
        f"(confidence {forecast.confidence * 100:.0f}%)",
        forecast.forecast,
    ]
    if forecast.action_required:
        lines.append(Colors.red("Action required."))
    if forecast.trajectories:
        rows = [
            [
                t.concept_name,
                t.current_density,
                f"{t.predicted_density:.1f}",
                f"{t.drift_velocity:+.2f}",
                f"{t.stability_score:.2f}",
                f"{t.convergence_probability * 100:.0f}%",
                t.predicted_merge_target or "",
            ]
            for t in forecast.trajectories
        ]
        headers = ["Concept", "Density", "24h", "Velocity", "Stability", "P(merge)", "Target"]
        lines.append(tabulate(rows, headers=headers, tablefmt="grid"))
    return "\n".join(lines)


def format_scheduler_status(status: SchedulerStatus) -> str:
    running = Colors.green("running") if status.is_running else Colors.yellow("stopped")
    coherence = status.temporal_coherence
    stats = status.stats
    lines = [
        "=" * 48,
        Colors.bold("Scheduled Auto-Convergence"),
        "=" * 48,
        f"{Colors.bold('Scheduler:')} {running}",
        f"{Colors.bold('Last run:')} {status.last_run.isoformat() if status.last_run else 'never'}",
        f"{Colors.bold('Next run in:')} {status.next_run_in}",
        "",
        f"{Colors.bold('Concepts:')} {stats.total_concepts}  "
        f"{Colors.bold('Invariants:')} {stats.invariant_count}  "
        f"{Colors.bold('Trend:')} {stats.trend}",
        f"{Colors.bold('Recent merges:')} {stats.recent_merges}  "
        f"(avg compression {stats.avg_compression_rate * 100:.1f}%)",
        "",
        f"{Colors.bold('Temporal coherence:')} {coherence.trend}",
        f"  stability {coherence.stability:.2f}, "
        f"avg compression {coherence.avg_compression_rate * 100:.1f}%, "
        f"total reduction {coherence.total_concept_reduction}",
        "=" * 48,
    ]
    return "\n".join(lines)
