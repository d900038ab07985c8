"""CLI entrypoint for Continuum."""

from __future__ import annotations

import json
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import click
import yaml

from continuum.core.exceptions import ContinuumError, ReflectionValidationError
from continuum.core.models import TEAM_SCOPE, InsightFilter, InsightStatus, Priority


def _setup_logging(verbose: bool = False, config_dir: Path | None = None, env: str | None = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from continuum.core.config import load_config

    try:
        config = load_config(config_dir=config_dir, env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except ContinuumError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Config directory (default: project config/).",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.option(
    "--backend",
    required=False,
    default=None,
    type=click.Choice(["postgresql", "memory"]),
    help="Override database.backend.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Path | None,
    env: str | None,
    backend: str | None,
) -> None:
    """Continuum: autonomous continuity pipeline."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    ctx.obj["backend"] = backend
    _setup_logging(verbose=verbose, config_dir=config_dir, env=env)


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

@cli.command("ingest")
@click.option(
    "--file",
    "payload_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON or YAML reflection payload (a single object or a list).",
)
@click.pass_context
def ingest(ctx: click.Context, payload_path: Path) -> None:
    """Ingest one or more reflections."""
    payloads = _load_payloads(payload_path)
    coordinator = _open_coordinator(ctx)
    results: list[dict[str, Any]] = []
    try:
        coordinator.start_insight_task_bridge()
        for payload in payloads:
            try:
                insight = coordinator.ingest_reflection(payload)
                # the bridge may have linked a task while handling the promotion
                insight = coordinator.get_insight(insight.id) or insight
            except ReflectionValidationError as exc:
                results.append({"error": "validation", "errors": exc.errors})
                continue
            except ContinuumError as exc:
                results.append({"error": type(exc).__name__, "message": str(exc)})
                continue
            results.append({
                "insight_id": insight.id,
                "cluster_key": insight.cluster_key,
                "status": insight.status.value,
                "independent_count": insight.independent_count,
                "task_id": insight.task_id,
            })
    finally:
        coordinator.close()
    _echo_json({"results": results, "count": len(results)})
    if any("error" in r for r in results):
        sys.exit(1)


@cli.command("insights")
@click.option("--status", required=False, default=None,
              type=click.Choice([s.value for s in InsightStatus]))
@click.option("--priority", required=False, default=None,
              type=click.Choice([p.value for p in Priority]))
@click.option("--limit", required=False, default=20, show_default=True, type=click.IntRange(1, 200))
@click.pass_context
def insights(ctx: click.Context, status: str | None, priority: str | None, limit: int) -> None:
    """List insights ordered by score."""
    coordinator = _open_coordinator(ctx)
    try:
        rows = coordinator.list_insights(InsightFilter(
            status=InsightStatus(status) if status else None,
            priority=Priority(priority) if priority else None,
            limit=limit,
        ))
        stats = coordinator.insight_stats()
    finally:
        coordinator.close()
    _echo_json({
        "insights": [
            {
                "id": i.id,
                "cluster_key": i.cluster_key,
                "status": i.status.value,
                "priority": i.priority.value,
                "score": i.score,
                "independent_count": i.independent_count,
                "task_id": i.task_id,
                "updated_at": _iso(i.updated_at),
            }
            for i in rows
        ],
        "stats": stats,
    })


@cli.command("catch-up")
@click.pass_context
def catch_up(ctx: click.Context) -> None:
    """Bridge every promoted insight that has no task yet."""
    coordinator = _open_coordinator(ctx)
    try:
        result = coordinator.run_catch_up_scan()
        stats = coordinator.get_bridge_stats()
    finally:
        coordinator.close()
    _echo_json({"catch_up": result.to_dict(), "bridge": stats})


@cli.command("promote")
@click.argument("insight_id")
@click.option("--owner", required=True)
@click.option("--reviewer", required=True)
@click.option("--eta", required=True)
@click.option("--acceptance-check", required=True)
@click.option("--artifact", "artifact_proof_requirement", required=True,
              help="Artifact that proves the fix landed.")
@click.option("--checkpoint", "next_checkpoint_eta", required=True, help="Next checkpoint ETA.")
@click.option("--by", "promoted_by", required=False, default="cli")
@click.option("--priority", required=False, default=None, type=click.Choice([p.value for p in Priority]))
@click.pass_context
def promote(
    ctx: click.Context,
    insight_id: str,
    owner: str,
    reviewer: str,
    eta: str,
    acceptance_check: str,
    artifact_proof_requirement: str,
    next_checkpoint_eta: str,
    promoted_by: str,
    priority: str | None,
) -> None:
    """Promote an insight to a task under an owner/reviewer contract."""
    contract = {
        "owner": owner,
        "reviewer": reviewer,
        "eta": eta,
        "acceptance_check": acceptance_check,
        "artifact_proof_requirement": artifact_proof_requirement,
        "next_checkpoint_eta": next_checkpoint_eta,
    }
    coordinator = _open_coordinator(ctx)
    try:
        audit_record = coordinator.promote_insight(
            insight_id, contract, promoted_by, priority=Priority(priority) if priority else None
        )
    except ContinuumError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        coordinator.close()
    _echo_json({"promotion": audit_record.model_dump(mode="json")})


@cli.command("recurring")
@click.pass_context
def recurring(ctx: click.Context) -> None:
    """List recurring insights nobody has promoted, with a suggested owner."""
    coordinator = _open_coordinator(ctx)
    try:
        candidates = coordinator.list_recurring_candidates()
    finally:
        coordinator.close()
    _echo_json({
        "candidates": [c.model_dump(mode="json") for c in candidates],
        "count": len(candidates),
    })


# ---------------------------------------------------------------------------
# Continuity
# ---------------------------------------------------------------------------

@cli.command("tick")
@click.pass_context
def tick(ctx: click.Context) -> None:
    """Run one continuity cycle now."""
    coordinator = _open_coordinator(ctx)
    try:
        result = coordinator.tick_continuity_loop()
        stats = coordinator.get_continuity_stats()
    finally:
        coordinator.close()
    _echo_json({"tick": result.to_dict(), "stats": stats})


@cli.command("run-loop")
@click.option("--interval", required=False, default=None, type=float,
              help="Seconds between cycles (default: continuity.interval_seconds).")
@click.pass_context
def run_loop(ctx: click.Context, interval: float | None) -> None:
    """Start the bridge and run the continuity scheduler until interrupted."""
    coordinator = _open_coordinator(ctx)
    scheduler = coordinator.bundle.scheduler
    if interval is not None:
        scheduler.interval_seconds = interval

    def _stop(signum: int, frame: Any) -> None:
        click.echo(click.style("\nStopping continuity scheduler...", fg="yellow"))
        scheduler.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    try:
        catch_up_result = coordinator.start_insight_task_bridge()
        click.echo(f"Bridge started (catch-up created {catch_up_result.created} task(s))")
        coordinator.start_continuity_scheduler()
        click.echo(f"Continuity scheduler running every {scheduler.interval_seconds}s. Ctrl+C to stop.")
        while scheduler.is_running:
            scheduler.wait(timeout=1.0)
    finally:
        coordinator.close()
    _echo_json({"cycles": scheduler.cycles, "stats": coordinator.get_continuity_stats()})


# ---------------------------------------------------------------------------
# Suppression
# ---------------------------------------------------------------------------

@cli.command("suppression-stats")
@click.pass_context
def suppression_stats(ctx: click.Context) -> None:
    """Show suppression ledger totals."""
    coordinator = _open_coordinator(ctx)
    try:
        stats = coordinator.get_suppression_stats()
    finally:
        coordinator.close()
    _echo_json(stats.model_dump(mode="json"))


@cli.command("suppression-prune")
@click.pass_context
def suppression_prune(ctx: click.Context) -> None:
    """Delete suppression entries older than the window."""
    coordinator = _open_coordinator(ctx)
    try:
        removed = coordinator.prune_suppression()
    finally:
        coordinator.close()
    _echo_json({"pruned": removed})


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@cli.command("audit")
@click.option("--task-id", required=False, default=None, help="Only entries for this task (write order).")
@click.option("--actor", required=False, default=None)
@click.option("--field", "field_name", required=False, default=None)
@click.option("--limit", required=False, default=50, show_default=True, type=int)
@click.pass_context
def audit(
    ctx: click.Context,
    task_id: str | None,
    actor: str | None,
    field_name: str | None,
    limit: int,
) -> None:
    """Show review-field audit entries."""
    coordinator = _open_coordinator(ctx)
    try:
        if task_id and not actor and not field_name:
            entries = coordinator.get_audit_for_task(task_id)[-limit:]
        else:
            entries = coordinator.get_audit_entries(
                task_id=task_id, actor=actor, field=field_name, limit=limit
            )
        alert_status = coordinator.get_alert_status()
    finally:
        coordinator.close()
    _echo_json({
        "entries": [e.model_dump(mode="json") for e in entries],
        "count": len(entries),
        "alerts": alert_status,
    })


# ---------------------------------------------------------------------------
# Pause + intensity
# ---------------------------------------------------------------------------

@cli.command("pause")
@click.option("--agent", required=False, default=None, help="Agent to pause (default: whole team).")
@click.option("--minutes", required=False, default=None, type=click.IntRange(1, None),
              help="Auto-resume after this many minutes.")
@click.option("--reason", required=False, default=None)
@click.option("--by", "paused_by", required=False, default="cli")
@click.pass_context
def pause(
    ctx: click.Context,
    agent: str | None,
    minutes: int | None,
    reason: str | None,
    paused_by: str,
) -> None:
    """Pause continuity replenishment for an agent or the team."""
    until = datetime.now(UTC) + timedelta(minutes=minutes) if minutes else None
    coordinator = _open_coordinator(ctx)
    try:
        entry = coordinator.set_paused(agent or TEAM_SCOPE, True, until, reason, paused_by)
    finally:
        coordinator.close()
    _echo_json(entry.model_dump(mode="json"))


@cli.command("resume")
@click.option("--agent", required=False, default=None, help="Agent to resume (default: whole team).")
@click.option("--by", "paused_by", required=False, default="cli")
@click.pass_context
def resume(ctx: click.Context, agent: str | None, paused_by: str) -> None:
    """Resume a paused agent or team."""
    coordinator = _open_coordinator(ctx)
    try:
        entry = coordinator.set_paused(agent or TEAM_SCOPE, False, paused_by=paused_by)
    finally:
        coordinator.close()
    _echo_json(entry.model_dump(mode="json"))


@cli.command("intensity")
@click.argument("preset", required=False, type=click.Choice(["low", "normal", "high"]))
@click.option("--by", "updated_by", required=False, default="cli")
@click.pass_context
def intensity(ctx: click.Context, preset: str | None, updated_by: str) -> None:
    """Show or set the team intensity preset."""
    coordinator = _open_coordinator(ctx)
    try:
        state = coordinator.set_intensity(preset, updated_by) if preset else coordinator.get_intensity()
    finally:
        coordinator.close()
    _echo_json(state.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Doctor
# ---------------------------------------------------------------------------

@cli.command("doctor")
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check that configuration, agents and storage are usable."""
    from continuum.core.config import DEFAULT_CONFIG_DIR, load_agent_registry, load_config

    config_dir: Path = ctx.obj.get("config_dir") or DEFAULT_CONFIG_DIR
    checks: list[tuple[str, bool, str]] = []  # (label, passed, detail)

    config = None
    try:
        config = load_config(config_dir=config_dir, env=ctx.obj.get("env"))
        checks.append(("config/default.yaml", True, f"Parsed OK (backend: {config.database.backend})"))
    except ContinuumError as exc:
        checks.append(("config/default.yaml", False, str(exc)))

    try:
        registry = load_agent_registry(config_dir=config_dir)
        if registry.agents:
            checks.append(("config/agents.yaml", True, ", ".join(registry.names())))
        else:
            checks.append(("config/agents.yaml", False, "No agents registered"))
    except ContinuumError as exc:
        registry = None
        checks.append(("config/agents.yaml", False, str(exc)))

    if config is not None and registry is not None:
        unknown = [a for a in config.continuity.agents if a.lower() not in registry.agents]
        if unknown:
            checks.append(("continuity.agents", False, f"Not in registry: {', '.join(unknown)}"))
        else:
            checks.append(("continuity.agents", True, f"{len(config.continuity.agents)} monitored"))

    backend = ctx.obj.get("backend") or (config.database.backend if config else "postgresql")
    if config is not None and backend == "postgresql":
        from continuum.db.engine import DatabaseEngine

        engine = DatabaseEngine(config.database)
        try:
            if engine.ping():
                checks.append(("PostgreSQL", True, f"Connected on port {config.database.port}"))
            else:
                checks.append(("PostgreSQL", False, "Query failed"))
        except ContinuumError as exc:
            err_msg = str(exc).split("\n")[0][:80]
            checks.append(("PostgreSQL", False, f"Connection failed: {err_msg}"))
        finally:
            engine.close()
    else:
        checks.append(("Storage", True, "In-memory backend (state is not persisted)"))

    if config is not None:
        ledger_dir = config.audit.ledger_path.parent
        try:
            ledger_dir.mkdir(parents=True, exist_ok=True)
            checks.append(("Audit ledger", True, str(config.audit.ledger_path)))
        except OSError as exc:
            checks.append(("Audit ledger", False, f"Cannot create {ledger_dir}: {exc}"))

    click.echo()
    click.echo(click.style("  Continuum Doctor", bold=True))
    click.echo(click.style("  ================", bold=True))
    click.echo()

    passed = 0
    failed = 0
    for label, ok, detail in checks:
        if ok:
            icon = click.style("PASS", fg="green", bold=True)
            passed += 1
        else:
            icon = click.style("FAIL", fg="red", bold=True)
            failed += 1
        click.echo(f"  [{icon}] {label}")
        click.echo(f"         {detail}")

    click.echo()
    if failed == 0:
        click.echo(click.style(f"  All {passed} checks passed.", fg="green", bold=True))
    else:
        click.echo(click.style(f"  {failed} of {passed + failed} checks failed.", fg="red", bold=True))
        sys.exit(1)
    click.echo()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_coordinator(ctx: click.Context):
    from continuum.coordinator import Coordinator

    try:
        return Coordinator.create(
            config_dir=ctx.obj.get("config_dir"),
            env=ctx.obj.get("env"),
            backend=ctx.obj.get("backend"),
        )
    except ContinuumError as exc:
        raise click.ClickException(f"Failed to initialize: {exc}") from exc


def _load_payloads(path: Path) -> list[dict[str, Any]]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not parse {path}: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise click.ClickException("Payload must be a JSON/YAML object or a list of objects.")
    return data


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def main() -> None:
    """Entry point used by `continuum` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
