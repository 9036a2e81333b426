"""CLI commands for the nudge decision engine.

These commands are meant for shell scripts and scheduled jobs: ``sweep``
is the nightly decay and prune batch, ``evaluate`` runs one decision from
a JSON request.
"""

import json
import sys
from datetime import datetime
from pathlib import Path

import click

from nudge_engine.config import get_settings
from nudge_engine.helpers import decision_request_from_dict, ensure_utc, format_age
from nudge_engine.logging import configure_logging
from nudge_engine.models import MemoryCreateInput, MemoryType, NudgeFeedback
from nudge_engine.orchestrator import DecisionOrchestrator
from nudge_engine.responses import (
    RuleResponse,
    SweepResponse,
    decision_to_response,
    memory_to_response,
    stats_to_response,
)
from nudge_engine.scoring import get_factor_breakdown
from nudge_engine.storage import Storage, ValidationError
from nudge_engine.suppression import SUPPRESSION_RULES


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise click.BadParameter(f"Invalid ISO timestamp: {value}", param_hint="--now")


@click.group()
@click.option("--json", "use_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def cli(ctx: click.Context, use_json: bool) -> None:
    """CLI commands for the nudge decision engine."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = use_json
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)


@cli.command("remember")
@click.option("-u", "--user", "user_id", required=True, help="User ID")
@click.option(
    "-t",
    "--type",
    "memory_type",
    type=click.Choice([t.value for t in MemoryType]),
    required=True,
    help="Memory type",
)
@click.option("-c", "--content", help="Memory content (or use stdin)")
@click.option("--context", "memory_context", help="Where the memory came from")
@click.option("--confidence", type=float, help="Initial confidence (0-1)")
@click.option("--protocol", "protocol_id", help="Source protocol ID")
@click.pass_context
def remember(
    ctx: click.Context,
    user_id: str,
    memory_type: str,
    content: str | None,
    memory_context: str | None,
    confidence: float | None,
    protocol_id: str | None,
) -> None:
    """Store a memory for a user (reinforces a near-duplicate if one exists)."""
    use_json = ctx.obj["json"]
    if content is None:
        content = sys.stdin.read()

    storage = Storage(get_settings())
    try:
        memory = storage.store_memory(
            MemoryCreateInput(
                user_id=user_id,
                memory_type=MemoryType(memory_type),
                content=content.strip(),
                context=memory_context,
                confidence=confidence,
                source_protocol_id=protocol_id,
            )
        )
    except ValidationError as e:
        if use_json:
            click.echo(json.dumps({"success": False, "error": str(e)}))
        else:
            click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        storage.close()

    if use_json:
        click.echo(memory_to_response(memory).model_dump_json())
    else:
        click.echo(
            f"Memory #{memory.id} ({memory.memory_type.value}) "
            f"confidence={memory.confidence:.2f} evidence={memory.evidence_count}"
        )


@cli.command("feedback")
@click.option("-u", "--user", "user_id", required=True, help="User ID")
@click.option("--nudge", "nudge_id", required=True, help="Nudge ID")
@click.option("--protocol", "protocol_id", required=True, help="Protocol ID")
@click.argument("response", type=click.Choice([f.value for f in NudgeFeedback]))
@click.pass_context
def feedback(
    ctx: click.Context, user_id: str, nudge_id: str, protocol_id: str, response: str
) -> None:
    """Record the user's response to a delivered nudge."""
    use_json = ctx.obj["json"]
    storage = Storage(get_settings())
    try:
        with DecisionOrchestrator(storage) as orchestrator:
            memory = orchestrator.record_feedback(
                user_id, nudge_id, protocol_id, NudgeFeedback(response)
            )
    finally:
        storage.close()

    if memory is None:
        click.echo("Failed to record feedback", err=True)
        raise SystemExit(1)
    if use_json:
        click.echo(memory_to_response(memory).model_dump_json())
    else:
        click.echo(f"Recorded {response} feedback as memory #{memory.id}")


@cli.command("forget-user")
@click.option("-u", "--user", "user_id", required=True, help="User ID")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def forget_user(ctx: click.Context, user_id: str, yes: bool) -> None:
    """Delete every memory of a user."""
    use_json = ctx.obj["json"]
    if not yes and not use_json:
        click.confirm(f"Delete all memories of user {user_id}?", abort=True)

    storage = Storage(get_settings())
    try:
        deleted = storage.delete_user_memories(user_id)
    finally:
        storage.close()

    if use_json:
        click.echo(json.dumps({"success": True, "user_id": user_id, "deleted": deleted}))
    else:
        click.echo(f"Deleted {deleted} memories for {user_id}")


@cli.command("stats")
@click.option("-u", "--user", "user_id", required=True, help="User ID")
@click.pass_context
def stats(ctx: click.Context, user_id: str) -> None:
    """Show memory statistics for a user."""
    use_json = ctx.obj["json"]
    storage = Storage(get_settings())
    try:
        result = stats_to_response(user_id, storage.get_memory_stats(user_id))
    finally:
        storage.close()

    if use_json:
        click.echo(result.model_dump_json())
        return

    click.echo(f"User {user_id}: {result.total} memories")
    if result.total:
        click.echo(f"  Average confidence: {result.avg_confidence:.2f}")
        for memory_type, count in sorted(result.by_type.items()):
            click.echo(f"  {memory_type}: {count}")
        click.echo(f"  Oldest: {format_age(result.oldest_memory)} ago")


@cli.command("decay")
@click.option("-u", "--user", "user_id", help="Only decay this user (default: everyone)")
@click.option("--now", "now_str", help="Evaluation instant (ISO 8601, default: now)")
@click.pass_context
def decay(ctx: click.Context, user_id: str | None, now_str: str | None) -> None:
    """Apply confidence decay to memories due for it."""
    use_json = ctx.obj["json"]
    now = _parse_now(now_str)
    storage = Storage(get_settings())
    try:
        decayed = storage.apply_decay(user_id, now=now)
    finally:
        storage.close()

    if use_json:
        click.echo(json.dumps({"success": True, "decayed": decayed}))
    else:
        click.echo(f"Decayed {decayed} memories")


@cli.command("prune")
@click.option("-u", "--user", "user_id", help="Only prune this user (default: everyone)")
@click.option("--now", "now_str", help="Evaluation instant (ISO 8601, default: now)")
@click.pass_context
def prune(ctx: click.Context, user_id: str | None, now_str: str | None) -> None:
    """Remove expired and low-confidence memories and enforce the per-user cap."""
    use_json = ctx.obj["json"]
    now = _parse_now(now_str)
    storage = Storage(get_settings())
    try:
        if user_id:
            pruned = storage.prune_memories(user_id, now=now)
        else:
            pruned = storage.prune_all(now=now)
    finally:
        storage.close()

    if use_json:
        click.echo(json.dumps({"success": True, "pruned": pruned}))
    else:
        click.echo(f"Pruned {pruned} memories")


@cli.command("sweep")
@click.option("--now", "now_str", help="Evaluation instant (ISO 8601, default: now)")
@click.pass_context
def sweep(ctx: click.Context, now_str: str | None) -> None:
    """Nightly maintenance: decay and prune every user, trim the decision log."""
    use_json = ctx.obj["json"]
    now = _parse_now(now_str)
    storage = Storage(get_settings())
    try:
        users = storage.list_user_ids()
        decayed = 0
        pruned = 0
        for uid in users:
            decayed += storage.apply_decay(uid, now=now)
            pruned += storage.prune_memories(uid, now=now)
        removed = storage.cleanup_decision_log(now=now)
    finally:
        storage.close()

    result = SweepResponse(
        users=len(users), decayed=decayed, pruned=pruned, decisions_removed=removed
    )
    if use_json:
        click.echo(result.model_dump_json())
    else:
        click.echo(
            f"Swept {result.users} users: decayed {result.decayed}, pruned {result.pruned}, "
            f"removed {result.decisions_removed} old decisions"
        )


@cli.command("evaluate")
@click.option(
    "-f", "--file", "filepath", type=click.Path(exists=True), help="Read request from file"
)
@click.option("--now", "now_str", help="Evaluation instant (ISO 8601, default: now)")
@click.pass_context
def evaluate(ctx: click.Context, filepath: str | None, now_str: str | None) -> None:
    """Decide whether to deliver a nudge described by a JSON request (file or stdin)."""
    use_json = ctx.obj["json"]
    now = _parse_now(now_str)

    raw = Path(filepath).read_text(encoding="utf-8") if filepath else sys.stdin.read()
    try:
        request = decision_request_from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        if use_json:
            click.echo(json.dumps({"success": False, "error": f"Invalid request: {e}"}))
        else:
            click.echo(f"Invalid request: {e}", err=True)
        raise SystemExit(1)

    storage = Storage(get_settings())
    try:
        with DecisionOrchestrator(storage) as orchestrator:
            record = orchestrator.decide(request, now=now)
    finally:
        storage.close()

    if use_json:
        click.echo(decision_to_response(record).model_dump_json())
        return

    verdict = "DELIVER" if record.should_deliver else "SUPPRESS"
    click.echo(f"{verdict} {record.protocol_id} (confidence {record.confidence:.2f})")
    if record.suppressed_by:
        click.echo(f"  Suppressed by {record.suppressed_by}: {record.reason}")
    if record.was_overridden:
        click.echo(f"  Overrode {record.overridden_rule}")
    click.echo(f"  {record.reasoning}")
    if record.factors is not None:
        for name, entry in get_factor_breakdown(record.factors).items():
            click.echo(
                f"  {name:<18} {entry['score']:.2f} x {entry['weight']:.2f}"
                f" = {entry['contribution']:.3f}"
            )


@cli.command("rules")
@click.pass_context
def rules(ctx: click.Context) -> None:
    """List suppression rules in evaluation order."""
    use_json = ctx.obj["json"]
    items = [
        RuleResponse(
            id=rule.id,
            name=rule.name,
            priority=rule.priority,
            override_by=sorted(p.value for p in rule.override_by),
        )
        for rule in SUPPRESSION_RULES
    ]
    if use_json:
        click.echo(json.dumps([item.model_dump() for item in items]))
        return
    for item in items:
        override = f" (override: {', '.join(item.override_by)})" if item.override_by else ""
        click.echo(f"{item.priority}. {item.id} - {item.name}{override}")


@cli.command("decisions")
@click.option("-u", "--user", "user_id", help="Filter by user")
@click.option("--limit", default=20, help="Maximum records")
@click.pass_context
def decisions(ctx: click.Context, user_id: str | None, limit: int) -> None:
    """Show recent decision records."""
    use_json = ctx.obj["json"]
    storage = Storage(get_settings())
    try:
        records = storage.get_decisions(user_id=user_id, limit=limit)
    finally:
        storage.close()

    if use_json:
        click.echo(
            json.dumps([decision_to_response(r).model_dump(mode="json") for r in records])
        )
        return
    if not records:
        click.echo("No decisions recorded")
        return
    for r in records:
        verdict = "deliver" if r.should_deliver else f"suppress ({r.suppressed_by})"
        click.echo(
            f"#{r.id} {r.evaluated_at:%Y-%m-%d %H:%M} {r.user_id} {r.protocol_id} "
            f"{r.confidence:.2f} {verdict}"
        )


def main() -> int:
    """Main CLI entry point."""
    try:
        cli(standalone_mode=False)
        return 0
    except click.ClickException as e:
        e.show()
        return 1
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1


if __name__ == "__main__":
    sys.exit(main())
