import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from costlens.app_container import AppContainer, build_container
from costlens.config import load_config
from costlens.domain.context import RequestContext
from costlens.domain.costs import Recommendation
from costlens.domain.lifecycle import DismissalReason, LastKnown, LifecycleStatus
from costlens.engine.costs import CostQueryEngine, CostQueryError, RecommendationFetchError
from costlens.engine.merge import merge_recommendations
from costlens.inventory import InventoryError, load_resources
from costlens.lifecycle.reasons import LifecycleValidationError, valid_reasons
from costlens.lifecycle.service import annotate, apply_lifecycle, snapshot_of, stored_only, validate_reason
from costlens.lifecycle.store import StoreError
from costlens.pluginhost.registry import AdapterOpenError, PluginRegistryError, open_adapter
from costlens.presentation.formatter import (
    OUTPUT_FORMATS,
    OUTPUT_TABLE,
    format_cost_results,
    format_history,
    format_plugin_list,
    format_recommendations,
)
from costlens.prompt import confirm
from costlens.util import redact, utc_now

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def _configure_logging(level: str) -> None:
    level = (level or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _add_output(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--output", choices=OUTPUT_FORMATS, default=OUTPUT_TABLE, help="Output format")


def _add_query_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--resources", required=True, help="JSON resource inventory file")
    parser.add_argument("--adapter", default="", help="Plugin name or provider tag to query (default: all)")


def _add_snapshot_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--resources",
        default=None,
        help="Inventory to look the recommendation up in, so its details stay listable later",
    )
    parser.add_argument("--adapter", default="", help="Plugin name or provider tag for the lookup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="costlens", description="Cost observability for infrastructure-as-code")
    parser.add_argument("--config-dir", default=None, help="Config directory (default: $COSTLENS_HOME or ~/.costlens)")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"))
    groups = parser.add_subparsers(dest="group", required=True)

    plugin = groups.add_parser("plugin", help="Inspect installed plugins")
    plugin_cmds = plugin.add_subparsers(dest="command", required=True)
    plugin_list = plugin_cmds.add_parser("list", help="Query every installed plugin")
    _add_output(plugin_list)

    cost = groups.add_parser("cost", help="Query costs")
    cost_cmds = cost.add_subparsers(dest="command", required=True)
    projected = cost_cmds.add_parser("projected", help="Projected monthly cost per resource")
    _add_query_args(projected)
    projected.add_argument("--include-dismissed", action="store_true", help="Keep dismissed and snoozed recommendations")
    _add_output(projected)

    recs = groups.add_parser("recommendations", help="Triage recommendations")
    rec_cmds = recs.add_subparsers(dest="command", required=True)

    rec_list = rec_cmds.add_parser("list", help="List recommendations for resources")
    _add_query_args(rec_list)
    rec_list.add_argument("--all", action="store_true", help="Include dismissed and snoozed recommendations")
    _add_output(rec_list)

    reasons_help = "One of: " + ", ".join(valid_reasons())
    dismiss = rec_cmds.add_parser("dismiss", help="Dismiss a recommendation")
    dismiss.add_argument("recommendation_id")
    dismiss.add_argument("--reason", required=True, help=reasons_help)
    dismiss.add_argument("--note", default="", help="Free-form note (required for 'other')")
    dismiss.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    _add_snapshot_args(dismiss)

    snooze = rec_cmds.add_parser("snooze", help="Hide a recommendation until a date")
    snooze.add_argument("recommendation_id")
    snooze.add_argument("--until", required=True, help="YYYY-MM-DD or RFC3339 timestamp")
    snooze.add_argument("--reason", default=DismissalReason.DEFERRED.value, help=reasons_help)
    snooze.add_argument("--note", default="")
    snooze.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    _add_snapshot_args(snooze)

    undismiss = rec_cmds.add_parser("undismiss", help="Make a recommendation active again")
    undismiss.add_argument("recommendation_id")
    undismiss.add_argument("--force", action="store_true", help="Skip the confirmation prompt")

    history = rec_cmds.add_parser("history", help="Show lifecycle history of a recommendation")
    history.add_argument("recommendation_id")
    _add_output(history)

    rec_cmds.add_parser("purge-expired", help="Drop snoozes whose date has passed")
    return parser


async def _plugin_list(app: AppContainer, ctx: RequestContext, output: str) -> int:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        outcomes = await app.dispatcher.dispatch_registry(ctx, app.registry, cancel=cancel)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    for warning in app.registry.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    print(format_plugin_list(outcomes, output))
    return EXIT_CANCELLED if cancel.is_set() else EXIT_OK


async def _cost_projected(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    resources = load_resources(Path(args.resources))
    recorder = ctx.audit_recorder("cost.projected", {"resources": args.resources, "adapter": args.adapter})
    try:
        async with await open_adapter(
            ctx, app.registry, app.launcher, args.adapter, app.config.plugin_timeout_sec
        ) as session:
            engine = CostQueryEngine(session.clients, timeout_sec=app.config.plugin_timeout_sec)
            costs = await engine.get_projected_costs(ctx, resources)
            merged = await merge_recommendations(ctx, resources, costs, engine)
        visible = apply_lifecycle(merged, app.store.load(), utc_now(), include_dismissed=args.include_dismissed)
    except Exception as exc:
        recorder.failure(exc)
        raise
    recorder.success(result_count=len(visible), amount=sum(r.amount for r in visible))
    print(format_cost_results(visible, args.output))
    return EXIT_OK


async def _recommendations_list(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    resources = load_resources(Path(args.resources))
    recorder = ctx.audit_recorder("recommendations.list", {"resources": args.resources, "adapter": args.adapter})
    try:
        async with await open_adapter(
            ctx, app.registry, app.launcher, args.adapter, app.config.plugin_timeout_sec
        ) as session:
            engine = CostQueryEngine(session.clients, timeout_sec=app.config.plugin_timeout_sec)
            recommendations = await engine.get_recommendations_for_resources(ctx, resources)
        store = app.store.load()
        now = utc_now()
        items = annotate(recommendations, store, now)
    except Exception as exc:
        recorder.failure(exc)
        raise
    if args.all:
        items.extend(stored_only(store, {r.recommendation_id for r in recommendations}, now))
    else:
        items = [item for item in items if item.status is LifecycleStatus.ACTIVE]
    recorder.success(result_count=len(items), amount=sum(i.recommendation.estimated_savings for i in items))
    print(format_recommendations(items, args.output))
    return EXIT_OK


def _confirmed(args: argparse.Namespace, message: str) -> Optional[int]:
    """None to proceed, otherwise the exit code to stop with."""
    if args.force:
        return None
    result = confirm(message, sys.stdin, sys.stderr)
    if result.cancelled:
        print("Cancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    if not result.accepted:
        print("Aborted; nothing changed. Use --force to skip the prompt.", file=sys.stderr)
        return EXIT_OK
    return None


async def _lookup_recommendation(
    app: AppContainer,
    ctx: RequestContext,
    args: argparse.Namespace,
) -> Optional[Recommendation]:
    resources = load_resources(Path(args.resources))
    async with await open_adapter(
        ctx, app.registry, app.launcher, args.adapter, app.config.plugin_timeout_sec
    ) as session:
        engine = CostQueryEngine(session.clients, timeout_sec=app.config.plugin_timeout_sec)
        recommendations = await engine.get_recommendations_for_resources(ctx, resources)
    wanted = args.recommendation_id.strip()
    for rec in recommendations:
        if rec.recommendation_id == wanted:
            return rec
    return None


def _snapshot(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> Optional[LastKnown]:
    if not args.resources:
        return None
    rec = asyncio.run(_lookup_recommendation(app, ctx, args))
    if rec is None:
        print(
            f"warning: no plugin returned recommendation {args.recommendation_id}; storing it without details",
            file=sys.stderr,
        )
        return None
    return snapshot_of(rec)


def _dismiss(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    validate_reason(args.reason, args.note)
    last_known = _snapshot(app, ctx, args)
    stop = _confirmed(args, f"Dismiss recommendation {args.recommendation_id}?")
    if stop is not None:
        return stop
    result = app.lifecycle.dismiss(ctx, args.recommendation_id, args.reason, args.note, last_known)
    suffix = "" if result.changed else " (already dismissed)"
    print(f"Recommendation {result.recommendation_id} dismissed{suffix}.")
    return EXIT_OK


def _snooze(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    validate_reason(args.reason, args.note)
    until = app.lifecycle.snooze_deadline(args.until)
    last_known = _snapshot(app, ctx, args)
    stop = _confirmed(args, f"Snooze recommendation {args.recommendation_id} until {until.isoformat()}?")
    if stop is not None:
        return stop
    result = app.lifecycle.snooze(ctx, args.recommendation_id, args.until, args.reason, args.note, last_known)
    suffix = "" if result.changed else " (no change)"
    print(f"Recommendation {result.recommendation_id} snoozed until {until.isoformat()}{suffix}.")
    return EXIT_OK


def _undismiss(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    stop = _confirmed(args, f"Undismiss recommendation {args.recommendation_id}?")
    if stop is not None:
        return stop
    result = app.lifecycle.undismiss(ctx, args.recommendation_id)
    if result.was_dismissed:
        print(f"Recommendation {result.recommendation_id} is active again.")
    else:
        print(f"Recommendation {result.recommendation_id} was not dismissed; nothing to do.")
    return EXIT_OK


def _history(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    print(format_history(app.lifecycle.history(ctx, args.recommendation_id), args.output))
    return EXIT_OK


def _purge_expired(app: AppContainer, ctx: RequestContext, args: argparse.Namespace) -> int:
    removed = app.lifecycle.purge_expired(ctx)
    print(f"Removed {removed} expired snooze(s).")
    return EXIT_OK


_SYNC_COMMANDS = {
    "dismiss": _dismiss,
    "snooze": _snooze,
    "undismiss": _undismiss,
    "history": _history,
    "purge-expired": _purge_expired,
}


def run(args: argparse.Namespace, app: AppContainer) -> int:
    ctx = app.request_context(f"{args.group}.{args.command}")
    ctx.log("command.start", level=logging.DEBUG)
    if args.group == "plugin":
        return asyncio.run(_plugin_list(app, ctx, args.output))
    if args.group == "cost":
        return asyncio.run(_cost_projected(app, ctx, args))
    if args.command == "list":
        return asyncio.run(_recommendations_list(app, ctx, args))
    return _SYNC_COMMANDS[args.command](app, ctx, args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.log_level)

    config = load_config(Path(args.config_dir) if args.config_dir else None)
    app = build_container(config)
    try:
        return run(args, app)
    except (LifecycleValidationError, InventoryError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except (StoreError, PluginRegistryError, AdapterOpenError, CostQueryError, RecommendationFetchError) as exc:
        print(f"error: {redact(str(exc))}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    raise SystemExit(main())
