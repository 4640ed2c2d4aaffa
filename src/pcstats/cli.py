import argparse
import sys
import threading
from dataclasses import replace

from rich.console import Console

from pcstats.loggers.error_log import setup_logger
from pcstats.renderers.queue_renderer import QueueRenderer
from pcstats.runtime.agent import PCStatsAgent, build_writer
from pcstats.settings import PCStatsSettings, read_pcstats_env
from pcstats.storage.queue import scan_queue


def apply_overrides(settings: PCStatsSettings, args) -> PCStatsSettings:
    """Command-line flags override env-derived settings when given."""
    top = {}
    if getattr(args, "db", None):
        top["db_path"] = args.db
    if getattr(args, "logs_dir", None):
        top["logs_dir"] = args.logs_dir
    if getattr(args, "log_level", None):
        top["log_level"] = args.log_level.upper()
    if getattr(args, "queue_dir", None):
        top["queue"] = replace(settings.queue, path=args.queue_dir)
    if getattr(args, "interval", None):
        top["sampler"] = replace(settings.sampler, interval_sec=args.interval)
    if getattr(args, "replay_interval", None):
        top["replay"] = replace(settings.replay, interval_sec=args.replay_interval)
    return replace(settings, **top) if top else settings


def run_agent(args, settings: PCStatsSettings) -> int:
    setup_logger(settings.logs_dir, settings.log_level)
    agent = PCStatsAgent(settings)
    agent.start()

    console = Console(stderr=True)
    console.print(
        f"[bold cyan]PCStats[/bold cyan] sampling to {settings.db_path} "
        f"(queue: {settings.queue.path}). Press Ctrl+C to stop."
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        agent.stop()
    return 0 if agent.healthy else 1


def replay_once(args, settings: PCStatsSettings) -> int:
    setup_logger(settings.logs_dir, settings.log_level)
    writer = build_writer(settings)
    try:
        report = writer.replay_pending()
        remaining = len(writer.queue)
    finally:
        writer.close()

    console = Console()
    if report.skipped_unreachable:
        console.print(f"[red]Primary store unreachable[/red], {remaining} batches stay queued")
        return 1
    console.print(
        f"Replayed {len(report.replayed)}, retried {len(report.retried)}, "
        f"evicted {len(report.evicted)}; {remaining} still queued"
    )
    if report.storage_fault:
        console.print(f"[red]Local storage fault:[/red] {report.storage_fault}")
        return 1
    return 0


def show_status(args, settings: PCStatsSettings) -> int:
    setup_logger(None, settings.log_level)
    stats = scan_queue(settings.queue.path, settings.replay.stuck_retry_threshold)
    renderer = QueueRenderer(stats, settings.replay.stuck_retry_threshold)
    Console().print(renderer.get_panel_renderable())
    return 0


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--db", type=str, default=None)
    p.add_argument("--queue-dir", type=str, default=None)
    p.add_argument("--logs-dir", type=str, default=None)
    p.add_argument("--log-level", type=str, default=None)


def build_parser():
    parser = argparse.ArgumentParser("pcstats")

    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Sample the host and persist telemetry")
    _add_common(run_parser)
    run_parser.add_argument("--interval", type=float, default=None)
    run_parser.add_argument("--replay-interval", type=float, default=None)

    replay_parser = sub.add_parser("replay", help="Run one replay cycle and exit")
    _add_common(replay_parser)

    status_parser = sub.add_parser("status", help="Show the local queue state")
    _add_common(status_parser)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(read_pcstats_env(), args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    commands = {"run": run_agent, "replay": replay_once, "status": show_status}
    sys.exit(commands[args.command](args, settings))


if __name__ == "__main__":
    main()
