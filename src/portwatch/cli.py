"""Command line entry point for portwatch."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from portwatch import __version__
from portwatch.app import PortWatchApp
from portwatch.config import (
    DEFAULT_END_PORT,
    DEFAULT_GUARD_PORTS,
    DEFAULT_HISTORY_FILE,
    DEFAULT_RESERVATION_FILE,
    DEFAULT_START_PORT,
    RESET_PORTS,
    GuardConfig,
    MonitorConfig,
    describe_ports,
    parse_port_spec,
)
from portwatch.exceptions import ConfigError, PortWatchError
from portwatch.filters import FilterConfig, filter_stats
from portwatch.guard import PortGuardDaemon
from portwatch.logging_config import LOG_LEVELS, setup_logging
from portwatch.monitor import ProcessMonitor

log = logging.getLogger("portwatch.cli")


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _csv_ports(value: str) -> list[int]:
    try:
        return [int(item) for item in _csv(value)]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port list: {value}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portwatch",
        description="Monitor development processes on ports and resolve port conflicts.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    ports = parser.add_argument_group("ports")
    ports.add_argument("-s", "--start-port", type=int, default=DEFAULT_START_PORT)
    ports.add_argument("-e", "--end-port", type=int, default=DEFAULT_END_PORT)
    ports.add_argument("-p", "--ports", help="Specific ports, e.g. 3000,8000-8010")

    filters = parser.add_argument_group("filters")
    filters.add_argument("--ignore-ports", type=_csv_ports, default=[])
    filters.add_argument("--ignore-processes", type=_csv, default=[])
    filters.add_argument("--ignore-patterns", type=_csv, default=[], help="Globs with * and ?")
    filters.add_argument("--ignore-groups", type=_csv, default=[])
    filters.add_argument("--only-groups", type=_csv, default=[])
    filters.add_argument("--smart-filter", action="store_true")

    detail = parser.add_argument_group("detail")
    detail.add_argument("-d", "--docker", action="store_true", help="Inspect Docker containers")
    detail.add_argument("-v", "--verbose", action="store_true", help="Command lines and directories")
    detail.add_argument("--performance", action="store_true", help="CPU and memory metrics")
    detail.add_argument("--history-file", type=Path, default=DEFAULT_HISTORY_FILE)

    actions = parser.add_argument_group("one-shot actions")
    actions.add_argument("--json", action="store_true", help="Print one scan as JSON lines and exit")
    actions.add_argument("--kill", type=int, metavar="PID")
    actions.add_argument("--kill-all", action="store_true")
    actions.add_argument(
        "--reset", action="store_true", help="Kill everything on common development ports"
    )
    actions.add_argument("--kill-group", metavar="GROUP")
    actions.add_argument("--kill-project", metavar="PROJECT")
    actions.add_argument("--history", action="store_true", help="Print the kill history")
    actions.add_argument("--clear-history", action="store_true")
    actions.add_argument("--show-filters", action="store_true", help="Print the filter rules in effect")
    actions.add_argument(
        "--show-offenders", action="store_true", help="Print the most frequently killed processes"
    )
    actions.add_argument(
        "--show-stats", action="store_true", help="Print kill counts by group, project and source"
    )

    guard = parser.add_argument_group("port guard")
    guard.add_argument("--guard", action="store_true", help="Run the port guard")
    guard.add_argument(
        "--guard-ports", default=",".join(str(p) for p in DEFAULT_GUARD_PORTS)
    )
    guard.add_argument("--auto-resolve", action="store_true")
    guard.add_argument("--reservation-file", type=Path, default=DEFAULT_RESERVATION_FILE)
    guard.add_argument("--reserve", type=int, metavar="PORT")
    guard.add_argument("--project", default="default")
    guard.add_argument("--process", default="")
    guard.add_argument("--release", type=int, metavar="PORT")
    guard.add_argument("--console", action="store_true", help="Log to the console instead of the TUI")

    logs = parser.add_argument_group("logging")
    logs.add_argument("--log-level", choices=sorted(LOG_LEVELS), default="info")
    logs.add_argument("--log-file")
    return parser


def config_from_args(args: argparse.Namespace) -> tuple[MonitorConfig, GuardConfig]:
    """
    Build validated configurations from parsed arguments.

    Raises:
        ConfigError: On any invalid port or filter setting.
    """
    filters = FilterConfig(
        ignore_ports=frozenset(args.ignore_ports),
        ignore_processes=frozenset(args.ignore_processes),
        ignore_patterns=tuple(args.ignore_patterns),
        ignore_groups=frozenset(args.ignore_groups),
        only_groups=frozenset(args.only_groups),
        smart_filter=args.smart_filter,
    )
    options = dict(
        filters=filters,
        docker=args.docker,
        verbose=args.verbose,
        performance=args.performance,
        history_file=args.history_file.expanduser(),
    )
    if args.reset:
        monitor_config = MonitorConfig(ports=RESET_PORTS, **options)
    elif args.ports:
        monitor_config = MonitorConfig.from_spec(args.ports, **options)
    else:
        monitor_config = MonitorConfig.from_range(args.start_port, args.end_port, **options)
    monitor_config.validate()

    guard_config = GuardConfig(
        watched_ports=tuple(parse_port_spec(args.guard_ports)),
        auto_resolve=args.auto_resolve,
        reservation_file=args.reservation_file.expanduser(),
    )
    guard_config.validate()
    return monitor_config, guard_config


def _print_history(monitor: ProcessMonitor) -> None:
    entries = monitor.history.entries()
    if not entries:
        print("No kill history")
        return
    for entry in entries:
        print(
            f"{entry.killed_at:%Y-%m-%d %H:%M:%S} {entry.display_name()} "
            f"PID {entry.pid} port {entry.port} ({entry.killed_by})"
        )


def _print_offenders(monitor: ProcessMonitor) -> None:
    offenders = monitor.top_offenders(10)
    if not offenders:
        print("No kill history")
        return
    for name, count in offenders:
        print(f"{count:4d}  {name}")


def _print_stats(monitor: ProcessMonitor) -> None:
    titles = {"group": "By group", "project": "By project", "killed_by": "By source"}
    print(f"Total kills: {len(monitor.history)}")
    for key, counts in monitor.history_stats().items():
        if not counts:
            continue
        print(f"{titles[key]}:")
        for name, count in counts.most_common():
            print(f"  {name}: {count}")


def _run_console(monitor: ProcessMonitor, guard: PortGuardDaemon | None) -> None:
    def show(update) -> None:
        print(f"{update.count} process(es) on {describe_ports(sorted(monitor.config.ports))}")
        for port, process in sorted(update.processes.items()):
            print(f"  :{port} {process.description()} [PID {process.pid}]")

    monitor.add_listener(show)
    monitor.start()
    if guard is not None:
        guard.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        if guard is not None:
            guard.stop()
        monitor.stop()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the portwatch command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        monitor_config, guard_config = config_from_args(args)
    except ConfigError as e:
        print(f"portwatch: {e}", file=sys.stderr)
        return 2

    monitor = ProcessMonitor(monitor_config)
    if monitor_config.filters.is_active:
        log.info("Filtering: %s", filter_stats(monitor_config.filters).describe())

    try:
        if args.json:
            for process in monitor.scan_once().values():
                print(json.dumps(process.to_dict()))
            return 0
        if args.show_filters:
            print(filter_stats(monitor_config.filters).describe())
            return 0
        if args.show_offenders:
            _print_offenders(monitor)
            return 0
        if args.show_stats:
            _print_stats(monitor)
            return 0
        if args.history:
            _print_history(monitor)
            return 0
        if args.clear_history:
            monitor.clear_history()
            return 0
        if args.kill is not None:
            monitor.run_cycle()
            monitor.kill(args.kill)
            return 0
        if args.kill_all or args.reset:
            monitor.kill_all()
            return 0
        if args.kill_group:
            monitor.kill_group(args.kill_group)
            return 0
        if args.kill_project:
            monitor.kill_project(args.kill_project)
            return 0

        guard = PortGuardDaemon(monitor, guard_config) if args.guard else None
        if args.reserve is not None or args.release is not None:
            guard = guard or PortGuardDaemon(monitor, guard_config)
            guard.load_reservations()
            if args.reserve is not None:
                guard.reserve(args.reserve, args.project, args.process)
            if args.release is not None:
                guard.release(args.release)
            return 0
    except ConfigError as e:
        print(f"portwatch: {e}", file=sys.stderr)
        return 2
    except PortWatchError as e:
        log.error("%s", e)
        return 1

    if args.console:
        _run_console(monitor, guard)
        return 0

    PortWatchApp(monitor, guard).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
