#!/usr/bin/env python3
"""
Self-Hosted Stack Deployer - Command Line Interface

Usage:
    python -m stackdeploy deploy [-y] [--models]
    python -m stackdeploy teardown [--purge] [-y]
    python -m stackdeploy rotate-certs [--force]
    python -m stackdeploy init-secrets [--regenerate KEY]
    python -m stackdeploy plan
    python -m stackdeploy status
    python -m stackdeploy health
    python -m stackdeploy restart GROUP
    python -m stackdeploy pull-models

Exit status is 0 on success and 1 on any deployment, secret store,
configuration or lock failure.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, List

from rich.console import Console
from rich.table import Table

from .config import StackConfig
from .core import StackDeployer
from .errors import StackError, PhaseFailed, DeploymentCancelled
from .scheduler import DeploymentReport
from .teardown import TeardownReport

console = Console()

STATUS_STYLES = {
    "healthy": "green",
    "running": "green",
    "starting": "yellow",
    "unknown": "dim",
    "unhealthy": "red",
    "timed_out": "red",
    "exited": "red",
}


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def load_config(path: Optional[str]) -> StackConfig:
    """Stack file from --stack, $STACK_FILE, ./stack.yaml, else the built-in stack."""
    path = path or os.environ.get("STACK_FILE")
    if path:
        return StackConfig.load(Path(path))
    if Path("stack.yaml").exists():
        return StackConfig.load(Path("stack.yaml"))
    return StackConfig()


def confirm(prompt: str) -> bool:
    return input(f"{prompt} [y/N] ").strip().lower() == "y"


def styled(status: Optional[str]) -> str:
    status = status or "absent"
    return f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]"


def print_plan(config: StackConfig):
    table = Table(title=f"Deployment plan: {config.project_name}")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Groups")
    table.add_column("Critical")
    table.add_column("Volumes")
    for i, phase in enumerate(config.phases, 1):
        groups = ", ".join(
            g.name + (f" (after {', '.join(g.depends_on)})" if g.depends_on else "")
            for g in phase.groups
        )
        table.add_row(
            str(i),
            phase.name,
            groups,
            ", ".join(sorted(phase.critical)) or "-",
            str(len(config.volume_names([phase]))),
        )
    console.print(table)


def print_report(report: DeploymentReport):
    table = Table(title="Deployment report")
    table.add_column("Phase")
    table.add_column("Groups started")
    table.add_column("Services")
    table.add_column("Result")
    for outcome in report.phases:
        services = ", ".join(
            f"{name}{'*' if o.critical else ''}={styled(o.status.value)}"
            for name, o in outcome.services.items()
        )
        if outcome.completed:
            result = "[green]complete[/]"
        elif report.failed_phase == outcome.phase:
            result = "[red]failed[/]"
        else:
            result = "[yellow]incomplete[/]"
        table.add_row(outcome.phase, ", ".join(outcome.groups_started) or "-", services or "-", result)
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/] {warning}")


def print_teardown(report: TeardownReport):
    console.print(f"Stopped groups: {', '.join(report.groups_stopped) or '-'}")
    for group, output in report.groups_failed.items():
        console.print(f"[red]Failed to stop {group}:[/] {output}")
    if report.purge_skipped:
        console.print("[red]Volume purge skipped because some groups did not stop[/]")
    for name in report.volumes_removed:
        console.print(f"Removed volume {name}")
    for name, output in report.volumes_failed.items():
        console.print(f"[red]Failed to remove volume {name}:[/] {output}")


def cmd_deploy(args, deployer: StackDeployer) -> int:
    config = deployer.config
    issues = config.validate()
    if issues:
        console.print("[yellow]Configuration warnings:[/]")
        for issue in issues:
            console.print(f"   - {issue}")
    print_plan(config)

    if not args.yes and not confirm("Proceed with deployment?"):
        console.print("Deployment cancelled.")
        return 1

    cancel = deployer.prober.cancel_event
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        report = deployer.deploy(progress_callback=lambda msg: console.print(f"   {msg}"))
    except (PhaseFailed, DeploymentCancelled) as e:
        if args.json:
            print(json.dumps(e.report.to_dict() if e.report else {"success": False}, indent=2))
        elif e.report is not None:
            print_report(e.report)
        console.print(f"\n[red]{e}[/]")
        if isinstance(e, PhaseFailed):
            console.print("Services already started were left running for inspection.")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)
    console.print(f"\n[green]Deployment completed in {report.duration_seconds:.1f}s[/]")

    console.print("\nAccess your services:")
    for point in deployer.access_points():
        console.print(f"   {point.service:<14} {point.url}")

    if args.models:
        console.print("\nPulling models...")
        for model, ok in deployer.ensure_models().items():
            console.print(f"   {'[green]ok[/]' if ok else '[red]failed[/]'} {model}")
    return 0


def cmd_teardown(args, deployer: StackDeployer) -> int:
    if args.purge and not args.yes:
        volumes = deployer.config.volume_names()
        console.print(f"[red]This will permanently delete {len(volumes)} volumes:[/]")
        for name in volumes:
            console.print(f"   - {name}")
        if not confirm("This will delete all data! Are you sure?"):
            console.print("Cancelled.")
            return 1

    report = deployer.teardown(purge_volumes=args.purge)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_teardown(report)
    return 0 if report.success else 1


def cmd_rotate_certs(args, deployer: StackDeployer) -> int:
    result = deployer.rotate_certs(force=args.force)
    if result.rotated:
        console.print(f"[green]Rotated[/] {result.cert_path} ({result.reason}), valid until {result.not_after}")
    else:
        console.print(f"Certificate {result.reason}; nothing to do")
    return 0


def cmd_init_secrets(args, deployer: StackDeployer) -> int:
    if args.regenerate and not args.yes:
        console.print(
            f"[red]Regenerating {', '.join(args.regenerate)} invalidates the value "
            "stateful services were initialised with.[/]"
        )
        if not confirm("Regenerate?"):
            console.print("Cancelled.")
            return 1
    values = deployer.init_secrets(regenerate=args.regenerate)
    table = Table(title="Secrets")
    table.add_column("Key")
    table.add_column("Env")
    for key in values:
        table.add_row(key, deployer.secrets.env_name(key))
    console.print(table)
    console.print(f"Env file: {deployer.config.env_file}")
    return 0


def cmd_plan(args, deployer: StackDeployer) -> int:
    if args.json:
        print(json.dumps(deployer.config.to_dict()["phases"], indent=2))
    else:
        print_plan(deployer.config)
    return 0


def cmd_status(args, deployer: StackDeployer) -> int:
    states = deployer.status()
    if args.json:
        print(json.dumps(states, indent=2))
        return 0
    table = Table(title="Service status")
    table.add_column("Phase")
    table.add_column("Group")
    table.add_column("Service")
    table.add_column("State")
    for phase in deployer.config.phases:
        for group in phase.groups:
            for svc in group.services:
                table.add_row(phase.name, group.name, svc.name, styled(states.get(svc.name)))
    console.print(table)
    return 0


def cmd_health(args, deployer: StackDeployer) -> int:
    report = deployer.health_report()
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        table = Table(title="Health")
        table.add_column("Service")
        table.add_column("Healthy")
        table.add_column("Signal")
        table.add_column("Time", justify="right")
        for name, result in report["services"].items():
            elapsed = result["response_time_ms"]
            table.add_row(
                name,
                "[green]yes[/]" if result["healthy"] else "[red]no[/]",
                result["message"],
                f"{elapsed:.0f}ms" if elapsed is not None else "-",
            )
        console.print(table)
    summary = report["summary"]
    return 0 if summary["healthy"] == summary["total"] else 1


def cmd_restart(args, deployer: StackDeployer) -> int:
    result = deployer.restart(args.group)
    if result.success:
        console.print(f"[green]Restarted[/] {args.group}")
        return 0
    console.print(f"[red]Failed to restart {args.group}:[/] {result.output}")
    return 1


def cmd_pull_models(args, deployer: StackDeployer) -> int:
    results = deployer.ensure_models()
    for model, ok in results.items():
        console.print(f"   {'[green]ok[/]' if ok else '[red]failed[/]'} {model}")
    return 0 if all(results.values()) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackdeploy",
        description="Self-hosted stack deployer - phased, health-gated docker compose",
    )
    parser.add_argument("-s", "--stack", help="Stack file (default: $STACK_FILE or ./stack.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    deploy_parser = subparsers.add_parser("deploy", help="Deploy the stack phase by phase")
    deploy_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    deploy_parser.add_argument("--models", action="store_true", help="Pull configured models afterwards")
    deploy_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    teardown_parser = subparsers.add_parser("teardown", help="Stop the stack in reverse order")
    teardown_parser.add_argument("--purge", action="store_true",
                                 help="Remove every configured volume (deletes all data!)")
    teardown_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    teardown_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    certs_parser = subparsers.add_parser("rotate-certs", help="Regenerate the proxy certificate if due")
    certs_parser.add_argument("--force", action="store_true", help="Rotate even if not due")

    secrets_parser = subparsers.add_parser("init-secrets", help="Create missing secrets and the env file")
    secrets_parser.add_argument("--regenerate", action="append", metavar="KEY",
                                help="Replace an existing secret (repeatable)")
    secrets_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")

    plan_parser = subparsers.add_parser("plan", help="Show phase order without deploying")
    plan_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = subparsers.add_parser("status", help="Show container state")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    health_parser = subparsers.add_parser("health", help="Probe every service once")
    health_parser.add_argument("--json", action="store_true", help="Output as JSON")

    restart_parser = subparsers.add_parser("restart", help="Restart one group")
    restart_parser.add_argument("group", help="Group name")

    subparsers.add_parser("pull-models", help="Pull configured Ollama models")
    return parser


COMMANDS = {
    "deploy": cmd_deploy,
    "teardown": cmd_teardown,
    "rotate-certs": cmd_rotate_certs,
    "init-secrets": cmd_init_secrets,
    "plan": cmd_plan,
    "status": cmd_status,
    "health": cmd_health,
    "restart": cmd_restart,
    "pull-models": cmd_pull_models,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(args.verbose)
    try:
        config = load_config(args.stack)
        deployer = StackDeployer(config, cancel_event=threading.Event())
        return COMMANDS[args.command](args, deployer)
    except StackError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
