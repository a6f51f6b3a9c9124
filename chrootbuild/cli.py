#!/usr/bin/env python3
# chrootbuild/cli.py
"""
chroot-build CLI

Subcommands:
- build DESCRIPTOR: validate, generate the plan, preview or run it locally
  or on a build server, collect results
- run-plan PLAN: execute a generated plan (what a build server runs)
- platforms: list supported platforms
- config: show the merged configuration
"""

from __future__ import annotations

import sys
import argparse
from typing import List, Optional

import yaml
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from chrootbuild.modules import config as config_mod
from chrootbuild.modules import logging as log_mod
from chrootbuild.modules import platforms
from chrootbuild.modules.dispatcher import BuildOptions, Dispatcher
from chrootbuild.modules.errors import ChrootBuildError
from chrootbuild.modules.meta import load_descriptor
from chrootbuild.modules.plan import BuildResult, Plan, PlanRunner, load_plan

console = Console()
logger = log_mod.get_logger("cli")


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {escape(msg)}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {escape(msg)}")


def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]")


def _results_table(results: List[BuildResult]) -> Table:
    table = Table(title="Packages")
    table.add_column("Platform", style="bold")
    table.add_column("Artifact")
    table.add_column("Files", justify="right")
    for r in results:
        table.add_row(r.platform, r.artifact or "-", str(len(r.manifest)) if r.manifest else "-")
    return table


def _plan_table(plan: Plan) -> Table:
    table = Table(title=f"Plan for {plan.project}")
    table.add_column("Platform", style="bold")
    table.add_column("Phase")
    table.add_column("Step")
    for s in plan.preflight:
        table.add_row("-", "preflight", escape(s.describe()))
    for unit in plan.units:
        for phase, steps in unit.phases():
            for s in steps:
                table.add_row(unit.platform, phase, escape(s.describe()))
    return table


# -----------------------
# CLI Implementation
# -----------------------
class ChrootBuildCLI:
    def build(self, args: argparse.Namespace) -> int:
        descriptor = load_descriptor(args.descriptor)
        options = BuildOptions(
            platforms=list(args.platform or []),
            local=args.local,
            server=args.server,
            install_dependencies=args.install_dependencies,
            debug=args.debug,
            preview=args.preview,
            ignore_uncommitted=args.ignore_uncommitted,
        )
        dispatcher = Dispatcher(descriptor, options)
        results = dispatcher.execute()
        if options.preview:
            console.print(_plan_table(dispatcher.plan))
            print_info(f"plan kept at {dispatcher.plan_file}")
            return 0
        console.print(_results_table(results))
        print_ok(f"{descriptor.name} {descriptor.version} built for {', '.join(r.platform for r in results)}")
        return 0

    def run_plan(self, args: argparse.Namespace) -> int:
        plan = load_plan(args.plan)
        if args.debug:
            for unit in plan.units:
                for step in unit.build:
                    if hasattr(step, "trace"):
                        step.trace = True
        results = PlanRunner(plan).run()
        console.print(_results_table(results))
        print_ok(f"plan {args.plan} completed")
        return 0

    def list_platforms(self, args: argparse.Namespace) -> int:
        table = Table(title="Supported platforms")
        table.add_column("Platform", style="bold")
        table.add_column("Type")
        table.add_column("Codename / release mirror")
        for entry in platforms.all_platforms():
            table.add_row(entry.platform_id, entry.package_type, entry.codename or entry.release_mirror or "")
        console.print(table)
        return 0

    def show_config(self, args: argparse.Namespace) -> int:
        cfg = config_mod.get_config()
        print_info(f"config file: {cfg.path or '<defaults>'}")
        console.print(Syntax(yaml.safe_dump(cfg.as_dict(), sort_keys=False), "yaml"))
        return 0


def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="chroot-build", description="Build deb/rpm packages in pristine chroots")
    ap.add_argument("--config", help="path to a YAML/JSON config file")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_build = sub.add_parser("build", help="build packages described by a descriptor file")
    p_build.add_argument("descriptor")
    p_build.add_argument("--platform", action="append", metavar="ID",
                         help="build only this platform (repeatable)")
    mode = p_build.add_mutually_exclusive_group(required=True)
    mode.add_argument("--local", action="store_true", help="build on this host")
    mode.add_argument("--server", metavar="HOST", help="build on HOST over ssh")
    p_build.add_argument("--install-dependencies", action="store_true",
                         help="install missing host tools (fpm, debootstrap, rpm, yum)")
    p_build.add_argument("--debug", action="store_true", help="debug logging and traced build scripts")
    p_build.add_argument("--preview", action="store_true", help="generate the plan and stop")
    p_build.add_argument("--ignore-uncommitted", action="store_true",
                         help="allow uncommitted changes in the working tree")

    p_run = sub.add_parser("run-plan", help="execute a generated plan file")
    p_run.add_argument("plan")
    p_run.add_argument("--debug", action="store_true")

    sub.add_parser("platforms", help="list supported platforms")
    sub.add_parser("config", help="show the merged, validated configuration")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    cli = ChrootBuildCLI()
    try:
        config_mod.load(args.config)
        log_mod.reload_config()
        if getattr(args, "debug", False):
            log_mod.set_debug(True)
        if args.cmd == "build":
            return cli.build(args)
        if args.cmd == "run-plan":
            return cli.run_plan(args)
        if args.cmd == "config":
            return cli.show_config(args)
        return cli.list_platforms(args)
    except ChrootBuildError as e:
        logger.debug("command failed", exc_info=True)
        print_err(str(e))
        return 1
    except KeyboardInterrupt:
        print_warn("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
