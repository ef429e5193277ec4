# cellar/modules/cli.py
"""
Command line interface for cellar.
- Uses rich for colored output, tables, panels and progress bars.
- Build options are passed as --with-<option> / --without-<option> and apply to
  every formula named on the command line.

Usage examples:
  cellar resolve qgis --without-postgresql
  cellar install qgis --with-grass --jobs 4
  cellar uninstall h5utils
  cellar list --build-only
  cellar graph qgis --output qgis.dot

Exit codes (install): 0 ok, 2 resolution failure, 3 build failure,
4 partial failure, 130 interrupted.
"""

from __future__ import annotations
import argparse
import json
import re
import sys
import traceback
from typing import List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from cellar import __version__
from cellar.modules.config import config
from cellar.modules.errors import CellarError, ResolutionError
from cellar.modules.graph import GraphBuilder, describe_options
from cellar.modules.installer import Installer
from cellar.modules.report import EXIT_INTERRUPTED, EXIT_OK, EXIT_RESOLUTION
from cellar.modules.requirement import RequirementChecker
from cellar.modules.resolver import SKIPPED, BuildPlan
from cellar.modules import logger as _logger

OPTION_FLAG = re.compile(r"^--with(out)?-[A-Za-z0-9][A-Za-z0-9_.+-]*$")
EXIT_ERROR = 1

STATUS_STYLES = {
    "pending": "yellow",
    "skipped": "cyan",
    "succeeded": "green",
    "failed": "red",
}


def split_option_flags(argv: List[str]) -> Tuple[List[str], List[str]]:
    """Pull --with-x / --without-x out of argv (argparse cannot declare them up front)."""
    flags, rest = [], []
    for arg in argv:
        (flags if OPTION_FLAG.match(arg) else rest).append(arg)
    return flags, rest


def make_console(no_color: bool, quiet: bool) -> Console:
    if no_color:
        return Console(color_system=None, force_terminal=False, quiet=quiet)
    return Console(quiet=quiet)


class CLI:
    def __init__(self, console: Console, installer: Optional[Installer] = None):
        self.console = console
        self._installer = installer
        self.log = _logger.Logger("cli")

    @property
    def installer(self) -> Installer:
        if self._installer is None:
            self._installer = Installer()
        return self._installer

    def print_error(self, error: CellarError):
        body = escape(str(error))
        if error.remediation:
            body += "\n\n" + escape(error.remediation)
        self.console.print(Panel(body, title=type(error).__name__, style="red"))

    # -----------------------
    # resolve
    # -----------------------
    def _resolve(self, args: argparse.Namespace) -> BuildPlan:
        return self.installer.resolve(args.formula, args.option_flags,
                                      include_test=args.include_test,
                                      exclude=args.ignore_dependency or [],
                                      reinstall=args.formula if args.reinstall else [])

    def render_plan(self, plan: BuildPlan):
        table = Table(title="Build plan")
        table.add_column("#", justify="right")
        table.add_column("Formula", style="bold")
        table.add_column("Version")
        table.add_column("Options", overflow="fold")
        table.add_column("Status")
        table.add_column("Depends on", overflow="fold")
        for index, task in enumerate(plan, 1):
            name = task.identity + (" *" if task.requested else "")
            if task.build_only:
                name += " (build)"
            style = STATUS_STYLES.get(task.status, "")
            table.add_row(str(index), name, task.formula.effective_version,
                          " ".join(describe_options(task.options, task.formula.options)) or "-",
                          f"[{style}]{task.status}[/{style}]",
                          ", ".join(task.prerequisites) or "-")
        self.console.print(table)
        for warning in plan.warnings:
            self.console.print(Panel(escape(str(warning)), title="warning", style="yellow"))

    def cmd_resolve(self, args: argparse.Namespace) -> int:
        plan = self._resolve(args)
        if args.json:
            self.console.print_json(json.dumps([t.to_dict() for t in plan]))
        else:
            self.render_plan(plan)
        return EXIT_OK

    # -----------------------
    # install
    # -----------------------
    def cmd_install(self, args: argparse.Namespace) -> int:
        installer = self.installer
        if args.jobs:
            installer.jobs = args.jobs
        installer.keep_going = args.keep_going
        plan = self._resolve(args)
        if not args.quiet:
            self.render_plan(plan)

        todo = [t for t in plan if t.status != SKIPPED]
        if not todo:
            self.console.print("[cyan]Everything requested is already installed.[/cyan]")
            return EXIT_OK

        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      BarColumn(), TimeElapsedColumn(), console=self.console,
                      disable=args.quiet) as progress:
            bar = progress.add_task("building", total=len(todo))

            def on_event(event, task):
                if event == "started":
                    progress.update(bar, description=f"building {task.identity}")
                else:
                    progress.advance(bar)
                    if event == "succeeded":
                        progress.console.print(f"[green]installed[/green] {task.identity}")
                    elif event == "failed":
                        progress.console.print(f"[red]failed[/red] {task.identity}")

            report = installer.execute(plan, on_event=on_event)

        report.render(self.console, verbose=args.verbose)
        return report.exit_code()

    # -----------------------
    # uninstall
    # -----------------------
    def cmd_uninstall(self, args: argparse.Namespace) -> int:
        code = EXIT_OK
        for name in args.formula:
            try:
                record = self.installer.uninstall(name, force=args.force)
                self.console.print(f"[green]Uninstalled[/green] {record.name} {record.version}")
            except CellarError as e:
                self.print_error(e)
                code = EXIT_ERROR
        return code

    # -----------------------
    # list
    # -----------------------
    def cmd_list(self, args: argparse.Namespace) -> int:
        if args.removable:
            records = self.installer.removable_build_dependencies()
        else:
            records = self.installer.store.all()
            if args.build_only:
                records = [r for r in records if r.build_only]
        table = Table(title="Installed formulae")
        table.add_column("Formula", style="bold")
        table.add_column("Version")
        table.add_column("Options", overflow="fold")
        table.add_column("Build only")
        table.add_column("Installed at")
        for r in records:
            table.add_row(r.name, r.version, " ".join(r.options) or "-",
                          "yes" if r.build_only else "", r.installed_at)
        self.console.print(table)
        return EXIT_OK

    # -----------------------
    # info
    # -----------------------
    def cmd_info(self, args: argparse.Namespace) -> int:
        repo = self.installer.repository
        formula = repo.load(args.formula)
        tbl = Table(title=f"Info: {formula.full_name}")
        tbl.add_column("Key", style="bold")
        tbl.add_column("Value", overflow="fold")
        tbl.add_row("version", formula.effective_version)
        tbl.add_row("homepage", formula.homepage or "-")
        if formula.desc:
            tbl.add_row("description", escape(formula.desc))
        if formula.source:
            tbl.add_row("url", formula.source.url)
            tbl.add_row("checksum", str(formula.source.checksum))
        if formula.head:
            tbl.add_row("head", f"{formula.head.url} ({formula.head.branch or 'default'})")
        deps = [f"{d.name} ({d.qualifier})" if d.qualifier != "required" else d.name
                for d in formula.dependencies]
        tbl.add_row("dependencies", ", ".join(deps) or "-")
        opts = [f"--{o.flag}" for o in formula.options.values()]
        tbl.add_row("options", " ".join(opts) or "-")
        reqs = [f"{r.name} ({'fatal' if r.fatal else 'warning'})" for r in formula.requirements]
        tbl.add_row("requirements", ", ".join(reqs) or "-")
        tbl.add_row("patches", str(len(formula.patches)))
        record = self.installer.store.get(formula.full_name)
        tbl.add_row("installed", f"{record.version} {' '.join(record.options)}" if record else "no")
        self.console.print(tbl)
        if formula.caveats:
            self.console.print(Panel(escape(formula.caveats), title="caveats", style="cyan"))
        return EXIT_OK

    # -----------------------
    # graph
    # -----------------------
    def cmd_graph(self, args: argparse.Namespace) -> int:
        builder = GraphBuilder(self.installer.repository, RequirementChecker(self.installer.probe),
                               include_test=args.include_test,
                               exclude=args.ignore_dependency or [])
        graph = builder.build_graph(args.formula, args.option_flags)
        dot = graph.to_dot()
        if args.output:
            with open(args.output, "w", encoding="utf-8") as fh:
                fh.write(dot + "\n")
            self.console.print(f"Graph exported to {args.output}")
        else:
            self.console.print(dot, markup=False, highlight=False)
        return EXIT_OK

    # -----------------------
    # formulae listing
    # -----------------------
    def cmd_formulae(self, args: argparse.Namespace) -> int:
        for name in self.installer.repository.names():
            self.console.print(name, markup=False, highlight=False)
        return EXIT_OK


# -----------------------
# CLI wiring and argparse setup
# -----------------------
def _add_resolution_args(p: argparse.ArgumentParser):
    p.add_argument("formula", nargs="+", help="Formula name or tap/name")
    p.add_argument("--include-test", action="store_true", help="Include test dependencies")
    p.add_argument("--ignore-dependency", action="append", metavar="NAME",
                   help="Never pull in NAME as a dependency (repeatable)")


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cellar", description="Formula dependency resolver and build orchestrator",
        epilog="Build options: --with-<option> / --without-<option>")
    ap.add_argument("--version", action="version", version=f"cellar {__version__}")
    ap.add_argument("--no-color", action="store_true", help="Disable color output")
    ap.add_argument("--quiet", action="store_true", help="Quiet mode; less output")
    ap.add_argument("--conf", help="Path to cellar.conf")
    sub = ap.add_subparsers(dest="command", required=True)

    p_resolve = sub.add_parser("resolve", help="Print the build plan")
    _add_resolution_args(p_resolve)
    p_resolve.add_argument("--reinstall", action="store_true", help="Plan requested formulae even if installed")
    p_resolve.add_argument("--json", action="store_true", help="Print the plan as JSON")

    p_install = sub.add_parser("install", aliases=["i"], help="Resolve and build formulae")
    _add_resolution_args(p_install)
    p_install.add_argument("--reinstall", action="store_true", help="Rebuild requested formulae even if installed")
    p_install.add_argument("-j", "--jobs", type=int, help="Parallel builds")
    p_install.add_argument("--keep-going", dest="keep_going", action="store_true", default=True,
                           help="Keep building independent formulae after a failure (default)")
    p_install.add_argument("--no-keep-going", dest="keep_going", action="store_false",
                           help="Stop starting builds after the first failure")
    p_install.add_argument("-v", "--verbose", action="store_true")

    p_uninstall = sub.add_parser("uninstall", aliases=["rm"], help="Remove installed formulae")
    p_uninstall.add_argument("formula", nargs="+")
    p_uninstall.add_argument("--force", action="store_true", help="Remove even if other formulae depend on it")

    p_list = sub.add_parser("list", aliases=["ls"], help="List installed formulae")
    p_list.add_argument("--build-only", action="store_true", help="Only formulae installed as build dependencies")
    p_list.add_argument("--removable", action="store_true",
                        help="Build-only formulae nothing installed depends on")

    p_info = sub.add_parser("info", help="Show formula details")
    p_info.add_argument("formula")

    p_graph = sub.add_parser("graph", help="Export the dependency graph (DOT)")
    _add_resolution_args(p_graph)
    p_graph.add_argument("--output", help="Write DOT to this file instead of stdout")

    sub.add_parser("formulae", help="List formulae available in the configured taps")
    return ap


COMMANDS = {
    "resolve": "cmd_resolve",
    "install": "cmd_install",
    "i": "cmd_install",
    "uninstall": "cmd_uninstall",
    "rm": "cmd_uninstall",
    "list": "cmd_list",
    "ls": "cmd_list",
    "info": "cmd_info",
    "graph": "cmd_graph",
    "formulae": "cmd_formulae",
}


def main(argv: Optional[List[str]] = None, installer: Optional[Installer] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    option_flags, argv = split_option_flags(argv)
    parser = build_argparser()
    args = parser.parse_args(argv)
    args.option_flags = [f[2:] for f in option_flags]

    console = make_console(args.no_color, args.quiet)
    if args.conf:
        try:
            config.load_file(args.conf)
        except FileNotFoundError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            return EXIT_ERROR
    cli = CLI(console=console, installer=installer)

    if option_flags and args.command not in ("resolve", "install", "i", "graph"):
        parser.error(f"build options are not accepted by '{args.command}'")

    try:
        return getattr(cli, COMMANDS[args.command])(args)
    except ResolutionError as e:
        cli.print_error(e)
        cli.log.error(str(e))
        return EXIT_RESOLUTION
    except CellarError as e:
        cli.print_error(e)
        cli.log.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return EXIT_INTERRUPTED
    except Exception as e:
        console.print(f"[red]Unhandled error: {escape(str(e))}[/red]")
        cli.log.error(traceback.format_exc())
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
