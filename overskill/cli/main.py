#!/usr/bin/env python3
"""
OverSkill Pipeline CLI - Main Entry Point

Usage:
    overskill analyze build.log               # Classify errors in a build log
    overskill fix ./my-app build.log          # Detect and patch errors in place
    overskill mode "deploy to production"     # Show the build mode for a request
    overskill size ./my-app/dist              # Worker size report for a build
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table

from overskill.services.auto_fixer import auto_fix_engine
from overskill.services.build_error_detector import build_error_detector
from overskill.services.build_executor import select_build_mode
from overskill.services.source_file_set import SourceFileSet
from overskill.services.worker_optimizer import BuildArtifact, format_bytes, worker_size_optimizer
from overskill.core.exceptions import SizeViolationError


SKIPPED_DIRECTORIES = {"node_modules", "dist", ".git", ".cache", "build"}
SOURCE_SUFFIXES = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".css", ".html", ".json", ".md"}

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="overskill",
        description="OverSkill build pipeline tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  overskill analyze build.log                 Show classified build errors
  overskill analyze build.log --json          Same, as JSON
  overskill fix ./app build.log --dry-run     Show fixes without writing them
  overskill mode "publish my app"             -> production
  overskill size ./app/dist                   Embedded vs offloaded report
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    analyze_parser = subparsers.add_parser("analyze", help="Classify errors in a build log")
    analyze_parser.add_argument("logfile", help="Build log file")
    analyze_parser.add_argument("--json", action="store_true", help="Print errors as JSON")

    fix_parser = subparsers.add_parser("fix", help="Apply automatic fixes for a build log")
    fix_parser.add_argument("directory", help="App source directory")
    fix_parser.add_argument("logfile", help="Build log file")
    fix_parser.add_argument("--dry-run", action="store_true", help="Do not write changes")

    mode_parser = subparsers.add_parser("mode", help="Show build mode for a request")
    mode_parser.add_argument("intent", help="Free-text request, e.g. 'deploy to production'")

    size_parser = subparsers.add_parser("size", help="Worker size report for build output")
    size_parser.add_argument("dist", help="Build output directory")

    return parser


def load_source_tree(directory: Path) -> SourceFileSet:
    files: Dict[str, str] = {}
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if not path.is_file() or SKIPPED_DIRECTORIES.intersection(relative.parts):
            continue
        if path.suffix not in SOURCE_SUFFIXES:
            continue
        files[relative.as_posix()] = path.read_text(encoding="utf-8", errors="replace")
    return SourceFileSet(files)


def load_build_output(directory: Path) -> Dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


def print_errors(errors: List) -> None:
    table = Table(show_header=True, header_style="bold cyan", title="Build Errors")
    table.add_column("Type", style="bold")
    table.add_column("Location")
    table.add_column("Severity", width=8)
    table.add_column("Fixable", width=7)
    table.add_column("Message")
    for error in errors:
        table.add_row(
            error.type.value,
            error.location,
            error.severity.value,
            "[green]yes[/green]" if error.auto_fixable else "[red]no[/red]",
            error.message,
        )
    console.print(table)


def cmd_analyze(args) -> int:
    text = Path(args.logfile).read_text(encoding="utf-8", errors="replace")
    errors = build_error_detector.analyze_text(text)
    if args.json:
        console.print_json(json.dumps([e.to_dict() for e in errors]))
    elif errors:
        print_errors(errors)
    else:
        console.print("[green]✓ No recognizable build errors[/green]")
    return 1 if errors else 0


def cmd_fix(args) -> int:
    directory = Path(args.directory)
    files = load_source_tree(directory)
    errors = build_error_detector.analyze_text(Path(args.logfile).read_text(encoding="utf-8", errors="replace"))
    if not errors:
        console.print("[green]✓ Nothing to fix[/green]")
        return 0

    batch = auto_fix_engine.apply_fixes(errors, files)
    table = Table(show_header=True, header_style="bold cyan", title="Fix Results")
    table.add_column("Type", style="bold")
    table.add_column("File")
    table.add_column("Status", width=8)
    table.add_column("Detail")
    for result in batch.results:
        table.add_row(
            result.error_type.value,
            result.file_path or "-",
            "[green]fixed[/green]" if result.success else "[yellow]skipped[/yellow]",
            result.description if result.success else (result.error or ""),
        )
    console.print(table)

    changed = [f for f in batch.files if files.get(f.path) != f]
    if not args.dry_run:
        for source in changed:
            (directory / source.path).write_text(source.content, encoding="utf-8")
    console.print(f"{len(changed)} file(s) {'would change' if args.dry_run else 'updated'}")

    unfixable = [e for e in errors if not e.auto_fixable]
    return 1 if unfixable or batch.failed else 0


def cmd_mode(args) -> int:
    console.print(select_build_mode(args.intent).value)
    return 0


def cmd_size(args) -> int:
    assets = load_build_output(Path(args.dist))
    analysis = worker_size_optimizer.analyze_size_requirements(assets)

    table = Table(title="Build Output", show_header=False)
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Assets", str(len(assets)))
    table.add_row("Total", format_bytes(analysis["total_size"]))
    table.add_row("Critical", format_bytes(analysis["critical_size"]))
    table.add_row("Offloadable", format_bytes(analysis["non_critical_size"]))

    try:
        package = worker_size_optimizer.optimize(
            BuildArtifact(assets=assets), cdn_url_for=lambda path: f"https://cdn.invalid/{path}"
        )
    except SizeViolationError as e:
        console.print(table)
        console.print(f"[red]✗ {e.message}[/red]")
        return 1

    compliance = worker_size_optimizer.monitor_size_compliance(package.worker_size)
    table.add_row("Worker script", format_bytes(package.worker_size))
    table.add_row("Utilization", f"{compliance['utilization_percent']}% ({compliance['status']})")
    console.print(table)
    for note in analysis["recommendations"] + package.recommendations:
        console.print(f"  • {note}")
    return 0


COMMANDS = {
    "analyze": cmd_analyze,
    "fix": cmd_fix,
    "mode": cmd_mode,
    "size": cmd_size,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
