import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from engine.planner.manifest import LoadPlan
from engine.scheduler.dag import Unit
from engine.services.load_submitter import LoadSubmissionError, LoadSubmitter

console = Console()


# --- Helper Functions ---

def print_header():
    console.print(Panel.fit(
        Text("depload :: dependency-gated resource loader", style="bold cyan"),
        border_style="blue",
    ))

def print_error(message, details=None):
    console.print(f"[bold red]Error:[/bold red] {message}")
    if details:
        console.print(Panel(str(details), title="Details", border_style="red"))

def print_success(message):
    console.print(f"[bold green]Success:[/bold green] {message}")

def output_sink(output_dir: Path):
    """
    Writes every fetched unit to output_dir/<unit_id><suffix>.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    def _write(unit: Unit, content: bytes) -> None:
        suffix = Path(unit.resource.split("?", 1)[0]).suffix
        (output_dir / f"{unit.unit_id}{suffix}").write_bytes(content)

    return _write

def render_plan(plan: LoadPlan) -> Table:
    table = Table(title="Load Plan", show_header=True, header_style="bold magenta")
    table.add_column("Unit", style="bold white")
    table.add_column("Resource", style="dim")
    table.add_column("Depends On")
    table.add_column("Cache")

    for url in plan.css:
        table.add_row("[css]", url, "-", "-")
    for url in plan.head:
        table.add_row("[head]", url, "-", "-")
    for td in plan.units:
        table.add_row(
            td.unit_id,
            td.resource,
            ", ".join(sorted(td.depends_on)) or "-",
            "yes" if td.cache else "no",
        )
    return table


# --- Command Handlers ---

def handle_plan(submitter: LoadSubmitter, args) -> int:
    try:
        plan = submitter.plan(args.manifest, page=args.page)
    except LoadSubmissionError as e:
        print_error("Could not read manifest", str(e))
        return 1

    console.print(render_plan(plan))
    return 0

def handle_run(submitter: LoadSubmitter, args) -> int:
    cache_enabled = False if args.no_cache else None
    sink = output_sink(Path(args.output_dir)) if args.output_dir else None

    try:
        plan = submitter.plan(args.manifest, page=args.page, cache_enabled=cache_enabled)
        with console.status("[bold yellow]Loading resources...", spinner="dots"):
            result = submitter.run(
                plan,
                sink=sink,
                timeout=args.timeout,
                cache_enabled=cache_enabled,
                max_workers=args.max_workers,
            )
    except LoadSubmissionError as e:
        print_error("Load failed", str(e))
        return 1

    print_success(f"{result.files_loaded} files loaded in {result.stats.elapsed_ms}ms.")

    table = Table(title="Session Stats", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="bold white")
    table.add_row("Eager resources", str(result.eager_loaded))
    table.add_row("Units registered", str(result.stats.units_registered))
    table.add_row("Units completed", str(result.stats.units_completed))
    table.add_row("Elapsed", f"{result.stats.elapsed_ms}ms")
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="depload", description="Dependency-gated resource loader")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, handler, help_text in (
        ("plan", handle_plan, "Show the units a manifest describes"),
        ("run", handle_run, "Load every resource in a manifest"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("manifest", nargs="?", help="Manifest path or URL")
        sub.add_argument("--page", help="HTML page whose data-include names the manifest")
        sub.set_defaults(func=handler)

        if name == "run":
            sub.add_argument("--no-cache", action="store_true", help="Bust caches for every unit")
            sub.add_argument("--max-workers", type=int, help="Concurrent fetches")
            sub.add_argument("--output-dir", help="Write fetched units here")
            sub.add_argument("--timeout", type=float, help="Give up on the session after N seconds")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.manifest is None and args.page is None:
        parser.error("a manifest or --page is required")
    if args.manifest is not None and args.page is not None:
        parser.error("give either a manifest or --page, not both")

    print_header()
    return args.func(LoadSubmitter(), args)


if __name__ == "__main__":
    sys.exit(main())
