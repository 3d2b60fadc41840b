"""
Reporting and output formatting for install runs.

Provides color-coded console output using Rich library.
"""

from pathlib import Path
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .install import InstallResult
from .script import Script
from .tree import DependencyTree


class InstallReporter:
    """Formats and displays install results."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_install_results(self, result: InstallResult) -> None:
        """
        Print the summary of an install run.

        Args:
            result: The result to display
        """
        self.console.print()
        self._print_header(result)
        self._print_summary(result)

        if result.failed_scripts:
            self._print_failed_scripts(result.failed_scripts)

        if result.lockfiles:
            self._print_lockfiles(result.lockfiles)

        self._print_footer(result)

    def _print_header(self, result: InstallResult) -> None:
        self.console.print(
            Panel(
                f"📦 Installed {len(result.projects)} projects in {result.stages} stages",
                title="[bold blue]depfarm[/bold blue]",
                border_style="blue",
            )
        )

    def _print_summary(self, result: InstallResult) -> None:
        table = Table(title="📊 Install Summary", box=box.ROUNDED, title_style="bold cyan")
        table.add_column("Metric", style="bold")
        table.add_column("Count", justify="right")

        table.add_row("Packages", str(result.package_count))
        table.add_row("Versions", str(result.version_count))
        table.add_row("Downloaded", f"[green]{result.packages_downloaded}[/green]")
        table.add_row("Already in cache", str(result.packages_already_in_cache))
        if result.packages_failed:
            table.add_row("Failed", f"[bold red]{result.packages_failed}[/bold red]")
        else:
            table.add_row("Failed", "0")
        if result.peers_linked:
            table.add_row("Peers linked", str(result.peers_linked))
        table.add_row("Links created", str(result.links_created))
        table.add_row("Binary links created", str(result.links_created_bin))
        if result.scripts_run:
            table.add_row("Scripts run", str(result.scripts_run))

        self.console.print(table)
        self.console.print()

    def _print_failed_scripts(self, scripts: List[Script]) -> None:
        table = Table(
            title="❌ Failed Lifecycle Scripts",
            box=box.SIMPLE,
            title_style="bold red",
        )
        table.add_column("Package", style="bold")
        table.add_column("Stage")
        table.add_column("Retry with", style="dim")

        for script in scripts:
            table.add_row(
                script.version_tag,
                script.stage,
                f"cd {script.cwd} && npm run {script.stage}",
            )

        self.console.print(table)
        self.console.print()

    def _print_lockfiles(self, lockfiles: List[Path]) -> None:
        self.console.print("[bold]📝 Lock files written:[/bold]")
        for lockfile in lockfiles:
            self.console.print(f"  • {lockfile}")
        self.console.print()

    def _print_footer(self, result: InstallResult) -> None:
        if result.succeeded:
            self.console.print(
                f"✅ Done in {result.duration_seconds:.2f}s", style="bold green"
            )
        else:
            self.console.print(
                f"⚠️  Done in {result.duration_seconds:.2f}s with failures. "
                "Run the install again to retry.",
                style="bold yellow",
            )

    def print_storage_info(self, tree: DependencyTree, storage_root: Path) -> None:
        """Print what a storage area holds."""
        table = Table(title=f"🗄️  Storage: {storage_root}", box=box.ROUNDED)
        table.add_column("Package", style="bold")
        table.add_column("Versions")
        table.add_column("Binaries", justify="right")

        for name in sorted(tree.aggregate_cache):
            nodes = tree.aggregate_cache[name].values()
            versions = sorted({node.version for node in nodes})
            binaries = sum(len(node.binaries) for node in {id(n): n for n in nodes}.values())
            table.add_row(name, ", ".join(versions), str(binaries))

        self.console.print(table)
        self.console.print(
            f"{len(tree.aggregate_cache)} packages in {tree.version_count()} versions",
            style="dim",
        )
