import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel

from . import __version__
from .cache_manager import get_cache_manager
from .cli_config import DEFAULT_LOCKS_FILE, create_sample_config, get_config
from .downloader import DependencyDownloader
from .error_handling import DepfarmError
from .install import InstallOptions, InstallTask, load_package_manager_configuration
from .manifest import MANIFEST_NAME
from .reporting import InstallReporter
from .structured_logging import configure_logging
from .tree import DependencyTree
from .unartifact import UnartifactTask

console = Console()


def discover_repositories(root: Path) -> List[Path]:
    """The directory itself if it is a project, plus every project directly below it."""
    repositories = []
    if (root / MANIFEST_NAME).is_file():
        repositories.append(root)
    for child in sorted(root.iterdir()):
        if child.name.startswith(".") or not child.is_dir():
            continue
        if (child / MANIFEST_NAME).is_file():
            repositories.append(child)
    return repositories


def _select_repositories(repos: Tuple[str, ...]) -> List[Path]:
    if repos:
        return [Path(repo).resolve() for repo in repos]
    return discover_repositories(Path.cwd())


def _setup_logging(verbose: bool, quiet: bool) -> None:
    config = get_config()
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "ERROR"
    else:
        level = config.logging.log_level
    configure_logging(level, config.logging.log_format)


def _run_install(
    repos: Tuple[str, ...],
    pin_roots: Optional[bool],
    update: bool,
    concurrency: Optional[int],
    storage: Optional[str],
    locks_file: Optional[str],
    quiet: bool,
    generate_modules: bool = True,
    run_scripts: bool = True,
) -> None:
    config = get_config()
    install_config = dataclasses.replace(
        config.install,
        pin_roots=config.install.pin_roots if pin_roots is None else pin_roots,
        update_dependencies=update or config.install.update_dependencies,
        concurrency=concurrency or config.install.concurrency,
        storage_root=storage or config.install.storage_root,
        locks_file=locks_file or config.install.locks_file,
    )
    if install_config.concurrency <= 0:
        raise click.ClickException("Concurrency must be positive")

    repositories = _select_repositories(repos)
    if not repositories:
        raise click.ClickException(f"No projects with a {MANIFEST_NAME} found")

    options = InstallOptions.from_config(
        install_config,
        generate_modules=generate_modules,
        run_scripts=run_scripts,
    )
    task = InstallTask(
        repositories,
        load_package_manager_configuration(install_config),
        options,
    )

    if not quiet:
        console.print(
            Panel(
                f"📦 [bold blue]depfarm[/bold blue] v{__version__} - "
                f"{len(repositories)} repositories, storage {options.storage_root}",
                border_style="blue",
            )
        )

    result = asyncio.run(task.process())

    if not quiet:
        InstallReporter(console).print_install_results(result)

    if not result.succeeded:
        sys.exit(1)


def _handle_failure(e: Exception) -> None:
    Console(stderr=True).print(f"❌ Error: {str(e)}", style="red")
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    📦 depfarm: multi-repository dependency manager

    Resolves the dependencies of many projects at once into a shared,
    deduplicated storage area and links them into every project.
    """
    if version:
        console.print(f"depfarm version {__version__}", style="bold blue")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def install_options(command):
    """Options shared by `install` and `lock`."""
    decorators = [
        click.argument("repos", nargs=-1, type=click.Path(exists=True, file_okay=False)),
        click.option(
            "--pin-roots/--no-pin-roots",
            default=None,
            help="Always resolve dependencies on local projects to the local project",
        ),
        click.option(
            "--update",
            is_flag=True,
            help="Check every version range against the registry again",
        ),
        click.option(
            "--concurrency",
            "-j",
            type=int,
            help="Simultaneous downloads and link operations (default from config)",
        ),
        click.option(
            "--storage",
            type=click.Path(file_okay=False),
            help="Storage area location (default: ./.packages)",
        ),
        click.option(
            "--locks-file",
            type=click.Path(exists=True, dir_okay=False),
            help=f"Version locks and peering rules (default: {DEFAULT_LOCKS_FILE})",
        ),
        click.option("--quiet", "-q", is_flag=True, help="Suppress non-critical output"),
        click.option("--verbose", "-v", is_flag=True, help="Enable debug logging"),
    ]
    for decorator in reversed(decorators):
        command = decorator(command)
    return command


@cli.command()
@install_options
@click.option("--ignore-scripts", is_flag=True, help="Do not run lifecycle scripts")
def install(
    repos: Tuple[str, ...],
    pin_roots: Optional[bool],
    update: bool,
    concurrency: Optional[int],
    storage: Optional[str],
    locks_file: Optional[str],
    quiet: bool,
    verbose: bool,
    ignore_scripts: bool,
) -> None:
    """
    Install the dependencies of all projects into one storage area.

    Without REPOS, the current directory and its direct subdirectories are
    searched for projects.

    Examples:

      depfarm install

      depfarm install service-a service-b --no-pin-roots

      depfarm install -j 8 --update
    """
    _setup_logging(verbose, quiet)
    try:
        _run_install(
            repos,
            pin_roots,
            update,
            concurrency,
            storage,
            locks_file,
            quiet,
            run_scripts=not ignore_scripts,
        )
    except KeyboardInterrupt:
        Console(stderr=True).print("\n⚠️  Install interrupted by user", style="yellow")
        sys.exit(130)
    except (DepfarmError, OSError) as e:
        _handle_failure(e)


@cli.command()
@install_options
def lock(
    repos: Tuple[str, ...],
    pin_roots: Optional[bool],
    update: bool,
    concurrency: Optional[int],
    storage: Optional[str],
    locks_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """Resolve all projects and write their lock files without linking them."""
    _setup_logging(verbose, quiet)
    try:
        _run_install(
            repos,
            pin_roots,
            update,
            concurrency,
            storage,
            locks_file,
            quiet,
            generate_modules=False,
            run_scripts=False,
        )
    except KeyboardInterrupt:
        Console(stderr=True).print("\n⚠️  Interrupted by user", style="yellow")
        sys.exit(130)
    except (DepfarmError, OSError) as e:
        _handle_failure(e)


@cli.command()
@click.option(
    "--storage",
    type=click.Path(file_okay=False),
    help="Storage area location (default: ./.packages)",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def clean(storage: Optional[str], yes: bool) -> None:
    """Empty the storage area."""
    storage_root = (
        Path(storage) if storage else get_config().install.resolve_storage_root()
    )
    if not storage_root.is_dir():
        console.print(f"ℹ️  No storage area at {storage_root}", style="blue")
        return

    if not yes:
        click.confirm(f"Delete everything in {storage_root}?", abort=True)

    downloader = DependencyDownloader(DependencyTree(), storage_root)
    try:
        asyncio.run(downloader.clean())
    except OSError as e:
        _handle_failure(e)
    console.print(f"✅ Emptied {storage_root}", style="green")


@cli.command()
@click.argument("repos", nargs=-1, type=click.Path(exists=True, file_okay=False))
def unartifact(repos: Tuple[str, ...]) -> None:
    """Remove leftovers of interrupted package manager runs from projects."""
    configure_logging(get_config().logging.log_level)
    deleted = UnartifactTask(_select_repositories(repos)).process()
    if deleted:
        console.print(f"✅ Deleted {len(deleted)} artifacts", style="green")
    else:
        console.print("ℹ️  No artifacts found", style="blue")


@cli.command()
@click.option(
    "--storage",
    type=click.Path(file_okay=False),
    help="Storage area location (default: ./.packages)",
)
def info(storage: Optional[str]) -> None:
    """Show what the storage area holds."""
    storage_root = (
        Path(storage) if storage else get_config().install.resolve_storage_root()
    )
    if not storage_root.is_dir():
        console.print(f"ℹ️  No storage area at {storage_root}", style="blue")
        return

    try:
        tree = asyncio.run(DependencyTree.from_storage_root(storage_root))
    except DepfarmError as e:
        _handle_failure(e)
        return
    InstallReporter(console).print_storage_info(tree, storage_root)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".depfarm.json",
    help="Path where to create the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite existing config file")
def config_init(path: str, force: bool):
    """Create a sample configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(f"⚠️  Config file already exists at {config_path}", style="yellow")
        console.print("Use --force to overwrite", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())
    except OSError as e:
        console.print(f"❌ Failed to create config file: {e}", style="red")
        sys.exit(1)

    console.print(f"✅ Created configuration file at {config_path}", style="green")
    console.print("Edit this file to customize your settings", style="dim")


@config.command("show")
def config_show():
    """Show current configuration settings."""
    current_config = get_config()

    console.print("\n[bold cyan]📦 Install Settings:[/bold cyan]")
    console.print(f"  Concurrency: {current_config.install.concurrency}")
    console.print(f"  Storage Root: {current_config.install.resolve_storage_root()}")
    console.print(f"  Pin Roots: {current_config.install.pin_roots}")
    console.print(f"  Update Dependencies: {current_config.install.update_dependencies}")
    console.print(
        f"  Locks File: {current_config.install.locks_file or DEFAULT_LOCKS_FILE}"
    )
    console.print(f"  Package Manager: {current_config.install.package_manager}")

    console.print("\n[bold cyan]🌐 Network Settings:[/bold cyan]")
    console.print(f"  Registry: {current_config.network.registry_url}")
    console.print(f"  Connect Timeout: {current_config.network.connect_timeout}s")
    console.print(f"  Read Timeout: {current_config.network.read_timeout}s")
    console.print(f"  User Agent: {current_config.network.user_agent}")

    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {current_config.logging.log_level}")
    console.print(
        f"  Sensitive Data Masking: {current_config.logging.enable_sensitive_data_masking}"
    )

    console.print("\n[bold cyan]⚡ Performance Settings:[/bold cyan]")
    console.print(f"  Caching Enabled: {current_config.performance.enable_caching}")
    console.print(f"  Cache TTL: {current_config.performance.cache_ttl_seconds}s")
    console.print(f"  Max Cache Size: {current_config.performance.max_cache_size}")
    cache = get_cache_manager().describe()
    console.print(
        f"  Cached Packuments: {cache['size']} "
        f"(hit rate {cache['hit_rate_percent']:.1f}%)"
    )


if __name__ == "__main__":
    cli()
