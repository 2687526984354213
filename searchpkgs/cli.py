"""Command line interface for manifest, install and launch workflows."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Literal

import httpx
import typer

from searchpkgs import __version__
from searchpkgs.errors import ResolutionError, SearchPkgsError
from searchpkgs.installer import (
    DefaultFetcher,
    InstalledArtifact,
    StagedInstaller,
    resolve_fetch_timeout,
    resolve_store_dir,
)
from searchpkgs.launcher import RuntimeLauncher
from searchpkgs.logging_utils import build_run_id, configure_logging, set_run_id
from searchpkgs.manifest import Manifest, load_manifest, resolve_manifest_path
from searchpkgs.manifest_builder import (
    DEFAULT_CACHE_FILENAME,
    DEFAULT_PACKAGES_FILENAME,
    DEFAULT_VERSIONS_FILENAME,
    ENGINES,
    build_github_client,
    build_packages,
    load_engine_versions,
    load_hash_cache,
    update_hash_cache,
    write_packages,
)
from searchpkgs.registry import RecipeRegistry, resolve_recipes_dir
from searchpkgs.resolver import PackageResolver, ResolvedPackage

app = typer.Typer(
    no_args_is_help=True,
    help="Search engine distribution packaging CLI.",
    add_completion=False,
)
packages_app = typer.Typer(no_args_is_help=True, help="Inspect the version manifest.")
recipes_app = typer.Typer(no_args_is_help=True, help="Inspect install recipes.")
manifest_app = typer.Typer(no_args_is_help=True, help="Generate the version manifest.")

app.add_typer(packages_app, name="packages")
app.add_typer(recipes_app, name="recipes")
app.add_typer(manifest_app, name="manifest")

_MANIFEST_HELP = "Manifest file (defaults to SEARCHPKGS_MANIFEST or ./packages.json)."
_RECIPES_HELP = "Recipe directory (defaults to SEARCHPKGS_RECIPES_DIR or the bundled recipes)."
_SYSTEM_HELP = "Target system such as x86_64-linux (defaults to SEARCHPKGS_SYSTEM or the host)."
_STORE_HELP = "Artifact store (defaults to SEARCHPKGS_STORE or ~/.searchpkgs/store)."


@contextmanager
def _exit_on_error() -> Iterator[None]:
    try:
        yield
    except ResolutionError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    except (SearchPkgsError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _load_manifest(manifest: Path | None, system: str | None) -> Manifest:
    return load_manifest(resolve_manifest_path(manifest), system=system)


def _build_resolver(manifest: Path | None, recipes_dir: Path | None, system: str | None) -> PackageResolver:
    registry = RecipeRegistry.discover(resolve_recipes_dir(recipes_dir))
    return PackageResolver(_load_manifest(manifest, system), registry)


def _install(
    resolved: ResolvedPackage,
    *,
    store_dir: Path | None,
    timeout: float | None,
) -> InstalledArtifact:
    fetch_timeout = resolve_fetch_timeout(timeout)
    with httpx.Client(follow_redirects=True) as client:
        installer = StagedInstaller(
            resolve_store_dir(store_dir),
            fetcher=DefaultFetcher(client),
            timeout=fetch_timeout,
        )
        return installer.install(resolved.spec, resolved.recipe)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Package search engine server distributions into read-only install trees."""
    configure_logging(verbose=verbose)
    set_run_id(build_run_id())


@app.command("version")
def version_command() -> None:
    """Print the searchpkgs version."""
    typer.echo(__version__)


@packages_app.command("list")
def packages_list(
    manifest: Path | None = typer.Option(None, "--manifest", dir_okay=False, help=_MANIFEST_HELP),
    system: str | None = typer.Option(None, "--system", help=_SYSTEM_HELP),
    name: str | None = typer.Option(None, "--name", help="Only list this package family."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List package versions declared for the target system."""
    with _exit_on_error():
        loaded = _load_manifest(manifest, system)

    specs = [spec for spec in loaded.entries() if name is None or spec.name == name]
    if json_output:
        payload = [spec.model_dump(mode="json") for spec in specs]
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    if not specs:
        typer.echo(f"No packages declared for {loaded.system} in {loaded.source}.")
        return
    for spec in specs:
        typer.echo(f"{spec.name} {spec.version}: url={spec.url}")


@recipes_app.command("list")
def recipes_list(
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_HELP,
    ),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List install recipes and their steps."""
    target_dir = resolve_recipes_dir(recipes_dir)
    registry = RecipeRegistry.discover(target_dir)

    payload = [
        {
            "family": recipe.family,
            "description": recipe.config.description,
            "path": str(recipe.path),
            "steps": [step.type for step in recipe.config.steps],
            "derived": [item.name for item in recipe.config.derived],
        }
        for recipe in registry.list_all()
    ]
    if json_output:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    if not payload:
        typer.echo(f"No recipes found in {target_dir}.")
        return
    for item in payload:
        steps = ", ".join(item["steps"]) or "-"
        derived = ", ".join(item["derived"]) or "-"
        typer.echo(f"{item['family']}: steps=[{steps}], derived=[{derived}], path={item['path']}")


@app.command("resolve")
def resolve_command(
    name: str = typer.Argument(..., help="Package family, e.g. elasticsearch."),
    version: str = typer.Argument(..., help="Package version, e.g. 8.13.4."),
    manifest: Path | None = typer.Option(None, "--manifest", dir_okay=False, help=_MANIFEST_HELP),
    recipes_dir: Path | None = typer.Option(None, "--recipes-dir", file_okay=False, help=_RECIPES_HELP),
    system: str | None = typer.Option(None, "--system", help=_SYSTEM_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Show the manifest entry and recipe steps selected for a version."""
    with _exit_on_error():
        resolved = _build_resolver(manifest, recipes_dir, system).resolve(name, version)

    recipe = resolved.recipe
    if json_output:
        payload = {
            "spec": resolved.spec.model_dump(mode="json"),
            "recipe": recipe.to_payload(),
            "recipe_identity": recipe.identity,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"{resolved.spec.name} {resolved.spec.version}")
    typer.echo(f"  url: {resolved.spec.url}")
    typer.echo(f"  hash: {resolved.spec.hash}")
    typer.echo(f"  recipe: {recipe.family} ({recipe.identity[:12]})")
    for step in recipe.steps:
        target = step.path if step.type == "exclude" else step.file
        typer.echo(f"  - {step.type} {target}")


@app.command("install")
def install_command(
    name: str = typer.Argument(..., help="Package family, e.g. elasticsearch."),
    version: str = typer.Argument(..., help="Package version, e.g. 8.13.4."),
    manifest: Path | None = typer.Option(None, "--manifest", dir_okay=False, help=_MANIFEST_HELP),
    recipes_dir: Path | None = typer.Option(None, "--recipes-dir", file_okay=False, help=_RECIPES_HELP),
    system: str | None = typer.Option(None, "--system", help=_SYSTEM_HELP),
    store_dir: Path | None = typer.Option(None, "--store", file_okay=False, help=_STORE_HELP),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.0,
        help="Fetch and unpack timeout in seconds (defaults to SEARCHPKGS_FETCH_TIMEOUT or 300).",
    ),
) -> None:
    """Fetch, verify and stage a package into the read-only store."""
    with _exit_on_error():
        resolved = _build_resolver(manifest, recipes_dir, system).resolve(name, version)
        artifact = _install(resolved, store_dir=store_dir, timeout=timeout)

    typer.echo(str(artifact.path))
    for export, path in sorted(artifact.exports.items()):
        typer.echo(f"{export}={path}")


@app.command("launch")
def launch_command(
    name: str = typer.Argument(..., help="Package family, e.g. elasticsearch."),
    version: str = typer.Argument(..., help="Package version, e.g. 8.13.4."),
    home: Path = typer.Option(..., "--home", file_okay=False, help="Writable runtime home directory."),
    conf: Path | None = typer.Option(None, "--conf", file_okay=False, help="Configuration directory override."),
    java_opts: list[str] | None = typer.Option(None, "--java-opt", help="JVM option; may be repeated."),
    java_home: Path | None = typer.Option(None, "--java-home", file_okay=False, help="Java runtime to use."),
    link_mode: Literal["copy", "hardlink"] = typer.Option(
        "copy",
        "--link-mode",
        help="How the installed tree is materialized in the home (copy, hardlink).",
    ),
    manifest: Path | None = typer.Option(None, "--manifest", dir_okay=False, help=_MANIFEST_HELP),
    recipes_dir: Path | None = typer.Option(None, "--recipes-dir", file_okay=False, help=_RECIPES_HELP),
    system: str | None = typer.Option(None, "--system", help=_SYSTEM_HELP),
    store_dir: Path | None = typer.Option(None, "--store", file_okay=False, help=_STORE_HELP),
    timeout: float | None = typer.Option(None, "--timeout", min=0.0, help="Install and copy timeout in seconds."),
) -> None:
    """Install if needed, stage a runtime home and run the server in the foreground."""
    with _exit_on_error():
        resolved = _build_resolver(manifest, recipes_dir, system).resolve(name, version)
        artifact = _install(resolved, store_dir=store_dir, timeout=timeout)
        launcher = RuntimeLauncher(java_home=java_home, link_mode=link_mode, timeout=timeout)
        process = launcher.launch(artifact, home, conf_dir=conf, java_opts=java_opts)

    try:
        return_code = process.wait()
    except KeyboardInterrupt:
        process.terminate()
        return_code = process.wait()
    raise typer.Exit(code=return_code)


@manifest_app.command("update")
def manifest_update(
    versions_file: Path = typer.Option(
        Path(DEFAULT_VERSIONS_FILENAME),
        "--versions-file",
        dir_okay=False,
        help="Cached engine version lists.",
    ),
    cache_file: Path = typer.Option(
        Path(DEFAULT_CACHE_FILENAME),
        "--cache-file",
        dir_okay=False,
        help="Resumable artifact hash cache.",
    ),
    output: Path = typer.Option(
        Path(DEFAULT_PACKAGES_FILENAME),
        "--output",
        dir_okay=False,
        help="Generated manifest path.",
    ),
    refresh_versions: bool = typer.Option(
        False,
        "--refresh-versions",
        help="Refresh version lists from GitHub even when the versions file exists.",
    ),
    engines: list[str] | None = typer.Option(
        None,
        "--engine",
        help="Engine to include; may be repeated (defaults to all).",
    ),
) -> None:
    """Refresh version lists, hash missing artifacts and write packages.json."""
    selected = engines or list(ENGINES)
    unknown = sorted(set(selected) - set(ENGINES))
    if unknown:
        typer.echo(f"Unknown engine(s): {', '.join(unknown)}", err=True)
        raise typer.Exit(code=2)

    try:
        with build_github_client() as github, httpx.Client(follow_redirects=True, timeout=300.0) as downloads:
            engine_versions = load_engine_versions(
                versions_file,
                refresh=refresh_versions,
                client=github,
                engines=selected,
            )
            cache = load_hash_cache(cache_file)
            added = update_hash_cache(cache, engine_versions, client=downloads, cache_path=cache_file)
    except (httpx.HTTPError, ValueError, OSError) as exc:
        typer.echo(f"Manifest update failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    packages = build_packages(cache)
    write_packages(output, packages)
    total = sum(len(entries) for entries in packages.values())
    typer.echo(f"Hashed {added} new artifact(s); wrote {total} package entries to {output}.")


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
