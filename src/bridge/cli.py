"""Resource Bridge CLI (bridge).

Offline tooling for provider authors and operators: validate registrations
and overrides before deploying, and preview what the engine does with a
captured observation.

Usage:
    bridge validate mypkg.resources:build_registry --overrides overrides.yaml
    bridge late-init mypkg.resources:build_registry example_bucket spec.json observed.json
    bridge partition mypkg.resources:build_registry example_bucket observed.json

REGISTRY is "module:attribute", where the attribute is either a
ResourceConfigRegistry or a callable taking an EngineConfig and returning one.
"""

from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from .config import ConfigurationError, EngineConfig
from .main import setup_logging
from .overrides import OverridesConfig, OverridesError
from .registry import RegisteredResource, ResourceConfigRegistry, UnknownResourceError
from .sensitive import SensitiveExtractionError

# Connection values are never printed
REDACTED = "<redacted>"


def load_registry(target: str, config: EngineConfig) -> ResourceConfigRegistry:
    """Import a registry from a "module:attribute" reference.

    Raises:
        click.ClickException: If the reference cannot be loaded.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise click.ClickException(f"Registry must be given as module:attribute, got {target!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.ClickException(f"Cannot import module '{module_name}': {e}") from e

    try:
        obj = getattr(module, attribute)
    except AttributeError as e:
        raise click.ClickException(f"Module '{module_name}' has no attribute '{attribute}'") from e

    if callable(obj) and not isinstance(obj, ResourceConfigRegistry):
        try:
            obj = obj(config)
        except ConfigurationError as e:
            raise click.ClickException(f"Invalid resource configuration: {e}") from e

    if not isinstance(obj, ResourceConfigRegistry):
        raise click.ClickException(f"'{target}' is not a ResourceConfigRegistry")
    return obj


def load_with_overrides(
    target: str,
    config: EngineConfig,
    overrides_file: Path | None = None,
) -> tuple[ResourceConfigRegistry, list[str]]:
    """Load a registry and layer operator overrides onto it.

    Uses BRIDGE_OVERRIDES_FILE when no overrides file is given, the same way
    the engine does at startup.

    Returns:
        The registry and the resource types the overrides were applied to.
    """
    registry = load_registry(target, config)
    overrides_file = overrides_file or config.overrides_file
    if overrides_file is None:
        return registry, []
    try:
        applied = OverridesConfig.from_file(overrides_file).apply(registry)
    except OverridesError as e:
        raise click.ClickException(f"Invalid overrides: {e}") from e
    return registry, applied


def read_json(path: Path) -> Any:
    """Read a JSON document, failing with a CLI error."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise click.ClickException(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON in {path}: {e}") from e


def read_object(path: Path) -> dict[str, Any]:
    data = read_json(path)
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    return data


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="bridge")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Resource Bridge CLI (bridge).

    Validate resource registrations and preview late initialization and
    sensitive partitioning offline.
    """
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    # Logs go to stderr so command output stays parseable
    setup_logging(config, stream=sys.stderr)
    ctx.obj = config


@cli.command()
@click.argument("registry")
@click.option(
    "--overrides",
    "-o",
    "overrides_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Operator overrides YAML to apply on top of the registry",
)
@click.pass_obj
def validate(config: EngineConfig, registry: str, overrides_file: Path | None) -> None:
    """Validate registrations and overrides against the typed schemas."""
    loaded, applied = load_with_overrides(registry, config, overrides_file)
    if applied:
        click.echo(f"Applied overrides to {len(applied)} resource type(s)")

    for registered in loaded:
        cfg = registered.config
        click.echo(
            f"  {registered.name}: kind={cfg.kind or '-'} "
            f"references={len(cfg.references)} "
            f"ignored={len(cfg.late_init.ignored_fields)} "
            f"sensitive={len(registered.sensitive.sensitive_paths)}"
        )
    click.secho(f"✓ {len(loaded)} resource type(s) valid", fg="green")


@cli.command("late-init")
@click.argument("registry")
@click.argument("resource_type")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("observed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def late_init(
    config: EngineConfig,
    registry: str,
    resource_type: str,
    spec_file: Path,
    observed_file: Path,
) -> None:
    """Preview late initialization of SPEC_FILE from OBSERVED_FILE."""
    registered = _get(load_with_overrides(registry, config)[0], resource_type)

    try:
        spec = registered.config.parameters_model.model_validate(read_object(spec_file))
    except ValidationError as e:
        raise click.ClickException(f"Spec does not match {resource_type}: {e}") from e

    result = registered.late_init.merge(spec, read_object(observed_file))
    echo_json(
        {
            "for_provider": result.spec.model_dump(mode="json", exclude_none=True),
            "initialized": result.initialized,
            "skipped": [str(mismatch) for mismatch in result.skipped],
        }
    )


@cli.command()
@click.argument("registry")
@click.argument("resource_type")
@click.argument("observed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def partition(
    config: EngineConfig,
    registry: str,
    resource_type: str,
    observed_file: Path,
) -> None:
    """Preview the status/secret split of OBSERVED_FILE (values redacted)."""
    registered = _get(load_with_overrides(registry, config)[0], resource_type)
    try:
        split = registered.sensitive.partition(read_object(observed_file))
    except SensitiveExtractionError as e:
        raise click.ClickException(str(e)) from e
    echo_json(
        {
            "visible": split.visible,
            "connection": {key: REDACTED for key in sorted(split.connection)},
        }
    )


def _get(registry: ResourceConfigRegistry, resource_type: str) -> RegisteredResource:
    try:
        return registry.get(resource_type)
    except UnknownResourceError as e:
        raise click.ClickException(str(e.args[0])) from e


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
