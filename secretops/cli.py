"""Main CLI entry point for SecretOps.

This module provides the command-line interface for SecretOps, a secret
lifecycle controller for Kubernetes workloads. It includes commands for
creating, rotating, updating, deleting and verifying secret bundles, an
audit trail of every version change, and Vault bootstrap.

The CLI is built using Click. Every command loads ``secretops.yml`` through
the ConfigManager and routes failures through the ErrorHandler.
"""

import json
import os
import sys
from typing import Dict, List, Optional, Tuple

import click

from secretops import __version__
from secretops.utils.errors import ErrorHandler
from secretops.utils.logging import setup_logging


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
@click.option("--log-file", help="Log to file in addition to console")
@click.option(
    "--config",
    "-c",
    "config_file",
    envvar="SECRETOPS_CONFIG",
    help="Configuration file (default: ./secretops.yml)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    dry_run: bool,
    log_file: Optional[str],
    config_file: Optional[str],
) -> None:
    """SecretOps - secret lifecycle controller for Kubernetes workloads.

    Creates, rotates, updates and deletes secret bundles, restarts the
    workloads that consume them in dependency order, and verifies that
    every declared reference still resolves.

    Args:
        ctx: Click context object containing shared state
        verbose: Enable verbose output for detailed logging
        dry_run: Show what would be done without executing commands
        log_file: Optional path to log file for additional logging
        config_file: Optional path to the configuration file
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["dry_run"] = dry_run
    ctx.obj["log_file"] = log_file
    ctx.obj["config_file"] = config_file
    ctx.obj["error_handler"] = ErrorHandler(verbose=verbose)

    # Setup logging
    setup_logging(verbose=verbose, log_file=log_file)


def _config_manager(ctx: click.Context):
    from secretops.config import ConfigManager

    return ConfigManager(config_file=ctx.obj.get("config_file"))


def _parse_assignments(assignments: Tuple[str, ...]) -> Dict[str, bytes]:
    """Parse ``key=value`` pairs; ``key=@path`` reads the value from a file."""
    keys: Dict[str, bytes] = {}
    for assignment in assignments:
        if "=" not in assignment:
            raise click.BadParameter(f"Expected key=value, got '{assignment}'", param_hint="--set")
        key, value = assignment.split("=", 1)
        if value.startswith("@"):
            try:
                with open(value[1:], "rb") as f:
                    keys[key] = f.read()
            except OSError as e:
                raise click.BadParameter(f"Cannot read {value[1:]}: {e}", param_hint="--set")
        else:
            keys[key] = value.encode("utf-8")
    return keys


def _echo_result(result) -> None:
    """Print an OperationResult the way every mutating command reports."""
    for event, name in result.events:
        click.echo(f"  {event:<8} {name}")
    for name in result.succeeded:
        click.echo(f"✓ {result.operation} {name}")
    for name, message in result.failed.items():
        click.echo(f"✗ {result.operation} {name}: {message}", err=True)
    for name in result.skipped:
        click.echo(f"⚠ skipped {name}", err=True)
    for warning in result.warnings:
        click.echo(f"⚠ {warning}", err=True)
    for outcome in result.restarts:
        if outcome.error:
            click.echo(f"✗ {outcome.workload} ({outcome.tier}): {outcome.error}", err=True)
    if result.record is not None:
        record = result.record
        click.echo(f"Audit: {record.bundle_name} v{record.old_version} -> v{record.new_version} by {record.initiator}")


@cli.command()
@click.argument("names", nargs=-1)
@click.option("--halt-on-failure", is_flag=True, help="Stop at the first failed bundle")
@click.option("--parallel", default=1, type=click.IntRange(1, 32), help="Apply up to N bundles concurrently")
@click.pass_context
def create(ctx: click.Context, names: Tuple[str, ...], halt_on_failure: bool, parallel: int) -> None:
    """Create the declared bundles (all of them, or only NAMES).

    Keys declared under 'generate' that have no value are filled in with
    freshly generated secrets. Every bundle is attempted; the command exits
    non-zero when any of them failed.
    """
    failed = False
    try:
        from secretops.store.generator import SecretGenerator

        config_manager = _config_manager(ctx)
        declared = config_manager.bundle_specs()

        unknown = [name for name in names if name not in declared]
        if unknown:
            raise click.BadParameter(f"Not declared in configuration: {', '.join(unknown)}", param_hint="NAMES")

        selected = [declared[name] for name in names] if names else list(declared.values())
        if not selected:
            click.echo("No bundles declared")
            return

        if ctx.obj["dry_run"]:
            for spec in selected:
                generated = sorted(set(spec.generate) - set(spec.keys))
                extra = f" (generating: {', '.join(generated)})" if generated else ""
                click.echo(f"DRY RUN: Would create {spec.name} [{spec.type.value}]{extra}")
            return

        generator = SecretGenerator()
        specs = [generator.fill_missing(spec) for spec in selected]

        click.echo(f"Creating {len(specs)} bundle(s)...")
        orchestrator = config_manager.create_orchestrator()
        result = orchestrator.create_all(specs, halt_on_failure=halt_on_failure, parallel=parallel)
        _echo_result(result)

        if result.ok:
            click.echo(f"✓ Created {len(result.succeeded)} bundle(s)")
        else:
            click.echo(f"✗ {len(result.failed)} of {len(specs)} bundle(s) failed", err=True)
            failed = True

    except click.BadParameter:
        raise
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Bundle creation")

    if failed:
        ctx.exit(1)


@cli.command(name="list")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table", help="Output format")
@click.pass_context
def list_bundles(ctx: click.Context, output_format: str) -> None:
    """List bundles in the store. Values are never shown."""
    try:
        config_manager = _config_manager(ctx)
        bundles = config_manager.create_store_client().list()

        if output_format == "json":
            click.echo(json.dumps([bundle.to_dict() for bundle in bundles], indent=2))
            return

        if not bundles:
            click.echo("No bundles found")
            return

        width = max(len(bundle.name) for bundle in bundles)
        click.echo(f"{'NAME':<{width}}  {'TYPE':<13}  {'VERSION':>7}  KEYS")
        for bundle in bundles:
            click.echo(f"{bundle.name:<{width}}  {bundle.type.value:<13}  {bundle.version:>7}  {', '.join(bundle.key_names)}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Bundle listing")


@cli.command()
@click.argument("name")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text", help="Output format")
@click.pass_context
def describe(ctx: click.Context, name: str, output_format: str) -> None:
    """Show a bundle's type, version and key sizes."""
    try:
        config_manager = _config_manager(ctx)
        info = config_manager.create_store_client().describe(name)

        if output_format == "json":
            click.echo(json.dumps(info, indent=2))
            return

        click.echo(f"Name:     {info['name']}")
        click.echo(f"Type:     {info['type']}")
        click.echo(f"Version:  {info['version']}")
        click.echo(f"Location: {info['location']}")
        click.echo("Keys:")
        for key, size in info["sizes"].items():
            click.echo(f"  {key}: {size} bytes")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Bundle description")


@cli.command()
@click.argument("name")
@click.argument("key")
@click.pass_context
def decode(ctx: click.Context, name: str, key: str) -> None:
    """Print the value of KEY in bundle NAME."""
    try:
        config_manager = _config_manager(ctx)
        value = config_manager.create_store_client().decode(name, key)

        click.echo(f"⚠ Printing secret value of {name}/{key}", err=True)
        try:
            click.echo(value.decode("utf-8"))
        except UnicodeDecodeError:
            sys.stdout.buffer.write(value)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Secret decoding")


def _declared_keys(config_manager, name: str, store) -> Dict[str, bytes]:
    """Keys a bundle should hold according to configuration.

    Generated keys keep their current value when the bundle exists, so an
    update from configuration never silently rotates them.
    """
    from secretops.store.generator import SecretGenerator
    from secretops.utils.errors import NotFound

    spec = config_manager.bundle_specs().get(name)
    if spec is None:
        config_manager.bundle_entry(name)

    keys = dict(spec.keys)
    try:
        current = store.get(name).keys
    except NotFound:
        current = {}
    for key in spec.generate:
        if key not in keys and key in current:
            keys[key] = current[key]
    keys.update(SecretGenerator().regenerate(spec.generate, only=keys))
    return keys


@cli.command()
@click.argument("name")
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE", help="Key to write (KEY=@FILE reads a file)")
@click.option(
    "--type",
    "bundle_type",
    type=click.Choice(["generic", "registry-auth", "basic-auth", "ssh-auth"]),
    help="Bundle type (default: current or declared type)",
)
@click.option("--propagate", is_flag=True, help="Restart referencing workloads afterwards")
@click.option("--initiator", help="Name recorded in the audit log")
@click.pass_context
def update(
    ctx: click.Context,
    name: str,
    assignments: Tuple[str, ...],
    bundle_type: Optional[str],
    propagate: bool,
    initiator: Optional[str],
) -> None:
    """Replace the keys of bundle NAME.

    With --set the given keys become the bundle's full key set; without it
    the keys declared in configuration are applied. Workloads are restarted
    only with --propagate.
    """
    keys = _parse_assignments(assignments)

    if ctx.obj["dry_run"]:
        source = ", ".join(sorted(keys)) if keys else "declared configuration"
        click.echo(f"DRY RUN: Would update {name} with keys from {source}")
        if propagate:
            click.echo(f"DRY RUN: Would restart workloads referencing {name}")
        return

    failed = False
    try:
        from secretops.store.models import BundleType

        config_manager = _config_manager(ctx)
        store = config_manager.create_store_client()
        if not keys:
            keys = _declared_keys(config_manager, name, store)

        orchestrator = config_manager.create_orchestrator(store=store)
        result = orchestrator.update(
            name,
            keys,
            bundle_type=BundleType.parse(bundle_type) if bundle_type else None,
            propagate=propagate,
            initiator=initiator,
        )
        _echo_result(result)

        if result.ok:
            click.echo(f"✓ Updated {name}")
        else:
            failed = True
            if result.error is not None:
                ctx.obj["error_handler"].handle_error(result.error, "Bundle update")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Bundle update")

    if failed:
        ctx.exit(1)


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, names: Tuple[str, ...], yes: bool) -> None:
    """Delete bundles NAMES. Absent bundles are ignored.

    Bundles still referenced by a workload are deleted too; a warning names
    the workloads that will lose them.
    """
    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would delete {', '.join(names)}")
        return

    if not yes:
        click.confirm(f"Delete {len(names)} bundle(s): {', '.join(names)}?", abort=True)

    failed = False
    try:
        config_manager = _config_manager(ctx)
        orchestrator = config_manager.create_orchestrator()
        result = orchestrator.delete(names)
        _echo_result(result)
        failed = not result.ok

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Bundle deletion")

    if failed:
        ctx.exit(1)


@cli.command()
@click.argument("name")
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE", help="New value for a key (KEY=@FILE reads a file)")
@click.option("--generate", "generate", is_flag=True, help="Regenerate every key declared under 'generate'")
@click.option("--initiator", help="Name recorded in the audit log")
@click.pass_context
def rotate(
    ctx: click.Context,
    name: str,
    assignments: Tuple[str, ...],
    generate: bool,
    initiator: Optional[str],
) -> None:
    """Rotate bundle NAME and restart the workloads that use it.

    New values are merged over the current ones and derived keys are
    re-rendered. Data-tier workloads restart first; consumers restart only
    after they are ready. A failed restart never rolls the value back.
    """
    keys = _parse_assignments(assignments)
    if not keys and not generate:
        raise click.UsageError("Nothing to rotate: give --set KEY=VALUE and/or --generate")

    failed = False
    try:
        config_manager = _config_manager(ctx)

        if generate:
            from secretops.store.generator import SecretGenerator

            spec = config_manager.bundle_specs().get(name)
            if spec is None:
                config_manager.bundle_entry(name)
            if not spec.generate:
                raise click.UsageError(f"Bundle {name} declares no generated keys")
            generated = SecretGenerator().regenerate(spec.generate, only=keys)
            keys.update(generated)

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would rotate {name} keys: {', '.join(sorted(keys))}")
            for tier, members in _restart_plan(config_manager, name):
                click.echo(f"DRY RUN: Would restart {tier.value} tier: {', '.join(w.name for w in members)}")
            return

        click.echo(f"Rotating {name}...")
        orchestrator = config_manager.create_orchestrator()
        result = orchestrator.rotate(name, keys, initiator=initiator)
        _echo_result(result)

        if result.ok:
            click.echo(f"✓ Rotated {name}")
        else:
            failed = True
            if result.error is not None:
                ctx.obj["error_handler"].handle_error(result.error, "Secret rotation")

    except click.UsageError:
        raise
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Secret rotation")

    if failed:
        ctx.exit(1)


def _restart_plan(config_manager, name: str):
    from secretops.workloads.models import restart_plan

    return restart_plan(config_manager.workloads(), name)


@cli.command()
@click.argument("name")
@click.pass_context
def propagate(ctx: click.Context, name: str) -> None:
    """Restart the workloads that reference NAME, data tier first.

    Use after a rotation whose restarts timed out once the workloads are
    healthy again.
    """
    failed = False
    try:
        config_manager = _config_manager(ctx)

        if ctx.obj["dry_run"]:
            for tier, members in _restart_plan(config_manager, name):
                click.echo(f"DRY RUN: Would restart {tier.value} tier: {', '.join(w.name for w in members)}")
            return

        result = config_manager.create_orchestrator().propagate(name)
        _echo_result(result)

        if result.ok:
            click.echo(f"✓ Workloads using {name} restarted")
        else:
            failed = True
            if result.error is not None:
                ctx.obj["error_handler"].handle_error(result.error, "Restart propagation")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Restart propagation")

    if failed:
        ctx.exit(1)


@cli.command()
@click.argument("name")
@click.pass_context
def health(ctx: click.Context, name: str) -> None:
    """Show readiness of every workload that references NAME."""
    failed = False
    try:
        config_manager = _config_manager(ctx)
        results = config_manager.create_reporter().verify_workload_health(name)

        if not results:
            click.echo(f"No declared workload references {name}")
            return

        for item in results:
            if item.ready:
                click.echo(f"✓ {item.workload} ready")
            else:
                reason = f": {item.error}" if item.error else ""
                click.echo(f"✗ {item.workload} not ready{reason}")
                failed = True

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Workload health check")

    if failed:
        ctx.exit(1)


@cli.command()
@click.option("--live", is_flag=True, help="Also check references found in the running workloads")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text", help="Output format")
@click.pass_context
def verify(ctx: click.Context, live: bool, output_format: str) -> None:
    """Check that every workload reference resolves to an existing key.

    Exits non-zero when any reference points at a missing bundle or key.
    """
    failed = False
    try:
        config_manager = _config_manager(ctx)
        checks = config_manager.create_reporter().verify_references(include_live=live)
        failed = any(not check.ok for check in checks)

        if output_format == "json":
            click.echo(json.dumps([check.to_dict() for check in checks], indent=2))
        else:
            for check in checks:
                marker = "✓" if check.ok else "✗"
                source = " (live)" if check.source == "live" else ""
                click.echo(f"{marker} {check.workload.name}: {check.reference} {check.status.value}{source}")

            if failed:
                drifted = sum(1 for check in checks if not check.ok)
                click.echo(f"✗ {drifted} secret reference(s) do not resolve", err=True)
            else:
                click.echo(f"✓ All {len(checks)} secret reference(s) resolve")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Reference verification")

    if failed:
        ctx.exit(1)


@cli.command()
@click.argument("name", required=False)
@click.option("--export", "export_path", help="Write records as JSON Lines to a file ('-' for stdout)")
@click.pass_context
def audit(ctx: click.Context, name: Optional[str], export_path: Optional[str]) -> None:
    """Show the rotation history, oldest first (all bundles or only NAME)."""
    try:
        config_manager = _config_manager(ctx)
        audit_log = config_manager.audit_log()

        if export_path == "-":
            audit_log.export(sys.stdout, bundle_name=name)
            return

        if export_path:
            with open(export_path, "w", encoding="utf-8") as f:
                count = audit_log.export(f, bundle_name=name)
            os.chmod(export_path, 0o600)
            click.echo(f"✓ Exported {count} record(s) to {export_path}")
            return

        records = audit_log.records(name)
        if not records:
            click.echo("No rotation records")
            return

        for record in records:
            click.echo(
                f"{record.timestamp}  {record.operation:<6}  {record.bundle_name}  "
                f"v{record.old_version} -> v{record.new_version}  {record.initiator}"
            )

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Audit trail")


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing configuration file")
@click.option(
    "--backend",
    type=click.Choice(["kubernetes", "vault", "file", "memory"]),
    default="kubernetes",
    help="Secret store backend",
)
@click.option("--namespace", default="bmi-health-tracker", help="Application namespace")
@click.option("--generate-key", is_flag=True, help="Generate the encryption key for the file backend")
@click.pass_context
def init(ctx: click.Context, force: bool, backend: str, namespace: str, generate_key: bool) -> None:
    """Write a default secretops.yml in the current directory."""
    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would write secretops.yml for namespace {namespace} ({backend} backend)")
        return

    try:
        config_manager = _config_manager(ctx)
        config_path = config_manager.initialize_config(force=force, namespace=namespace, backend=backend)
        click.echo(f"✓ Configuration written to {config_path}")

        if generate_key:
            from secretops.store.backends.file import FileBackend
            from secretops.utils.files import write_private

            key_file = os.path.join(config_manager.base_dir, ".secretops", "store.key")
            if os.path.exists(key_file) and not force:
                click.echo(f"⚠ Keeping existing key {key_file}")
            else:
                write_private(key_file, FileBackend.generate_key())
                click.echo(f"✓ Encryption key written to {key_file}")
                click.echo("⚠ Back up this key; bundles cannot be decrypted without it")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration initialization")


@cli.command(name="vault-setup")
@click.option("--unseal-key", "unseal_keys", multiple=True, help="Unseal key (repeat for each share)")
@click.option("--root-token", envvar="VAULT_ROOT_TOKEN", help="Root token (default: from the init file)")
@click.option("--no-seed", is_flag=True, help="Do not seed declared bundles into Vault")
@click.option("--skip-pod-check", is_flag=True, help="Do not look for the Vault pod with kubectl")
@click.pass_context
def vault_setup(
    ctx: click.Context,
    unseal_keys: Tuple[str, ...],
    root_token: Optional[str],
    no_seed: bool,
    skip_pod_check: bool,
) -> None:
    """Initialize, unseal and configure Vault for the application.

    Every step is idempotent: running it against a configured Vault only
    reports skipped steps. Bundles that already exist in Vault are never
    overwritten.
    """
    failed = False
    try:
        import hvac

        from secretops.store.generator import SecretGenerator
        from secretops.utils.kubectl import Kubectl
        from secretops.vault import VaultBootstrapper

        config_manager = _config_manager(ctx)
        settings = config_manager.vault_settings()

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would bootstrap Vault at {settings.get('url', 'http://localhost:8200')}")
            bootstrapper = VaultBootstrapper(hvac.Client(url=settings.get("url")), settings)
            for number, (step_name, _) in enumerate(bootstrapper.steps, 1):
                click.echo(f"DRY RUN: Step {number}: {step_name}")
            return

        specs: List = []
        if not no_seed:
            generator = SecretGenerator()
            specs = [generator.fill_missing(spec) for spec in config_manager.bundle_specs().values()]

        kubectl = None
        if not skip_pod_check:
            kubectl = Kubectl(namespace=settings.get("namespace", "vault"))

        bootstrapper = VaultBootstrapper(
            hvac.Client(url=settings.get("url", "http://localhost:8200")),
            settings,
            kubectl=kubectl,
            specs=specs,
            unseal_keys=unseal_keys,
            root_token=root_token,
        )

        markers = {"done": "✓", "skipped": "•", "failed": "✗"}

        def show(step) -> None:
            click.echo(f"{markers[step.status]} Step {step.number}: {step.name} ({step.message})")

        click.echo("Bootstrapping Vault...")
        report = bootstrapper.run(on_step=show)

        if report.ok:
            click.echo("✓ Vault setup complete")
            click.echo(f"⚠ Keep {bootstrapper.init_file.path} safe: it holds the unseal keys and root token")
        else:
            failed = True
            ctx.obj["error_handler"].handle_error(report.error, "Vault setup")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Vault setup")

    if failed:
        ctx.exit(1)


if __name__ == "__main__":
    cli()
