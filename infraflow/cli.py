"""CLI entry point for infraflow, built on cli-core-yo.

Provides ``reconcile``, ``delete``, ``force-delete`` and ``state`` commands
that drive the reconciliation flow for one or more owner manifests.  Owner
status (including the state blob) is kept under the XDG config directory
between runs.

Usage::

    infraflow --help
    infraflow reconcile alpha.yaml beta.yaml --secrets secrets.yaml
    infraflow delete alpha.yaml --secrets secrets.yaml
    infraflow state alpha.yaml
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from cli_core_yo import output
from cli_core_yo.app import create_app
from cli_core_yo.runtime import _reset, initialize
from cli_core_yo.spec import CliSpec, XdgSpec

from infraflow import ui
from infraflow.errors import (
    EXIT_CONFIGURATION_FAILURE,
    EXIT_SUCCESS,
    InfraFlowError,
    exit_code_for,
)

# ── App specification ────────────────────────────────────────────────────────

spec = CliSpec(
    prog_name="infraflow",
    app_display_name="Cluster Infrastructure Flow",
    dist_name="cluster-infraflow",
    root_help=(
        "Provision and tear down cluster networking infrastructure "
        "across the native and compatibility cloud APIs."
    ),
    xdg=XdgSpec(app_dir_name="infraflow"),
)

app = create_app(spec)


# ── Root callback (global options) ───────────────────────────────────────────


@app.callback()
def _root_callback(
    json_flag: bool = typer.Option(
        False, "--json", "-j", help="Output as JSON."
    ),
) -> None:
    """Cluster infrastructure reconciliation."""
    _reset()
    debug = os.environ.get("CLI_CORE_YO_DEBUG") == "1"
    xdg_paths = app._cli_core_yo_xdg_paths  # type: ignore[attr-defined]
    initialize(spec, xdg_paths, json_mode=json_flag, debug=debug)


# ── Shared helpers ───────────────────────────────────────────────────────────


def _setup(
    config: Optional[str],
    secrets: Optional[str],
    state_dir: Optional[str],
    debug: bool,
):
    from infraflow.config.loader import load_config
    from infraflow.controller.actuator import Actuator
    from infraflow.manifests import FileSecretResolver
    from infraflow.state.store import FileOwnerStore

    logging.basicConfig(level=logging.DEBUG if debug else logging.WARNING)
    operator_config = load_config(config)
    store = FileOwnerStore(Path(state_dir) if state_dir else None)
    actuator = Actuator(operator_config, store, FileSecretResolver(secrets))
    return operator_config, store, actuator


def _load_owners(manifests: List[str], store) -> List[Tuple]:
    from infraflow.manifests import load_manifest

    owners = []
    for manifest in manifests:
        infra, cluster = load_manifest(manifest)
        store.load(infra)
        owners.append((infra, cluster))
    return owners


def _run(
    operation: str,
    manifests: List[str],
    *,
    config: Optional[str],
    secrets: Optional[str],
    state_dir: Optional[str],
    timeout: Optional[float],
    debug: bool,
) -> int:
    from infraflow.controller.runner import ReconcileRunner
    from infraflow.flow.context import ReconcileContext

    try:
        operator_config, store, actuator = _setup(config, secrets, state_dir, debug)
        owners = _load_owners(manifests, store)
    except InfraFlowError as exc:
        output.error(str(exc))
        return EXIT_CONFIGURATION_FAILURE

    ui.phase(operation.replace("_", "-").upper())
    started = time.monotonic()
    ctx = ReconcileContext(timeout=timeout)
    results = {}
    with ReconcileRunner(actuator, operator_config.max_concurrent_reconciles) as runner:
        errors = runner.run_all(operation, owners, ctx)

    rc = EXIT_SUCCESS
    failures = []
    for infra, _cluster in owners:
        err = errors.get(infra.key)
        status = infra.status.provider_status
        if err is None:
            ui.ok(f"{infra.key}: {status.phase if status else 'done'}")
        else:
            ui.fail(f"{infra.key}: {err}")
            failures.append(f"{infra.key}: {', '.join(c.value for c in err.codes) or 'retryable'}")
            rc = max(rc, exit_code_for(err))
        results[infra.key] = status.model_dump(mode="json") if status else None

    ui.info(f"elapsed {ui.elapsed_str(time.monotonic() - started)}")
    if rc == EXIT_SUCCESS:
        output.success(f"{operation.replace('_', '-')} finished for {len(owners)} owner(s).")
    else:
        ui.error_panel("Not converged", "\n".join(failures) + "\n\nRe-run to retry.")
    if debug:
        output.detail(json.dumps(results, indent=2, sort_keys=True))
    return rc


_CONFIG_OPT = typer.Option(None, "--config", help="Operator config YAML.")
_SECRETS_OPT = typer.Option(None, "--secrets", help="Secrets YAML keyed by namespace/name.")
_STATE_DIR_OPT = typer.Option(
    None, "--state-dir", help="Where owner status is kept. Default: XDG config dir.",
)
_TIMEOUT_OPT = typer.Option(None, "--timeout", help="Overall deadline in seconds.")
_DEBUG_OPT = typer.Option(False, "--debug", help="Enable debug logging.")


# ── reconcile command ────────────────────────────────────────────────────────


@app.command()
def reconcile(
    manifests: List[str] = typer.Argument(..., help="Owner manifest YAML files."),
    config: Optional[str] = _CONFIG_OPT,
    secrets: Optional[str] = _SECRETS_OPT,
    state_dir: Optional[str] = _STATE_DIR_OPT,
    timeout: Optional[float] = _TIMEOUT_OPT,
    debug: bool = _DEBUG_OPT,
) -> None:
    """Create or complete the infrastructure for each manifest.

    Exit codes: 0 = converged, 1 = retryable failure,
    2 = configuration failure, 3 = cancelled.

    Environment variables:
      INFRAFLOW_FEATURE_GATES              e.g. UseNativeInfrastructure=false
      INFRAFLOW_LABEL_DOMAIN               label prefix for created resources
      INFRAFLOW_MAX_CONCURRENT_RECONCILES  worker pool size
    """
    output.action(f"Reconciling {len(manifests)} owner(s) ...")
    raise typer.Exit(_run(
        "reconcile", manifests,
        config=config, secrets=secrets, state_dir=state_dir, timeout=timeout, debug=debug,
    ))


# ── delete command ───────────────────────────────────────────────────────────


@app.command()
def delete(
    manifests: List[str] = typer.Argument(..., help="Owner manifest YAML files."),
    config: Optional[str] = _CONFIG_OPT,
    secrets: Optional[str] = _SECRETS_OPT,
    state_dir: Optional[str] = _STATE_DIR_OPT,
    timeout: Optional[float] = _TIMEOUT_OPT,
    debug: bool = _DEBUG_OPT,
) -> None:
    """Delete the infrastructure recorded for each manifest, in reverse order."""
    output.action(f"Deleting infrastructure of {len(manifests)} owner(s) ...")
    raise typer.Exit(_run(
        "delete", manifests,
        config=config, secrets=secrets, state_dir=state_dir, timeout=timeout, debug=debug,
    ))


# ── force-delete command ─────────────────────────────────────────────────────


@app.command("force-delete")
def force_delete(
    manifests: List[str] = typer.Argument(..., help="Owner manifest YAML files."),
    config: Optional[str] = _CONFIG_OPT,
    secrets: Optional[str] = _SECRETS_OPT,
    state_dir: Optional[str] = _STATE_DIR_OPT,
    timeout: Optional[float] = _TIMEOUT_OPT,
    debug: bool = _DEBUG_OPT,
) -> None:
    """Best-effort delete; failures are logged and the command still exits 0."""
    output.action(f"Force-deleting infrastructure of {len(manifests)} owner(s) ...")
    raise typer.Exit(_run(
        "force_delete", manifests,
        config=config, secrets=secrets, state_dir=state_dir, timeout=timeout, debug=debug,
    ))


# ── state command ────────────────────────────────────────────────────────────


@app.command()
def state(
    manifest: str = typer.Argument(..., help="Owner manifest YAML file."),
    state_dir: Optional[str] = _STATE_DIR_OPT,
) -> None:
    """Show the recorded state for a manifest."""
    from infraflow.manifests import load_manifest
    from infraflow.state.store import FileOwnerStore, decode_state

    try:
        infra, _cluster = load_manifest(manifest)
        FileOwnerStore(Path(state_dir) if state_dir else None).load(infra)
        recorded = decode_state(infra.status.state)
    except InfraFlowError as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_CONFIGURATION_FAILURE) from exc

    if recorded.is_empty:
        output.warn(f"No resources recorded for {infra.key}.")
    else:
        ui.console.print(ui.state_table(recorded))
    status = infra.status.provider_status
    if status is not None:
        ui.detail("phase", status.phase)
        if status.last_error:
            ui.detail("last error", status.last_error)
    output.detail(recorded.to_sorted_json())
    raise typer.Exit(EXIT_SUCCESS)


# ── Entry point ──────────────────────────────────────────────────────────────


def main() -> int:
    """Run the CLI and return an exit code."""
    try:
        app()
        return 0
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
