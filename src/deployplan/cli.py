# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click

from deployplan.config import Configuration, TargetScope, load_configuration
from deployplan.errors import ConfigurationError, PlanLoadError, PlanValidationError
from deployplan.loader import BUILTIN_PREFIX, LoadedPlan, load_plan
from deployplan.planner import Plan, build_plan
from deployplan.provisioning import AzCliProvisioner, InMemoryProvisioner, Provisioner
from deployplan.runner import run_plan
from deployplan.ui.console import Console, get_console, set_console

DEFAULT_PLAN = f"{BUILTIN_PREFIX}registration"

EXIT_FAILED = 1
EXIT_INVALID = 2


def find_plan_files() -> list[Path]:
    """
    Find all plan files in the current directory.

    Returns:
        List of Path objects for plan files
    """
    current_dir = Path(".")
    found = set()
    for pattern in ("*_plan.py", "plan.yaml", "plan.yml", "*_plan.yaml", "*_plan.yml"):
        found.update(current_dir.glob(pattern))
    return sorted(found)


def discover_plan(plan_arg: str | None) -> str:
    """
    Discover the plan source from argument or current directory.

    Args:
        plan_arg: Optional --plan argument from CLI

    Returns:
        A plan source understood by load_plan (path or builtin:<name>)

    Raises:
        SystemExit: If the plan cannot be found or multiple plan files exist
    """
    console = get_console()

    if plan_arg:
        if plan_arg.startswith(BUILTIN_PREFIX):
            return plan_arg
        plan_path = Path(plan_arg)
        if not plan_path.exists():
            console.print_error(
                "Plan file not found",
                f"Could not find plan file: {plan_arg}",
                suggestion=f"Create a plan file or use the built-in plan:\n  deployplan deploy --plan {DEFAULT_PLAN}",
            )
            sys.exit(EXIT_INVALID)
        return str(plan_path)

    plan_files = find_plan_files()

    if len(plan_files) > 1:
        file_list = "\n".join(f"  {f}" for f in plan_files)
        console.print_error(
            "Multiple plan files found",
            "Found multiple plan files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a plan explicitly:\n  deployplan deploy --plan my_plan.py",
        )
        sys.exit(EXIT_INVALID)

    if plan_files:
        return str(plan_files[0])

    console.print_debug(f"No plan file found, using {DEFAULT_PLAN}")
    return DEFAULT_PLAN


def _prepare(
    plan_arg: Optional[str],
    config_file: Optional[str],
    overrides: Tuple[str, ...],
    scope: Optional[str],
    strict: bool,
) -> Tuple[LoadedPlan, Plan]:
    """Load plan + configuration and validate. Exits with EXIT_INVALID on any input error."""
    console = get_console()
    source = discover_plan(plan_arg)

    extra: List[str] = list(overrides)
    if scope:
        extra.append(f"scope={scope}")

    try:
        config: Configuration = load_configuration(config_file, extra)
        console.print_debug(f"Configuration: {config.redacted()}")
        loaded = load_plan(source)
        plan = build_plan(loaded.steps, config, name=loaded.name, strict=strict)
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)
    except PlanLoadError as e:
        console.print_error("Failed to load plan", f"Could not load plan from {source}", details=[str(e)])
        sys.exit(EXIT_INVALID)
    except PlanValidationError as e:
        console.print_validation_error(e)
        sys.exit(EXIT_INVALID)

    return loaded, plan


def _provisioner(kind: str, state_file: Optional[str], template_root: str, timeout: Optional[float]) -> Provisioner:
    if kind == "memory":
        return InMemoryProvisioner(state_file=state_file)
    return AzCliProvisioner(template_root=template_root, timeout=timeout)


_plan_option = click.option(
    "--plan",
    "plan_arg",
    default=None,
    help=f"Plan file (.py/.yaml) or builtin:<name> (defaults to a *_plan.py/plan.yaml in cwd, else {DEFAULT_PLAN})",
)
_config_option = click.option(
    "--config",
    "config_file",
    default=None,
    type=click.Path(dir_okay=False),
    help="Configuration file (YAML or JSON)",
)
_set_option = click.option(
    "--set",
    "overrides",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a configuration field (repeatable), e.g. --set deploy_ioa=false",
)
_scope_option = click.option(
    "--scope",
    default=None,
    type=click.Choice([s.value for s in TargetScope]),
    help="Target scope (overrides the configuration file)",
)
_strict_option = click.option(
    "--strict/--no-strict",
    default=True,
    show_default=True,
    help="Prove every output reference for all configurations, not just this one",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """deployplan: conditional deployment plans, executed in dependency order."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@_plan_option
@_config_option
@_set_option
@_scope_option
@_strict_option
def validate(plan_arg, config_file, overrides, scope, strict):
    """Build and validate a plan without executing it."""
    console = get_console()
    _loaded, plan = _prepare(plan_arg, config_file, overrides, scope, strict)
    console.print_plan(plan)
    console.print_info(f"\nPlan is valid: {len(plan.included)} step(s) included, {len(plan.excluded)} excluded.")


@cli.command()
@_plan_option
@_config_option
@_set_option
@_scope_option
@_strict_option
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=True, show_default=True, help="Stop starting new steps after the first failure")
@click.option(
    "--provisioner",
    "provisioner_kind",
    default="azcli",
    show_default=True,
    type=click.Choice(["azcli", "memory"]),
    help="azcli deploys with the Azure CLI; memory is a dry run",
)
@click.option("--state-file", default=None, type=click.Path(dir_okay=False), help="State file for the memory provisioner")
@click.option("--template-root", default=".", show_default=True, type=click.Path(file_okay=False), help="Directory that step targets are relative to")
@click.option("--timeout", default=None, type=float, help="Per-step timeout in seconds (azcli)")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print included/excluded steps before running")
@click.option("--show-outputs/--no-show-outputs", default=False, show_default=True, help="Print collected outputs after the run")
@click.pass_context
def deploy(
    ctx,
    plan_arg,
    config_file,
    overrides,
    scope,
    strict,
    workers,
    fail_fast,
    provisioner_kind,
    state_file,
    template_root,
    timeout,
    print_plan,
    show_outputs,
):
    """Build, validate and execute a deployment plan."""
    console = get_console()
    loaded, plan = _prepare(plan_arg, config_file, overrides, scope, strict)

    try:
        console.print_run_started(
            plan=plan.name,
            source=loaded.source,
            scope=plan.config.scope.value,
            step_count=len(plan.included),
        )
        if print_plan:
            console.print_plan(plan)

        provisioner = _provisioner(provisioner_kind, state_file, template_root, timeout)
        result = run_plan(plan, provisioner, fail_fast=fail_fast, max_workers=workers)

        console.print_results(result)
        if show_outputs:
            console.print_outputs(result.outputs)

        if not result.ok:
            sys.exit(EXIT_FAILED)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
