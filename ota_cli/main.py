from __future__ import annotations

import argparse
import importlib
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape

from . import __version__
from . import bundle as credential_bundle
from .backends import Backends, DeviceType
from .bundle import BundleError
from .cli_shared import (
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
    OTA_CREDENTIALS,
    OTA_HTTP_TIMEOUT,
    OTA_LOG_LEVEL,
    OTA_MAX_ATTEMPTS,
    GlobalOpts,
    OtaError,
    UsageError,
    _eprint,
    _env_or_none,
    _positive_int,
    _print_json,
    _require_str,
    _unique_values,
)
from .logging import configure_logging, get_logger, normalize_level
from .targets import TargetsDescriptor, TargetsError
from .transport import DecodeError, RejectedError, RetryPolicy, TransportError, _http_request
from .workflow import CampaignWorkflow, WorkflowError

log = get_logger("cli")

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_BUNDLE = 3
EXIT_INPUT = 4
EXIT_TRANSPORT = 5
EXIT_REJECTED = 6
EXIT_DECODE = 7

# Newer typer releases raise exceptions from their own bundled copy of click.
_typer_click = importlib.import_module(typer.BadParameter.__module__)
CLICK_ERRORS = (click.ClickException, _typer_click.ClickException)
CLICK_USAGE_ERRORS = (click.UsageError, _typer_click.UsageError)


def _exit_code(err: OtaError) -> int:
    if isinstance(err, UsageError):
        return EXIT_USAGE
    if isinstance(err, BundleError):
        return EXIT_BUNDLE
    if isinstance(err, (TargetsError, WorkflowError)):
        return EXIT_INPUT
    if isinstance(err, TransportError):
        return EXIT_TRANSPORT
    if isinstance(err, RejectedError):
        return EXIT_REJECTED
    if isinstance(err, DecodeError):
        return EXIT_DECODE
    return 1


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    # Backend messages may contain brackets.
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {escape(msg)}", highlight=False, soft_wrap=True)


def _render_usage_error_with_help(*, message: str, ctx: Any = None) -> None:
    _rich_error(message)
    help_text = ""
    if ctx is not None and callable(getattr(ctx, "get_help", None)):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if help_text:
        _eprint("")
        _eprint(help_text)


def _bootstrap_env() -> None:
    # Use python-dotenv package defaults: discover and load .env without
    # overriding already-exported process environment values.
    load_dotenv()


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _apply_global_env(args: argparse.Namespace) -> GlobalOpts:
    credentials = str(getattr(args, "credentials", None) or _env_or_none(OTA_CREDENTIALS) or "").strip()
    quiet = bool(getattr(args, "quiet", False))
    raw_level = getattr(args, "log_level", None) or _env_or_none(OTA_LOG_LEVEL)
    if raw_level:
        log_level = normalize_level(raw_level)
    else:
        log_level = "ERROR" if quiet else DEFAULT_LOG_LEVEL
    timeout = getattr(args, "timeout", None)
    if timeout is None:
        timeout = _env_or_none(OTA_HTTP_TIMEOUT) or DEFAULT_TIMEOUT_SECONDS
    max_attempts = getattr(args, "max_attempts", None)
    if max_attempts is None:
        max_attempts = _env_or_none(OTA_MAX_ATTEMPTS) or DEFAULT_MAX_ATTEMPTS
    return GlobalOpts(
        credentials=credentials,
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=quiet,
        log_level=log_level,
        timeout_seconds=_positive_int(timeout, "timeout", hint=f"--timeout or env {OTA_HTTP_TIMEOUT}"),
        max_attempts=_positive_int(max_attempts, "max attempts", hint=f"--max-attempts or env {OTA_MAX_ATTEMPTS}"),
    )


def _retry_policy(g: GlobalOpts) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=g.max_attempts,
        total_timeout_seconds=float(g.timeout_seconds),
        request_timeout_seconds=float(min(g.timeout_seconds, 30)),
    )


def _backends(g: GlobalOpts) -> Backends:
    path = _require_str(g.credentials, "credentials bundle", hint=f"--credentials or env {OTA_CREDENTIALS}")
    bundle = credential_bundle.load(path)
    return Backends(bundle, policy=_retry_policy(g), transport=_http_request)


# Command implementations.


def cmd_campaign_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    update_id = str(args.update or "").strip()
    targets_path = str(args.targets or "").strip()
    if bool(update_id) == bool(targets_path):
        raise UsageError("pass exactly one of --update or --targets")
    groups = _unique_values(args.group)
    backends = _backends(g)
    if targets_path:
        descriptor = TargetsDescriptor.from_file(targets_path)
        workflow = CampaignWorkflow(campaigner=backends.campaigner(), director=backends.director())
        campaign = workflow.rollout(descriptor, name=args.name, groups=groups, launch=bool(args.launch))
    else:
        workflow = CampaignWorkflow(campaigner=backends.campaigner())
        if args.launch:
            campaign = workflow.create_and_launch(args.name, update_id, groups)
        else:
            campaign = workflow.create_campaign(args.name, update_id, groups)
    _print_json({"kind": "ota.campaign.v1", "campaign": campaign.to_dict()}, pretty=g.pretty)
    return 0


def _campaign_workflow(g: GlobalOpts) -> CampaignWorkflow:
    return CampaignWorkflow(campaigner=_backends(g).campaigner())


def cmd_campaign_get(args: argparse.Namespace, g: GlobalOpts) -> int:
    campaign = _campaign_workflow(g).get(args.campaign)
    _print_json({"kind": "ota.campaign.v1", "campaign": campaign.to_dict()}, pretty=g.pretty)
    return 0


def cmd_campaign_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    page = _campaign_workflow(g).list()
    _print_json({"kind": "ota.campaign.list.v1", "campaigns": page.to_dict()}, pretty=g.pretty)
    return 0


def cmd_campaign_launch(args: argparse.Namespace, g: GlobalOpts) -> int:
    _campaign_workflow(g).launch(args.campaign)
    _print_json({"kind": "ota.campaign.launch.v1", "campaignId": args.campaign}, pretty=g.pretty)
    return 0


def cmd_campaign_cancel(args: argparse.Namespace, g: GlobalOpts) -> int:
    _campaign_workflow(g).cancel(args.campaign)
    _print_json({"kind": "ota.campaign.cancel.v1", "campaignId": args.campaign}, pretty=g.pretty)
    return 0


def cmd_campaign_stats(args: argparse.Namespace, g: GlobalOpts) -> int:
    stats = _campaign_workflow(g).stats(args.campaign)
    _print_json(
        {"kind": "ota.campaign.stats.v1", "campaignId": stats.campaign_id, "stats": stats.to_dict()},
        pretty=g.pretty,
    )
    return 0


def cmd_update_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    descriptor = TargetsDescriptor.from_file(args.targets)
    # Validate before the bundle is even opened.
    descriptor.validate()
    workflow = CampaignWorkflow(director=_backends(g).director())
    update_id = workflow.create_update(descriptor)
    _print_json(
        {"kind": "ota.update.v1", "updateId": update_id, "hardwareIds": descriptor.hardware_ids},
        pretty=g.pretty,
    )
    return 0


def cmd_update_launch(args: argparse.Namespace, g: GlobalOpts) -> int:
    update_id = _require_str(args.update, "update id", hint="--update")
    device_id = _require_str(args.device, "device id", hint="--device")
    _backends(g).director().assign_update(device_id=device_id, update_id=update_id)
    _print_json(
        {"kind": "ota.update.launch.v1", "updateId": update_id, "deviceId": device_id},
        pretty=g.pretty,
    )
    return 0


def cmd_device_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    if args.device and args.group:
        raise UsageError("pass at most one of --device or --group")
    registry = _backends(g).registry()
    if args.device:
        out: dict[str, Any] = {"kind": "ota.device.v1", "device": registry.get_device(args.device).to_dict()}
    elif args.group:
        out = {
            "kind": "ota.group.devices.v1",
            "groupId": args.group,
            "devices": registry.list_group_devices(args.group).to_dict(),
        }
    else:
        out = {"kind": "ota.device.list.v1", "devices": registry.list_devices().to_dict()}
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_device_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    if args.vehicle == args.other:
        raise UsageError("pass exactly one of --vehicle or --other")
    device_type = DeviceType.VEHICLE if args.vehicle else DeviceType.OTHER
    name = _require_str(args.name, "device name", hint="--name")
    device_id = _require_str(args.id, "device id", hint="--id")
    uuid = _backends(g).registry().create_device(name=name, device_id=device_id, device_type=device_type)
    _print_json(
        {"kind": "ota.device.create.v1", "uuid": uuid, "deviceName": name, "deviceId": device_id},
        pretty=g.pretty,
    )
    return 0


def cmd_device_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    device_id = _require_str(args.device, "device id", hint="--device")
    _backends(g).registry().delete_device(device_id)
    _print_json({"kind": "ota.device.delete.v1", "deviceId": device_id}, pretty=g.pretty)
    return 0


def cmd_group_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    registry = _backends(g).registry()
    if args.device:
        out: dict[str, Any] = {
            "kind": "ota.device.groups.v1",
            "deviceId": args.device,
            "groups": registry.list_device_groups(args.device).to_dict(),
        }
    else:
        out = {"kind": "ota.group.list.v1", "groups": registry.list_groups().to_dict()}
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_group_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    name = _require_str(args.name, "group name", hint="--name")
    group_id = _backends(g).registry().create_group(name)
    _print_json({"kind": "ota.group.create.v1", "groupId": group_id, "groupName": name}, pretty=g.pretty)
    return 0


def cmd_group_rename(args: argparse.Namespace, g: GlobalOpts) -> int:
    name = _require_str(args.name, "group name", hint="--name")
    group_id = _require_str(args.group, "group id", hint="--group")
    _backends(g).registry().rename_group(group_id=group_id, name=name)
    _print_json({"kind": "ota.group.rename.v1", "groupId": group_id, "groupName": name}, pretty=g.pretty)
    return 0


def _cmd_group_membership(args: argparse.Namespace, g: GlobalOpts, action: str) -> int:
    group_id = _require_str(args.group, "group id", hint="--group")
    device_id = _require_str(args.device, "device id", hint="--device")
    registry = _backends(g).registry()
    if action == "add":
        registry.add_to_group(group_id=group_id, device_id=device_id)
    else:
        registry.remove_from_group(group_id=group_id, device_id=device_id)
    _print_json(
        {"kind": f"ota.group.{action}.v1", "groupId": group_id, "deviceId": device_id},
        pretty=g.pretty,
    )
    return 0


def cmd_group_add(args: argparse.Namespace, g: GlobalOpts) -> int:
    return _cmd_group_membership(args, g, "add")


def cmd_group_remove(args: argparse.Namespace, g: GlobalOpts) -> int:
    return _cmd_group_membership(args, g, "remove")


# Typer surface.


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"ota {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="ota",
    help="Manage over-the-air update campaigns, updates, devices and groups.",
    no_args_is_help=True,
    add_completion=False,
)
campaign_app = typer.Typer(help="Campaign lifecycle (campaigner)", no_args_is_help=True)
update_app = typer.Typer(help="Multi-target updates (director)", no_args_is_help=True)
device_app = typer.Typer(help="Devices (device registry)", no_args_is_help=True)
group_app = typer.Typer(help="Device groups (device registry)", no_args_is_help=True)

app.add_typer(campaign_app, name="campaign")
app.add_typer(update_app, name="update")
app.add_typer(device_app, name="device")
app.add_typer(group_app, name="group")


@app.callback()
def app_callback(
    ctx: typer.Context,
    credentials: str | None = typer.Option(
        None,
        "--credentials",
        "-z",
        help=f"Path to the credentials bundle zip (env override: {OTA_CREDENTIALS})",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help=f"TRACE, DEBUG, INFO, WARNING or ERROR (default {DEFAULT_LOG_LEVEL}; env: {OTA_LOG_LEVEL})",
    ),
    timeout: int | None = typer.Option(
        None,
        "--timeout",
        help=f"Total seconds per backend call, retries included (default {DEFAULT_TIMEOUT_SECONDS}; env: {OTA_HTTP_TIMEOUT})",
    ),
    max_attempts: int | None = typer.Option(
        None,
        "--max-attempts",
        help=f"Attempts per call on network failures (default {DEFAULT_MAX_ATTEMPTS}; env: {OTA_MAX_ATTEMPTS})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    ns = _namespace(
        credentials=credentials,
        log_level=log_level,
        timeout=timeout,
        max_attempts=max_attempts,
        plain_json=plain_json,
        quiet=quiet,
    )
    try:
        g = _apply_global_env(ns)
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)
    configure_logging(g.log_level)
    ctx.obj = {"g": g}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.find_root().obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    try:
        return _apply_global_env(_namespace())
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)
    except OtaError as e:
        log.debug("%s failed: %s", func.__name__, e.to_dict())
        _rich_error(str(e))
        raise typer.Exit(code=_exit_code(e))

    if code:
        raise typer.Exit(code=code)


_CAMPAIGN_OPTION = typer.Option(..., "--campaign", "-c", help="Campaign ID")


@campaign_app.command("create", help="Create a campaign for an update and a set of device groups.")
def campaign_create(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Campaign name"),
    group: list[str] | None = typer.Option(
        None,
        "--group",
        "-g",
        help="Target group ID (repeat or comma-separate)",
    ),
    update: str | None = typer.Option(None, "--update", "-u", help="Existing multi-target update ID"),
    targets: str | None = typer.Option(
        None,
        "--targets",
        "-t",
        help="Targets file; creates the update first instead of --update",
    ),
    launch: bool = typer.Option(False, "--launch", help="Launch the campaign right after creating it"),
) -> None:
    _invoke(ctx, cmd_campaign_create, name=name, group=group or [], update=update, targets=targets, launch=launch)


@campaign_app.command("get", help="Retrieve campaign information.")
def campaign_get(ctx: typer.Context, campaign: str = _CAMPAIGN_OPTION) -> None:
    _invoke(ctx, cmd_campaign_get, campaign=campaign)


@campaign_app.command("list", help="List campaign IDs.")
def campaign_list(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_campaign_list)


@campaign_app.command("launch", help="Launch a created campaign.")
def campaign_launch(ctx: typer.Context, campaign: str = _CAMPAIGN_OPTION) -> None:
    _invoke(ctx, cmd_campaign_launch, campaign=campaign)


@campaign_app.command("stats", help="Retrieve stats from a campaign.")
def campaign_stats(ctx: typer.Context, campaign: str = _CAMPAIGN_OPTION) -> None:
    _invoke(ctx, cmd_campaign_stats, campaign=campaign)


@campaign_app.command("cancel", help="Cancel a campaign.")
def campaign_cancel(ctx: typer.Context, campaign: str = _CAMPAIGN_OPTION) -> None:
    _invoke(ctx, cmd_campaign_cancel, campaign=campaign)


@update_app.command("create", help="Create a multi-target update from a targets file (TOML or JSON).")
def update_create(
    ctx: typer.Context,
    targets: str = typer.Option(..., "--targets", "-t", help="Targets file"),
) -> None:
    _invoke(ctx, cmd_update_create, targets=targets)


@update_app.command("launch", help="Assign a multi-target update to a single device.")
def update_launch(
    ctx: typer.Context,
    update: str = typer.Option(..., "--update", "-u", help="Multi-target update ID"),
    device: str = typer.Option(..., "--device", "-d", help="Device UUID"),
) -> None:
    _invoke(ctx, cmd_update_launch, update=update, device=device)


@device_app.command("list", help="List all devices, one device, or the devices of a group.")
def device_list(
    ctx: typer.Context,
    device: str | None = typer.Option(None, "--device", "-d", help="Show a single device"),
    group: str | None = typer.Option(None, "--group", "-g", help="List device IDs in a group"),
) -> None:
    _invoke(ctx, cmd_device_list, device=device, group=group)


@device_app.command("create", help="Register a new device.")
def device_create(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Device name"),
    id: str = typer.Option(..., "--id", help="Device identifier (e.g. VIN)"),
    vehicle: bool = typer.Option(False, "--vehicle", help="Device type Vehicle"),
    other: bool = typer.Option(False, "--other", help="Device type Other"),
) -> None:
    _invoke(ctx, cmd_device_create, name=name, id=id, vehicle=vehicle, other=other)


@device_app.command("delete", help="Delete a device.")
def device_delete(
    ctx: typer.Context,
    device: str = typer.Option(..., "--device", "-d", help="Device UUID"),
) -> None:
    _invoke(ctx, cmd_device_delete, device=device)


@group_app.command("list", help="List all groups, or the groups a device belongs to.")
def group_list(
    ctx: typer.Context,
    device: str | None = typer.Option(None, "--device", "-d", help="List group IDs for a device"),
) -> None:
    _invoke(ctx, cmd_group_list, device=device)


@group_app.command("create", help="Create a device group.")
def group_create(ctx: typer.Context, name: str = typer.Option(..., "--name", "-n", help="Group name")) -> None:
    _invoke(ctx, cmd_group_create, name=name)


@group_app.command("rename", help="Rename a device group.")
def group_rename(
    ctx: typer.Context,
    group: str = typer.Option(..., "--group", "-g", help="Group ID"),
    name: str = typer.Option(..., "--name", "-n", help="New group name"),
) -> None:
    _invoke(ctx, cmd_group_rename, group=group, name=name)


@group_app.command("add", help="Add a device to a group.")
def group_add(
    ctx: typer.Context,
    group: str = typer.Option(..., "--group", "-g", help="Group ID"),
    device: str = typer.Option(..., "--device", "-d", help="Device UUID"),
) -> None:
    _invoke(ctx, cmd_group_add, group=group, device=device)


@group_app.command("remove", help="Remove a device from a group.")
def group_remove(
    ctx: typer.Context,
    group: str = typer.Option(..., "--group", "-g", help="Group ID"),
    device: str = typer.Option(..., "--device", "-d", help="Device UUID"),
) -> None:
    _invoke(ctx, cmd_group_remove, group=group, device=device)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
    try:
        result = app(args=argv, prog_name="ota", standalone_mode=False)
        if result is None:
            return EXIT_OK
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except CLICK_ERRORS as e:
        if isinstance(e, CLICK_USAGE_ERRORS):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return EXIT_USAGE
    except OtaError as e:
        _rich_error(str(e))
        return _exit_code(e)


if __name__ == "__main__":
    raise SystemExit(main())
