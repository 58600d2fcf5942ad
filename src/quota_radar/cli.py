"""CLI commands for quota-radar."""

import click


@click.group()
@click.version_option()
def main() -> None:
    """Watch AI model quotas reported by the local language server."""
    pass


def _process_name(pid: int | None) -> str:
    """Best-effort process name for display."""
    import psutil

    if pid is None:
        return "unknown"
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "unknown"


@main.command()
@click.option("--attempts", "-a", default=None, type=int, help="Scan attempts by process name")
def scan(attempts: int | None) -> None:
    """Discover the language server and verify its port."""
    import asyncio

    from quota_radar.config import Config
    from quota_radar.hunter import ProcessHunter
    from quota_radar.logging import configure
    from quota_radar.platforms import select_platform

    config = Config.load()
    configure(config, source="cli")
    strategy = select_platform(product_name=config.discovery.product_name)
    hunter = ProcessHunter(strategy, config)

    result = asyncio.run(hunter.scan_environment(attempts))
    diagnostics = hunter.get_last_diagnostics()

    if result is None:
        messages = hunter.error_messages()
        click.echo(f"Scan failed: {hunter.last_failure or messages.process_not_found}")
        click.echo("Check that:")
        for item in messages.requirements:
            click.echo(f"  - {item}")
    else:
        click.echo(f"Process:        {_process_name(result.pid)} (PID {result.pid})")
        click.echo(f"Extension port: {result.extension_port}")
        click.echo(f"Connect port:   {result.connect_port}")

    click.echo()
    click.echo("Diagnostics:")
    for key, value in diagnostics.to_dict().items():
        click.echo(f"  {key} = {value}")

    if result is None:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Fetch quota once and print it."""
    import asyncio

    from rich.console import Console
    from rich.table import Table

    from quota_radar.config import Config
    from quota_radar.errors import QuotaRadarError
    from quota_radar.formatting import format_percentage
    from quota_radar.logging import configure, quota_color
    from quota_radar.monitor import fetch_snapshot
    from quota_radar.preferences import PreferenceStore

    config = Config.load()
    configure(config, source="cli")
    preferences = PreferenceStore(config.preferences_path, config.grouping.enabled)
    preferences.load()

    try:
        result, snapshot = asyncio.run(fetch_snapshot(config, preferences))
    except QuotaRadarError as e:
        raise click.ClickException(str(e)) from e

    if result is None or snapshot is None:
        raise click.ClickException("Language server not found (run 'quota-radar scan' for details)")

    if snapshot.user_info:
        user = snapshot.user_info
        click.echo(f"{user.name} <{user.email}>  plan: {user.plan_name}  tier: {user.tier}")
    if snapshot.prompt_credits:
        credits = snapshot.prompt_credits
        click.echo(
            f"Prompt credits: {credits.available:g}/{credits.monthly:g} "
            f"({format_percentage(credits.remaining_percentage)} left)"
        )

    table = Table(title="Quota")
    table.add_column("Group" if snapshot.groups else "Model")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets in", justify="right")
    table.add_column("Reset at")

    if snapshot.groups:
        for group in snapshot.groups:
            color = quota_color(group.remaining_percentage)
            table.add_row(
                group.group_name,
                f"[{color}]{format_percentage(group.remaining_percentage)}[/]",
                group.time_until_reset_formatted,
                group.reset_time_display,
            )
    else:
        for model in snapshot.models:
            color = quota_color(model.remaining_percentage)
            table.add_row(
                model.label,
                f"[{color}]{format_percentage(model.remaining_percentage)}[/]",
                model.time_until_reset_formatted,
                model.reset_time_display,
            )

    Console().print(table)


@main.command()
def watch() -> None:
    """Poll the language server until interrupted."""
    import asyncio

    from quota_radar.monitor import run_monitor

    asyncio.run(run_monitor())


@main.command()
@click.option("--auto", "auto", is_flag=True, help="Group models by current quota state")
@click.option("--reset", is_flag=True, help="Forget all saved groups")
@click.option(
    "--name",
    "name",
    nargs=2,
    type=str,
    default=None,
    metavar="MODEL_ID NAME",
    help="Name the group containing MODEL_ID",
)
def group(auto: bool, reset: bool, name: tuple[str, str] | None) -> None:
    """Show or change quota groups."""
    import asyncio

    from quota_radar.config import Config
    from quota_radar.errors import QuotaRadarError
    from quota_radar.grouping import calculate_group_mappings
    from quota_radar.logging import configure
    from quota_radar.monitor import fetch_snapshot
    from quota_radar.preferences import PreferenceStore

    config = Config.load()
    preferences = PreferenceStore(config.preferences_path, config.grouping.enabled)
    preferences.load()

    if reset:
        asyncio.run(preferences.clear_mappings())
        click.echo("Saved groups cleared.")
        return

    if auto:
        configure(config, source="cli")
        try:
            _, snapshot = asyncio.run(fetch_snapshot(config))
        except QuotaRadarError as e:
            raise click.ClickException(str(e)) from e
        if snapshot is None:
            raise click.ClickException("Language server not found")
        mappings = calculate_group_mappings(snapshot.models)
        asyncio.run(preferences.update_mappings(mappings))
        click.echo(f"Grouped {len(mappings)} models into {len(set(mappings.values()))} groups.")
        return

    if name:
        model_id, group_name = name
        mappings = preferences.mappings
        group_id = mappings.get(model_id)
        members = [m for m, g in mappings.items() if g == group_id] if group_id else [model_id]
        asyncio.run(preferences.set_custom_name(members, group_name))
        click.echo(f"Named {len(members)} model(s) '{group_name}'.")
        return

    mappings = preferences.mappings
    if not mappings:
        click.echo("No saved groups.")
        return

    custom_names = preferences.custom_names
    by_group: dict[str, list[str]] = {}
    for model_id, group_id in sorted(mappings.items()):
        by_group.setdefault(group_id, []).append(model_id)
    for group_id, members in by_group.items():
        names = {custom_names[m] for m in members if m in custom_names}
        label = ", ".join(sorted(names)) if names else "(unnamed)"
        click.echo(f"{label}")
        for model_id in members:
            click.echo(f"  - {model_id}")


@main.command()
@click.option("--init", "init", is_flag=True, help="Write a config file with default values")
def config(init: bool) -> None:
    """Show or create the configuration file."""
    from quota_radar.config import Config

    if init:
        cfg = Config()
        if cfg.config_path.exists():
            click.confirm(f"Overwrite {cfg.config_path}?", abort=True)
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")
        return

    cfg = Config.load()
    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"Log file: {cfg.log_path}")
    click.echo(f"Preferences: {cfg.preferences_path}")
    click.echo()
    if cfg.config_path.exists():
        click.echo(cfg.config_path.read_text())
