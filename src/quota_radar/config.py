"""Configuration system for quota-radar."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class DiscoveryConfig:
    """Process and port discovery configuration."""

    product_name: str = "antigravity"  # Expected --app_data_dir value
    max_attempts: int = 3  # Scan attempts by process name
    command_timeout: float = 15.0  # Seconds; PowerShell cold starts can be slow
    scan_retry_delay: float = 0.1  # Seconds between failed scan attempts
    cold_start_delay: float = 3.0  # Extra wait after the first shell timeout
    diagnostic_timeout: float = 10.0  # Seconds for the diagnostic listing
    tool_probe_timeout: float = 3.0  # Seconds for `which lsof` and friends


@dataclass
class ReactorConfig:
    """Polling and transport configuration."""

    refresh_interval: float = 120.0  # Seconds between telemetry syncs
    http_timeout: float = 10.0  # Seconds; also used for port probes
    scheme: str = "https"  # Transport used for loopback requests
    init_max_retries: int = 3  # Retries of the first sync
    init_backoff_base: float = 2.0  # First sync retries wait 2s, 4s, 6s
    max_consecutive_rescans: int = 5  # Re-scans after connection loss before giving up


@dataclass
class BootConfig:
    """Startup retry configuration."""

    max_auto_retry: int = 3  # Full re-scans when the first scan finds nothing
    auto_retry_delay: float = 5.0  # Seconds between those re-scans


@dataclass
class GroupingConfig:
    """Quota grouping behaviour.

    Group mappings and custom names are user state and live in the
    preference store, not here.
    """

    enabled: bool = True


@dataclass
class ReportingConfig:
    """Error reporting configuration."""

    enabled: bool = True


@dataclass
class SystemConfig:
    """Logging configuration."""

    log_level: str = "info"
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    reactor: ReactorConfig = field(default_factory=ReactorConfig)
    boot: BootConfig = field(default_factory=BootConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "quota-radar"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and user preferences."""
        return Path.home() / ".local" / "state" / "quota-radar"

    @property
    def log_path(self) -> Path:
        """Log file path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "quota-radar.log"

    @property
    def preferences_path(self) -> Path:
        """Group mappings and custom group names."""
        return self.state_dir / "preferences.toml"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        sections = ["discovery", "reactor", "boot", "grouping", "reporting", "system"]
        for name in sections:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        grouping_data = data.get("grouping", {})
        reporting_data = data.get("reporting", {})
        system_data = data.get("system", {})

        sys_defaults = defaults.system

        return cls(
            discovery=_load_discovery_config(data.get("discovery", {})),
            reactor=_load_reactor_config(data.get("reactor", {})),
            boot=_load_boot_config(data.get("boot", {})),
            grouping=GroupingConfig(
                enabled=grouping_data.get("enabled", defaults.grouping.enabled),
            ),
            reporting=ReportingConfig(
                enabled=reporting_data.get("enabled", defaults.reporting.enabled),
            ),
            system=SystemConfig(
                log_level=system_data.get("log_level", sys_defaults.log_level),
                log_max_bytes=system_data.get("log_max_bytes", sys_defaults.log_max_bytes),
                log_backup_count=system_data.get("log_backup_count", sys_defaults.log_backup_count),
            ),
        )


def _load_discovery_config(data: dict) -> DiscoveryConfig:
    """Load discovery config from TOML data, using dataclass defaults for missing fields."""
    d = DiscoveryConfig()

    max_attempts = data.get("max_attempts", d.max_attempts)
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    command_timeout = data.get("command_timeout", d.command_timeout)
    if command_timeout <= 0:
        raise ValueError(f"command_timeout must be > 0, got {command_timeout}")

    product_name = data.get("product_name", d.product_name)
    if not product_name:
        raise ValueError("product_name must not be empty")

    return DiscoveryConfig(
        product_name=product_name,
        max_attempts=max_attempts,
        command_timeout=command_timeout,
        scan_retry_delay=data.get("scan_retry_delay", d.scan_retry_delay),
        cold_start_delay=data.get("cold_start_delay", d.cold_start_delay),
        diagnostic_timeout=data.get("diagnostic_timeout", d.diagnostic_timeout),
        tool_probe_timeout=data.get("tool_probe_timeout", d.tool_probe_timeout),
    )


def _load_reactor_config(data: dict) -> ReactorConfig:
    """Load reactor config from TOML data."""
    d = ReactorConfig()

    refresh_interval = data.get("refresh_interval", d.refresh_interval)
    if refresh_interval <= 0:
        raise ValueError(f"refresh_interval must be > 0, got {refresh_interval}")

    scheme = data.get("scheme", d.scheme)
    if scheme not in ("https", "http"):
        raise ValueError(f"Invalid scheme: {scheme!r}. Must be 'https' or 'http'")

    init_max_retries = data.get("init_max_retries", d.init_max_retries)
    if init_max_retries < 0:
        raise ValueError(f"init_max_retries must be >= 0, got {init_max_retries}")

    max_consecutive_rescans = data.get("max_consecutive_rescans", d.max_consecutive_rescans)
    if max_consecutive_rescans < 0:
        raise ValueError(f"max_consecutive_rescans must be >= 0, got {max_consecutive_rescans}")

    return ReactorConfig(
        refresh_interval=refresh_interval,
        http_timeout=data.get("http_timeout", d.http_timeout),
        scheme=scheme,
        init_max_retries=init_max_retries,
        init_backoff_base=data.get("init_backoff_base", d.init_backoff_base),
        max_consecutive_rescans=max_consecutive_rescans,
    )


def _load_boot_config(data: dict) -> BootConfig:
    """Load boot config from TOML data."""
    d = BootConfig()
    return BootConfig(
        max_auto_retry=data.get("max_auto_retry", d.max_auto_retry),
        auto_retry_delay=data.get("auto_retry_delay", d.auto_retry_delay),
    )
