"""Domain types shared by discovery, the reactor and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime


# --- Discovery ---


@dataclass
class ProcessCandidate:
    """A process whose command line looks like the language server."""

    pid: int
    extension_port: int
    csrf_token: str
    ppid: int | None = None


@dataclass
class ScanDiagnostics:
    """What the last scan did. Overwritten on every scan."""

    scan_method: str = "unknown"  # process_name | keyword | unknown
    target_process: str = ""
    attempts: int = 0
    found_candidates: int = 0
    ports: list[int] | None = None
    verified_port: int | None = None
    verification_success: bool | None = None

    def copy(self) -> ScanDiagnostics:
        """Return an independent copy."""
        return replace(self, ports=list(self.ports) if self.ports is not None else None)

    def to_dict(self) -> dict:
        """Return a plain dict for structured logs and error reports."""
        return {
            "scan_method": self.scan_method,
            "target_process": self.target_process,
            "attempts": self.attempts,
            "found_candidates": self.found_candidates,
            "ports": self.ports,
            "verified_port": self.verified_port,
            "verification_success": self.verification_success,
        }


@dataclass(frozen=True)
class EnvironmentScanResult:
    """Verified outcome of discovery."""

    extension_port: int
    connect_port: int
    csrf_token: str
    pid: int | None = None


# --- Quota ---


@dataclass
class PromptCreditsInfo:
    """Prompt credit balance of the current plan."""

    available: float
    monthly: float
    used_percentage: float
    remaining_percentage: float


@dataclass
class UserInfo:
    """Account and plan details reported by the language server."""

    name: str = "Unknown User"
    email: str = "N/A"
    plan_name: str = "N/A"
    tier: str = "N/A"
    tier_id: str = "N/A"
    tier_description: str = "N/A"
    teams_tier: str = "N/A"
    upgrade_uri: str = ""
    upgrade_text: str = ""
    monthly_prompt_credits: float = 0
    monthly_flow_credits: float = 0
    available_prompt_credits: float = 0
    available_flow_credits: float = 0
    browser_enabled: bool = False
    knowledge_base_enabled: bool = False
    can_buy_more_credits: bool = False
    web_search_enabled: bool = False
    can_generate_commit_messages: bool = False
    allow_mcp_servers: bool = False
    accepted_latest_terms: bool = False
    max_chat_input_tokens: str = "N/A"


@dataclass
class ModelQuotaInfo:
    """Quota state of a single model, derived from one response."""

    label: str
    model_id: str
    remaining_fraction: float | None
    remaining_percentage: float | None
    is_exhausted: bool
    reset_time: datetime
    reset_time_display: str
    time_until_reset: float  # milliseconds, negative once the reset has passed
    time_until_reset_formatted: str
    # Capabilities
    supports_images: bool | None = None
    is_recommended: bool | None = None
    tag_title: str | None = None
    supported_mime_types: dict[str, bool] | None = None


@dataclass
class QuotaGroup:
    """Models that share one quota pool."""

    group_id: str
    group_name: str
    models: list[ModelQuotaInfo]
    remaining_percentage: float  # minimum over members
    reset_time: datetime
    reset_time_display: str
    time_until_reset_formatted: str
    is_exhausted: bool


@dataclass
class QuotaSnapshot:
    """Normalized result of one successful decode."""

    timestamp: datetime
    models: list[ModelQuotaInfo] = field(default_factory=list)
    groups: list[QuotaGroup] | None = None
    user_info: UserInfo | None = None
    prompt_credits: PromptCreditsInfo | None = None
    is_connected: bool = True
    error_message: str | None = None

    @classmethod
    def offline(cls, error_message: str | None = None) -> QuotaSnapshot:
        """Snapshot published while the language server is unreachable."""
        return cls(timestamp=datetime.now(), is_connected=False, error_message=error_message)


@dataclass
class DecodeResult:
    """A decoded snapshot plus the grouping corrections it implies.

    evicted_model_ids lists models whose saved group no longer matches the
    group majority; the caller decides whether to persist that.
    """

    snapshot: QuotaSnapshot
    evicted_model_ids: list[str] = field(default_factory=list)
