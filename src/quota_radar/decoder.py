"""Decode GetUserStatus responses into QuotaSnapshots.

decode_signal() is pure: given the same raw response, grouping settings and
clock it always yields the same snapshot. Grouping corrections are returned,
not applied.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog

from quota_radar.errors import MalformedResponseError, ServerReportedError
from quota_radar.formatting import format_delta, format_reset_time, parse_timestamp
from quota_radar.grouping import GroupingSettings, group_models
from quota_radar.models import (
    DecodeResult,
    ModelQuotaInfo,
    PromptCreditsInfo,
    QuotaSnapshot,
    UserInfo,
)

log = structlog.get_logger()


def decode_signal(
    raw: Any,
    settings: GroupingSettings | None = None,
    now: datetime | None = None,
) -> DecodeResult:
    """Decode a raw status response.

    Args:
        raw: Parsed JSON body of GetUserStatus
        settings: Grouping inputs; grouping is skipped when disabled
        now: Reference time for countdowns (defaults to the current time)

    Returns:
        DecodeResult with the snapshot and any models evicted from saved groups

    Raises:
        ServerReportedError: The body carried no status but a server message
        MalformedResponseError: The body had neither
    """
    settings = settings or GroupingSettings()
    now = now or datetime.now(timezone.utc)

    status = raw.get("userStatus") if isinstance(raw, dict) else None
    if not isinstance(status, dict):
        if isinstance(raw, dict) and isinstance(raw.get("message"), str):
            raise ServerReportedError(raw["message"])
        preview = json.dumps(raw)[:100] if raw else "empty response"
        raise MalformedResponseError(preview)

    plan_status = status.get("planStatus") or {}
    plan = plan_status.get("planInfo") or {}

    configs = (status.get("cascadeModelConfigData") or {}).get("clientModelConfigs") or []
    models = [_decode_model(c, now) for c in configs if c.get("quotaInfo")]
    sort_models(models, recommended_order(status))

    groups = None
    evicted: list[str] = []
    if settings.enabled:
        groups, evicted = group_models(models, settings)

    snapshot = QuotaSnapshot(
        timestamp=now,
        models=models,
        groups=groups,
        user_info=_decode_user_info(status, plan_status, plan),
        prompt_credits=_decode_prompt_credits(plan_status, plan),
        is_connected=True,
    )
    return DecodeResult(snapshot=snapshot, evicted_model_ids=evicted)


def recommended_order(status: dict) -> dict[str, int]:
    """Return label -> position from the first (recommended) model sort."""
    sorts = (status.get("cascadeModelConfigData") or {}).get("clientModelSorts") or []
    if not sorts:
        return {}

    order: dict[str, int] = {}
    for group in sorts[0].get("groups") or []:
        for label in group.get("modelLabels") or []:
            order.setdefault(label, len(order))
    return order


def sort_models(models: list[ModelQuotaInfo], order: dict[str, int]) -> None:
    """Sort in place: listed labels by position, then the rest by label."""
    models.sort(
        key=lambda m: (0, order[m.label], "") if m.label in order else (1, 0, m.label)
    )


def _decode_model(config: dict, now: datetime) -> ModelQuotaInfo:
    quota = config["quotaInfo"]
    fraction = quota.get("remainingFraction")

    try:
        reset_time = parse_timestamp(str(quota.get("resetTime", "")))
    except ValueError:
        log.warning("reset_time_invalid", model=config.get("label"), value=quota.get("resetTime"))
        reset_time = now
    delta_ms = (reset_time - now).total_seconds() * 1000

    return ModelQuotaInfo(
        label=config.get("label", ""),
        model_id=(config.get("modelOrAlias") or {}).get("model") or "unknown",
        remaining_fraction=fraction,
        remaining_percentage=fraction * 100 if fraction is not None else None,
        is_exhausted=fraction == 0,
        reset_time=reset_time,
        reset_time_display=format_reset_time(reset_time),
        time_until_reset=delta_ms,
        time_until_reset_formatted=format_delta(delta_ms),
        supports_images=config.get("supportsImages"),
        is_recommended=config.get("isRecommended"),
        tag_title=config.get("tagTitle"),
        supported_mime_types=config.get("supportedMimeTypes"),
    )


def _decode_prompt_credits(plan_status: dict, plan: dict) -> PromptCreditsInfo | None:
    credits = plan_status.get("availablePromptCredits")
    if not plan or credits is None:
        return None

    try:
        monthly = float(plan.get("monthlyPromptCredits") or 0)
        available = float(credits)
    except (TypeError, ValueError):
        return None
    if monthly <= 0:
        return None

    return PromptCreditsInfo(
        available=available,
        monthly=monthly,
        used_percentage=(monthly - available) / monthly * 100,
        remaining_percentage=available / monthly * 100,
    )


def _decode_user_info(status: dict, plan_status: dict, plan: dict) -> UserInfo:
    tier = status.get("userTier") or {}
    team_config = plan.get("defaultTeamConfig") or {}
    max_tokens = plan.get("maxNumChatInputTokens")

    return UserInfo(
        name=status.get("name") or "Unknown User",
        email=status.get("email") or "N/A",
        plan_name=plan.get("planName") or "N/A",
        tier=tier.get("name") or plan.get("teamsTier") or "N/A",
        tier_id=tier.get("id") or "N/A",
        tier_description=tier.get("description") or "N/A",
        teams_tier=plan.get("teamsTier") or "N/A",
        upgrade_uri=tier.get("upgradeSubscriptionUri") or "",
        upgrade_text=tier.get("upgradeSubscriptionText") or "",
        monthly_prompt_credits=plan.get("monthlyPromptCredits") or 0,
        monthly_flow_credits=plan.get("monthlyFlowCredits") or 0,
        available_prompt_credits=plan_status.get("availablePromptCredits") or 0,
        available_flow_credits=plan_status.get("availableFlowCredits") or 0,
        browser_enabled=plan.get("browserEnabled") is True,
        knowledge_base_enabled=plan.get("knowledgeBaseEnabled") is True,
        can_buy_more_credits=plan.get("canBuyMoreCredits") is True,
        web_search_enabled=plan.get("cascadeWebSearchEnabled") is True,
        can_generate_commit_messages=plan.get("canGenerateCommitMessages") is True,
        allow_mcp_servers=team_config.get("allowMcpServers") is True,
        accepted_latest_terms=status.get("acceptedLatestTermsOfService") is True,
        max_chat_input_tokens=str(max_tokens) if max_tokens is not None else "N/A",
    )
