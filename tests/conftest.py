"""Shared test fixtures for quota-radar."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from aiohttp import web

from quota_radar.config import Config, ReactorConfig
from quota_radar.models import ModelQuotaInfo

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def http_config() -> Config:
    """Config that talks plain http to loopback test servers, with short timeouts."""
    return Config(reactor=ReactorConfig(scheme="http", http_timeout=2.0, init_backoff_base=0.0))


@pytest.fixture
def prefs_path(tmp_path: Path) -> Path:
    return tmp_path / "preferences.toml"


@asynccontextmanager
async def serve(handler, path: str = "/{tail:.*}"):
    """Run an aiohttp app on a random loopback port; yields the port."""
    app = web.Application()
    app.router.add_route("POST", path, handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    try:
        yield runner.addresses[0][1]
    finally:
        await runner.cleanup()


def make_model(
    model_id: str,
    fraction: float | None = 1.0,
    reset: datetime | None = None,
    label: str | None = None,
) -> ModelQuotaInfo:
    """Create a ModelQuotaInfo for grouping tests."""
    reset = reset or NOW + timedelta(hours=5)
    return ModelQuotaInfo(
        label=label or model_id,
        model_id=model_id,
        remaining_fraction=fraction,
        remaining_percentage=fraction * 100 if fraction is not None else None,
        is_exhausted=fraction == 0,
        reset_time=reset,
        reset_time_display="",
        time_until_reset=(reset - NOW).total_seconds() * 1000,
        time_until_reset_formatted="",
    )


def model_config(
    label: str,
    model_id: str,
    fraction: float | None = 1.0,
    reset_time: str = "2025-06-01T17:00:00Z",
) -> dict:
    """One entry of cascadeModelConfigData.clientModelConfigs."""
    quota = {"resetTime": reset_time}
    if fraction is not None:
        quota["remainingFraction"] = fraction
    return {
        "label": label,
        "modelOrAlias": {"model": model_id},
        "quotaInfo": quota,
        "supportsImages": True,
        "isRecommended": False,
    }


def status_response(configs: list[dict], sort_labels: list[str] | None = None) -> dict:
    """A GetUserStatus body with the given model configs."""
    data: dict = {"clientModelConfigs": configs}
    if sort_labels is not None:
        data["clientModelSorts"] = [
            {"name": "Recommended", "groups": [{"modelLabels": sort_labels}]}
        ]
    return {
        "userStatus": {
            "name": "Ada",
            "email": "ada@example.com",
            "planStatus": {
                "planInfo": {
                    "planName": "Pro",
                    "teamsTier": "TEAMS_TIER_PRO",
                    "monthlyPromptCredits": 500,
                    "browserEnabled": True,
                },
                "availablePromptCredits": 125,
            },
            "userTier": {"name": "Pro", "id": "g1-pro"},
            "cascadeModelConfigData": data,
        }
    }
