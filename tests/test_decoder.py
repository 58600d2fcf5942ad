"""Tests for GetUserStatus decoding."""

import pytest
from conftest import NOW, model_config, status_response

from quota_radar.decoder import decode_signal
from quota_radar.errors import MalformedResponseError, ServerReportedError, is_server_error
from quota_radar.formatting import ALREADY_RESET_TEXT
from quota_radar.grouping import GroupingSettings

OFF = GroupingSettings(enabled=False)


class TestShape:
    def test_server_message_is_passed_through(self):
        with pytest.raises(ServerReportedError) as exc_info:
            decode_signal({"message": "You are not logged in"}, OFF, NOW)
        assert exc_info.value.server_message == "You are not logged in"
        assert is_server_error(exc_info.value)

    def test_malformed_response(self):
        with pytest.raises(MalformedResponseError, match="unexpected"):
            decode_signal({"unexpected": True}, OFF, NOW)

    def test_empty_response(self):
        with pytest.raises(MalformedResponseError, match="empty response"):
            decode_signal({}, OFF, NOW)

    def test_empty_status_is_accepted(self):
        snapshot = decode_signal({"userStatus": {}}, OFF, NOW).snapshot
        assert snapshot.models == []
        assert snapshot.user_info.name == "Unknown User"
        assert snapshot.prompt_credits is None

    def test_preview_is_truncated(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            decode_signal({"junk": "x" * 500}, OFF, NOW)
        assert len(str(exc_info.value)) < 200


class TestModels:
    def test_model_fields(self):
        raw = status_response([model_config("Gemini 3 Pro", "MODEL_PLACEHOLDER_M7", 0.25)])
        model = decode_signal(raw, OFF, NOW).snapshot.models[0]

        assert model.label == "Gemini 3 Pro"
        assert model.model_id == "MODEL_PLACEHOLDER_M7"
        assert model.remaining_percentage == 25.0
        assert model.is_exhausted is False
        assert model.time_until_reset == 5 * 3_600_000
        assert model.time_until_reset_formatted == "5h 0m"
        assert model.supports_images is True

    def test_exhausted_and_restored(self):
        raw = status_response(
            [model_config("Claude", "MODEL_CLAUDE_4_5_SONNET", 0, "2025-06-01T11:00:00Z")]
        )
        model = decode_signal(raw, OFF, NOW).snapshot.models[0]
        assert model.is_exhausted is True
        assert model.time_until_reset_formatted == ALREADY_RESET_TEXT

    def test_missing_fraction(self):
        raw = status_response([model_config("X", "MODEL_X", None)])
        model = decode_signal(raw, OFF, NOW).snapshot.models[0]
        assert model.remaining_percentage is None
        assert model.is_exhausted is False

    def test_configs_without_quota_are_skipped(self):
        raw = status_response([model_config("A", "MODEL_A"), {"label": "No quota"}])
        assert [m.label for m in decode_signal(raw, OFF, NOW).snapshot.models] == ["A"]

    def test_invalid_reset_time_falls_back_to_now(self):
        raw = status_response([model_config("A", "MODEL_A", 0.5, "soon")])
        model = decode_signal(raw, OFF, NOW).snapshot.models[0]
        assert model.reset_time == NOW
        assert model.time_until_reset_formatted == ALREADY_RESET_TEXT

    def test_recommended_order_then_label(self):
        configs = [
            model_config("Zeta", "MODEL_Z"),
            model_config("Alpha", "MODEL_A"),
            model_config("Second", "MODEL_S"),
            model_config("First", "MODEL_F"),
        ]
        raw = status_response(configs, sort_labels=["First", "Second"])
        labels = [m.label for m in decode_signal(raw, OFF, NOW).snapshot.models]
        assert labels == ["First", "Second", "Alpha", "Zeta"]


class TestAccount:
    def test_user_info_and_credits(self):
        snapshot = decode_signal(status_response([]), OFF, NOW).snapshot

        assert snapshot.is_connected is True
        assert snapshot.user_info.name == "Ada"
        assert snapshot.user_info.plan_name == "Pro"
        assert snapshot.user_info.tier == "Pro"
        assert snapshot.user_info.browser_enabled is True
        assert snapshot.user_info.max_chat_input_tokens == "N/A"
        assert snapshot.prompt_credits.available == 125
        assert snapshot.prompt_credits.remaining_percentage == 25.0
        assert snapshot.prompt_credits.used_percentage == 75.0

    def test_no_credits_without_monthly_allowance(self):
        raw = status_response([])
        raw["userStatus"]["planStatus"]["planInfo"]["monthlyPromptCredits"] = 0
        assert decode_signal(raw, OFF, NOW).snapshot.prompt_credits is None


class TestGrouping:
    def test_grouping_disabled(self):
        raw = status_response([model_config("A", "MODEL_A")])
        assert decode_signal(raw, OFF, NOW).snapshot.groups is None

    def test_drift_is_reported_not_applied(self):
        """Group of [A, A, B] loses B; the caller gets the correction."""
        raw = status_response(
            [
                model_config("A1", "MODEL_A1", 0.5),
                model_config("A2", "MODEL_A2", 0.5),
                model_config("B", "MODEL_B", 0.2),
            ]
        )
        mappings = {"MODEL_A1": "g", "MODEL_A2": "g", "MODEL_B": "g"}
        settings = GroupingSettings(mappings=dict(mappings))

        result = decode_signal(raw, settings, NOW)

        assert result.evicted_model_ids == ["MODEL_B"]
        groups = result.snapshot.groups
        assert [[m.model_id for m in g.models] for g in groups] == [
            ["MODEL_A1", "MODEL_A2"],
            ["MODEL_B"],
        ]
        assert groups[1].group_name == "B"
        # Settings are inputs only
        assert settings.mappings == mappings

    def test_same_input_same_output(self):
        raw = status_response(
            [model_config("A", "MODEL_A", 0.5), model_config("B", "MODEL_B", 0.5)]
        )
        settings = GroupingSettings(mappings={"MODEL_A": "ab", "MODEL_B": "ab"})
        first = decode_signal(raw, settings, NOW)
        second = decode_signal(raw, settings, NOW)
        assert first == second
