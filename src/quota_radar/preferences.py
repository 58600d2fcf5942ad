"""Persisted user preferences for quota grouping.

Holds the model_id -> group_id mapping and custom group names. The reactor
only reads a GroupingSettings copy; writes go through the async update
methods, which write the TOML file off the event loop.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import tomlkit

from quota_radar.grouping import GroupingSettings

log = structlog.get_logger()


class PreferenceStore:
    """TOML-backed store for group mappings and custom group names."""

    def __init__(self, path: Path, grouping_enabled: bool = True) -> None:
        self.path = path
        self.grouping_enabled = grouping_enabled
        self._mappings: dict[str, str] = {}
        self._custom_names: dict[str, str] = {}

    @property
    def mappings(self) -> dict[str, str]:
        """Saved model_id -> group_id mapping (copy)."""
        return dict(self._mappings)

    @property
    def custom_names(self) -> dict[str, str]:
        """Saved model_id -> custom group name (copy)."""
        return dict(self._custom_names)

    def grouping_settings(self) -> GroupingSettings:
        """Current grouping inputs for the decoder."""
        return GroupingSettings(
            enabled=self.grouping_enabled,
            mappings=self.mappings,
            custom_names=self.custom_names,
        )

    def load(self) -> None:
        """Load preferences from disk. A missing file means no preferences."""
        if not self.path.exists():
            return

        try:
            with open(self.path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse preferences file {self.path}: {e}") from e

        grouping = data.get("grouping", {})
        self._mappings = {str(k): str(v) for k, v in grouping.get("mappings", {}).items()}
        self._custom_names = {
            str(k): str(v) for k, v in grouping.get("custom_names", {}).items()
        }
        log.debug(
            "preferences_loaded",
            mappings=len(self._mappings),
            custom_names=len(self._custom_names),
        )

    def save(self) -> None:
        """Write preferences to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        grouping = tomlkit.table()
        mappings = tomlkit.table()
        for model_id, group_id in sorted(self._mappings.items()):
            mappings.add(model_id, group_id)
        names = tomlkit.table()
        for model_id, name in sorted(self._custom_names.items()):
            names.add(model_id, name)
        grouping.add("mappings", mappings)
        grouping.add("custom_names", names)

        doc = tomlkit.document()
        doc.add("grouping", grouping)
        self.path.write_text(tomlkit.dumps(doc))

    async def update_mappings(self, mappings: dict[str, str]) -> None:
        """Replace the group mapping and persist it."""
        self._mappings = dict(mappings)
        await asyncio.to_thread(self.save)
        log.info("group_mappings_saved", models=len(mappings))

    async def remove_from_groups(self, model_ids: list[str]) -> None:
        """Drop models from their saved groups and persist the mapping."""
        updated = {k: v for k, v in self._mappings.items() if k not in set(model_ids)}
        await self.update_mappings(updated)

    async def set_custom_name(self, model_ids: list[str], name: str) -> None:
        """Name the group containing model_ids.

        The name is stored on every member so it survives regrouping; the
        decoder resolves conflicts by majority vote.
        """
        for model_id in model_ids:
            self._custom_names[model_id] = name
        await asyncio.to_thread(self.save)
        log.info("group_name_saved", name=name, models=len(model_ids))

    async def clear_mappings(self) -> None:
        """Forget all saved groups."""
        await self.update_mappings({})
