"""Quota grouping: which models share a quota pool.

Models that draw from the same pool report identical remaining fractions and
reset times. A saved model_id -> group_id mapping is the user's view of the
pools; every decode re-checks it against the live fingerprints and evicts
members that no longer agree with their group's majority.

All functions here are pure. Persisting corrections is the caller's job.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

import structlog

from quota_radar.models import ModelQuotaInfo, QuotaGroup

log = structlog.get_logger()

# Fallback families for the degenerate case where every model reports the
# same quota state and fingerprints carry no signal.
MODEL_FAMILIES: dict[str, tuple[str, ...]] = {
    "Gemini": ("MODEL_PLACEHOLDER_M8", "MODEL_PLACEHOLDER_M7"),
    "Gemini Flash": ("MODEL_PLACEHOLDER_M18",),
    "Claude": (
        "MODEL_CLAUDE_4_5_SONNET",
        "MODEL_CLAUDE_4_5_SONNET_THINKING",
        "MODEL_PLACEHOLDER_M12",  # Claude Opus 4.5 Thinking
        "MODEL_OPENAI_GPT_OSS_120B_MEDIUM",
    ),
}
OTHER_FAMILY = "Other"

# Sorts groups with no known member last
_UNKNOWN_INDEX = 99999


@dataclass
class GroupingSettings:
    """User inputs to grouping, read fresh for every decode."""

    enabled: bool = True
    mappings: dict[str, str] = field(default_factory=dict)  # model_id -> group_id
    custom_names: dict[str, str] = field(default_factory=dict)  # model_id -> group name


def fingerprint(model: ModelQuotaInfo, keep_missing: bool = False) -> str:
    """Quota fingerprint: remaining fraction to 6 places plus reset time in ms.

    A missing fraction counts as 0, unless keep_missing is set, in which case
    it gets its own "none" marker and never matches an exhausted model.
    """
    reset_ms = int(model.reset_time.timestamp() * 1000)
    if model.remaining_fraction is None:
        return f"none_{reset_ms}" if keep_missing else f"0.000000_{reset_ms}"
    return f"{model.remaining_fraction:.6f}_{reset_ms}"


def stable_group_id(model_ids: list[str]) -> str:
    """Group id derived from membership, identical for identical member sets."""
    return "_".join(sorted(model_ids))


def assign_groups(
    models: list[ModelQuotaInfo],
    mappings: dict[str, str],
) -> dict[str, list[ModelQuotaInfo]]:
    """Place models in their saved groups.

    Without any saved mapping every model is its own group. Models missing
    from a saved mapping become singletons keyed by their own id.
    """
    group_map: dict[str, list[ModelQuotaInfo]] = {}
    for model in models:
        group_id = mappings.get(model.model_id) or model.model_id
        group_map.setdefault(group_id, []).append(model)
    return group_map


def detect_group_drift(group_map: dict[str, list[ModelQuotaInfo]]) -> list[str]:
    """Return ids of models that disagree with their group's majority fingerprint.

    For each group of two or more, fingerprints are tallied and the most
    common one is the majority (the first one seen wins a tie). Every member
    with a different fingerprint is reported.
    """
    evicted: list[str] = []
    for group_id, members in group_map.items():
        if len(members) <= 1:
            continue

        tally = Counter(fingerprint(m) for m in members)
        # Counter preserves insertion order, so max() picks the first of equals
        majority = max(tally, key=lambda sig: tally[sig])

        for model in members:
            if fingerprint(model) != majority:
                log.info(
                    "group_member_evicted",
                    model=model.label,
                    model_id=model.model_id,
                    group_id=group_id,
                )
                evicted.append(model.model_id)
    return evicted


def apply_evictions(
    group_map: dict[str, list[ModelQuotaInfo]],
    evicted: list[str],
) -> dict[str, list[ModelQuotaInfo]]:
    """Move evicted models into singleton groups and drop emptied groups."""
    if not evicted:
        return group_map

    evicted_set = set(evicted)
    result: dict[str, list[ModelQuotaInfo]] = {}
    singletons: dict[str, list[ModelQuotaInfo]] = {}
    for group_id, members in group_map.items():
        kept = [m for m in members if m.model_id not in evicted_set]
        if kept:
            result[group_id] = kept
        for m in members:
            if m.model_id in evicted_set:
                singletons[m.model_id] = [m]

    # Singletons go after the surviving groups, in eviction order
    for model_id in evicted:
        if model_id not in singletons:
            continue
        if model_id in result:
            # A surviving group was keyed by this model's id; rekey it by membership
            kept = result.pop(model_id)
            result[stable_group_id([m.model_id for m in kept])] = kept
        result[model_id] = singletons[model_id]
    return result


def resolve_group_name(
    members: list[ModelQuotaInfo],
    custom_names: dict[str, str],
    position: int,
) -> str:
    """Pick a group's display name by anchor consensus.

    The custom name carried by the most members wins. Without any custom
    name a singleton uses its model label and larger groups get "Group N".
    """
    votes = Counter(custom_names[m.model_id] for m in members if custom_names.get(m.model_id))
    if votes:
        return max(votes, key=lambda name: votes[name])
    if len(members) == 1:
        return members[0].label
    return f"Group {position}"


def build_groups(
    models: list[ModelQuotaInfo],
    group_map: dict[str, list[ModelQuotaInfo]],
    custom_names: dict[str, str],
) -> list[QuotaGroup]:
    """Turn a group map into QuotaGroups in the models' display order."""
    groups: list[QuotaGroup] = []
    for position, (group_id, members) in enumerate(group_map.items(), start=1):
        first = members[0]
        groups.append(
            QuotaGroup(
                group_id=group_id,
                group_name=resolve_group_name(members, custom_names, position),
                models=members,
                remaining_percentage=min(
                    m.remaining_percentage if m.remaining_percentage is not None else 0.0
                    for m in members
                ),
                reset_time=first.reset_time,
                reset_time_display=first.reset_time_display,
                time_until_reset_formatted=first.time_until_reset_formatted,
                is_exhausted=any(m.is_exhausted for m in members),
            )
        )

    index = {m.model_id: i for i, m in enumerate(models)}
    groups.sort(key=lambda g: min(index.get(m.model_id, _UNKNOWN_INDEX) for m in g.models))
    return groups


def group_models(
    models: list[ModelQuotaInfo],
    settings: GroupingSettings,
) -> tuple[list[QuotaGroup], list[str]]:
    """Group models using saved mappings, checking each group for drift.

    Returns:
        (groups, evicted model ids)
    """
    group_map = assign_groups(models, settings.mappings)
    evicted: list[str] = []
    if settings.mappings:
        evicted = detect_group_drift(group_map)
        group_map = apply_evictions(group_map, evicted)
        if evicted:
            log.info("group_drift_detected", evicted=len(evicted))

    groups = build_groups(models, group_map, settings.custom_names)
    log.debug(
        "groups_built",
        count=len(groups),
        saved_mappings=bool(settings.mappings),
    )
    return groups, evicted


def calculate_group_mappings(models: list[ModelQuotaInfo]) -> dict[str, str]:
    """Compute a fresh model_id -> group_id mapping from current quota state.

    Models with equal fingerprints share a group. If that lumps every model
    into one group (all full, or otherwise identical), fingerprints say
    nothing and the known model families are used instead.
    """
    by_fingerprint: dict[str, list[str]] = {}
    for model in models:
        by_fingerprint.setdefault(fingerprint(model, keep_missing=True), []).append(model.model_id)

    if len(by_fingerprint) == 1 and len(models) > 1:
        log.info("auto_group_degenerate", models=len(models), fallback="families")
        return group_by_family(models)

    return _mappings_from_buckets(by_fingerprint.values())


def group_by_family(models: list[ModelQuotaInfo]) -> dict[str, str]:
    """Map models to hardcoded families; unknown ids share an "Other" group."""
    by_family: dict[str, list[str]] = {}
    for model in models:
        family = OTHER_FAMILY
        for name, model_ids in MODEL_FAMILIES.items():
            if model.model_id in model_ids:
                family = name
                break
        by_family.setdefault(family, []).append(model.model_id)
    return _mappings_from_buckets(by_family.values())


def _mappings_from_buckets(buckets) -> dict[str, str]:
    mappings: dict[str, str] = {}
    for model_ids in buckets:
        group_id = stable_group_id(model_ids)
        for model_id in model_ids:
            mappings[model_id] = group_id
    return mappings
