"""Pause switches and team intensity presets.

A pause applies to one agent or to the whole team (scope ``__team__``).
Timed pauses expire lazily: the first read after ``paused_until`` resumes
the scope. Intensity is a team-wide preset that caps WIP and the rate at
which the continuity loop pulls new work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Optional

from continuum.core.exceptions import ConfigError
from continuum.core.models import (
    TEAM_SCOPE,
    IntensityLimits,
    IntensityPreset,
    IntensityState,
    PauseEntry,
)
from continuum.db.base import BaseRepository

logger = logging.getLogger("continuum.orchestrator.pacing")

INTENSITY_KEY = "intensity"

PRESET_LIMITS: dict[IntensityPreset, IntensityLimits] = {
    IntensityPreset.LOW: IntensityLimits(wip_limit=1, max_pulls_per_hour=2, batch_interval_seconds=600),
    IntensityPreset.NORMAL: IntensityLimits(wip_limit=2, max_pulls_per_hour=10, batch_interval_seconds=0),
    IntensityPreset.HIGH: IntensityLimits(wip_limit=3, max_pulls_per_hour=30, batch_interval_seconds=0),
}


def is_pause_expired(now: datetime, paused_until: Optional[datetime]) -> bool:
    return paused_until is not None and paused_until <= now


@dataclass
class PauseStatus:
    paused: bool
    scope: Optional[str] = None
    reason: Optional[str] = None
    paused_until: Optional[datetime] = None


class PacingControls:
    def __init__(self, repository: BaseRepository):
        self.repository = repository

    # -- pause ---------------------------------------------------------

    def set_paused(
        self,
        scope: str,
        paused: bool,
        paused_until: Optional[datetime] = None,
        reason: Optional[str] = None,
        paused_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PauseEntry:
        now = now or datetime.now(UTC)
        entry = PauseEntry(
            scope=scope.lower() if scope != TEAM_SCOPE else scope,
            paused=paused,
            paused_at=now,
            paused_until=paused_until if paused else None,
            reason=reason,
            paused_by=paused_by,
        )
        self.repository.upsert_pause(entry)
        logger.info("%s %s%s", "Paused" if paused else "Resumed", entry.scope,
                    f" until {paused_until.isoformat()}" if paused and paused_until else "")
        return entry

    def _active(self, scope: str, now: datetime) -> Optional[PauseEntry]:
        entry = self.repository.get_pause(scope)
        if entry is None or not entry.paused:
            return None
        if is_pause_expired(now, entry.paused_until):
            self.repository.upsert_pause(entry.model_copy(update={"paused": False, "paused_until": None}))
            logger.info("Pause on %s expired; resumed", scope)
            return None
        return entry

    def is_paused(self, agent: Optional[str] = None, now: Optional[datetime] = None) -> PauseStatus:
        """Team pause takes precedence over an agent pause."""
        now = now or datetime.now(UTC)
        team = self._active(TEAM_SCOPE, now)
        if team is not None:
            return PauseStatus(True, TEAM_SCOPE, team.reason, team.paused_until)
        if agent:
            entry = self._active(agent.lower(), now)
            if entry is not None:
                return PauseStatus(True, entry.scope, entry.reason, entry.paused_until)
        return PauseStatus(False)

    def list_pauses(self, now: Optional[datetime] = None) -> list[PauseEntry]:
        now = now or datetime.now(UTC)
        return [e for e in self.repository.list_pauses() if self._active(e.scope, now) is not None]

    # -- intensity -----------------------------------------------------

    def get_intensity(self) -> IntensityState:
        stored = self.repository.get_setting(INTENSITY_KEY)
        if not stored:
            preset = IntensityPreset.NORMAL
            return IntensityState(preset=preset, limits=PRESET_LIMITS[preset], updated_by="default")
        try:
            preset = IntensityPreset(stored.get("preset", "normal"))
        except ValueError:
            logger.warning("Unknown intensity preset %r stored; using normal", stored.get("preset"))
            preset = IntensityPreset.NORMAL
        return IntensityState(
            preset=preset,
            limits=PRESET_LIMITS[preset],
            updated_at=stored.get("updated_at") or datetime.now(UTC),
            updated_by=stored.get("updated_by"),
        )

    def set_intensity(
        self,
        preset: IntensityPreset | str,
        updated_by: str = "system",
        now: Optional[datetime] = None,
    ) -> IntensityState:
        now = now or datetime.now(UTC)
        try:
            preset = IntensityPreset(preset)
        except ValueError as e:
            raise ConfigError(f"Unknown intensity preset '{preset}' (use low, normal or high)") from e
        self.repository.set_setting(
            INTENSITY_KEY,
            {"preset": preset.value, "updated_by": updated_by, "updated_at": now.isoformat()},
            now,
        )
        logger.info("Intensity set to %s by %s", preset.value, updated_by)
        return IntensityState(preset=preset, limits=PRESET_LIMITS[preset], updated_at=now, updated_by=updated_by)
