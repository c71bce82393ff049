"""State machine behind the public radio program page."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ProgramPageState(str, Enum):
    LOADING = "loading"
    GENERATING = "generating"
    PLAYER = "player"


class InvalidTransition(RuntimeError):
    """Raised when an event is not allowed in the current state."""


class ProgramPageMachine:
    """``loading`` -> ``generating`` | ``player``; ``generating`` -> ``player``."""

    def __init__(self) -> None:
        self._state = ProgramPageState.LOADING
        self._progress: Optional[float] = None

    @property
    def state(self) -> ProgramPageState:
        return self._state

    @property
    def progress(self) -> Optional[float]:
        return self._progress

    def _require(self, expected: ProgramPageState, event: str) -> None:
        if self._state is not expected:
            raise InvalidTransition(f"Cannot handle '{event}' in state '{self._state.value}'")

    def data_loaded(self, needs_generation: bool) -> ProgramPageState:
        self._require(ProgramPageState.LOADING, "data_loaded")
        if needs_generation:
            self._state = ProgramPageState.GENERATING
            self._progress = 0.0
        else:
            self._state = ProgramPageState.PLAYER
            self._progress = None
        return self._state

    def generation_progress(self, ratio: float) -> float:
        self._require(ProgramPageState.GENERATING, "generation_progress")
        self._progress = min(1.0, max(0.0, float(ratio)))
        return self._progress

    def playback_ready(self) -> ProgramPageState:
        self._require(ProgramPageState.GENERATING, "playback_ready")
        self._state = ProgramPageState.PLAYER
        self._progress = None
        return self._state

    def snapshot(self) -> Dict[str, object]:
        data: Dict[str, object] = {"state": self._state.value}
        if self._progress is not None:
            data["progress"] = self._progress
        return data


__all__ = ["InvalidTransition", "ProgramPageMachine", "ProgramPageState"]
