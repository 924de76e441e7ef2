"""Per-file stage state machine.

Centralizes (file, stage) transition logic, validation and broadcasting.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

from uploader.models.stages import StageName, StageResult, StageState
from uploader.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """A stage was asked to move to a state it cannot reach."""


@dataclass(frozen=True)
class Transition:
    path: str
    stage: StageName
    from_state: StageState
    to_state: StageState
    at: float


class StageTable:
    """Tracks the StageResult of every (file, stage) pair."""

    # Define valid state transitions
    VALID_TRANSITIONS = {
        StageState.PENDING: {StageState.PROCESSING},
        StageState.PROCESSING: {StageState.COMPLETE, StageState.FAILED},
        StageState.FAILED: {StageState.PROCESSING},
        StageState.COMPLETE: set(),  # Terminal until reset
    }

    def __init__(self, event_broadcaster: EventBroadcaster | None = None):
        self._broadcaster = event_broadcaster
        self._results: dict[tuple[str, StageName], StageResult] = {}
        self.history: list[Transition] = []

    def can_transition(self, from_state: StageState, to_state: StageState) -> bool:
        """Validate if a transition is allowed. Self transitions never are."""
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def get(self, path: str, stage: StageName) -> StageResult:
        return self._results.get((path, stage)) or StageResult.pending()

    def has(self, path: str, stage: StageName) -> bool:
        return (path, stage) in self._results

    def snapshot(self, path: str) -> dict[StageName, StageResult]:
        """Every tracked stage of one file."""
        return {stage: result for (p, stage), result in self._results.items() if p == path}

    def paths(self) -> list[str]:
        return sorted({p for p, _ in self._results})

    def clear(self) -> None:
        self._results.clear()
        self.history.clear()

    async def initialize(self, path: str, stages: tuple[StageName, ...]) -> None:
        """Register a file's applicable stages as pending."""
        for stage in stages:
            self._results[(path, stage)] = StageResult.pending()
            await self._broadcast(path, stage, self._results[(path, stage)])

    async def _move(self, path: str, stage: StageName, result: StageResult) -> StageResult:
        current = self.get(path, stage)
        if not self.can_transition(current.state, result.state):
            raise InvalidTransition(
                f"{path} [{stage.value}]: {current.state.value} -> {result.state.value}"
            )

        self._results[(path, stage)] = result
        self.history.append(Transition(path, stage, current.state, result.state, time.time()))
        logger.debug(f"{path} [{stage.value}]: {current.state.value} -> {result.state.value}")
        await self._broadcast(path, stage, result)
        return result

    async def begin(self, path: str, stage: StageName) -> StageResult:
        """Move a pending or failed stage to processing.

        Raises:
            InvalidTransition: the stage is already processing or complete.
        """
        current = self.get(path, stage)
        return await self._move(path, stage, StageResult.processing(attempts=current.attempts))

    async def complete(self, path: str, stage: StageName, value: Any = None, attempts: int = 1) -> StageResult:
        return await self._move(path, stage, StageResult.complete(value, attempts=attempts))

    async def fail(self, path: str, stage: StageName, error: dict, attempts: int = 1) -> StageResult:
        return await self._move(path, stage, StageResult.failed(error, attempts=attempts))

    async def reset(self, path: str, stage: StageName) -> StageResult:
        """Put a stage back to pending regardless of its current state."""
        current = self.get(path, stage)
        result = StageResult.pending()
        self._results[(path, stage)] = result
        self.history.append(Transition(path, stage, current.state, result.state, time.time()))
        await self._broadcast(path, stage, result)
        return result

    async def _broadcast(self, path: str, stage: StageName, result: StageResult) -> None:
        if self._broadcaster is None:
            return
        # Failure is non-fatal since the table is already updated
        try:
            await self._broadcaster.broadcast_stage_changed(path, stage, result)
        except Exception as e:
            logger.error(f"{path} [{stage.value}]: broadcast failed: {e}", exc_info=True)
