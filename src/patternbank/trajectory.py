"""
Trajectory tracker -- record the steps of one task attempt, then seal it.

    open --append_step--> open --end(success|failure)--> sealed

A sealed trajectory never changes again. Ending applies the confidence rule
exactly once to the trajectory's own confidence.
"""

import logging
from typing import List, Optional

from patternbank.confidence import update_confidence
from patternbank.errors import ValidationError
from patternbank.store import PatternStore
from patternbank.types import Outcome, TaskTrajectory, utcnow

logger = logging.getLogger("patternbank.trajectory")


def _coerce_outcome(outcome) -> Outcome:
    if isinstance(outcome, bool):
        return Outcome.SUCCESS if outcome else Outcome.FAILURE
    try:
        value = Outcome(outcome)
    except ValueError:
        raise ValidationError(f"unknown outcome {outcome!r}; expected 'success' or 'failure'") from None
    if not value.is_terminal:
        raise ValidationError("a trajectory can only end with success or failure")
    return value


class TrajectoryTracker:
    def __init__(self, store: PatternStore):
        self.store = store

    def start(self, task_id: str) -> TaskTrajectory:
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValidationError("task id must be a non-empty string")
        trajectory = TaskTrajectory(task_id, started_at=utcnow())
        self.store.create_trajectory(trajectory)
        logger.debug("Started trajectory %s", task_id)
        return trajectory

    def append_step(self, task_id: str, text: str) -> int:
        """Append one step. Returns the step count after appending."""
        if not isinstance(text, str) or not text:
            raise ValidationError("step text must be a non-empty string")
        return self.store.append_trajectory_step(task_id, text)

    def end(self, task_id: str, outcome) -> TaskTrajectory:
        """Seal the trajectory with success or failure (``True``/``False`` accepted)."""
        value = _coerce_outcome(outcome)
        self.store.seal_trajectory(task_id, value, update_confidence)
        trajectory = self.store.get_trajectory(task_id)
        logger.info(
            "Trajectory %s ended: %s after %d steps (confidence %.3f)",
            task_id,
            value.value,
            len(trajectory.steps),
            trajectory.confidence,
        )
        return trajectory

    def get(self, task_id: str) -> TaskTrajectory:
        return self.store.get_trajectory(task_id)

    def list(self, outcome: Optional[str] = None) -> List[TaskTrajectory]:
        return self.store.list_trajectories(Outcome(outcome) if outcome is not None else None)
