# deploykit/progress/tracker.py
"""
Deployment Progress Tracker

Sequential bookkeeping for a fixed pipeline of named stages, used to report
progress and to attribute a failure to a stage. It records what happened to
each stage; what a stage does is the caller's business.
"""
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from deploykit.errors import NotFoundError, ValidationError


class StageStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.PASSED, StageStatus.FAILED, StageStatus.SKIPPED)


STAGE_INDICATORS = {
    StageStatus.PASSED: "✅",
    StageStatus.RUNNING: "⏳",
    StageStatus.FAILED: "❌",
    StageStatus.SKIPPED: "⏭️",
    StageStatus.PENDING: "⏸️",
}

DEFAULT_STAGES = [
    "SST Environment Checks",
    "Pre-Deployment Quality Checks",
    "Build & Deploy",
    "Post-Deployment Validation",
    "Health Checks",
]


@dataclass
class StageProgress:
    """Progress record for one pipeline stage"""
    number: int
    total: int
    name: str
    status: StageStatus = StageStatus.PENDING
    duration: Optional[float] = None  # seconds
    start_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['status'] = self.status.value
        return d


class DeploymentProgress:
    """
    Tracks stage outcomes for one pipeline run.

    Stage numbers are 1-based and fixed at construction. At most one stage
    may be running at a time, and each stage reaches a terminal status
    (passed, failed, skipped) exactly once.
    """

    def __init__(self, stage_names: List[str],
                 clock: Optional[Callable[[], float]] = None):
        if not stage_names:
            raise ValidationError("A pipeline needs at least one stage")

        self._clock = clock or time.monotonic
        total = len(stage_names)
        self._stages: List[StageProgress] = [
            StageProgress(number=index + 1, total=total, name=name)
            for index, name in enumerate(stage_names)
        ]

    @property
    def stages(self) -> List[StageProgress]:
        return list(self._stages)

    @property
    def current_stage(self) -> Optional[StageProgress]:
        for stage in self._stages:
            if stage.status == StageStatus.RUNNING:
                return stage
        return None

    def get_stage(self, stage_number: int) -> StageProgress:
        if not 1 <= stage_number <= len(self._stages):
            raise NotFoundError("Stage", stage_number)
        return self._stages[stage_number - 1]

    def _require_not_terminal(self, stage: StageProgress) -> None:
        if stage.status.is_terminal:
            raise ValidationError(
                f"Stage {stage.number} ({stage.name}) already {stage.status.value}",
                details={"stage": stage.number, "status": stage.status.value}
            )

    def start_stage(self, stage_number: int) -> StageProgress:
        """Mark a stage running. Earlier stages are not required to be finished."""
        stage = self.get_stage(stage_number)
        self._require_not_terminal(stage)

        running = self.current_stage
        if running is not None and running is not stage:
            raise ValidationError(
                f"Stage {running.number} ({running.name}) is still running",
                details={"running_stage": running.number, "requested_stage": stage_number}
            )

        stage.status = StageStatus.RUNNING
        stage.start_time = self._clock()
        return stage

    def complete_stage(self, stage_number: int, passed: bool) -> StageProgress:
        """Mark a stage passed or failed, recording its duration if it was started"""
        stage = self.get_stage(stage_number)
        self._require_not_terminal(stage)

        stage.status = StageStatus.PASSED if passed else StageStatus.FAILED
        if stage.start_time is not None:
            stage.duration = self._clock() - stage.start_time
        else:
            stage.duration = 0.0
        return stage

    def skip_stage(self, stage_number: int) -> StageProgress:
        stage = self.get_stage(stage_number)
        self._require_not_terminal(stage)
        stage.status = StageStatus.SKIPPED
        return stage

    def get_stage_header(self, stage_number: int) -> str:
        """Header such as "STAGE 1/5: SST Environment Checks" """
        stage = self.get_stage(stage_number)
        return f"STAGE {stage.number}/{stage.total}: {stage.name}"

    def get_progress_bar(self) -> str:
        """Two-line text bar: status indicators, then stage labels"""
        indicators = [STAGE_INDICATORS[stage.status] for stage in self._stages]
        labels = [f"Stage {stage.number}" for stage in self._stages]
        return f"{' | '.join(indicators)}\n{' | '.join(labels)}"

    def get_estimated_time_remaining(self) -> Optional[int]:
        """
        Seconds left, estimated as average passed-stage duration times the
        number of pending stages.

        This is a linear approximation: it assumes the remaining stages take as
        long as the ones already passed. Returns None until some stage has
        passed with a recorded duration.
        """
        timed = [
            stage.duration for stage in self._stages
            if stage.status == StageStatus.PASSED
            and stage.start_time is not None
            and stage.duration is not None
        ]
        if not timed:
            return None

        average = sum(timed) / len(timed)
        pending = sum(1 for stage in self._stages if stage.status == StageStatus.PENDING)
        return round(average * pending)

    def get_failure_summary(self, failed_stage_number: int) -> str:
        stage = self.get_stage(failed_stage_number)
        passed = sum(1 for s in self._stages if s.status == StageStatus.PASSED)
        return (
            f"Failed at STAGE {stage.number}/{stage.total}: {stage.name} "
            f"({passed}/{stage.total - 1} prior stages completed)"
        )

    def snapshot(self) -> List[Dict[str, Any]]:
        """Read-only view of every stage for progress rendering"""
        return [stage.to_dict() for stage in self._stages]
