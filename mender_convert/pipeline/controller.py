"""Pipeline controller.

A command is a ``Pipeline``: an ordered tuple of steps. The controller runs
them one at a time and moves the run through Idle, Running, Succeeded or
Failed. Whatever happens, including KeyboardInterrupt, it then:

    1. Unmounts every mount set still outstanding
    2. Releases every device mapping still outstanding
    3. Removes the mount root
    4. Removes intermediate files unless intermediates are kept
    5. On failure, removes the outputs of the run unless intermediates are kept

A second interrupt during one of these phases is recorded and the remaining
phases still run.

Files that are being written when a step fails are never left under their
final names; the producing component removes them itself.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from mender_convert.domain.models import (
    Artifact,
    ConversionStep,
    PartitionLayoutPlan,
    PipelineState,
    RawDiskImage,
    TargetDiskImage,
)
from mender_convert.exceptions import ConversionError
from mender_convert.logging import EventLogger, LoggerFactory, operation_context
from mender_convert.storage.mount import remove_mount_point

from .collaborators import Collaborators
from .context import PipelineContext


@dataclass
class RunState:
    """Values produced by steps for later steps."""

    state: PipelineState = PipelineState.IDLE
    working_image: Optional[Path] = None
    raw_image: Optional[RawDiskImage] = None
    rootfs_size: Optional[int] = None
    plan: Optional[PartitionLayoutPlan] = None
    target: Optional[TargetDiskImage] = None
    populated: list[str] = field(default_factory=list)
    artifact: Optional[Artifact] = None
    package: Optional[Path] = None
    intermediates: list[Path] = field(default_factory=list)
    outputs: list[Path] = field(default_factory=list)
    current_step: Optional[ConversionStep] = None


StepAction = Callable[[PipelineContext, RunState, Collaborators], None]


@dataclass(frozen=True)
class Step:
    name: str
    action: StepAction
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class Pipeline:
    name: str
    steps: tuple[Step, ...]

    @classmethod
    def concatenate(cls, name: str, *pipelines: Pipeline) -> Pipeline:
        steps: tuple[Step, ...] = ()
        for pipeline in pipelines:
            steps += pipeline.steps
        return cls(name=name, steps=steps)


@dataclass(frozen=True)
class PipelineResult:
    command: str
    state: PipelineState
    completed_steps: int
    total_steps: int
    failed_step: Optional[ConversionStep] = None
    error: Optional[BaseException] = None
    outputs: tuple[Path, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED


class MissingInputError(ConversionError):
    """A step ran before the values it needs were produced."""

    def __init__(self, step: str, missing: list[str]):
        self.step = step
        self.missing = missing
        super().__init__(f"Step {step!r} is missing required input(s): {', '.join(missing)}")


class PipelineController:
    def __init__(self, context: PipelineContext, collaborators: Optional[Collaborators] = None):
        self.context = context
        self.collaborators = collaborators or Collaborators.create()
        self.log = LoggerFactory.for_pipeline(context.job_id or None)

    def run(self, pipeline: Pipeline) -> PipelineResult:
        run_state = RunState()
        total = len(pipeline.steps)
        completed = 0
        failure: Optional[BaseException] = None
        run_state.state = PipelineState.RUNNING
        self.log.info(f"Running {pipeline.name} ({total} steps)")

        for ordinal, step in enumerate(pipeline.steps, start=1):
            progress = ConversionStep(step.name, ordinal, total, step.requires)
            run_state.current_step = progress
            EventLogger.log_step_started(self.log, step.name, ordinal, total)
            try:
                self._check_requires(step, run_state)
                with operation_context(
                    step.name, job_id=self.context.job_id or None, step=progress.label
                ):
                    step.action(self.context, run_state, self.collaborators)
            except BaseException as error:
                failure = error
                break
            completed += 1

        run_state.state = PipelineState.FAILED if failure is not None else PipelineState.SUCCEEDED
        cleanup_error = self.cleanup(run_state)
        if failure is None and cleanup_error is not None:
            run_state.state = PipelineState.FAILED
            failure = cleanup_error
            if not self.context.options.keep_intermediates:
                self._remove_outputs(run_state)

        if failure is not None:
            step_label = run_state.current_step.label if run_state.current_step else "-"
            self.log.error(f"{pipeline.name} failed at step {step_label}: {failure}")
            return PipelineResult(
                command=pipeline.name,
                state=run_state.state,
                completed_steps=completed,
                total_steps=total,
                failed_step=run_state.current_step,
                error=failure,
            )
        self.log.success(f"{pipeline.name} finished")
        return PipelineResult(
            command=pipeline.name,
            state=run_state.state,
            completed_steps=completed,
            total_steps=total,
            outputs=tuple(run_state.outputs),
        )

    def _check_requires(self, step: Step, run_state: RunState) -> None:
        missing = [name for name in step.requires if getattr(run_state, name, None) is None]
        if missing:
            raise MissingInputError(step.name, missing)

    def cleanup(self, run_state: RunState) -> Optional[BaseException]:
        """Release every resource of the run; returns the first cleanup failure.

        An interrupt during one phase does not stop the phases after it; it
        is returned like any other cleanup failure.
        """
        first_error: Optional[BaseException] = None
        phases = (
            ("Unmounting", self.collaborators.mounts.unmount_outstanding),
            ("Releasing loop devices", self.collaborators.device_maps.release_all),
            ("Removing files", lambda: self._remove_files(run_state)),
        )
        for description, phase in phases:
            try:
                phase()
            except (ConversionError, KeyboardInterrupt) as error:
                if isinstance(error, KeyboardInterrupt):
                    self.log.warning(f"{description} during cleanup was interrupted, continuing")
                else:
                    self.log.error(f"{description} during cleanup failed: {error}")
                first_error = first_error or error
        return first_error

    def _remove_files(self, run_state: RunState) -> None:
        if not self.collaborators.mounts.outstanding:
            remove_mount_point(self.context.mount_root)

        keep = self.context.options.keep_intermediates
        if keep:
            self.log.info("Keeping intermediate files")
        else:
            for path in run_state.intermediates:
                _remove_file(path, self.log)
        if run_state.state is PipelineState.FAILED and not keep:
            self._remove_outputs(run_state)

    def _remove_outputs(self, run_state: RunState) -> None:
        for path in run_state.outputs:
            _remove_file(path, self.log)


def _remove_file(path: Path, log) -> None:
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()
    else:
        return
    log.debug(f"Removed {path}")
