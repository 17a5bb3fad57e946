"""
Generic job runner.

State machine per job::

    pending --dequeued--> processing --success--> completed
                          processing --failure | timeout | error--> failed

A runner drives one job sequentially: it marks the job processing, runs the
kind's encoder invocations, maps each invocation's progress into the job's
0-100 range, writes and publishes throttled progress, and finally records
exactly one terminal state. Redelivered tasks for terminal jobs are no-ops.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config.settings import RunnerConfig
from core.commands import EncodePlan, Invocation
from core.errors import (ExecutionError, ExecutionTimeoutError, InfrastructureError,
                         InvalidJobParametersError, JobCancelledError, JobExecutionError,
                         JobNotFoundError)
from core.events import CompletedEvent, FailedEvent, ProcessingEvent
from core.executor import ExecutionResult, ProcessExecutor
from core.params import KindParams, parse_params
from core.parsers import DurationParser, PercentageParser, ProgressParser
from core.progress import ProgressThrottle, clamp_processing, multi_item, single_phase, two_phase
from core.publisher import ProgressPublisher
from db.store import JobSnapshot, JobStore
from utils import storage
from utils.video import probe_media


@dataclass
class JobOutput:
    output_ref: str
    output_size: Optional[int]
    output_files: Optional[List[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunContext:
    kind: str
    job_id: str
    snapshot: JobSnapshot
    throttle: ProgressThrottle
    params: Optional[KindParams] = None
    input_path: Optional[str] = None
    output_dir: Optional[str] = None
    plan: Optional[EncodePlan] = None
    executor: Optional[ProcessExecutor] = None
    cancelled: bool = False
    current: Optional[int] = None
    total: Optional[int] = None
    state: Dict[str, Any] = field(default_factory=dict)


class CancellationWatcher(threading.Thread):
    """Polls the store while an invocation runs and kills the encoder once
    the job is no longer active (cancelled or deleted)."""

    def __init__(self, runner: "JobRunner", ctx: RunContext, executor, interval: float):
        super().__init__(name=f"cancel-watch-{ctx.job_id}", daemon=True)
        self.runner = runner
        self.ctx = ctx
        self.executor = executor
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                active = self.runner.store.is_active(self.ctx.kind, self.ctx.job_id)
            except InfrastructureError as e:
                self.runner.logger.warning("Cancellation check failed for %s: %s",
                                           self.ctx.job_id, e)
                continue
            if not active:
                self.runner.logger.info("Job %s cancelled externally; killing encoder",
                                        self.ctx.job_id)
                self.ctx.cancelled = True
                self.executor.kill()
                return

    def stop(self):
        self._stop_event.set()


class JobRunner:
    kind: str = None
    # share of the job given to the first of two invocations; None = equal split
    first_phase_weight: Optional[float] = None

    def __init__(self, store: JobStore, publisher: ProgressPublisher,
                 config: RunnerConfig = None,
                 executor_factory: Callable[..., ProcessExecutor] = None,
                 throttle_factory: Callable[[], ProgressThrottle] = None):
        self.store = store
        self.publisher = publisher
        self.config = config or RunnerConfig()
        self.executor_factory = executor_factory or ProcessExecutor
        self.throttle_factory = throttle_factory or ProgressThrottle
        self.logger = logging.getLogger(f"core.kinds.{self.kind}")

    # -- entry point ---------------------------------------------------------

    def run(self, job_id: str) -> Optional[JobSnapshot]:
        """Execute one queue task. Safe to call again for the same job."""
        try:
            snapshot = self.store.mark_processing(self.kind, job_id)
        except JobNotFoundError:
            self.logger.warning("Job %s no longer exists; dropping task", job_id)
            return None
        if snapshot.terminal:
            self.logger.info("Job %s already %s; ignoring redelivery", job_id, snapshot.status)
            return snapshot

        throttle = self.throttle_factory()
        if snapshot.progress > 0:
            # redelivery after a crash: never publish below what clients saw
            throttle.last_value = snapshot.progress
        ctx = RunContext(kind=self.kind, job_id=job_id, snapshot=snapshot, throttle=throttle)
        self.logger.info("Processing job %s", job_id)
        self.report(ctx, 0.0, phase="starting")

        try:
            ctx.params = parse_params(self.kind, snapshot.kind_parameters)
            ctx.input_path = storage.resolve_input(snapshot.input_ref)
            self.record_input(ctx)
            ctx.output_dir = storage.job_output_dir(self.kind, job_id, self.config.storage_dir)
            output = self.execute(ctx)
        except JobCancelledError:
            self.logger.info("Job %s stopped after cancellation", job_id)
            self.discard_outputs(ctx)
            return self.store.get(self.kind, job_id)
        except InfrastructureError:
            raise
        except (ExecutionError, InvalidJobParametersError) as e:
            self.discard_outputs(ctx)
            self.fail(ctx, str(e))
            raise JobExecutionError(self.kind, job_id, str(e)) from e
        except Exception as e:
            self.logger.exception("Unexpected error in job %s", job_id)
            self.discard_outputs(ctx)
            self.fail(ctx, f"{type(e).__name__}: {e}")
            raise JobExecutionError(self.kind, job_id, str(e)) from e
        finally:
            self.cleanup(ctx)

        return self.complete(ctx, output)

    # -- kind hooks -----------------------------------------------------------

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        raise NotImplementedError

    def execute(self, ctx: RunContext) -> JobOutput:
        ctx.plan = self.build_plan(ctx)
        if not ctx.plan.invocations:
            raise ExecutionError("Nothing to process")
        self.run_plan(ctx, ctx.plan)
        output = self.collect_outputs(ctx, ctx.plan)
        return self.after_success(ctx, output)

    def collect_outputs(self, ctx: RunContext, plan: EncodePlan) -> JobOutput:
        sizes = [storage.verify_output_artifact(path) for path in plan.outputs]
        if not sizes:
            raise ExecutionError("Encoder produced no output")
        multi = len(plan.outputs) > 1 or plan.output_ref not in plan.outputs
        return JobOutput(output_ref=plan.output_ref, output_size=sum(sizes),
                         output_files=list(plan.outputs) if multi else None)

    def after_success(self, ctx: RunContext, output: JobOutput) -> JobOutput:
        return output

    def parsers_for(self, ctx: RunContext, invocation: Invocation) -> List[ProgressParser]:
        return [DurationParser(invocation.expected_duration), PercentageParser()]

    def map_progress(self, ctx: RunContext, index: int, local: float) -> float:
        count = len(ctx.plan.invocations) if ctx.plan else 1
        if count == 1:
            return single_phase(local)
        if count == 2 and self.first_phase_weight is not None:
            return two_phase(index, local, self.first_phase_weight)
        return multi_item(index, local, count)

    def record_input(self, ctx: RunContext):
        """Best-effort: keep the input's size and duration on the job record."""
        size = os.path.getsize(ctx.input_path) if os.path.isfile(ctx.input_path) else None
        duration = None
        try:
            duration = probe_media(ctx.input_path, self.config.ffprobe_path,
                                   timeout=self.config.thumbnail_timeout).duration or None
        except (ExecutionError, ValueError) as e:
            self.logger.debug("Could not probe input of job %s: %s", ctx.job_id, e)
        if size is not None or duration is not None:
            self.store.record_input(self.kind, ctx.job_id, size, duration)

    # -- driving invocations --------------------------------------------------

    def run_plan(self, ctx: RunContext, plan: EncodePlan):
        for index, invocation in enumerate(plan.invocations):
            self.check_cancelled(ctx)
            if len(plan.invocations) > 1:
                ctx.current, ctx.total = index + 1, len(plan.invocations)
            self.logger.info("Job %s %s (%d/%d)", ctx.job_id, invocation.phase,
                             index + 1, len(plan.invocations))
            result = self.run_invocation(
                ctx, invocation,
                on_progress=lambda local, i=index, phase=invocation.phase: self.report(
                    ctx, self.map_progress(ctx, i, local), phase))
            self.raise_for_result(ctx, result)
            self.logger.info("Job %s %s finished in %.1fs", ctx.job_id, invocation.phase,
                             result.duration_ms / 1000)
            self.report(ctx, self.map_progress(ctx, index, 100.0), invocation.phase)

    def run_invocation(self, ctx: RunContext, invocation: Invocation,
                       on_progress: Callable[[float], None] = None,
                       timeout: float = None, parsers: List[ProgressParser] = None
                       ) -> ExecutionResult:
        executor = self.executor_factory(timeout=timeout or self.config.timeout)
        ctx.executor = executor
        watcher = CancellationWatcher(self, ctx, executor, self.config.cancel_poll_interval)
        watcher.start()
        try:
            return executor.execute(
                invocation.argv,
                timeout=timeout or self.config.timeout,
                on_progress=on_progress,
                on_log=lambda line: self.on_log(ctx, line),
                parsers=parsers if parsers is not None else self.parsers_for(ctx, invocation),
            )
        finally:
            watcher.stop()
            ctx.executor = None

    def raise_for_result(self, ctx: RunContext, result: ExecutionResult):
        if result.success:
            return
        if ctx.cancelled:
            raise JobCancelledError(self.kind, ctx.job_id)
        if result.timed_out:
            raise ExecutionTimeoutError(result.error)
        raise ExecutionError(result.error or "Encoder execution failed")

    def check_cancelled(self, ctx: RunContext):
        if ctx.cancelled or not self.store.is_active(self.kind, ctx.job_id):
            ctx.cancelled = True
            raise JobCancelledError(self.kind, ctx.job_id)

    def on_log(self, ctx: RunContext, line: str):
        if "error" in line.lower():
            self.logger.warning("Job %s encoder: %s", ctx.job_id, line)
        else:
            self.logger.debug("Job %s encoder: %s", ctx.job_id, line)

    # -- progress and terminal writes -----------------------------------------

    def report(self, ctx: RunContext, progress: float, phase: str = None):
        """Write and publish a processing update if the throttle lets it through."""
        progress = round(clamp_processing(progress), 2)
        if not ctx.throttle.should_publish(progress):
            return
        self.store.update_progress(self.kind, ctx.job_id, progress)
        self.publish(ctx, ProcessingEvent(job_id=ctx.job_id, kind=self.kind,
                                          progress=progress, phase=phase,
                                          current=ctx.current, total=ctx.total))

    def complete(self, ctx: RunContext, output: JobOutput) -> Optional[JobSnapshot]:
        output = self.store_artifacts(ctx, output)
        try:
            written = self.store.complete(self.kind, ctx.job_id, output.output_ref,
                                          output.output_size, output.output_files,
                                          **output.extra)
        except JobNotFoundError:
            self.logger.warning("Job %s deleted while processing; discarding output", ctx.job_id)
            self.remove_output(output)
            return None
        if not written:
            self.remove_output(output)
            return self.store.get(self.kind, ctx.job_id)
        self.publish(ctx, CompletedEvent(job_id=ctx.job_id, kind=self.kind,
                                         output_ref=output.output_ref,
                                         output_size=output.output_size,
                                         output_files=output.output_files))
        self.logger.info("Job %s completed: %s (%s bytes)", ctx.job_id, output.output_ref,
                         output.output_size)
        return self.store.get(self.kind, ctx.job_id)

    def fail(self, ctx: RunContext, error: str):
        self.logger.error("Job %s failed: %s", ctx.job_id, error)
        try:
            written = self.store.fail(self.kind, ctx.job_id, error)
        except JobNotFoundError:
            self.logger.warning("Job %s deleted while processing", ctx.job_id)
            return
        if written:
            self.publish(ctx, FailedEvent(job_id=ctx.job_id, kind=self.kind, error=error))

    def publish(self, ctx: RunContext, event):
        try:
            self.publisher.publish(self.kind, ctx.job_id, event)
        except InfrastructureError as e:
            # the store stays authoritative; subscribers fall back to polling
            self.logger.warning("Could not publish %s event for job %s: %s",
                                event.status, ctx.job_id, e)

    # -- artifacts -------------------------------------------------------------

    def store_artifacts(self, ctx: RunContext, output: JobOutput) -> JobOutput:
        if not storage.s3_enabled():
            return output
        prefix = f"outputs/{self.kind}/{ctx.job_id}"

        def upload(path: str) -> str:
            return storage.upload_artifact(path, f"{prefix}/{os.path.basename(path)}")

        extra = {key: upload(value) if isinstance(value, str) and os.path.isfile(value) else value
                 for key, value in output.extra.items()}
        if output.output_files:
            refs = [upload(path) for path in output.output_files]
            output = JobOutput(output_ref=storage.s3_ref(prefix + "/"), output_files=refs,
                               output_size=output.output_size, extra=extra)
        else:
            output = JobOutput(output_ref=upload(output.output_ref),
                               output_size=output.output_size, extra=extra)
        storage.remove_artifact(ctx.output_dir)
        return output

    def remove_output(self, output: JobOutput):
        for ref in output.output_files or []:
            storage.remove_artifact(ref)
        storage.remove_artifact(output.output_ref)
        for ref in output.extra.values():
            if isinstance(ref, str):
                storage.remove_artifact(ref)

    def discard_outputs(self, ctx: RunContext):
        """Remove partial output so nothing half-written is ever referenced."""
        if ctx.plan is None:
            return
        for path in ctx.plan.outputs:
            storage.remove_artifact(path)
        if ctx.output_dir and ctx.plan.output_ref == ctx.output_dir:
            storage.remove_artifact(ctx.output_dir)

    def cleanup(self, ctx: RunContext):
        if ctx.input_path and ctx.input_path != ctx.snapshot.input_ref:
            # downloaded copy of a remote input
            storage.remove_artifact(ctx.input_path)
        if ctx.plan is None:
            return
        for path in ctx.plan.intermediates:
            storage.remove_artifact(path)
