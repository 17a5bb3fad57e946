import os
import re

from core.commands import EncodePlan, frames_plan
from core.errors import ExecutionError
from core.params import FrameParams
from core.parsers import DurationParser, FrameCountParser
from core.runner import JobOutput, JobRunner, RunContext

FRAME_NUMBER_RE = re.compile(r"_frame_(\d+)\.\w+$")


def frame_number(path: str) -> int:
    match = FRAME_NUMBER_RE.search(path)
    return int(match.group(1)) if match else 0


class FrameExtractionRunner(JobRunner):
    """Image sequence at a fixed rate. Progress counts extracted frames
    against the expected total; the output reference is the directory."""

    kind = "frames"

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        params: FrameParams = ctx.params
        expected = params.estimated_frames or max(round(params.duration * params.fps), 1)
        ctx.state["frame_parser"] = FrameCountParser(expected)
        ctx.total = expected
        return frames_plan(params, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)

    def parsers_for(self, ctx, invocation):
        return [ctx.state["frame_parser"], DurationParser(invocation.expected_duration)]

    def report(self, ctx: RunContext, progress: float, phase: str = None):
        parser = ctx.state.get("frame_parser")
        if parser is not None and parser.last_frame:
            ctx.current = parser.last_frame
        super().report(ctx, progress, phase)

    def collect_outputs(self, ctx: RunContext, plan: EncodePlan) -> JobOutput:
        suffix = "." + ctx.params.format
        frames = sorted((os.path.join(ctx.output_dir, name) for name in os.listdir(ctx.output_dir)
                         if name.endswith(suffix)), key=frame_number)
        frames = [path for path in frames if os.path.getsize(path) > 0]
        if not frames:
            raise ExecutionError("No frames were extracted")
        return JobOutput(output_ref=plan.output_ref,
                         output_size=sum(os.path.getsize(p) for p in frames),
                         output_files=frames)
