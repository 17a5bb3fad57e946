from core.commands import EncodePlan, trim_plan
from core.runner import JobRunner, RunContext


class TrimRunner(JobRunner):
    """Cuts ``[start_time, end_time)``; progress is measured against the
    clip length rather than the input's duration."""

    kind = "trim"

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        return trim_plan(ctx.params, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)
