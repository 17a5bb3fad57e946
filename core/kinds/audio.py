from core.commands import EncodePlan, audio_plan
from core.runner import JobRunner, RunContext


class AudioExtractionRunner(JobRunner):
    kind = "audio"

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        return audio_plan(ctx.params, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)
