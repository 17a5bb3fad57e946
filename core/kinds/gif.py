from core.commands import EncodePlan, gif_plan
from core.runner import JobRunner, RunContext


class GifRunner(JobRunner):
    """Palette generation followed by palette-mapped encoding.

    A failure in either invocation fails the job; the palette is an
    intermediate and is removed either way."""

    kind = "gif"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.first_phase_weight = self.config.gif_palette_weight

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        return gif_plan(ctx.params, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)
