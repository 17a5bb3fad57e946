from core.commands import EncodePlan, compress_plan
from core.errors import ExecutionError
from core.kinds.thumbnail import try_preview_thumbnail
from core.params import CompressParams
from core.runner import JobOutput, JobRunner, RunContext
from utils.video import probe_media


class CompressRunner(JobRunner):
    """Single-pass CRF/bitrate encode, or a two-pass bitrate encode whose
    first pass counts for ``two_pass_first_weight`` percent of the job."""

    kind = "compress"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.first_phase_weight = self.config.two_pass_first_weight

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        params: CompressParams = ctx.params
        input_kbps = None
        if params.target_size and not params.bitrate:
            try:
                input_kbps = probe_media(ctx.input_path, self.config.ffprobe_path).bitrate or None
            except ExecutionError as e:
                self.logger.warning("Job %s: could not probe input bitrate: %s", ctx.job_id, e)
        return compress_plan(params, ctx.input_path, ctx.output_dir,
                             self.config.ffmpeg_path, input_kbps=input_kbps)

    def after_success(self, ctx: RunContext, output: JobOutput) -> JobOutput:
        thumbnail = try_preview_thumbnail(self, ctx, output.output_ref)
        if thumbnail:
            output.extra["thumbnail_ref"] = thumbnail
        return output
