from core.commands import VIDEO_FORMATS, EncodePlan, convert_plan
from core.kinds.thumbnail import try_preview_thumbnail
from core.runner import JobOutput, JobRunner, RunContext


class ConvertRunner(JobRunner):
    kind = "convert"

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        return convert_plan(ctx.params, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)

    def after_success(self, ctx: RunContext, output: JobOutput) -> JobOutput:
        if ctx.params.to_format in VIDEO_FORMATS:
            thumbnail = try_preview_thumbnail(self, ctx, output.output_ref)
            if thumbnail:
                output.extra["thumbnail_ref"] = thumbnail
        return output
