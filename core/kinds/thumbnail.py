"""Thumbnail extraction: one single-frame invocation per timestamp."""

import os
from typing import List, Optional

from core.commands import EncodePlan, Invocation, even_timestamps, thumbnail_argv, thumbnail_plan
from core.errors import ExecutionError
from core.params import ThumbnailParams, to_seconds
from core.runner import JobRunner, RunContext
from utils.video import probe_media


def resolve_timestamps(params: ThumbnailParams, duration: Optional[float]) -> List[float]:
    """Explicit timestamps that fall inside the media, or ``count`` evenly
    spaced ones when none were given."""
    if params.timestamps:
        seconds = [to_seconds(ts) for ts in params.timestamps]
        if duration:
            return [ts for ts in seconds if 0 <= ts < duration]
        return [ts for ts in seconds if ts >= 0]
    return even_timestamps(duration or 0, params.count)


class ThumbnailRunner(JobRunner):
    kind = "thumbnail"

    def build_plan(self, ctx: RunContext) -> EncodePlan:
        params: ThumbnailParams = ctx.params
        duration = probe_media(ctx.input_path, self.config.ffprobe_path).duration
        timestamps = resolve_timestamps(params, duration)
        if not timestamps:
            raise ExecutionError("No valid thumbnail timestamps within the media duration")
        ctx.total = len(timestamps)
        resolved = params.model_copy(update={"timestamps": timestamps})
        return thumbnail_plan(resolved, ctx.input_path, ctx.output_dir, self.config.ffmpeg_path)

    def run_invocation(self, ctx, invocation, on_progress=None, timeout=None, parsers=None):
        # single frames report no progress of their own
        return super().run_invocation(ctx, invocation, on_progress,
                                      timeout or self.config.thumbnail_timeout, parsers)


def try_preview_thumbnail(runner: JobRunner, ctx: RunContext, source: str,
                          width: int = 320) -> Optional[str]:
    """Best-effort poster frame for a finished video. Never fails the job."""
    output = os.path.join(ctx.output_dir, "thumbnail.jpg")
    try:
        duration = probe_media(source, runner.config.ffprobe_path).duration
    except ExecutionError as e:
        runner.logger.warning("Job %s: skipping preview thumbnail: %s", ctx.job_id, e)
        return None
    timestamp = round(min(duration * 0.1, 5.0), 2) if duration else 0
    invocation = Invocation(thumbnail_argv(source, output, timestamp, width,
                                           runner.config.ffmpeg_path), phase="thumbnail")
    result = runner.run_invocation(ctx, invocation, timeout=runner.config.thumbnail_timeout,
                                   parsers=[])
    if not result.success or not os.path.isfile(output) or os.path.getsize(output) == 0:
        runner.logger.warning("Job %s: preview thumbnail failed: %s", ctx.job_id, result.error)
        return None
    return output
