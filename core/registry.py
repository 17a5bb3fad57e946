"""Job kinds and the runner that handles each."""

from typing import Dict, Type

from core.kinds.audio import AudioExtractionRunner
from core.kinds.compress import CompressRunner
from core.kinds.convert import ConvertRunner
from core.kinds.frames import FrameExtractionRunner
from core.kinds.gif import GifRunner
from core.kinds.thumbnail import ThumbnailRunner
from core.kinds.trim import TrimRunner
from core.errors import InvalidJobParametersError
from core.runner import JobRunner

RUNNERS: Dict[str, Type[JobRunner]] = {
    runner.kind: runner
    for runner in (CompressRunner, ConvertRunner, TrimRunner, GifRunner,
                   ThumbnailRunner, FrameExtractionRunner, AudioExtractionRunner)
}

KINDS = tuple(RUNNERS)


def create_runner(kind: str, store, publisher, config=None, **kwargs) -> JobRunner:
    try:
        runner_cls = RUNNERS[kind]
    except KeyError:
        raise InvalidJobParametersError(f"Unknown job kind: {kind}")
    return runner_cls(store, publisher, config, **kwargs)
