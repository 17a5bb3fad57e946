import re
from typing import List, Optional

TIMECODE = r"(\d+):(\d{2}):(\d{2}(?:\.\d+)?)"


def parse_timecode(text: str) -> Optional[float]:
    """HH:MM:SS(.ff) -> seconds."""
    match = re.fullmatch(TIMECODE, text.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class ProgressParser:
    """Extracts a 0-100 progress value from one line of encoder output.

    Parsers may keep state across lines (a parser instance is used for a
    single invocation only).
    """

    def parse(self, line: str) -> Optional[float]:
        raise NotImplementedError


class DurationParser(ProgressParser):
    """Compares ``time=`` against the ``Duration:`` announced earlier.

    ``total_duration`` can be supplied up front for inputs where the
    announced duration is wrong (e.g. a trimmed range).
    """

    DURATION_RE = re.compile(r"Duration:\s*" + TIMECODE)
    TIME_RE = re.compile(r"time=\s*" + TIMECODE)

    def __init__(self, total_duration: float = None):
        self.total_duration = total_duration

    def parse(self, line: str) -> Optional[float]:
        if self.total_duration is None:
            match = self.DURATION_RE.search(line)
            if match:
                h, m, s = match.groups()
                self.total_duration = int(h) * 3600 + int(m) * 60 + float(s)

        match = self.TIME_RE.search(line)
        if not match or not self.total_duration:
            return None
        h, m, s = match.groups()
        elapsed = int(h) * 3600 + int(m) * 60 + float(s)
        return elapsed / self.total_duration * 100


class PercentageParser(ProgressParser):
    """Explicit ``progress=NN.N%`` markers."""

    PERCENT_RE = re.compile(r"progress=(\d+(?:\.\d+)?)%")

    def parse(self, line: str) -> Optional[float]:
        match = self.PERCENT_RE.search(line)
        return float(match.group(1)) if match else None


class FrameCountParser(ProgressParser):
    """``frame= N`` divided by a known total frame count."""

    FRAME_RE = re.compile(r"frame=\s*(\d+)")

    def __init__(self, total_frames: int):
        self.total_frames = total_frames
        self.last_frame = 0

    def parse(self, line: str) -> Optional[float]:
        matches = self.FRAME_RE.findall(line)
        if not matches or self.total_frames <= 0:
            return None
        frame = int(matches[-1])
        if frame <= 0:
            return None
        self.last_frame = frame
        return frame / self.total_frames * 100


def default_parsers() -> List[ProgressParser]:
    return [DurationParser(), PercentageParser()]
