import os
import sys
import textwrap
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

sys.path.append(str(Path(__file__).parent.parent))

from config.settings import RunnerConfig
from core.executor import ExecutionResult
from core.publisher import InMemoryProgressPublisher
from db.models import JOB_MODELS  # noqa: F401
from db.session import Base, make_engine
from db.store import JobStore


@pytest.fixture
def store(tmp_path):
    """JobStore backed by a throwaway SQLite file"""
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(bind=engine)
    yield JobStore(session_factory=sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


@pytest.fixture
def publisher():
    pub = InMemoryProgressPublisher()
    yield pub
    pub.stop()


class RecordingPublisher(InMemoryProgressPublisher):
    """Keeps every published event for assertions."""

    def __init__(self):
        super().__init__()
        self.events = []

    def publish(self, kind, job_id, event):
        self.events.append(event)
        return super().publish(kind, job_id, event)


@pytest.fixture
def recorder():
    return RecordingPublisher()


@pytest.fixture
def runner_config(tmp_path):
    return RunnerConfig(ffmpeg_path="ffmpeg", ffprobe_path=str(tmp_path / "no-ffprobe"),
                        timeout=30, thumbnail_timeout=5, cancel_poll_interval=0.05,
                        storage_dir=str(tmp_path / "storage"))


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 1024)
    return str(path)


def output_arg(argv):
    """Last argument of an ffmpeg command line: its output path."""
    return argv[-1]


class FakeExecutor:
    """Stands in for ProcessExecutor; each call plays the next scripted step.

    A step is a callable ``step(argv, on_progress) -> ExecutionResult``.
    """

    def __init__(self, steps, calls, timeout=None):
        self.steps = steps
        self.calls = calls
        self.timeout = timeout
        self.killed = False

    def execute(self, argv, timeout=None, on_progress=None, on_log=None, parsers=None):
        self.calls.append(list(argv))
        self.parsers = parsers or []
        step = self.steps.pop(0)
        return step(argv, on_progress or (lambda value: None), self)

    def kill(self):
        self.killed = True
        return True


class ScriptedExecutors:
    """executor_factory handing out FakeExecutors that share one script."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    def __call__(self, timeout=None):
        return FakeExecutor(self.steps, self.calls, timeout)


def write_output(size, progress=(25.0, 50.0, 75.0)):
    """Step that reports progress then writes ``size`` bytes to the output."""

    def step(argv, on_progress, executor):
        for value in progress:
            on_progress(value)
        path = output_arg(argv)
        if path != os.devnull:
            with open(path, "wb") as f:
                f.write(b"\x01" * size)
        return ExecutionResult(success=True, duration_ms=10, return_code=0)

    return step


def succeed_without_output(argv, on_progress, executor):
    return ExecutionResult(success=True, duration_ms=5, return_code=0)


def fail_with(error, return_code=1):
    def step(argv, on_progress, executor):
        on_progress(30.0)
        return ExecutionResult(success=False, duration_ms=5, error=error,
                               return_code=return_code)

    return step


@pytest.fixture
def fake_encoder(tmp_path):
    """Writes a small Python script that mimics ffmpeg's stderr.

    Returns a function building the argv for a given behaviour script body.
    """

    def make(body: str, name: str = "encoder.py"):
        script = tmp_path / name
        script.write_text(textwrap.dedent(body))
        return [sys.executable, "-u", str(script)]

    return make
