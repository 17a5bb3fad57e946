import os
import time

import pytest

from conftest import (ScriptedExecutors, fail_with, output_arg, succeed_without_output,
                      write_output)
from core.errors import InfrastructureError, JobExecutionError
from core.executor import ExecutionResult
from core.kinds.compress import CompressRunner
from core.kinds.frames import FrameExtractionRunner
from core.kinds.gif import GifRunner
from core.kinds.thumbnail import ThumbnailRunner
from core.kinds.trim import TrimRunner
from core.registry import KINDS, create_runner
from db.models import CANCELLED_ERROR
from utils.video import MediaInfo


def processing_values(events):
    return [e.progress for e in events if e.status == "processing"]


def media_info(duration):
    return MediaInfo(duration=duration, bitrate=4000, width=640, height=360, codec="h264",
                     fps=25.0, file_size=1024)


class TestCompress:

    def test_happy_path(self, store, recorder, runner_config, input_file):
        job = store.create("compress", input_file, {"preset": "medium"})
        executors = ScriptedExecutors(write_output(5_000_000))
        runner = CompressRunner(store, recorder, runner_config, executor_factory=executors)

        result = runner.run(job.job_id)

        assert result.status == "completed"
        assert result.progress == 100.0
        assert result.output_size == 5_000_000
        assert os.path.getsize(result.output_ref) == 5_000_000
        assert result.output_ref.endswith("input_compressed.mp4")
        assert result.error is None

        values = processing_values(recorder.events)
        assert values == sorted(values)
        assert max(values) <= 99.5
        assert recorder.events[-1].status == "completed"
        assert recorder.events[-1].output_size == 5_000_000
        assert len(executors.calls) == 1
        assert "-crf" in executors.calls[0]

    def test_two_pass_weights_first_pass(self, store, recorder, runner_config, input_file):
        job = store.create("compress", input_file, {"preset": "high"})
        executors = ScriptedExecutors(write_output(0, progress=(50.0,)), write_output(2048))
        runner = CompressRunner(store, recorder, runner_config, executor_factory=executors)

        result = runner.run(job.job_id)

        assert result.status == "completed"
        assert [call[-1] for call in executors.calls][0] == os.devnull
        values = processing_values(recorder.events)
        assert 25.0 in values
        assert 50.0 in values
        assert values == sorted(values)

    def test_success_without_output_fails(self, store, recorder, runner_config, input_file):
        job = store.create("compress", input_file)
        runner = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(succeed_without_output))

        with pytest.raises(JobExecutionError):
            runner.run(job.job_id)

        snap = store.snapshot("compress", job.job_id)
        assert snap.status == "failed"
        assert "no output" in snap.error
        assert snap.output_ref is None
        assert recorder.events[-1].status == "failed"

    def test_encoder_failure_message(self, store, recorder, runner_config, input_file):
        job = store.create("compress", input_file)
        runner = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(fail_with("Error: bad")))

        with pytest.raises(JobExecutionError, match="Error: bad"):
            runner.run(job.job_id)
        assert store.snapshot("compress", job.job_id).error == "Error: bad"

    def test_duplicate_delivery_is_noop(self, store, recorder, runner_config, input_file):
        job = store.create("compress", input_file)
        CompressRunner(store, recorder, runner_config,
                       executor_factory=ScriptedExecutors(write_output(10))).run(job.job_id)
        published = len(recorder.events)

        again = ScriptedExecutors()
        result = CompressRunner(store, recorder, runner_config,
                                executor_factory=again).run(job.job_id)

        assert result.status == "completed"
        assert again.calls == []
        assert len(recorder.events) == published

    def test_deleted_job_drops_task(self, store, recorder, runner_config):
        runner = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors())
        assert runner.run("missing") is None

    def test_deleted_while_processing_discards_output(self, store, recorder, runner_config,
                                                      input_file):
        job = store.create("compress", input_file)
        written = []

        def delete_then_write(argv, on_progress, executor):
            store.delete("compress", job.job_id)
            written.append(output_arg(argv))
            return write_output(100)(argv, on_progress, executor)

        runner = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(delete_then_write))
        assert runner.run(job.job_id) is None
        assert not os.path.exists(written[0])
        assert all(e.status != "completed" for e in recorder.events)

    def test_redelivery_resumes_above_stored_progress(self, store, recorder, runner_config,
                                                      input_file):
        job = store.create("compress", input_file)
        before = store.mark_processing("compress", job.job_id)
        assert store.update_progress("compress", job.job_id, 60.0)
        seen = []

        def check_store_then_write(argv, on_progress, executor):
            on_progress(25.0)
            seen.append(store.snapshot("compress", job.job_id).progress)
            return write_output(100, progress=(50.0, 75.0))(argv, on_progress, executor)

        result = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(check_store_then_write)
                                ).run(job.job_id)

        assert result.status == "completed"
        assert result.started_at == before.started_at
        assert seen == [60.0]
        values = processing_values(recorder.events)
        assert values[0] == 75.0
        assert min(values) >= 60.0
        assert values == sorted(values)

    def test_store_outage_propagates_without_terminal_write(self, store, recorder,
                                                             runner_config, input_file,
                                                             monkeypatch):
        job = store.create("compress", input_file)
        real_update = store.update_progress

        def flaky_update(kind, job_id, progress):
            if progress > 0:
                raise InfrastructureError("database unreachable")
            return real_update(kind, job_id, progress)

        monkeypatch.setattr(store, "update_progress", flaky_update)
        runner = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(write_output(100)))

        with pytest.raises(InfrastructureError):
            runner.run(job.job_id)

        snap = store.snapshot("compress", job.job_id)
        assert snap.status == "processing"
        assert snap.error is None
        assert snap.output_ref is None
        assert all(not e.terminal for e in recorder.events)

    def test_input_size_and_duration_recorded(self, store, recorder, runner_config,
                                              input_file, monkeypatch):
        monkeypatch.setattr("core.runner.probe_media", lambda *a, **kw: media_info(12.5))
        job = store.create("compress", input_file)
        result = CompressRunner(store, recorder, runner_config,
                                executor_factory=ScriptedExecutors(write_output(10))
                                ).run(job.job_id)

        assert result.input_size == 1024
        assert result.input_duration == 12.5

    def test_unprobeable_input_still_records_size(self, store, recorder, runner_config,
                                                  input_file):
        job = store.create("audio", input_file)
        result = create_runner("audio", store, recorder, runner_config,
                               executor_factory=ScriptedExecutors(write_output(10))
                               ).run(job.job_id)

        assert result.status == "completed"
        assert result.input_size == 1024
        assert result.input_duration is None

    def test_publish_failure_does_not_fail_job(self, store, runner_config, input_file):
        class BrokenPublisher:
            def publish(self, kind, job_id, event):
                raise InfrastructureError("redis down")

        job = store.create("compress", input_file)
        runner = CompressRunner(store, BrokenPublisher(), runner_config,
                                executor_factory=ScriptedExecutors(write_output(10)))
        assert runner.run(job.job_id).status == "completed"


class TestGif:

    def test_palette_ok_then_encode_fails(self, store, recorder, runner_config, input_file):
        job = store.create("gif", input_file, {"start_time": 0, "end_time": 4})
        executors = ScriptedExecutors(write_output(64), fail_with("Error: gif encode"))
        runner = GifRunner(store, recorder, runner_config, executor_factory=executors)

        with pytest.raises(JobExecutionError):
            runner.run(job.job_id)

        snap = store.snapshot("gif", job.job_id)
        assert snap.status == "failed"
        assert snap.output_ref is None
        palette = output_arg(executors.calls[0])
        assert palette.endswith("_palette.png")
        assert not os.path.exists(palette)
        assert not os.path.exists(output_arg(executors.calls[1]))
        assert 40.0 in processing_values(recorder.events)
        assert [e.status for e in recorder.events].count("failed") == 1

    def test_without_optimize_runs_once(self, store, recorder, runner_config, input_file):
        job = store.create("gif", input_file, {"start_time": 1, "end_time": 3, "optimize": False})
        executors = ScriptedExecutors(write_output(64))
        result = GifRunner(store, recorder, runner_config, executor_factory=executors).run(job.job_id)
        assert result.status == "completed"
        assert result.output_ref.endswith(".gif")
        assert len(executors.calls) == 1


class TestTrim:

    def test_invalid_range_fails_without_running(self, store, recorder, runner_config,
                                                 input_file):
        job = store.create("trim", input_file, {"start_time": 10, "end_time": 5})
        executors = ScriptedExecutors()

        with pytest.raises(JobExecutionError):
            TrimRunner(store, recorder, runner_config, executor_factory=executors).run(job.job_id)

        snap = store.snapshot("trim", job.job_id)
        assert snap.status == "failed"
        assert "end_time" in snap.error
        assert executors.calls == []

    def test_lossless_trim(self, store, recorder, runner_config, input_file):
        job = store.create("trim", input_file, {"start_time": "00:00:01", "end_time": 6})
        executors = ScriptedExecutors(write_output(300))
        result = TrimRunner(store, recorder, runner_config, executor_factory=executors).run(job.job_id)

        assert result.status == "completed"
        assert "copy" in executors.calls[0]
        assert result.output_ref.endswith("input_trimmed.mp4")


class TestThumbnail:

    def test_evenly_spaced(self, store, recorder, runner_config, input_file, monkeypatch):
        monkeypatch.setattr("core.kinds.thumbnail.probe_media", lambda *a, **kw: media_info(8.0))
        job = store.create("thumbnail", input_file, {"count": 3})
        executors = ScriptedExecutors(*[write_output(100, progress=()) for _ in range(3)])
        result = ThumbnailRunner(store, recorder, runner_config,
                                 executor_factory=executors).run(job.job_id)

        assert result.status == "completed"
        assert len(result.output_files) == 3
        assert result.output_size == 300
        assert os.path.isdir(result.output_ref)
        assert [call[2] for call in executors.calls] == ["2.0", "4.0", "6.0"]
        totals = {e.total for e in recorder.events if e.status == "processing" and e.total}
        assert totals == {3}

    def test_no_valid_timestamps_fails(self, store, recorder, runner_config, input_file,
                                       monkeypatch):
        monkeypatch.setattr("core.kinds.thumbnail.probe_media", lambda *a, **kw: media_info(10.0))
        job = store.create("thumbnail", input_file, {"timestamps": [20, "00:00:30"]})
        executors = ScriptedExecutors()

        with pytest.raises(JobExecutionError):
            ThumbnailRunner(store, recorder, runner_config,
                            executor_factory=executors).run(job.job_id)

        snap = store.snapshot("thumbnail", job.job_id)
        assert snap.status == "failed"
        assert "timestamps" in snap.error
        assert executors.calls == []


class TestFrames:

    def extract(self, count):
        def step(argv, on_progress, executor):
            pattern = output_arg(argv)
            for n in range(1, count + 1):
                with open(pattern % n, "wb") as f:
                    f.write(b"\xff" * 10)
                line = f"frame=    {n} fps=1.0 q=2.0"
                for parser in executor.parsers:
                    value = parser.parse(line)
                    if value is not None:
                        on_progress(value)
                        break
            return ExecutionResult(success=True, duration_ms=5, return_code=0)

        return step

    def test_frames_are_listed_in_order(self, store, recorder, runner_config, input_file):
        job = store.create("frames", input_file, {"duration": 3, "fps": 1})
        runner = FrameExtractionRunner(store, recorder, runner_config,
                                       executor_factory=ScriptedExecutors(self.extract(3)))
        result = runner.run(job.job_id)

        assert result.status == "completed"
        assert [os.path.basename(p) for p in result.output_files] == [
            "input_frame_00001.jpg", "input_frame_00002.jpg", "input_frame_00003.jpg"]
        assert result.output_size == 30
        currents = [e.current for e in recorder.events if e.status == "processing" and e.current]
        assert currents == sorted(currents)
        assert currents[-1] == 3

    def test_zero_frames_fails(self, store, recorder, runner_config, input_file):
        job = store.create("frames", input_file, {"duration": 2})
        runner = FrameExtractionRunner(store, recorder, runner_config,
                                       executor_factory=ScriptedExecutors(self.extract(0)))
        with pytest.raises(JobExecutionError, match="No frames"):
            runner.run(job.job_id)
        assert store.snapshot("frames", job.job_id).status == "failed"


class TestCancellation:

    def test_cancel_kills_running_encoder(self, store, recorder, runner_config, input_file):
        job = store.create("audio", input_file)

        def cancelled_midway(argv, on_progress, executor):
            on_progress(20.0)
            store.cancel("audio", job.job_id)
            deadline = time.monotonic() + 5
            while not executor.killed and time.monotonic() < deadline:
                time.sleep(0.01)
            return ExecutionResult(success=False, duration_ms=5, error="Process was killed",
                                   killed=True)

        executors = ScriptedExecutors(cancelled_midway)
        runner = create_runner("audio", store, recorder, runner_config,
                               executor_factory=executors)
        result = runner.run(job.job_id)

        assert result.status == "failed"
        assert result.error == CANCELLED_ERROR
        assert not os.path.exists(output_arg(executors.calls[0]))
        assert all(not e.terminal for e in recorder.events)

    def test_cancelled_before_start(self, store, recorder, runner_config, input_file):
        job = store.create("audio", input_file)
        store.cancel("audio", job.job_id)
        executors = ScriptedExecutors()
        result = create_runner("audio", store, recorder, runner_config,
                               executor_factory=executors).run(job.job_id)
        assert result.status == "failed"
        assert executors.calls == []
        assert recorder.events == []


def test_every_kind_has_a_runner(store, recorder):
    assert set(KINDS) == {"compress", "convert", "trim", "gif", "thumbnail", "frames", "audio"}
    for kind in KINDS:
        assert create_runner(kind, store, recorder).kind == kind
