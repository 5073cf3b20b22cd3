import logging
import pathlib

import pytest

from msrunner.jobContext import JobContext


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0):
        self.now += seconds + minutes * 60


class FakeHandle:
    def __init__(self, command_line):
        self.command_line = command_line
        self.cancelled = False
        self.timed_out = False


class FakeSupervisor:
    """records the programs it is asked to run; on_start creates the side effects of the program"""

    def __init__(self, on_start=None, exit_codes=None, loop_ticks=1):
        self.on_start = on_start
        self.exit_codes = list(exit_codes or [])
        self.loop_ticks = loop_ticks
        self.started = []

    def start(self, program, args, work_dir, timeout=0, console_file=None, on_line=None):
        self.started.append((pathlib.Path(program).name, [str(a) for a in args]))
        if self.on_start is not None:
            self.on_start(pathlib.Path(program), args, pathlib.Path(work_dir), console_file)
        return FakeHandle(f"{program} {' '.join(str(a) for a in args)}")

    def wait(self, handle, loop_waiting=None, interval=2.0):
        for _ in range(self.loop_ticks):
            if loop_waiting is not None and not handle.cancelled:
                loop_waiting()
        exit_code = self.exit_codes.pop(0) if self.exit_codes else 0
        return exit_code, False

    def cancel(self, handle):
        handle.cancelled = True

    def run(self, program, args, work_dir, timeout=0, console_file=None, loop_waiting=None, interval=2.0, on_line=None):
        handle = self.start(program, args, work_dir, timeout, console_file, on_line)
        return self.wait(handle, loop_waiting, interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_ctx(work_dir):
    def _make_ctx(dataset="Dataset", job=1234, params=None, transfer_folder=None):
        return JobContext(work_dir, dataset, job, params, transfer_folder=transfer_folder)
    return _make_ctx


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
