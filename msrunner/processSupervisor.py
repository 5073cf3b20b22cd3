"""
launch an external program, stream its console output to an append-only file
while it runs, call a loop-waiting callback on a fixed interval and kill the
whole process tree on timeout or cancel
"""

import collections
import logging
import pathlib
import subprocess
import threading
import time

import psutil

from msrunner import settings


def kill_process_tree(process, timeout=5):
    """
    terminate a Popen child and all its descendants , kill what survives the timeout.
    the direct child is only reaped through Popen so its exit code is kept
    """
    try:
        descendants = psutil.Process(process.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        descendants = []
    for proc in descendants:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if process.poll() is None:
        process.terminate()
    gone, alive = psutil.wait_procs(descendants, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()


class RunHandle:
    """one running child process"""

    def __init__(self, process, command_line, console_file, timeout, tail_lines):
        self.process = process
        self.command_line = command_line
        self.console_file = console_file
        self.timeout = timeout
        self.start_time = time.time()
        self.tail = collections.deque(maxlen=tail_lines)
        self.reader = None
        self.cancelled = False
        self.timed_out = False
        self._cancel_lock = threading.Lock()

    @property
    def pid(self):
        return self.process.pid

    @property
    def running(self):
        return self.process.poll() is None

    def runtime_minutes(self):
        return (time.time() - self.start_time) / 60.0

    def console_tail(self, count=5):
        return list(self.tail)[-count:]


class ProcessSupervisor:

    def __init__(self, echo=False, tail_lines=100):
        self.echo = echo
        self.tail_lines = tail_lines

    def start(self, program, args, work_dir, timeout=0, console_file=None, on_line=None):
        cmd = [str(program)] + [str(a) for a in args]
        command_line = subprocess.list2cmdline(cmd)
        logging.info(f"starting: {command_line}")
        console_path = pathlib.Path(console_file) if console_file else None
        if console_path is not None:
            with console_path.open('w', encoding="utf-8") as f:
                f.write(command_line + "\n")
                f.write("-" * 80 + "\n")
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            cwd=str(work_dir),
        )
        handle = RunHandle(process, command_line, console_path, timeout, self.tail_lines)
        handle.reader = threading.Thread(target=self._read_output, args=(handle, on_line),
                                         name=f"console-reader-{process.pid}", daemon=True)
        handle.reader.start()
        return handle

    def _read_output(self, handle, on_line):
        console = handle.console_file.open('a', encoding="utf-8", buffering=1) if handle.console_file else None
        try:
            for line in handle.process.stdout:
                line = line.rstrip("\r\n")
                if console is not None:
                    console.write(line + "\n")
                if self.echo:
                    print(line)
                handle.tail.append(line)
                if on_line is not None:
                    try:
                        on_line(line)
                    except Exception as err:
                        logging.warning(f"console line handler failed: {err}")
        except (OSError, ValueError) as err:
            logging.warning(f"stopped reading console output of pid {handle.pid}: {err}")
        finally:
            if console is not None:
                console.close()

    def wait(self, handle, loop_waiting=None, interval=settings.MONITOR_INTERVAL_SEC):
        """block until the process exits or times out , returns (exit_code, timed_out)"""
        interval = max(settings.MIN_MONITOR_INTERVAL_SEC, interval)
        while True:
            try:
                handle.process.wait(timeout=interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if handle.timeout and handle.timeout > 0 and time.time() - handle.start_time > handle.timeout:
                logging.error(f"program exceeded its run time limit of {handle.timeout} seconds , aborting: {handle.command_line}")
                handle.timed_out = True
                self.cancel(handle)
                break
            if loop_waiting is not None:
                try:
                    loop_waiting()
                except Exception as err:
                    logging.exception(f"error in loop waiting callback: {err}")
        try:
            handle.process.wait(timeout=30)
        except subprocess.TimeoutExpired:
            logging.error(f"process {handle.pid} did not exit after being killed")
        handle.reader.join(timeout=10)
        exit_code = handle.process.returncode
        if exit_code is None:
            exit_code = -1
        logging.debug(f"pid {handle.pid} exit code {exit_code} , timed out {handle.timed_out}")
        return exit_code, handle.timed_out

    def cancel(self, handle):
        """forced terminate of the process tree , safe to call more than once"""
        with handle._cancel_lock:
            if handle.cancelled:
                return
            handle.cancelled = True
        if handle.running:
            logging.warning(f"killing process tree of pid {handle.pid}")
            kill_process_tree(handle.process)

    def run(self, program, args, work_dir, timeout=0, console_file=None, loop_waiting=None,
            interval=settings.MONITOR_INTERVAL_SEC, on_line=None):
        try:
            handle = self.start(program, args, work_dir, timeout, console_file, on_line)
        except OSError as err:
            logging.error(f"couldn't start {program}: {err}")
            return -1, False
        return self.wait(handle, loop_waiting, interval)
