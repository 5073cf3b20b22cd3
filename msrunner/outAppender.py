"""
incremental appending of Sequest .out files into <dataset>_out.txt.tmp

the watcher thread reports new .out files , the appender timer drains the
queue once the oldest entry is older than the hold-off window. only one drain
runs at a time; a concurrent caller gets False back instead of waiting.
partial results are copied to the transfer folder every few minutes so that a
later attempt can resume from them
"""

import collections
import datetime
import logging
import pathlib
import random
import re
import shutil
import threading
import time

import numpy as np

from msrunner import settings
from msrunner.closeOut import CloseOutType

re_file_separator = re.compile(r'^\s*[=]{5,}\s*"(?P<filename>.+)"\s*[=]{5,}\s*$')
re_out_file_name = re.compile(r'^(?P<rootname>.+)\.(?P<startscan>\d+)\.(?P<endscan>\d+)\.(?P<cs>\d+)\.(?P<extension>\S{3})', re.IGNORECASE)
re_search_time = re.compile(r'\d+/\d+/\d+, \d+\:\d+ [A-Z]+, (?P<time>[0-9.]+) sec', re.IGNORECASE)

SEPARATOR_LEFT = "=================================== " + "\""
SEPARATOR_RIGHT = "\"" + " =================================="

ArtifactCandidate = collections.namedtuple("ArtifactCandidate", ["name", "detected"])


def clean_out_file_name(name):
    """Dataset.0012.0012.2.out -> Dataset.12.12.2.out"""
    mo = re_out_file_name.match(name)
    if mo is None:
        return name
    return (f"{mo.group('rootname')}.{int(mo.group('startscan'))}.{int(mo.group('endscan'))}."
            f"{int(mo.group('cs'))}.{mo.group('extension')}")


def separator_line(name):
    return SEPARATOR_LEFT + name + SEPARATOR_RIGHT


def median_search_time(search_times):
    """element n/2 of the sorted window (first element for 2 or fewer values)"""
    if len(search_times) == 0:
        return 0.0
    values = np.sort(np.array(search_times, dtype=float))
    if len(values) <= 2:
        return float(values[0])
    return float(values[len(values) // 2])


class PeriodicWorker(threading.Thread):
    """calls target every interval seconds until stopped"""

    def __init__(self, interval, target, name):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.target_function = target
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.target_function()
            except Exception as err:
                logging.exception(f"error in {self.name}: {err}")

    def stop(self, timeout=60):
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)


class OutFileWatcher:
    """polls the work directory for new .out files"""

    def __init__(self, work_dir, callback, interval=settings.WATCHER_POLL_INTERVAL_SEC):
        self.work_dir = pathlib.Path(work_dir)
        self.callback = callback
        self.interval = interval
        self._seen = set()
        self._lock = threading.Lock()
        self._worker = None

    def scan(self):
        with self._lock:
            for out_file in self.work_dir.glob("*.out"):
                if out_file.name not in self._seen:
                    self._seen.add(out_file.name)
                    self.callback(out_file.name)

    def start(self):
        self._worker = PeriodicWorker(self.interval, self.scan, "out-file-watcher")
        self._worker.start()

    def stop(self):
        if self._worker is not None:
            self._worker.stop()
            self._worker = None


class OutFileAppender:

    def __init__(self, work_dir, dataset, job, param_file_name="", transfer_folder=None,
                 holdoff=settings.OUT_FILE_APPEND_HOLDOFF_SEC, copy_interval=settings.TEMP_FILE_COPY_INTERVAL_SEC,
                 on_append=None, clock=time.time, sleep=time.sleep):
        self.work_dir = pathlib.Path(work_dir)
        self.dataset = dataset
        self.job = job
        self.param_file_name = param_file_name
        self.transfer_folder = pathlib.Path(transfer_folder) if transfer_folder else None
        self.holdoff = holdoff
        self.copy_interval = copy_interval
        self.on_append = on_append
        self.clock = clock
        self.sleep = sleep
        self.appended = set()
        self.total_out_count = 0
        self.search_times = collections.deque(maxlen=settings.MAX_SEARCH_TIMES_TO_TRACK)
        self.tool_version = ""
        self._queue = collections.deque()
        self._candidate_info = dict()
        self._queue_lock = threading.Lock()
        self._in_use = threading.Lock()
        self._last_copy_time = clock()
        self._staged_configs = set()

    @property
    def concatenated_tmp_path(self):
        return self.work_dir / (self.dataset + "_out.txt.tmp")

    @property
    def concatenated_path(self):
        return self.work_dir / (self.dataset + "_out.txt")

    @property
    def in_use(self):
        return self._in_use.locked()

    @property
    def queue_length(self):
        return len(self._queue)

    def on_artifact_detected(self, name):
        if not name:
            return
        with self._queue_lock:
            if name in self._candidate_info:
                return
            now = self.clock()
            self._candidate_info[name] = now
            self._queue.append(ArtifactCandidate(name, now))

    def median_search_time(self):
        return median_search_time(list(self.search_times))

    def out_file_count(self):
        """appended plus pending .out files; waits for a running drain so no file is counted twice"""
        with self._in_use:
            pending = sum(1 for out_file in self.work_dir.glob("*.out") if out_file.name not in self.appended)
            return self.total_out_count + pending

    # ------------------------------------------------------------------ drain

    def drain(self, flush_all=False):
        """
        append the .out files that are old enough.
        returns None when another drain is running , False when an item failed , else True
        """
        if not self._in_use.acquire(blocking=False):
            logging.debug("out file appender is busy")
            return None
        try:
            return self._drain(flush_all)
        finally:
            self._in_use.release()

    def _eligible(self, flush_all, now):
        return len(self._queue) > 0 and (flush_all or now - self._queue[0].detected >= self.holdoff)

    def _drain(self, flush_all):
        success = True
        items_processed = 0
        try:
            now = self.clock()
            if self._eligible(flush_all, now):
                with self.concatenated_tmp_path.open('a', encoding="utf-8") as writer:
                    while True:
                        with self._queue_lock:
                            if not self._eligible(flush_all, now):
                                break
                            candidate = self._queue.popleft()
                        items_processed += 1
                        try:
                            self.append_out_file(self.work_dir / candidate.name, writer)
                        except (OSError, UnicodeError) as err:
                            logging.warning(f"exception appending out file {candidate.name}: {err}")
                            success = False
                logging.debug(f"appended {items_processed} .out files to {self.concatenated_tmp_path.name}; {len(self._queue)} remain in the queue")

            if items_processed > 0 or flush_all:
                if flush_all or self.clock() - self._last_copy_time >= self.copy_interval:
                    self.copy_partial_results(items_processed > 0)
                    self._last_copy_time = self.clock()
        except OSError as err:
            logging.error(f"error in out file appender: {err}")
            success = False
        return success

    def append_out_file(self, out_file, writer):
        out_file = pathlib.Path(out_file)
        if not out_file.exists():
            logging.warning(f"out file not found: {out_file}")
            return False
        if out_file.name not in self.appended:
            with out_file.open('r', encoding="utf-8", errors="replace") as f:
                content = f.read()
            if not self.tool_version:
                self._find_tool_version(content)
            writer.write("\n")
            writer.write(separator_line(clean_out_file_name(out_file.name)) + "\n")
            writer.write(content if content.endswith("\n") or content == "" else content + "\n")
            mo = re_search_time.search(content)
            if mo is not None:
                self.search_times.append(float(mo.group("time")))
            self.appended.add(out_file.name)
            self.total_out_count += 1
            if self.on_append is not None:
                self.on_append()
        for consumed in (out_file.with_suffix(".dta"), out_file):
            try:
                consumed.unlink()
            except FileNotFoundError:
                pass
            except OSError as err:
                logging.warning(f"couldn't delete {consumed.name}: {err}")
        return True

    def _find_tool_version(self, content):
        for line in content.splitlines():
            if line.strip().lower().startswith("turbosequest"):
                self.tool_version = line.strip()
                logging.debug(f"Sequest version: {self.tool_version}")
                return

    # ------------------------------------------------------------------ staging

    def copy_to_transfer_folder(self, source_name, target_name):
        if self.transfer_folder is None:
            return False
        source = self.work_dir / source_name
        if not source.exists():
            logging.debug(f"file not found , not copying to the transfer folder: {source}")
            return False
        try:
            self.transfer_folder.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, self.transfer_folder / target_name)
        except OSError as err:
            logging.warning(f"error copying {source_name} to {self.transfer_folder}: {err}")
            return False
        return True

    def copy_partial_results(self, out_file_updated):
        if self.transfer_folder is None:
            return
        config_files = [f"JobParameters_{self.job}.xml"]
        if self.param_file_name:
            config_files.append(self.param_file_name)
        for name in config_files:
            if name not in self._staged_configs and self.copy_to_transfer_folder(name, name + ".tmp"):
                self._staged_configs.add(name)
        if out_file_updated:
            self.copy_to_transfer_folder(self.concatenated_tmp_path.name, self.concatenated_tmp_path.name)
        self.copy_to_transfer_folder("sequest.log", "sequest.log.tmp")

    # ------------------------------------------------------------------ shutdown

    def final_drain(self, retries=3, wait_seconds=5):
        """drain everything; retried while entries remain in the queue"""
        remaining = retries
        while True:
            result = self.drain(flush_all=True)
            if result is None:
                self.sleep(wait_seconds)
            elif not result:
                logging.warning("some .out files could not be appended during the final drain")
            if self.queue_length == 0 or remaining <= 0:
                break
            remaining -= 1
        if self.queue_length > 0:
            logging.warning(f"{self.queue_length} .out files are still queued after the final drain")
            return False
        return True

    def concat_out_files(self, max_retries=5, max_wait_minutes=30):
        """append the .out files still in the work dir and rename the .tmp file to _out.txt"""
        logging.debug("Concatenating .out files")
        success = False
        for attempt in range(max_retries):
            wait_start = self.clock()
            if not self._in_use.acquire(timeout=max_wait_minutes * 60):
                logging.error(f"waited over {max_wait_minutes} minutes for the out file appender; aborting")
                return False
            try:
                with self.concatenated_tmp_path.open('a', encoding="utf-8") as writer:
                    for out_file in sorted(self.work_dir.glob("*.out")):
                        self.append_out_file(out_file, writer)
                success = True
            except (OSError, UnicodeError) as err:
                logging.warning(f"error appending .out files to the _out.txt.tmp file: {err}")
            finally:
                self._in_use.release()
            if success:
                break
            logging.debug(f"concat attempt {attempt + 1} failed after {self.clock() - wait_start:.0f} seconds")
            self.sleep(random.randint(15, 30))
        if not success:
            logging.error(f"Error appending .out files to the _out.txt.tmp file; aborting after {max_retries} attempts")
            return False
        try:
            if self.concatenated_path.exists():
                logging.warning("existing _out.txt file found; overwriting")
                self.concatenated_path.unlink()
            self.concatenated_tmp_path.rename(self.concatenated_path)
        except OSError as err:
            logging.error(f"Error renaming _out.txt.tmp file to _out.txt file: {err}")
            return False
        return True


# =============================================================================
# resume from a staged partial result
# =============================================================================

def text_files_match(path1, path2, ignore_whitespace=True):
    """line by line comparison; with ignore_whitespace , leading/trailing spaces/tabs and trailing blank lines are ignored"""
    with open(path1, 'r', errors="replace") as f1, open(path2, 'r', errors="replace") as f2:
        lines1 = f1.read().splitlines()
        lines2 = f2.read().splitlines()
    if ignore_whitespace:
        lines1 = [line.strip(" \t") for line in lines1]
        lines2 = [line.strip(" \t") for line in lines2]
        while lines1 and lines1[-1] == "":
            lines1.pop()
        while lines2 and lines2[-1] == "":
            lines2.pop()
    return lines1 == lines2


def construct_skip_list(concatenated_file):
    """names of the .dta files whose .out files are already in the concatenated file"""
    skip = set()
    with open(concatenated_file, 'r', errors="replace") as f:
        for line in f:
            mo = re_file_separator.match(line)
            if mo is not None:
                skip.add(str(pathlib.PurePath(mo.group("filename")).with_suffix(".dta")))
    return skip


def split_concatenated_dta(dta_txt, work_dir, skip=None):
    """write one .dta file per section of <dataset>_dta.txt , skipping names in skip"""
    skip = {name.lower() for name in (skip or set())}
    work_dir = pathlib.Path(work_dir)
    created = 0
    current = None
    with open(dta_txt, 'r', errors="replace") as f:
        try:
            for line in f:
                mo = re_file_separator.match(line)
                if mo is not None:
                    if current is not None:
                        current.close()
                        current = None
                    name = mo.group("filename")
                    if name.lower() not in skip:
                        current = (work_dir / name).open('w')
                        created += 1
                    continue
                if current is not None:
                    current.write(line)
        finally:
            if current is not None:
                current.close()
    return created


def check_for_existing_concatenated_out_file(work_dir, dataset, job, param_file_name, transfer_folder):
    """
    resume check. returns (closeout , skip list):
      SUCCESS with the skip list when the staged files can be used ,
      FILE_NOT_FOUND when there is nothing to resume or the staged configuration differs
    """
    work_dir = pathlib.Path(work_dir)
    if transfer_folder is None or not pathlib.Path(transfer_folder).exists():
        return CloseOutType.FILE_NOT_FOUND, set()
    transfer_folder = pathlib.Path(transfer_folder)
    concatenated_tmp = transfer_folder / (dataset + "_out.txt.tmp")
    if not concatenated_tmp.exists():
        return CloseOutType.FILE_NOT_FOUND, set()

    staged_files = [(f"JobParameters_{job}.xml.tmp", f"JobParameters_{job}.xml", "job parameters")]
    if param_file_name:
        staged_files.append((param_file_name + ".tmp", param_file_name, "parameter file"))
    for staged_name, local_name, description in staged_files:
        staged = transfer_folder / staged_name
        local = work_dir / local_name
        if not staged.exists() or not local.exists():
            logging.info(f"{description} not found for resume: {staged if not staged.exists() else local}")
            return CloseOutType.FILE_NOT_FOUND, set()
        if not text_files_match(staged, local, ignore_whitespace=True):
            logging.info(f"{description} file in the transfer folder does not match the local copy; starting over")
            return CloseOutType.FILE_NOT_FOUND, set()

    local_tmp = work_dir / concatenated_tmp.name
    shutil.copyfile(concatenated_tmp, local_tmp)
    staged_log = transfer_folder / "sequest.log.tmp"
    if staged_log.exists():
        stamp = datetime.datetime.fromtimestamp(staged_log.stat().st_mtime).strftime("%Y%m%d_%H%M")
        shutil.copyfile(staged_log, work_dir / f"sequest_{stamp}.log")
    skip = construct_skip_list(local_tmp)
    logging.info(f"resuming from {concatenated_tmp}; {len(skip)} .out files were already appended")
    return CloseOutType.SUCCESS, skip
