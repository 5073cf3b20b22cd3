"""
progress inference from console output.

a tool is described by an ordered list of milestones (regex -> percent).
the console file is re-read from the start on every call; the last milestone
seen gives the base progress and, inside a sub progress range, the slab/slice/
dataset markers interpolate between the milestone and the next one:

    overall = interp(milestone, next milestone, slab progress)
    slab progress = interp(slice range, slice progress)
    slice progress = interp(dataset range, dataset percent complete)

the reported progress never goes down , a lower value is logged and ignored
"""

import logging
import math
import pathlib
import re

from msrunner.closeOut import find_insufficient_memory_marker


def interp(lo, hi, frac):
    """value between lo and hi for frac percent (0 to 100)"""
    return lo + (hi - lo) * frac / 100.0


class ProgressMilestone:
    def __init__(self, name, pattern, target, rank):
        self.name = name
        self.regex = re.compile(pattern, re.IGNORECASE) if pattern else None
        self.target = float(target)
        self.rank = rank

    def matches(self, line):
        return self.regex is not None and self.regex.search(line) is not None

    def __repr__(self):
        return f"ProgressMilestone({self.name}, {self.target})"


def build_milestones(steps):
    """steps is a list of (name, pattern, percent) in the order the tool prints them"""
    milestones = [ProgressMilestone(name, pattern, target, rank + 1) for rank, (name, pattern, target) in enumerate(steps)]
    targets = [m.target for m in milestones]
    if targets != sorted(targets):
        raise ValueError(f"milestone percentages must not decrease: {targets}")
    return milestones


class SubProgressRange:
    """
    region between two milestones where progress is interpolated.
    without an engine the slab/slice/dataset markers are used; with an engine
    the nested tool progress is mapped onto the range
    """

    def __init__(self, start, end, engine=None):
        self.start = start
        self.end = end
        self.engine = engine


class ScanState:
    def __init__(self, milestone):
        self.milestone = milestone
        self.active_range = None
        self.current_slice = 0
        self.total_slices = 0
        self.current_unit = 0
        self.unit_progress = 0.0
        self.unit_progress_seen = False
        self.current_split = 0
        self.total_splits = 0
        self.console_error = ""

    def reset_slab(self):
        self.current_slice = 0
        self.total_slices = 0
        self.current_unit = 0
        self.unit_progress = 0.0
        self.unit_progress_seen = False


class ProgressEngine:

    def __init__(self, tool_name, milestones, initial_progress=0, sub_ranges=None, unit_count=0,
                 unit_regex=None, slice_regex=None, unit_progress_regex=None,
                 split_regex=None, split_axis=None):
        self.tool_name = tool_name
        self.milestones = sorted(milestones, key=lambda m: m.rank)
        self.initial = ProgressMilestone("Initializing", None, initial_progress, 0)
        self.sub_ranges = {r.start: r for r in (sub_ranges or [])}
        self.unit_count = unit_count
        self.unit_regex = re.compile(unit_regex, re.IGNORECASE) if unit_regex else None
        self.slice_regex = re.compile(slice_regex, re.IGNORECASE) if slice_regex else None
        self.unit_progress_regex = re.compile(unit_progress_regex, re.IGNORECASE) if unit_progress_regex else None
        self.split_regex = re.compile(split_regex, re.IGNORECASE) if split_regex else None
        self.split_axis = split_axis
        self.progress = float(initial_progress)
        self.fatal_message = ""
        self.console_error = ""
        self.current_milestone = self.initial
        self._warned_unit_count = False
        self._last_regression = None
        self._ignored_milestones = set()
        self._state = ScanState(self.initial)

    @property
    def complete_target(self):
        return self.milestones[-1].target if self.milestones else 100.0

    def next_target(self, milestone):
        for m in self.milestones:
            if m.rank > milestone.rank:
                return m.target
        return 100.0

    # ------------------------------------------------------------------ scanning

    def begin_scan(self):
        self._state = ScanState(self.initial)

    def feed_line(self, line):
        """process one console line; returns False when the scan must stop"""
        if not line.strip():
            return True
        state = self._state
        reason = find_insufficient_memory_marker(line)
        if reason is not None:
            if not self.fatal_message:
                self.fatal_message = f"{self.tool_name} ran out of memory ({reason}): {line.strip()}"
                logging.error(self.fatal_message)
            return False
        if not self._inspect_line(line):
            return True

        milestone = self._match_milestone(line)
        if milestone is not None:
            if milestone.rank > state.milestone.rank:
                self._enter_milestone(milestone)
            elif milestone.rank < state.milestone.rank and milestone.name not in self._ignored_milestones:
                self._ignored_milestones.add(milestone.name)
                logging.warning(f"{self.tool_name}: {milestone.name} seen after {state.milestone.name} , ignoring")
        elif state.active_range is not None:
            if state.active_range.engine is not None:
                state.active_range.engine.feed_line(line)
            else:
                self._track_slab_line(line)

        if self.split_regex is not None:
            self._track_split_line(line)
        self._check_error_line(line)
        return True

    def _inspect_line(self, line):
        """hook for tool specific lines; return False to skip milestone matching"""
        return True

    def _match_milestone(self, line):
        for m in self.milestones:
            if m.matches(line):
                return m
        return None

    def _enter_milestone(self, milestone):
        state = self._state
        state.milestone = milestone
        state.active_range = self.sub_ranges.get(milestone.name)
        if state.active_range is not None:
            state.reset_slab()
            if state.active_range.engine is not None:
                state.active_range.engine.begin_scan()

    def _track_slab_line(self, line):
        state = self._state
        if self.slice_regex is not None:
            mo = self.slice_regex.search(line)
            if mo is not None:
                state.current_slice = int(mo.group(1))
                state.total_slices = int(mo.group(2))
                return
        if self.unit_regex is not None:
            mo = self.unit_regex.search(line)
            if mo is not None:
                state.current_unit = int(mo.group(1))
                state.unit_progress = 0.0
                if state.current_unit > self.unit_count > 0:
                    if not self._warned_unit_count:
                        logging.warning(f"{self.tool_name}: dataset number {state.current_unit} is larger than the dataset count {self.unit_count} , updating the count")
                        self._warned_unit_count = True
                    self.unit_count = state.current_unit
        if self.unit_progress_regex is not None:
            mo = self.unit_progress_regex.search(line)
            if mo is not None:
                state.unit_progress = float(mo.group(1))
                state.unit_progress_seen = True

    def _track_split_line(self, line):
        state = self._state
        mo = self.split_regex.search(line)
        if mo is not None and mo.group(1).upper() == "STARTED":
            state.current_split = int(mo.group(2))
            if state.total_splits == 0:
                state.total_splits = int(mo.group(3))

    def _check_error_line(self, line):
        state = self._state
        if state.milestone.target > 1 and line.lower().startswith("error") and state.console_error == "":
            state.console_error = f"Error running {self.tool_name}: {line.strip()}"

    # ------------------------------------------------------------------ progress

    def _slab_progress(self):
        """percent complete of the current slab or None when no marker was seen"""
        state = self._state
        if state.total_slices == 0 and not state.unit_progress_seen:
            return None
        total_slices = state.total_slices if state.total_slices > 0 else 1
        current_slice = state.current_slice if state.current_slice > 0 else 1

        if state.current_unit == 0 or self.unit_count == 0:
            lo, hi = 0.0, 100.0
        else:
            lo = (state.current_unit - 1) * (100.0 / self.unit_count)
            hi = state.current_unit * (100.0 / self.unit_count)
        slice_progress = interp(lo, hi, state.unit_progress)
        return interp((current_slice - 1) * (100.0 / total_slices), current_slice * (100.0 / total_slices), slice_progress)

    def compute_progress(self):
        """effective progress of the last scan , without the monotonic guard"""
        state = self._state
        if self.split_axis is not None and state.current_split > 0 and state.total_splits > 0:
            offset, span = self.split_axis
            step = span / state.total_splits
            return offset + interp((state.current_split - 1) * step, state.current_split * step, 50)

        milestone = state.milestone
        sub_range = state.active_range
        if sub_range is None:
            return milestone.target
        next_target = self.next_target(milestone)
        if sub_range.engine is not None:
            inner = sub_range.engine.compute_progress()
            fraction = min(100.0, inner * 100.0 / sub_range.engine.complete_target) if sub_range.engine.complete_target else 0.0
            return interp(milestone.target, next_target, fraction)
        slab_progress = self._slab_progress()
        if slab_progress is None:
            return milestone.target
        return interp(milestone.target, next_target, slab_progress)

    def parse_new_output(self, console_file):
        """re-scan the console file and update self.progress; errors are logged and ignored"""
        console_file = pathlib.Path(console_file)
        try:
            if not console_file.exists():
                logging.debug(f"console output file not found: {console_file}")
                return self.progress
            self.begin_scan()
            with console_file.open('r', encoding="utf-8", errors="replace") as f:
                for line in f:
                    if not self.feed_line(line.rstrip("\r\n")):
                        return self.progress
            self.console_error = self._state.console_error
            self.current_milestone = self._state.milestone
            self._finish_scan()
            effective = self.compute_progress()
            if math.isnan(effective):
                return self.progress
            if effective < self.progress:
                if self._last_regression != effective:
                    logging.warning(f"{self.tool_name}: computed progress {effective:.2f} is lower than {self.progress:.2f} , keeping {self.progress:.2f}")
                    self._last_regression = effective
            else:
                self.progress = effective
        except Exception as err:
            logging.error(f"error parsing the {self.tool_name} console output file ({console_file}): {err}")
        return self.progress

    def _finish_scan(self):
        """hook called after a complete scan"""
        pass


# =============================================================================
# MSFragger
# =============================================================================
MSFRAGGER_STARTING = 2
MSFRAGGER_FIRST_SEARCH_DONE = 44
MSFRAGGER_MAIN_SEARCH_START = 50
MSFRAGGER_COMPLETE = 90

MSFRAGGER_STEPS = [
        ("StartingMSFragger", r"^JVM started", MSFRAGGER_STARTING),
        ("FirstSearch", r"^\*+FIRST SEARCH\*+", MSFRAGGER_STARTING + 1),
        ("FirstSearchDone", r"^\*+FIRST SEARCH DONE", MSFRAGGER_FIRST_SEARCH_DONE),
        ("MassCalibration", r"^\*+MASS CALIBRATION AND PARAMETER OPTIMIZATION\*+", MSFRAGGER_FIRST_SEARCH_DONE + 1),
        ("MainSearch", r"^\*+MAIN SEARCH\*+", MSFRAGGER_MAIN_SEARCH_START),
        ("MainSearchDone", r"^\*+MAIN SEARCH DONE", MSFRAGGER_COMPLETE)]

# 001. Sample_Bane_06May21_20-11-16.mzML 1.0 s | deisotoping 0.6 s
MSFRAGGER_DATASET_REGEX = r"^[\t ]+(\d+)\. .+\.(mzML|mzBIN)"
# Operating on slice 1 of 2: 4463ms
MSFRAGGER_SLICE_REGEX = r"Operating on slice (\d+) of (\d+)"
# DatasetName.mzML 7042ms [progress: 29940/50420 (59.38%) - 5945.19 spectra/s]
MSFRAGGER_PROGRESS_REGEX = r"progress: \d+/\d+ \(([0-9.]+)%\)"
# STARTED: slice 1 of 8
MSFRAGGER_SPLIT_REGEX = r"^[\t ]*(STARTED|DONE): slice (\d+) of (\d+)"


def msfragger_progress_engine(dataset_count=0):
    """progress tracker for MSFragger console output (first search , calibration , main search)"""
    return ProgressEngine("MSFragger", build_milestones(MSFRAGGER_STEPS),
                          sub_ranges=[SubProgressRange("FirstSearch", "FirstSearchDone"),
                                      SubProgressRange("MainSearch", "MainSearchDone")],
                          unit_count=dataset_count,
                          unit_regex=MSFRAGGER_DATASET_REGEX,
                          slice_regex=MSFRAGGER_SLICE_REGEX,
                          unit_progress_regex=MSFRAGGER_PROGRESS_REGEX,
                          split_regex=MSFRAGGER_SPLIT_REGEX,
                          split_axis=(MSFRAGGER_MAIN_SEARCH_START, MSFRAGGER_COMPLETE / 2.0))
