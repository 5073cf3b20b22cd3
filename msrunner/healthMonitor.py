"""
health of a Sequest cluster search.

StallMonitor       Healthy -> SuspectedStall -> ConfirmedStall / Aborted
ActiveNodeMonitor  periodic CheckActiveNodes query and spawned node check
PoolResetter       halt / wipe temp / start / add hosts , with retries
"""

import enum
import logging
import pathlib
import re
import time

import pandas as pd

from msrunner import settings
from msrunner.sequestLog import count_spawned_nodes, minimum_spawned_nodes

re_active_node = re.compile(r"\s+(?P<node>[a-z0-9-.]+\s+[a-z0-9]+)\s+.+sequest.+slave.*", re.IGNORECASE)

# remaining work that may be discarded as corrupt once a stall is confirmed
SMALL_REMAINDER_FRACTION = 1000


class HealthState(enum.Enum):
    HEALTHY = "Healthy"
    SUSPECTED_STALL = "SuspectedStall"
    CONFIRMED_STALL = "ConfirmedStall"
    ABORTED = "Aborted"


class StallEvent(enum.Enum):
    ARTIFACT = "artifact"
    THRESHOLD_ELAPSED = "threshold elapsed"
    STALL_SMALL_REMAINDER = "second threshold , small remainder"
    STALL_LARGE_REMAINDER = "second threshold , large remainder"


STALL_TRANSITIONS = {
        (HealthState.HEALTHY, StallEvent.ARTIFACT) : HealthState.HEALTHY,
        (HealthState.HEALTHY, StallEvent.THRESHOLD_ELAPSED) : HealthState.SUSPECTED_STALL,
        (HealthState.SUSPECTED_STALL, StallEvent.ARTIFACT) : HealthState.HEALTHY,
        (HealthState.SUSPECTED_STALL, StallEvent.STALL_SMALL_REMAINDER) : HealthState.CONFIRMED_STALL,
        (HealthState.SUSPECTED_STALL, StallEvent.STALL_LARGE_REMAINDER) : HealthState.ABORTED,
        (HealthState.CONFIRMED_STALL, StallEvent.ARTIFACT) : HealthState.HEALTHY,
        (HealthState.CONFIRMED_STALL, StallEvent.THRESHOLD_ELAPSED) : HealthState.SUSPECTED_STALL}


class StallMonitor:
    """
    tracks the time since the last appended .out file.
    entering SuspectedStall or ConfirmedStall requests a pool reset; Aborted is final
    """

    def __init__(self, threshold_minutes=settings.STALL_THRESHOLD_MINUTES, clock=time.time):
        self.threshold = threshold_minutes * 60
        self.clock = clock
        self.state = HealthState.HEALTHY
        self.last_artifact_time = clock()
        self.state_since = self.last_artifact_time
        self.reset_requested = False
        self.abort_message = ""

    @property
    def aborted(self):
        return self.state == HealthState.ABORTED

    def _fire(self, event):
        new_state = STALL_TRANSITIONS.get((self.state, event))
        if new_state is None:
            return None
        if new_state != self.state:
            logging.info(f"stall monitor: {self.state.value} -> {new_state.value} ({event.value})")
            self.state = new_state
            self.state_since = self.clock()
        return new_state

    def record_artifact(self):
        self.last_artifact_time = self.clock()
        self._fire(StallEvent.ARTIFACT)

    def restart_timer(self):
        """called after a pool reset so the new pool gets a full threshold period"""
        self.last_artifact_time = self.clock()

    def check(self, remaining_count, total_count):
        """evaluate the timers; returns the new state when a transition happened , else None"""
        if self.aborted:
            return None
        now = self.clock()
        if self.state in (HealthState.HEALTHY, HealthState.CONFIRMED_STALL):
            idle_minutes = (now - self.last_artifact_time) / 60.0
            if now - self.last_artifact_time > self.threshold:
                logging.warning(f"no .out files have been created in {idle_minutes:.1f} minutes; resetting the pool")
                self.reset_requested = True
                return self._fire(StallEvent.THRESHOLD_ELAPSED)
            return None

        if now - self.state_since <= self.threshold:
            return None
        if remaining_count * SMALL_REMAINDER_FRACTION <= total_count:
            logging.warning(f"Sequest is stalled with {remaining_count} of {total_count} DTA files left; the remaining files are assumed to be corrupt")
            self.reset_requested = True
            self.last_artifact_time = now
            return self._fire(StallEvent.STALL_SMALL_REMAINDER)
        self.abort_message = "Sequest is stalled and too many .DTA files are un-processed"
        logging.error(f"{self.abort_message}: {remaining_count} of {total_count} remain")
        return self._fire(StallEvent.STALL_LARGE_REMAINDER)


class NodeHealthRecord:
    def __init__(self, node, last_active):
        self.node = node
        self.last_active = last_active

    def is_stale(self, now, threshold_minutes=settings.STALE_NODE_THRESHOLD_MINUTES):
        return (now - self.last_active) / 60.0 > threshold_minutes


def should_reset_for_active_nodes(active_count, spawned_count):
    """fewer than half of the spawned nodes active"""
    return spawned_count > 0 and active_count * 2 < spawned_count


def parse_active_nodes(text):
    """node names from CheckActiveNodes output lines like '   p6    c0007     6/c,f sequest27_slave'"""
    nodes = []
    for line in text.splitlines():
        if not line.strip():
            continue
        mo = re_active_node.match(line)
        if mo is not None:
            nodes.append(mo.group("node"))
    return nodes


class ActiveNodeMonitor:

    def __init__(self, work_dir, supervisor, pvm_folder=settings.pvm_folder, expected_nodes=settings.SEQUEST_NODE_COUNT_EXPECTED,
                 ignore_active_errors=False, clock=time.time):
        self.work_dir = pathlib.Path(work_dir)
        self.supervisor = supervisor
        self.pvm_folder = pathlib.Path(pvm_folder)
        self.expected_nodes = expected_nodes
        self.ignore_active_errors = ignore_active_errors
        self.clock = clock
        self.nodes = dict()
        self.spawned = 0
        self.spawned_found = False
        self.active_error_count = 0
        self.spawn_error_count = 0
        self.reset_requested = False
        self.last_query_time = clock()
        self.last_log_time = 0.0
        self.search_start_time = clock()

    def restart(self):
        """new sequest.log after a pool reset"""
        self.spawned = 0
        self.spawned_found = False
        self.nodes = dict()
        self.reset_requested = False
        self.last_query_time = self.clock()
        self.search_start_time = self.clock()

    def query_due(self, interval=settings.ACTIVE_NODE_CHECK_INTERVAL_SEC):
        return self.clock() - self.last_query_time >= interval

    # ------------------------------------------------------------------ spawned nodes

    def check_spawned_nodes(self, remaining_dta):
        """read the node names from sequest.log; returns True once the spawned line was found"""
        if self.spawned_found:
            return True
        spawned, found = count_spawned_nodes(self.work_dir / "sequest.log")
        if not found:
            if (self.clock() - self.search_start_time) / 60.0 >= settings.SPAWN_CHECK_TIMEOUT_MINUTES:
                self.spawn_error_count += 1
                logging.error(f"'Spawned slave processes' not found in sequest.log after {settings.SPAWN_CHECK_TIMEOUT_MINUTES} minutes; "
                              f"spawn errors={self.spawn_error_count}")
                self.reset_requested = True
            return False

        self.spawned = spawned
        self.spawned_found = True
        logging.debug(f" ... found {spawned} nodes in the sequest.log file")
        minimum = minimum_spawned_nodes(self.expected_nodes)
        if spawned < minimum:
            # a nearly finished search legitimately spawns fewer nodes
            if remaining_dta > spawned:
                self.spawn_error_count += 1
                logging.error(f"Not enough nodes were spawned (Threshold = {minimum} nodes): {spawned} spawned vs. "
                              f"{self.expected_nodes} expected; spawn errors={self.spawn_error_count}")
                self.reset_requested = True
        elif self.spawn_error_count > 0:
            logging.info(f"resetting the spawn error count from {self.spawn_error_count} to 0")
            self.spawn_error_count = 0
        return True

    # ------------------------------------------------------------------ active nodes

    def run_status_command(self):
        script = self.pvm_folder / settings.CHECK_ACTIVE_NODES_SCRIPT
        if not script.exists():
            logging.error(f"script not found: {script}")
            return None
        output_file = self.work_dir / settings.ACTIVE_NODES_OUTPUT
        exit_code, timed_out = self.supervisor.run(script, [], self.pvm_folder, timeout=60, console_file=output_file)
        if exit_code != 0 or timed_out:
            logging.error(f"CheckActiveNodes failed (exit code {exit_code} , timed out {timed_out})")
        if not output_file.exists():
            logging.debug(f"active nodes file not found: {output_file}")
            return None
        with output_file.open('r', errors="replace") as f:
            return f.read()

    def update_nodes(self, node_names):
        now = self.clock()
        for node in node_names:
            if node in self.nodes:
                self.nodes[node].last_active = now
            else:
                self.nodes[node] = NodeHealthRecord(node, now)

    def active_count(self):
        now = self.clock()
        return sum(1 for record in self.nodes.values() if not record.is_stale(now))

    def check_active_nodes(self, progress=0.0, median_search_time=0.0, output=None):
        """one active node check; sets reset_requested when too few nodes are active"""
        self.last_query_time = self.clock()
        if not self.spawned_found:
            return False
        if output is None:
            output = self.run_status_command()
            if output is None:
                return False
        current = parse_active_nodes(output)
        self.update_nodes(current)

        if self.clock() - self.last_log_time >= settings.ACTIVE_NODE_LOG_INTERVAL_MINUTES * 60:
            logging.info(f" ... {len(current)} / {self.spawned} Sequest nodes are active; median processing time = "
                         f"{median_search_time:.1f} seconds/spectrum; {progress:.1f}% complete")
            self.last_log_time = self.clock()

        active = self.active_count()
        if should_reset_for_active_nodes(active, self.spawned) and not self.ignore_active_errors:
            self.active_error_count += 1
            logging.warning(f"Too many nodes are inactive: {active} active vs. {self.spawned} total nodes at start; "
                            f"active node errors={self.active_error_count}")
            self.reset_requested = True
            return True
        if self.active_error_count > 0:
            logging.info(f"resetting the active node error count from {self.active_error_count} to 0")
            self.active_error_count = 0
        return False

    def write_snapshot(self, log_dir):
        records = {r.node: {"last_active": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(r.last_active)),
                            "stale": r.is_stale(self.clock())} for r in self.nodes.values()}
        try:
            pathlib.Path(log_dir).mkdir(parents=True, exist_ok=True)
            pd.DataFrame.from_dict(records).T.to_csv(pathlib.Path(log_dir) / "active_nodes.csv")
        except OSError as err:
            logging.warning(f"couldn't write active node snapshot: {err}")


class PoolResetter:
    """restarts the PVM pool by running the reset steps in order"""

    def __init__(self, supervisor, pvm_folder=settings.pvm_folder, work_dir=None, steps=settings.PVM_RESET_STEPS,
                 step_wait=5, sleep=time.sleep):
        self.supervisor = supervisor
        self.pvm_folder = pathlib.Path(pvm_folder)
        self.work_dir = pathlib.Path(work_dir) if work_dir else self.pvm_folder
        self.steps = steps
        self.step_wait = step_wait
        self.sleep = sleep
        self.reset_count = 0

    def pvm_program(self):
        return self.pvm_folder / ("pvm.exe" if settings.script_extension == ".bat" else "pvm")

    def reset(self):
        if not self.pvm_folder.exists():
            logging.error(f"PVM folder not found: {self.pvm_folder}")
            return False
        if not self.pvm_program().exists():
            logging.error(f"PVM program not found: {self.pvm_program()}")
            return False
        for name, script, timeout in self.steps:
            script_path = self.pvm_folder / script
            if not script_path.exists():
                logging.error(f"{name} script not found: {script_path}")
                return False
            logging.info(f" ... {name}")
            console_file = self.work_dir / f"{name}_ConsoleOutput.txt"
            exit_code, timed_out = self.supervisor.run(script_path, [], self.pvm_folder, timeout=timeout, console_file=console_file)
            if timed_out:
                logging.error(f"{name} timed out after {timeout} seconds")
                return False
            if exit_code != 0:
                logging.error(f"{name} failed with exit code {exit_code}")
                return False
            self.sleep(self.step_wait)
        self.reset_count += 1
        return True

    def reset_with_retry(self, attempts=settings.PVM_RESET_ATTEMPTS):
        attempts = max(1, attempts)
        while attempts > 0:
            if self.reset():
                return True
            attempts -= 1
            if attempts > 0:
                logging.warning(f" ... Error resetting PVM; will try {attempts} more time{'s' if attempts > 1 else ''}")
        return False
