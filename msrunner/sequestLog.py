"""
analysis of the sequest.log files written by the cluster master:
node names , slave process counts , search time statistics and the node count
validation (eval code bits) reported at the end of a search
"""

import datetime
import logging
import math
import pathlib
import re
import shutil

import numpy as np
import pandas as pd

re_starting_task = re.compile(r"Starting the SEQUEST task on (\d+) node", re.IGNORECASE)
re_waiting_for_ready = re.compile(r"Waiting for ready messages from (\d+) node", re.IGNORECASE)
# the master writes "messsage"
re_received_ready = re.compile(r"received ready mess+age from (.+)\(", re.IGNORECASE)
re_spawned_slaves = re.compile(r"Spawned (\d+) slave processes", re.IGNORECASE)
re_searched_dta = re.compile(r"Searched dta file .+ on (.+)", re.IGNORECASE)
re_node_machine_count = re.compile(r"starting the sequest task on\s+(\d+)\s+node", re.IGNORECASE)
re_total_search_time = re.compile(r"Total search time:\s+(\d+)", re.IGNORECASE)
re_searched_file_count = re.compile(r"secs for\s+(\d+)\s+files", re.IGNORECASE)

# eval codes of the node count validation
EVAL_CODE_FEW_ACTIVE_NODES = 2
EVAL_CODE_STARTED_NOT_ACTIVE = 4
EVAL_CODE_IDLE_HOSTS = 8
EVAL_CODE_LOW_RATE = 16
EVAL_CODE_HIGH_RATE = 32

LOW_RATE_FACTOR = 0.25
HIGH_RATE_FACTOR = 4
MIN_MEDIAN_FOR_RATE_CHECK = 10
HEAD_NODE_PREFIX = "seqcluster"

SUMMARY_LABEL_WIDTH = 24


class NodeProcessingStats:
    """cumulative over all sequest.log files of a job"""

    def __init__(self):
        self.node_machines = 0
        self.slave_processes = 0
        self.total_search_time = 0.0
        self.searched_file_count = 0
        self.average_search_time = 0.0

    def update_from_log(self, log_file, fallback_search_seconds=0.0):
        log_file = pathlib.Path(log_file)
        try:
            with log_file.open('r', errors="replace") as f:
                contents = f.read()
        except OSError as err:
            logging.warning(f"exception reading sequest log file {log_file}: {err}")
            return False
        dta_searched = sum(1 for line in contents.splitlines() if line.startswith("Searched dta file"))

        node_machines = _first_integer(re_node_machine_count, contents)
        if node_machines == 0:
            logging.warning(f"node machine count line not found in {log_file.name}")
        self.node_machines = max(self.node_machines, node_machines)

        slave_processes = _first_integer(re_spawned_slaves, contents)
        if slave_processes == 0:
            logging.warning(f"slave process count line not found in {log_file.name}")
        self.slave_processes = max(self.slave_processes, slave_processes)

        search_seconds = _first_integer(re_total_search_time, contents)
        if search_seconds <= 0:
            search_seconds = fallback_search_seconds
        self.total_search_time += search_seconds

        self.searched_file_count += dta_searched
        if self.searched_file_count > 0:
            self.average_search_time = self.total_search_time / self.searched_file_count
        return True

    def summary_lines(self):
        return ["",
                "Cluster node count: ".ljust(SUMMARY_LABEL_WIDTH) + str(self.node_machines),
                "Sequest process count: ".ljust(SUMMARY_LABEL_WIDTH) + str(self.slave_processes),
                "Searched file count: ".ljust(SUMMARY_LABEL_WIDTH) + f"{self.searched_file_count:,}",
                "Total search time: ".ljust(SUMMARY_LABEL_WIDTH) + f"{self.total_search_time:,.0f} secs",
                "Average search time: ".ljust(SUMMARY_LABEL_WIDTH) + f"{self.average_search_time:.3f} secs/spectrum"]


def _first_integer(regex, contents):
    mo = regex.search(contents)
    return int(mo.group(1)) if mo is not None else 0


def find_sequest_logs(work_dir):
    return sorted(pathlib.Path(work_dir).glob("sequest*.log*"))


def count_spawned_nodes(log_file):
    """(spawned node count , True when the 'Spawned N slave processes' line is present)"""
    log_file = pathlib.Path(log_file)
    spawned = 0
    found_spawned_line = False
    if not log_file.exists():
        return 0, False
    with log_file.open('r', errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            # 9.  received ready messsage from p6(c0002)
            if re_received_ready.search(line):
                spawned += 1
            elif re_spawned_slaves.search(line):
                found_spawned_line = True
    return spawned, found_spawned_line


def validate_node_count(log_file, expected_nodes, log_to_console=False):
    """
    compare the node usage recorded in sequest.log with the expected node count.
    returns (eval code , eval message); the code is a sum of the EVAL_CODE_* bits
    """
    log_file = pathlib.Path(log_file)
    if not log_file.exists():
        return 0, ""

    started = 0
    waiting_for = 0
    host_nodes = dict()
    host_dta = dict()
    with log_file.open('r', errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            mo = re_starting_task.search(line)
            if mo is not None:
                started = int(mo.group(1))
                continue
            mo = re_waiting_for_ready.search(line)
            if mo is not None:
                waiting_for = int(mo.group(1))
                continue
            mo = re_received_ready.search(line)
            if mo is not None:
                host = mo.group(1).strip()
                host_nodes[host] = host_nodes.get(host, 0) + 1
                continue
            mo = re_searched_dta.search(line)
            if mo is not None:
                host = mo.group(1).strip()
                host_dta[host] = host_dta.get(host, 0) + 1

    hosts = sorted(set(host_nodes) | set(host_dta))
    node_table = pd.DataFrame({"nodes": [host_nodes.get(h, 0) for h in hosts],
                               "dta_count": [host_dta.get(h, 0) for h in hosts]},
                              index=pd.Index(hosts, name="host"), dtype=float)
    if len(node_table) > 0:
        node_table["rate"] = node_table["dta_count"] / node_table["nodes"].clip(lower=1)
    else:
        node_table["rate"] = pd.Series(dtype=float)

    active = int(node_table["nodes"].sum())
    dta_total = int(node_table["dta_count"].sum())
    hosts_processed = int((node_table["dta_count"] > 0).sum())

    eval_code = 0
    messages = []
    if active < expected_nodes or expected_nodes == 0:
        eval_code += EVAL_CODE_FEW_ACTIVE_NODES
        messages.append(f"Error: {active} nodes active vs. {expected_nodes} expected")
    elif started != active:
        eval_code += EVAL_CODE_STARTED_NOT_ACTIVE
        messages.append(f"Warning: {started} nodes started vs. {active} active")

    if hosts_processed < len(node_table) and dta_total >= 2 * active:
        eval_code += EVAL_CODE_IDLE_HOSTS
        messages.append(f"Warning: only {hosts_processed} of {len(node_table)} hosts processed DTA files")

    # head nodes are neither part of the median nor flagged
    worker_rates = node_table.loc[[HEAD_NODE_PREFIX not in h.lower() for h in node_table.index], "rate"]
    median_rate = float(np.median(worker_rates.to_numpy())) if len(worker_rates) > 0 else 0.0
    if median_rate >= MIN_MEDIAN_FOR_RATE_CHECK:
        low_hosts = worker_rates.index[(worker_rates < LOW_RATE_FACTOR * median_rate).to_numpy()].tolist()
        high_hosts = worker_rates.index[(worker_rates > HIGH_RATE_FACTOR * median_rate).to_numpy()].tolist()
        if low_hosts:
            eval_code += EVAL_CODE_LOW_RATE
            messages.append(f"Warning: {len(low_hosts)} host(s) processed less than {LOW_RATE_FACTOR} x the median DTA count per node ({', '.join(low_hosts)})")
        if high_hosts:
            eval_code += EVAL_CODE_HIGH_RATE
            messages.append(f"Warning: {len(high_hosts)} host(s) processed more than {HIGH_RATE_FACTOR} x the median DTA count per node ({', '.join(high_hosts)})")

    if waiting_for and waiting_for != started:
        logging.debug(f"waiting for ready messages from {waiting_for} nodes; {started} nodes started")
    eval_message = "; ".join(messages)
    if log_to_console:
        print(node_table)
    if eval_code > 0:
        logging.warning(f"node count validation ({eval_code}): {eval_message}")
    else:
        logging.info(f"node count validation passed: {active} nodes active , {dta_total} DTA files searched")
    return eval_code, eval_message


def rename_sequest_log(work_dir, transfer_folder=None):
    """sequest.log -> sequest_<yyyyMMdd_HHmm>.log (file modification time); the copy goes to the transfer folder"""
    work_dir = pathlib.Path(work_dir)
    log_file = work_dir / "sequest.log"
    if not log_file.exists():
        return None
    stamp = datetime.datetime.fromtimestamp(log_file.stat().st_mtime).strftime("%Y%m%d_%H%M")
    target = work_dir / f"sequest_{stamp}.log"
    try:
        if target.exists():
            target.unlink()
        log_file.rename(target)
    except OSError as err:
        logging.error(f"error renaming sequest.log to {target.name}: {err}")
        return None
    if transfer_folder is not None:
        try:
            pathlib.Path(transfer_folder).mkdir(parents=True, exist_ok=True)
            shutil.copyfile(target, pathlib.Path(transfer_folder) / target.name)
        except OSError as err:
            logging.warning(f"couldn't copy {target.name} to {transfer_folder}: {err}")
    return target


def minimum_spawned_nodes(expected_nodes):
    return int(math.floor(0.85 * expected_nodes))
