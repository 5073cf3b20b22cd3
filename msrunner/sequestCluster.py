"""
Sequest search on a PVM cluster.

the .out files are appended into <dataset>_out.txt.tmp while the search runs;
node health and stalls are watched from the loop waiting callback and the
appender timer , and the OrchestrationDriver relaunches Sequest after a pool
reset while .dta files remain
"""

import logging
import os
import pathlib
import time
import zipfile

from msrunner import settings
from msrunner.closeOut import CloseOutType
from msrunner.driver import OrchestrationDriver
from msrunner.healthMonitor import ActiveNodeMonitor, HealthState, PoolResetter, StallMonitor
from msrunner.outAppender import (OutFileAppender, OutFileWatcher, PeriodicWorker,
                                  check_for_existing_concatenated_out_file, split_concatenated_dta)
from msrunner.processSupervisor import ProcessSupervisor
from msrunner.sequestLog import NodeProcessingStats, find_sequest_logs, rename_sequest_log, validate_node_count


def zip_file(source, target):
    try:
        with zipfile.ZipFile(target, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(source, arcname=pathlib.Path(source).name)
    except (OSError, zipfile.BadZipFile) as err:
        logging.error(f"error zipping {source}: {err}")
        return False
    return True


class SequestClusterRunner:
    """runs Sequest for one dataset inside the job context"""

    def __init__(self, ctx, supervisor=None, program=None, pvm_folder=None, clock=time.time, sleep=time.sleep):
        self.ctx = ctx
        self.supervisor = supervisor or ProcessSupervisor(echo=ctx.debug_level > 1)
        self.program = pathlib.Path(program or ctx.param("SeqProgLoc", settings.sequest_program_path))
        self.pvm_folder = pathlib.Path(pvm_folder or ctx.param("PVMProgLoc", settings.pvm_folder))
        self.clock = clock
        self.sleep = sleep
        self.param_file_name = ctx.param("ParmFileName", "")
        self.stall_monitor = StallMonitor(clock=clock)
        self.appender = OutFileAppender(ctx.work_dir, ctx.dataset, ctx.job, self.param_file_name, ctx.transfer_folder,
                                        on_append=self.stall_monitor.record_artifact, clock=clock, sleep=sleep)
        self.watcher = OutFileWatcher(ctx.work_dir, self.appender.on_artifact_detected)
        self.node_monitor = ActiveNodeMonitor(ctx.work_dir, self.supervisor, self.pvm_folder,
                                              ctx.int_param("SequestNodeCountExpected", settings.SEQUEST_NODE_COUNT_EXPECTED),
                                              ignore_active_errors=ctx.bool_param("IgnoreSequestNodeCountActiveErrors"),
                                              clock=clock)
        self.resetter = PoolResetter(self.supervisor, self.pvm_folder, ctx.work_dir, sleep=sleep)
        self.node_stats = NodeProcessingStats()
        self.dta_count = 0
        self.dta_count_addon = 0
        self.handle = None
        self.search_start_time = clock()
        self._last_progress_time = 0.0
        self._last_status_time = 0.0

    @property
    def work_dir(self):
        return self.ctx.work_dir

    # ------------------------------------------------------------------ counts

    def remaining_dta(self):
        return sum(1 for _ in self.work_dir.glob("*.dta"))

    def outstanding_dta(self):
        """.dta files without an .out file"""
        return sum(1 for dta in self.work_dir.glob("*.dta") if not dta.with_suffix(".out").exists())

    def calculate_new_status(self, update_dta_count=False):
        if update_dta_count:
            self.dta_count = self.remaining_dta() + self.dta_count_addon
        out_count = self.appender.out_file_count()
        progress = 100.0 * out_count / self.dta_count if self.dta_count > 0 else 0.0
        self.ctx.set_progress(min(progress, 100.0))
        return progress

    # ------------------------------------------------------------------ driver hooks

    def launch_attempt(self, attempt):
        self.node_monitor.restart()
        self.stall_monitor.reset_requested = False
        self.search_start_time = self.clock()
        args = ["-P" + self.param_file_name] + self.dta_arguments()
        logging.debug(f"  {self.program} {' '.join(args)}")
        try:
            self.handle = self.supervisor.start(self.program, args, self.work_dir,
                                                console_file=self.work_dir / f"Sequest_ConsoleOutput_{attempt.index}.txt")
        except OSError as err:
            logging.error(f"couldn't start Sequest: {err}")
            return False
        exit_code, timed_out = self.supervisor.wait(self.handle, self.loop_waiting)
        if exit_code != 0 and not self.handle.cancelled:
            logging.warning(f" ... Sequest returned a non-zero exit code: {exit_code}")
        self.calculate_new_status()
        return exit_code == 0 and not timed_out and not self.handle.cancelled

    def dta_arguments(self):
        """the windows build of Sequest expands the wildcard itself; elsewhere no shell does it"""
        if os.name == "nt":
            return ["*.dta"]
        return sorted(dta.name for dta in self.work_dir.glob("*.dta"))

    def remaining_inputs(self):
        return self.outstanding_dta()

    def artifact_counts(self):
        return self.appender.out_file_count(), self.dta_count

    def failure_counters(self):
        return {"spawn errors": self.node_monitor.spawn_error_count,
                "inactive node errors": self.node_monitor.active_error_count}

    @property
    def stall_abort_message(self):
        return self.stall_monitor.abort_message if self.stall_monitor.aborted else ""

    def reset_pool(self, attempts):
        logging.info("Resetting PVM")
        if not self.resetter.reset_with_retry(attempts):
            return False
        self.update_node_stats()
        rename_sequest_log(self.work_dir, self.ctx.transfer_folder)
        self.node_monitor.restart()
        self.stall_monitor.restart_timer()
        self.stall_monitor.reset_requested = False
        return True

    # ------------------------------------------------------------------ periodic work

    def loop_waiting(self):
        now = self.clock()
        if now - self._last_progress_time >= settings.PROGRESS_UPDATE_INTERVAL_SEC:
            self._last_progress_time = now
            self.calculate_new_status()

        if self.node_monitor.query_due():
            # pick up .out files the watcher has not reported yet
            self.watcher.scan()
            if self.node_monitor.check_spawned_nodes(self.outstanding_dta()):
                self.node_monitor.check_active_nodes(self.ctx.progress, self.appender.median_search_time())
                self.node_monitor.write_snapshot(self.ctx.log_dir)

        if now - self._last_status_time >= settings.STATUS_UPDATE_INTERVAL_SEC:
            self._last_status_time = now
            self.ctx.update_status(dta_count=self.dta_count, out_count=self.appender.total_out_count,
                                   spawn_errors=self.node_monitor.spawn_error_count,
                                   active_node_errors=self.node_monitor.active_error_count,
                                   stall_state=self.stall_monitor.state.value)

        if self.node_monitor.reset_requested or self.stall_monitor.reset_requested or self.stall_monitor.aborted:
            if self.handle is not None and not self.handle.cancelled:
                logging.warning("stopping Sequest to reset the pool")
                self.supervisor.cancel(self.handle)

    def appender_tick(self):
        self.appender.drain(flush_all=False)
        state = self.stall_monitor.check(self.outstanding_dta(), self.dta_count)
        if state == HealthState.CONFIRMED_STALL:
            self.delete_remaining_dta()

    def delete_remaining_dta(self):
        for dta_file in self.work_dir.glob("*.dta"):
            if dta_file.with_suffix(".out").exists():
                continue
            logging.warning(f"deleting {dta_file.name} since Sequest appears stalled on it")
            try:
                dta_file.unlink()
            except OSError as err:
                logging.error(f"couldn't delete {dta_file.name}: {err}")

    def update_node_stats(self):
        log_file = self.work_dir / "sequest.log"
        if log_file.exists():
            self.node_stats.update_from_log(log_file, self.clock() - self.search_start_time)

    # ------------------------------------------------------------------ job

    def prepare_dta_files(self):
        """resume from staged results and split <dataset>_dta.txt; returns a closeout"""
        try:
            resume, skip = check_for_existing_concatenated_out_file(self.work_dir, self.ctx.dataset, self.ctx.job,
                                                                    self.param_file_name, self.ctx.transfer_folder)
        except OSError as err:
            self.ctx.messages.error(f"Error checking for staged _out.txt.tmp file: {err}")
            return CloseOutType.FAILED
        if resume == CloseOutType.SUCCESS:
            self.dta_count_addon = len(skip)
            self.appender.total_out_count = len(skip)
            self.ctx.add_summary_line(f"Resumed with {len(skip)} .out files from a previous attempt")

        dta_txt = self.work_dir / (self.ctx.dataset + "_dta.txt")
        if dta_txt.exists():
            try:
                created = split_concatenated_dta(dta_txt, self.work_dir, skip)
            except OSError as err:
                self.ctx.messages.error(f"Error splitting {dta_txt.name}: {err}")
                return CloseOutType.FAILED
            logging.info(f"created {created} .dta files from {dta_txt.name}")
        return CloseOutType.SUCCESS

    def run_tool(self):
        ctx = self.ctx
        ctx.set_progress(0)
        if not self.program.exists():
            ctx.messages.error(f"Sequest program not found: {self.program}")
            ctx.update_status(closeout=CloseOutType.FAILED)
            return CloseOutType.FAILED

        result = self.prepare_dta_files()
        if result != CloseOutType.SUCCESS:
            ctx.update_status(closeout=result)
            return result
        if self.remaining_dta() == 0:
            ctx.messages.error("No .dta files were found in the work directory")
            ctx.update_status(closeout=CloseOutType.NO_DTA_FILES)
            return CloseOutType.NO_DTA_FILES

        self.calculate_new_status(update_dta_count=True)
        logging.info(f"searching {self.dta_count} DTA files ({self.dta_count_addon} done in an earlier attempt)")
        for log_file in find_sequest_logs(self.work_dir):
            if log_file.name != "sequest.log":
                self.node_stats.update_from_log(log_file)

        result = self.make_out_files()
        ctx.set_progress(100 if result == CloseOutType.SUCCESS else ctx.progress)
        self.store_tool_version()
        for line in self.node_stats.summary_lines():
            ctx.add_summary_line(line)
        ctx.write_summary()

        log_file = self.work_dir / "sequest.log"
        if log_file.exists():
            eval_code, eval_message = validate_node_count(log_file, self.node_monitor.expected_nodes)
            if eval_code > 0:
                ctx.messages.warning(eval_message)
        renamed = rename_sequest_log(self.work_dir, ctx.transfer_folder)
        if renamed is not None:
            logging.debug(f"sequest log renamed to {renamed.name}")
        ctx.update_status(closeout=result)
        return result

    def make_out_files(self):
        driver = OrchestrationDriver(self.ctx, self, clock=self.clock)
        self.watcher.start()
        timer = PeriodicWorker(settings.OUT_FILE_APPEND_INTERVAL_SEC, self.appender_tick, "out-file-appender")
        timer.start()
        try:
            result = driver.run()
        finally:
            self.watcher.stop()
            timer.stop()

        self.update_node_stats()
        self.watcher.scan()
        if not self.appender.final_drain():
            logging.warning("the final drain left .out files in the queue; they are appended by the concatenation step")
        if self.appender.out_file_count() < 1:
            self.ctx.messages.error("No .out files were created")
            return CloseOutType.NO_DATA if result == CloseOutType.SUCCESS else result
        if not self.appender.concat_out_files():
            self.ctx.messages.error("Unable to verify that all .out files have been appended to the _out.txt.tmp file")
            return CloseOutType.FAILED
        if not zip_file(self.appender.concatenated_path, self.work_dir / (self.ctx.dataset + "_out.zip")):
            self.ctx.messages.error("Error zipping the _out.txt file")
            return CloseOutType.ERROR_ZIPPING_FILE if result == CloseOutType.SUCCESS else result
        return result

    def store_tool_version(self):
        if self.appender.tool_version:
            self.ctx.tool_version = self.appender.tool_version
            self.ctx.add_summary_line(f"Tool version: {self.appender.tool_version}")
            logging.info(f"Sequest tool version: {self.appender.tool_version}")
