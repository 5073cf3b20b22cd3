"""
FragPipe tool family: prepare the manifest and workflow files, run FragPipe
headless under the process supervisor, follow its console output and zip the
per dataset pepXML/pin results
"""

import logging
import math
import os
import pathlib
import re
import time
import zipfile

import pandas as pd
import psutil
from Bio import SeqIO

from msrunner import settings
from msrunner.closeOut import CloseOutType
from msrunner.processSupervisor import ProcessSupervisor
from msrunner.progressEngine import ProgressEngine, SubProgressRange, build_milestones, msfragger_progress_engine

PEPXML_EXTENSION = ".pepXML"
PIN_EXTENSION = ".pin"

INITIALIZING = 0
STARTING_FRAGPIPE = 1
FRAGPIPE_COMPLETE = 95
PROCESSING_COMPLETE = 99

FRAGPIPE_STEPS = [
        ("CheckCentroid", r"^CheckCentroid", STARTING_FRAGPIPE + 1),
        ("MSFragger", r"^MSFragger *", STARTING_FRAGPIPE + 2),
        ("Percolator", r"^Percolator *", 50),
        ("PTMProphet", r"^PTMProphet *", 55),
        ("ProteinProphet", r"^ProteinProphet *", 60),
        ("PhilosopherDbAnnotate", r"^PhilosopherDbAnnotate *", 70),
        ("PhilosopherFilter", r"^PhilosopherFilter *", 75),
        ("PhilosopherReport", r"^PhilosopherReport *", 80),
        ("IonQuant", r"^IonQuant *", 85),
        ("TmtIntegrator", r"^TmtIntegrator *", 90),
        ("FragPipeComplete", r"^Please cite", FRAGPIPE_COMPLETE)]

re_command_list = re.compile(r'^\d+ commands to execute', re.IGNORECASE)

DATABASE_PATH_PARAMETER = "database.db-path"
OUTPUT_FORMAT_PARAMETER = "msfragger.output_format"
SLICE_DB_PARAMETER = "msfragger.misc.slice-db"
VAR_MODS_PARAMETER = "msfragger.table.var-mods"
REQUIRED_OUTPUT_FORMAT = "tsv_pepxml_pin"
FASTA_FILE_COMMENT = "FASTA File (should include decoy proteins)"
FILE_FORMAT_COMMENT = "File format of output files; Percolator uses .pin files"


class FragPipeConsoleParser(ProgressEngine):
    """
    FragPipe console output: stage milestones , the MSFragger stage is followed
    in detail by a nested MSFragger tracker.
    the version block and the list of commands printed before the run are not
    treated as progress
    """

    def __init__(self, dataset_count=0):
        super().__init__("FragPipe", build_milestones(FRAGPIPE_STEPS), initial_progress=STARTING_FRAGPIPE,
                         sub_ranges=[SubProgressRange("MSFragger", "Percolator", engine=msfragger_progress_engine(dataset_count))])
        self.tool_version = ""
        self._version_parts = []
        self._in_version_block = False
        self._in_command_list = False

    def begin_scan(self):
        super().begin_scan()
        self._in_version_block = False
        self._in_command_list = False

    def _inspect_line(self, line):
        if self._in_command_list:
            if line.startswith("~~~~"):
                self._in_command_list = False
            return False
        if re_command_list.match(line):
            self._in_command_list = True
            return False
        if line.lower().startswith("fragpipe version"):
            self._in_version_block = True
            if not self.tool_version:
                self._version_parts = [line.strip()]
            return False
        if self._in_version_block:
            if " version" in line:
                if not self.tool_version:
                    self._version_parts.append(line.strip())
                return False
            self._close_version_block()
        return True

    def _close_version_block(self):
        self._in_version_block = False
        if not self.tool_version and self._version_parts:
            self.tool_version = "; ".join(self._version_parts)
            logging.debug(f"FragPipe version: {self.tool_version}")

    def _finish_scan(self):
        if self._in_version_block:
            self._close_version_block()


# =============================================================================
# input preparation
# =============================================================================

def load_dataset_list(dataset_file):
    """dataset list csv with columns Dataset , DatasetFile and optional Experiment , DatasetType"""
    datasets = pd.read_csv(dataset_file)
    for column in ("Dataset", "DatasetFile"):
        if column not in datasets.columns:
            raise ValueError(f"dataset list {dataset_file} has no {column} column")
    if "Experiment" not in datasets.columns:
        datasets["Experiment"] = ""
    if "DatasetType" not in datasets.columns:
        datasets["DatasetType"] = ""
    return datasets.fillna("")


def validate_fasta_has_decoys(fasta_path, decoy_prefix=settings.DECOY_PREFIX):
    forward_count = 0
    decoy_count = 0
    with open(fasta_path) as f:
        for record in SeqIO.parse(f, 'fasta'):
            if record.id.startswith(decoy_prefix):
                decoy_count += 1
            else:
                forward_count += 1
    size_mb = os.path.getsize(fasta_path) / 1024.0 / 1024
    if decoy_count == 0:
        logging.debug(f"FASTA file {pathlib.Path(fasta_path).name} is {size_mb:.1f} MB and has {forward_count} forward proteins, but no decoy proteins")
        return False
    logging.debug(f"FASTA file {pathlib.Path(fasta_path).name} is {size_mb:.1f} MB and has {forward_count} forward proteins and {decoy_count} decoy proteins")
    return True


def create_manifest_file(work_dir, datasets):
    """
    write datasets.fp-manifest: path , experiment , bio replicate (empty) , DDA or DIA.
    returns (manifest path, dia search enabled) or (None, False) on error
    """
    work_dir = pathlib.Path(work_dir)
    if len(datasets) == 0:
        logging.error("dataset list is empty")
        return None, False
    extensions = {pathlib.Path(p).suffix.lower() for p in datasets["DatasetFile"]}
    if len(extensions) > 1:
        logging.error(f"dataset files do not all have the same file extension: {', '.join(sorted(extensions))}")
        return None, False

    manifest_path = work_dir / settings.FRAGPIPE_MANIFEST
    output_dirs = set()
    dia_enabled = False
    with manifest_path.open('w') as f:
        for _, row in datasets.iterrows():
            experiment = row["Experiment"] if str(row["Experiment"]).strip() else "Results"
            output_dirs.add(work_dir / experiment)
            data_type = "DIA" if "DIA" in str(row["DatasetType"]) else "DDA"
            if data_type == "DIA":
                dia_enabled = True
            f.write(f"{row['DatasetFile']}\t{experiment}\t\t{data_type}\n")
    for d in output_dirs:
        d.mkdir(parents=True, exist_ok=True)
    return manifest_path, dia_enabled


def _write_setting(f, name, value, comment):
    if comment:
        comment = comment.strip()
        f.write(f"{comment}\n" if comment.startswith("#") else f"# {comment}\n")
    f.write(f"{name}={value}\n")


def _split_setting(line):
    """key=value  # comment -> (value, comment)"""
    value = line.split("=", 1)[1] if "=" in line else ""
    comment = ""
    if "#" in value:
        value, comment = value.split("#", 1)
    return value.strip(), comment.strip()


def update_workflow_file(workflow_path, fasta_path, database_split_count=1):
    """
    point the workflow at the local FASTA file , force the pin output format
    and set the database split count.  the file is written to .new then replaced
    """
    workflow_path = pathlib.Path(workflow_path)
    updated_path = workflow_path.with_name(workflow_path.name + ".new")
    fasta_defined = False
    output_format_defined = False
    split_defined = False
    with workflow_path.open('r') as source, updated_path.open('w') as f:
        for line in source:
            line = line.rstrip("\r\n")
            if not line.strip():
                f.write("\n")
                continue
            trimmed = line.strip()
            if trimmed.startswith(DATABASE_PATH_PARAMETER):
                if fasta_defined:
                    continue
                _, comment = _split_setting(trimmed)
                # java properties escaping of windows separators
                _write_setting(f, DATABASE_PATH_PARAMETER, str(fasta_path).replace("\\", "\\\\"), comment or FASTA_FILE_COMMENT)
                fasta_defined = True
                continue
            if trimmed.startswith(OUTPUT_FORMAT_PARAMETER):
                if output_format_defined:
                    continue
                value, comment = _split_setting(trimmed)
                if value.lower() == REQUIRED_OUTPUT_FORMAT:
                    f.write(line + "\n")
                else:
                    _write_setting(f, OUTPUT_FORMAT_PARAMETER, REQUIRED_OUTPUT_FORMAT, comment or FILE_FORMAT_COMMENT)
                    logging.warning(f"auto-updated the MSFragger output format from {value} to {REQUIRED_OUTPUT_FORMAT} because Percolator requires .pin files")
                output_format_defined = True
                continue
            if trimmed.startswith(SLICE_DB_PARAMETER):
                if split_defined:
                    continue
                f.write(f"{SLICE_DB_PARAMETER}={max(1, database_split_count)}\n")
                split_defined = True
                continue
            f.write(line + "\n")
        if not fasta_defined:
            _write_setting(f, DATABASE_PATH_PARAMETER, str(fasta_path).replace("\\", "\\\\"), FASTA_FILE_COMMENT)
        if not output_format_defined:
            _write_setting(f, OUTPUT_FORMAT_PARAMETER, REQUIRED_OUTPUT_FORMAT, FILE_FORMAT_COMMENT)
    os.replace(updated_path, workflow_path)
    return workflow_path


re_mod_residue = re.compile(r'[nc\[\]][A-Z^]|[A-Z]')


def get_dynamic_mod_count(workflow_path):
    """number of (enabled variable mod , residue) pairs in msfragger.table.var-mods"""
    count = 0
    for line in pathlib.Path(workflow_path).read_text().splitlines():
        if not line.strip().startswith(VAR_MODS_PARAMETER):
            continue
        value, _ = _split_setting(line)
        for mod in value.split(";"):
            parts = [p.strip() for p in mod.split(",")]
            if len(parts) < 4:
                continue
            if parts[2].lower() != "true":
                continue
            count += len(re_mod_residue.findall(parts[1]))
    return count


def get_memory_size_gb(fasta_size_mb, dynamic_mod_count, configured_mb=settings.FRAGPIPE_MEMORY_SIZE_MB):
    """
    larger FASTA files and more dynamic mods need more memory;
    5000 MB is added for each dynamic mod above 2.
    returns (memory GB to request , memory MB from the settings)
    """
    recommended_mb = int(fasta_size_mb * 0.5 + 10) * 1024 + (max(2, dynamic_mod_count) - 2) * 5000
    memory_mb = max(settings.FRAGPIPE_MIN_MEMORY_MB, configured_mb)
    memory_gb = recommended_mb / 1024.0 if recommended_mb > memory_mb else memory_mb / 1024.0
    return int(math.ceil(memory_gb)), memory_mb


def get_num_threads(core_count=None):
    if core_count is None:
        core_count = psutil.cpu_count(logical=False) or os.cpu_count() or 1
    return core_count - 1 if core_count > 4 else core_count


def free_memory_mb():
    return psutil.virtual_memory().available / 1024.0 / 1024


def build_arguments(memory_gb, threads, workflow_path, manifest_path, work_dir,
                    tools_folder=settings.fragpipe_tools_folder, diann_path=settings.diann_program_path,
                    python_path=settings.python_program_path):
    return ["--headless",
            "--ram", str(memory_gb),
            "--threads", str(threads),
            "--workflow", str(workflow_path),
            "--manifest", str(manifest_path),
            "--workdir", str(work_dir),
            "--config-tools-folder", str(tools_folder),
            "--config-diann", str(diann_path),
            "--config-python", str(python_path)]


# =============================================================================
# results
# =============================================================================

def find_pepxml_and_pin_files(work_dir, dataset, dia_enabled):
    """returns (pepXML files , pin file path)"""
    work_dir = pathlib.Path(work_dir)
    pin_file = work_dir / (dataset + PIN_EXTENSION)
    if dia_enabled:
        return sorted(work_dir.glob(f"{dataset}_rank*{PEPXML_EXTENSION}")), pin_file
    pepxml = work_dir / (dataset + PEPXML_EXTENSION)
    return ([pepxml] if pepxml.exists() else []), pin_file


def zip_pepxml_and_pin_files(work_dir, dataset, pepxml_files, add_pin_file):
    """
    the primary pepXML (_rank1 for DIA) and the pin file go to <dataset>_pepXML.zip ,
    other DIA ranks each get their own zip
    """
    work_dir = pathlib.Path(work_dir)
    if not pepxml_files:
        logging.error("empty file list sent to zip_pepxml_and_pin_files")
        return False
    primary = next((p for p in pepxml_files if p.name.lower().endswith("_rank1.pepxml")), pepxml_files[0])
    if primary.stat().st_size == 0:
        logging.error(f"pepXML file created by FragPipe is empty for dataset {dataset}")
    try:
        with zipfile.ZipFile(work_dir / f"{dataset}_pepXML.zip", 'w', zipfile.ZIP_DEFLATED) as zf:
            zf.write(primary, primary.name)
            if add_pin_file:
                pin_file = work_dir / (dataset + PIN_EXTENSION)
                zf.write(pin_file, pin_file.name)
        for pepxml in pepxml_files:
            if pepxml == primary:
                continue
            with zipfile.ZipFile(work_dir / f"{pepxml.stem}_pepXML.zip", 'w', zipfile.ZIP_DEFLATED) as zf:
                zf.write(pepxml, pepxml.name)
    except (OSError, zipfile.BadZipFile) as err:
        logging.error(f"error zipping the pepXML files of {dataset}: {err}")
        return False
    return True


class FragPipeRunner:
    """runs one FragPipe job inside the job context"""

    def __init__(self, ctx, supervisor=None, clock=time.time):
        self.ctx = ctx
        self.supervisor = supervisor or ProcessSupervisor(echo=ctx.debug_level > 1)
        self.clock = clock
        self.parser = None
        self.handle = None
        self._last_parse = 0
        self._version_stored = False

    @property
    def console_file(self):
        return self.ctx.work_dir / settings.FRAGPIPE_CONSOLE_OUTPUT

    def run_tool(self):
        ctx = self.ctx
        ctx.set_progress(INITIALIZING)
        try:
            result = self._run_fragpipe()
        except (OSError, ValueError) as err:
            ctx.messages.error(f"Error in FragPipe runner: {err}")
            result = CloseOutType.FAILED
        ctx.set_progress(PROCESSING_COMPLETE)
        ctx.update_status(closeout=result)
        return result

    def _prepare_fasta(self):
        fasta = self.ctx.param("FastaFile")
        if not fasta or not pathlib.Path(fasta).exists():
            self.ctx.messages.error(f"FASTA file not found: {fasta}")
            return None
        if not validate_fasta_has_decoys(fasta):
            collections = self.ctx.param("ProteinCollectionList", "na")
            if str(collections).lower() == "na":
                self.ctx.messages.error("Using a legacy FASTA file that does not have decoy proteins; this will lead to errors with Peptide Prophet or Percolator")
            else:
                self.ctx.messages.error("Protein options for this analysis job contain seq_direction=forward; decoy proteins will not be used (which will lead to errors with Peptide Prophet or Percolator)")
            return None
        local_fasta = self.ctx.work_dir / pathlib.Path(fasta).name
        if pathlib.Path(fasta).resolve() != local_fasta.resolve():
            local_fasta.write_bytes(pathlib.Path(fasta).read_bytes())
        return local_fasta

    def _run_fragpipe(self):
        ctx = self.ctx
        logging.info("Preparing to run FragPipe")
        fasta = self._prepare_fasta()
        if fasta is None:
            return CloseOutType.FAILED

        dataset_file = ctx.param("DatasetList")
        if not dataset_file or not pathlib.Path(dataset_file).exists():
            ctx.messages.error(f"dataset list not found: {dataset_file}")
            return CloseOutType.FILE_NOT_FOUND
        datasets = load_dataset_list(dataset_file)
        if len(datasets) == 0:
            ctx.messages.error("No datasets were found in the dataset list")
            return CloseOutType.FILE_NOT_FOUND

        manifest_path, dia_enabled = create_manifest_file(ctx.work_dir, datasets)
        if manifest_path is None:
            ctx.messages.error("Error creating the FragPipe manifest file")
            return CloseOutType.FAILED

        workflow_name = ctx.param("ParamFileName")
        if not workflow_name:
            ctx.messages.error("FragPipe workflow file name is not defined")
            return CloseOutType.FAILED
        split_count = ctx.int_param("DatabaseSplitCount", 1)
        workflow_path = update_workflow_file(ctx.work_dir / workflow_name, fasta, split_count)

        fasta_size_mb = fasta.stat().st_size / 1024.0 / 1024
        dynamic_mods = get_dynamic_mod_count(workflow_path)
        memory_gb, memory_mb = get_memory_size_gb(fasta_size_mb, dynamic_mods,
                                                  ctx.int_param("FragPipeMemorySizeMB", settings.FRAGPIPE_MEMORY_SIZE_MB))
        if memory_gb > memory_mb / 1024.0:
            ctx.messages.warning(f"Allocating {memory_gb} GB to FragPipe for a {fasta_size_mb:.0f} MB FASTA file and {dynamic_mods} dynamic mods")
        if not ctx.bool_param("SkipFreeMemoryCheck") and memory_gb * 1024 > free_memory_mb():
            ctx.messages.error(f"Not enough free memory to run FragPipe; need {memory_gb * 1024} MB")
            return CloseOutType.RESET_JOB_STEP_INSUFFICIENT_MEMORY

        self.parser = FragPipeConsoleParser(len(datasets))
        args = build_arguments(memory_gb, get_num_threads(), workflow_path, manifest_path, ctx.work_dir)
        logging.info("Running FragPipe")
        ctx.set_progress(STARTING_FRAGPIPE)
        self._last_parse = self.clock()
        try:
            self.handle = self.supervisor.start(ctx.param("FragPipeProgLoc", settings.fragpipe_program_path), args,
                                                ctx.work_dir, settings.FRAGPIPE_TIMEOUT_SEC, self.console_file)
        except OSError as err:
            ctx.messages.error(f"Error starting FragPipe: {err}")
            return CloseOutType.FAILED
        exit_code, timed_out = self.supervisor.wait(self.handle, self.loop_waiting)

        self.parse_console_output()
        self.store_tool_version()
        if self.parser.fatal_message:
            ctx.messages.error(self.parser.fatal_message)
            return CloseOutType.RESET_JOB_STEP_INSUFFICIENT_MEMORY
        if self.parser.console_error:
            ctx.messages.error(self.parser.console_error)
        if exit_code != 0 or timed_out:
            ctx.messages.error("Error running FragPipe")
            if timed_out:
                ctx.messages.warning("FragPipe exceeded its run time limit")
            elif exit_code != 0:
                ctx.messages.warning(f"FragPipe returned a non-zero exit code: {exit_code}")
            return CloseOutType.FAILED
        if self.parser.current_milestone.target < FRAGPIPE_COMPLETE:
            ctx.messages.error(f"FragPipe exited without reporting completion; last step seen: {self.parser.current_milestone.name}")
            return CloseOutType.FAILED

        return self.validate_results(datasets, dia_enabled, split_count)

    def validate_results(self, datasets, dia_enabled, split_count):
        work_dir = self.ctx.work_dir
        split_search = split_count > 1
        success_count = 0
        for dataset in datasets["Dataset"]:
            pepxml_files, pin_file = find_pepxml_and_pin_files(work_dir, dataset, dia_enabled)
            if not pepxml_files:
                if dia_enabled:
                    self.ctx.messages.error(f"FragPipe did not create any .pepXML files for dataset {dataset}")
                else:
                    self.ctx.messages.error(f"FragPipe did not create a .pepXML file for dataset {dataset}")
                return CloseOutType.FAILED
            if not dia_enabled and not (work_dir / (dataset + ".tsv")).exists() and not split_search:
                self.ctx.messages.error(f"FragPipe did not create a .tsv file for dataset {dataset}")
            if not pin_file.exists() and not split_search:
                self.ctx.messages.error(f"FragPipe did not create a .pin file for dataset {dataset}")
            if not zip_pepxml_and_pin_files(work_dir, dataset, pepxml_files, pin_file.exists()):
                continue
            success_count += 1
        logging.debug("FragPipe Search Complete")
        if success_count == len(datasets):
            return CloseOutType.SUCCESS
        return CloseOutType.ERROR_ZIPPING_FILE

    def parse_console_output(self):
        progress = self.parser.parse_new_output(self.console_file)
        self.ctx.set_progress(progress)
        return progress

    def store_tool_version(self):
        if self._version_stored or not self.parser.tool_version:
            return False
        self.ctx.tool_version = self.parser.tool_version
        self.ctx.add_summary_line(f"Tool version: {self.parser.tool_version}")
        logging.info(f"FragPipe tool version: {self.parser.tool_version}")
        self._version_stored = True
        return True

    def loop_waiting(self):
        self.ctx.update_status()
        if self.clock() - self._last_parse < settings.CONSOLE_PARSE_INTERVAL_SEC:
            return
        self._last_parse = self.clock()
        self.parse_console_output()
        self.store_tool_version()
        logging.info(f"FragPipe: {self.ctx.progress:.1f}% complete")
