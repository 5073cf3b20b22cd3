import zipfile

import pandas as pd
import pytest

from msrunner import fragpipeRunner as fp
from msrunner.closeOut import CloseOutType
from tests.conftest import FakeSupervisor

CONSOLE_LINES = [
    "FragPipe version 20.0",
    "MSFragger version 3.8",
    "Philosopher version 5.0.0",
    "System OS: Linux, Architecture: AMD64",
    "3 commands to execute:",
    "CheckCentroid",
    "MSFragger [Work dir: /work]",
    "Percolator [Work dir: /work]",
    "~~~~~~~~~~~~~~~~~~~~~~",
    "CheckCentroid",
    "MSFragger [Work dir: /work]",
    "JVM started",
    "********FIRST SEARCH********",
    "progress: 10/100 (10%)"]


def write_lines(path, lines):
    path.write_text("\n".join(lines) + "\n")
    return path


def test_console_parser_version_and_command_list(tmp_path):
    parser = fp.FragPipeConsoleParser(dataset_count=1)
    console = write_lines(tmp_path / "console.txt", CONSOLE_LINES[:9])
    assert parser.parse_new_output(console) == fp.STARTING_FRAGPIPE
    assert parser.tool_version == "FragPipe version 20.0; MSFragger version 3.8; Philosopher version 5.0.0"


def test_console_parser_nests_msfragger_progress(tmp_path):
    parser = fp.FragPipeConsoleParser(dataset_count=1)
    console = write_lines(tmp_path / "console.txt", CONSOLE_LINES)
    progress = parser.parse_new_output(console)
    assert fp.STARTING_FRAGPIPE + 2 < progress < 50

    write_lines(console, CONSOLE_LINES + ["Percolator [Work dir: /work]"])
    assert parser.parse_new_output(console) == 50


def test_console_parser_reports_first_error_line(tmp_path):
    parser = fp.FragPipeConsoleParser()
    console = write_lines(tmp_path / "console.txt", CONSOLE_LINES + [
        "Percolator [Work dir: /work]",
        "Error: percolator exited with code 1",
        "error: second problem"])
    parser.parse_new_output(console)
    assert parser.console_error == "Error running FragPipe: Error: percolator exited with code 1"


def test_error_before_start_is_ignored(tmp_path):
    parser = fp.FragPipeConsoleParser()
    console = write_lines(tmp_path / "console.txt", ["Error reading the tools folder"])
    parser.parse_new_output(console)
    assert parser.console_error == ""


def test_create_manifest_file(tmp_path):
    datasets = pd.DataFrame({"Dataset": ["DS1", "DS2"],
                             "DatasetFile": [str(tmp_path / "DS1.mzML"), str(tmp_path / "DS2.mzML")],
                             "Experiment": ["Exp1", ""],
                             "DatasetType": ["HMS-HCD-HMSn", "DIA-HMS-HCD"]})
    manifest, dia = fp.create_manifest_file(tmp_path, datasets)
    assert dia
    rows = manifest.read_text().splitlines()
    assert rows[0] == f"{tmp_path / 'DS1.mzML'}\tExp1\t\tDDA"
    assert rows[1] == f"{tmp_path / 'DS2.mzML'}\tResults\t\tDIA"
    assert (tmp_path / "Exp1").is_dir()
    assert (tmp_path / "Results").is_dir()


def test_manifest_requires_matching_extensions(tmp_path):
    datasets = pd.DataFrame({"Dataset": ["DS1", "DS2"], "DatasetFile": ["DS1.mzML", "DS2.raw"],
                             "Experiment": ["", ""], "DatasetType": ["", ""]})
    assert fp.create_manifest_file(tmp_path, datasets) == (None, False)


def test_update_workflow_file(tmp_path):
    workflow = write_lines(tmp_path / "fp.workflow", [
        "# workflow",
        "database.db-path=C:\\old.fasta",
        "msfragger.output_format=pepxml",
        "msfragger.misc.slice-db=1",
        "msfragger.table.var-mods=15.9949,M,true,3; 42.0106,[^,true,1; 79.96633,STY,false,3"])
    fp.update_workflow_file(workflow, "C:\\work\\db.fasta", database_split_count=4)
    text = workflow.read_text()
    assert "database.db-path=C:\\\\work\\\\db.fasta" in text
    assert "msfragger.output_format=tsv_pepxml_pin" in text
    assert "msfragger.misc.slice-db=4" in text
    assert "# workflow" in text
    assert not (tmp_path / "fp.workflow.new").exists()
    assert fp.get_dynamic_mod_count(workflow) == 2


def test_update_workflow_file_appends_missing_settings(tmp_path):
    workflow = write_lines(tmp_path / "fp.workflow", ["msfragger.misc.slice-db=1"])
    fp.update_workflow_file(workflow, "/data/db.fasta", database_split_count=0)
    lines = workflow.read_text().splitlines()
    assert "msfragger.misc.slice-db=1" in lines
    assert "database.db-path=/data/db.fasta" in lines
    assert "msfragger.output_format=tsv_pepxml_pin" in lines


@pytest.mark.parametrize("fasta_mb,mods,configured,expected", [
    (10, 2, 10000, (15, 10000)),
    (1, 4, 2000, (20, 2000)),
    (1, 0, 500, (10, 2000)),
])
def test_get_memory_size_gb(fasta_mb, mods, configured, expected):
    assert fp.get_memory_size_gb(fasta_mb, mods, configured) == expected


@pytest.mark.parametrize("cores,threads", [(1, 1), (4, 4), (8, 7), (16, 15)])
def test_get_num_threads(cores, threads):
    assert fp.get_num_threads(cores) == threads


def test_validate_fasta_has_decoys(tmp_path):
    forward = write_lines(tmp_path / "forward.fasta", [">sp|P1|A", "MKVL", ">sp|P2|B", "MKLV"])
    with_decoys = write_lines(tmp_path / "decoy.fasta", [">sp|P1|A", "MKVL", ">XXX_sp|P1|A", "LVKM"])
    assert not fp.validate_fasta_has_decoys(forward)
    assert fp.validate_fasta_has_decoys(with_decoys)


def fake_fragpipe(lines, outputs):
    def on_start(program, args, work_dir, console_file):
        write_lines(console_file, lines)
        for name in outputs:
            (work_dir / name).write_text("<msms_pipeline_analysis/>\n")
    return on_start


def prepare_fragpipe_job(tmp_path, work_dir):
    fasta = write_lines(tmp_path / "db.fasta", [">sp|P1|A", "MKVL", ">XXX_sp|P1|A", "LVKM"])
    dataset_list = tmp_path / "datasets.csv"
    pd.DataFrame({"Dataset": ["DS1"], "DatasetFile": [str(tmp_path / "DS1.mzML")],
                  "Experiment": ["Exp1"], "DatasetType": ["HMS-HCD-HMSn"]}).to_csv(dataset_list, index=False)
    write_lines(work_dir / "fp.workflow", ["msfragger.misc.slice-db=1"])
    return {"FastaFile": str(fasta), "DatasetList": str(dataset_list), "ParamFileName": "fp.workflow",
            "SkipFreeMemoryCheck": True, "FragPipeProgLoc": "fragpipe"}


def test_fragpipe_runner_success(tmp_path, work_dir, make_ctx):
    params = prepare_fragpipe_job(tmp_path, work_dir)
    lines = CONSOLE_LINES + ["Percolator [Work dir: /work]", "Please cite: FragPipe"]
    supervisor = FakeSupervisor(on_start=fake_fragpipe(lines, ["DS1.pepXML", "DS1.tsv", "DS1.pin"]))
    ctx = make_ctx(dataset="Aggregation", params=params)

    assert fp.FragPipeRunner(ctx, supervisor).run_tool() == CloseOutType.SUCCESS
    program, args = supervisor.started[0]
    assert program == "fragpipe"
    assert args[:2] == ["--headless", "--ram"]
    assert ctx.tool_version.startswith("FragPipe version 20.0")
    assert ctx.progress == fp.PROCESSING_COMPLETE
    with zipfile.ZipFile(work_dir / "DS1_pepXML.zip") as zf:
        assert sorted(zf.namelist()) == ["DS1.pepXML", "DS1.pin"]


def test_fragpipe_runner_insufficient_memory(tmp_path, work_dir, make_ctx):
    params = prepare_fragpipe_job(tmp_path, work_dir)
    lines = CONSOLE_LINES + ["java.lang.OutOfMemoryError: GC overhead limit exceeded"]
    supervisor = FakeSupervisor(on_start=fake_fragpipe(lines, []), exit_codes=[1])
    ctx = make_ctx(params=params)

    assert fp.FragPipeRunner(ctx, supervisor).run_tool() == CloseOutType.RESET_JOB_STEP_INSUFFICIENT_MEMORY
    assert "ran out of memory" in ctx.messages.full_message()


def test_fragpipe_runner_without_completion_fails(tmp_path, work_dir, make_ctx):
    params = prepare_fragpipe_job(tmp_path, work_dir)
    supervisor = FakeSupervisor(on_start=fake_fragpipe(CONSOLE_LINES, ["DS1.pepXML", "DS1.tsv", "DS1.pin"]))
    ctx = make_ctx(params=params)
    assert fp.FragPipeRunner(ctx, supervisor).run_tool() == CloseOutType.FAILED


def test_fragpipe_runner_missing_pepxml(tmp_path, work_dir, make_ctx):
    params = prepare_fragpipe_job(tmp_path, work_dir)
    lines = CONSOLE_LINES + ["Please cite: FragPipe"]
    supervisor = FakeSupervisor(on_start=fake_fragpipe(lines, []))
    ctx = make_ctx(params=params)
    assert fp.FragPipeRunner(ctx, supervisor).run_tool() == CloseOutType.FAILED
    assert "did not create a .pepXML file for dataset DS1" in ctx.messages.message


def test_fragpipe_runner_low_free_memory_requests_bigger_host(tmp_path, work_dir, make_ctx, monkeypatch):
    params = prepare_fragpipe_job(tmp_path, work_dir)
    params["SkipFreeMemoryCheck"] = False
    monkeypatch.setattr(fp, "free_memory_mb", lambda: 1)
    supervisor = FakeSupervisor()
    ctx = make_ctx(params=params)

    assert fp.FragPipeRunner(ctx, supervisor).run_tool() == CloseOutType.RESET_JOB_STEP_INSUFFICIENT_MEMORY
    assert supervisor.started == []
    assert "Not enough free memory" in ctx.messages.message
