import xml.etree.ElementTree as ET

import pandas as pd

from msrunner.closeOut import CloseOutType, JobMessages, find_insufficient_memory_marker
from msrunner.jobContext import header


def test_first_error_message_wins():
    messages = JobMessages()
    messages.error("Error resetting PVM")
    messages.error("Unable to verify that all .out files have been appended")
    messages.error("Error resetting PVM")
    assert messages.message == "Error resetting PVM"
    assert messages.full_message() == "Error resetting PVM; Unable to verify that all .out files have been appended"
    assert messages.has_error


def test_warnings_are_kept_apart():
    messages = JobMessages()
    messages.warning("node count low")
    assert not messages.has_error
    assert str(messages) == ""
    assert messages.warnings == ["node count low"]


def test_find_insufficient_memory_marker():
    assert find_insufficient_memory_marker("java.lang.OutOfMemoryError: Java heap space") == "java heap space"
    assert find_insufficient_memory_marker("Exception: java.lang.OutOfMemoryError") == "java out of memory"
    assert find_insufficient_memory_marker("all good") is None


def test_closeout_codes():
    assert int(CloseOutType.SUCCESS) == 0
    assert int(CloseOutType.RESET_JOB_STEP_INSUFFICIENT_MEMORY) == 24


def test_job_parameters(make_ctx):
    ctx = make_ctx(params={"DatabaseSplitCount": "4", "SkipFreeMemoryCheck": "True", "Bad": "x", "Empty": ""})
    assert ctx.int_param("DatabaseSplitCount", 1) == 4
    assert ctx.int_param("Bad", 1) == 1
    assert ctx.bool_param("SkipFreeMemoryCheck")
    assert not ctx.bool_param("Missing")
    assert ctx.param("Empty", "default") == "default"


def test_status_snapshot(make_ctx):
    ctx = make_ctx()
    ctx.set_progress(42.123)
    ctx.messages.error("Sequest .Exe not found")
    ctx.update_status(closeout=CloseOutType.FAILED, dta_count=10)
    status = pd.read_csv(ctx.log_dir / "job_status.csv", index_col=0)
    assert status.loc["job", "closeout"] == "FAILED"
    assert status.loc["job", "progress"] == 42.12
    assert status.loc["job", "dta_count"] == 10
    assert status.loc["job", "message"] == "Sequest .Exe not found"


def test_write_summary(make_ctx):
    ctx = make_ctx()
    ctx.add_summary_line("Tool version: TurboSEQUEST v.27")
    summary = ctx.write_summary()
    assert summary.read_text() == "Tool version: TurboSEQUEST v.27\n"
    assert ctx.summary_lines == []


def test_header():
    text = header("FragPipe")
    assert "FragPipe" in text
    assert "Version" in text


def test_write_job_parameters(make_ctx):
    ctx = make_ctx(job=7, params={"SeqProgLoc": "/opt/sequest/sequest", "ParmFileName": "sequest.params"})
    path = ctx.write_job_parameters()
    assert path.name == "JobParameters_7.xml"
    items = ET.parse(path).getroot().find("section[@name='JobParameters']").findall("item")
    assert [(item.get("key"), item.get("value")) for item in items] == [
        ("Job", "7"), ("Dataset", "Dataset"), ("ParmFileName", "sequest.params"), ("SeqProgLoc", "/opt/sequest/sequest")]

    first = path.read_bytes()
    same = make_ctx(job=7, params={"ParmFileName": "sequest.params", "SeqProgLoc": "/opt/sequest/sequest"})
    assert same.write_job_parameters().read_bytes() == first
