import pytest

from msrunner.healthMonitor import (ActiveNodeMonitor, HealthState, PoolResetter, StallMonitor, parse_active_nodes,
                                    should_reset_for_active_nodes)
from tests.conftest import FakeSupervisor

ACTIVE_NODES_OUTPUT = """
                    HOST     TID   FLAG 0x COMMAND
     p6    c0007     6/c,f sequest27_slave
     p7    c0008     6/c,f sequest27_slave
     p8    c0009     6/c,f sequest27_slave
  seqcluster1  t40001   4/c    -
"""


@pytest.mark.parametrize("active,spawned,reset", [
    (0, 10, True),
    (4, 10, True),
    (5, 10, False),
    (10, 10, False),
    (0, 0, False),
])
def test_should_reset_for_active_nodes(active, spawned, reset):
    assert should_reset_for_active_nodes(active, spawned) == reset


def test_parse_active_nodes():
    assert parse_active_nodes(ACTIVE_NODES_OUTPUT) == ["p6    c0007", "p7    c0008", "p8    c0009"]


# ----------------------------------------------------------------------------- stall state machine

def test_stall_is_suspected_after_threshold(clock):
    monitor = StallMonitor(threshold_minutes=30, clock=clock)
    clock.advance(minutes=29)
    assert monitor.check(100, 1000) is None
    clock.advance(minutes=2)
    assert monitor.check(100, 1000) == HealthState.SUSPECTED_STALL
    assert monitor.reset_requested


def test_artifact_returns_to_healthy(clock):
    monitor = StallMonitor(threshold_minutes=30, clock=clock)
    clock.advance(minutes=31)
    monitor.check(100, 1000)
    monitor.record_artifact()
    assert monitor.state == HealthState.HEALTHY
    clock.advance(minutes=29)
    assert monitor.check(100, 1000) is None


def test_small_remainder_confirms_the_stall(clock):
    monitor = StallMonitor(threshold_minutes=30, clock=clock)
    clock.advance(minutes=31)
    monitor.check(1, 1000)
    monitor.reset_requested = False
    clock.advance(minutes=31)
    assert monitor.check(1, 1000) == HealthState.CONFIRMED_STALL
    assert monitor.reset_requested
    assert not monitor.aborted


def test_large_remainder_aborts(clock):
    monitor = StallMonitor(threshold_minutes=30, clock=clock)
    clock.advance(minutes=31)
    monitor.check(2, 1000)
    clock.advance(minutes=31)
    assert monitor.check(2, 1000) == HealthState.ABORTED
    assert monitor.abort_message == "Sequest is stalled and too many .DTA files are un-processed"
    monitor.record_artifact()
    assert monitor.state == HealthState.ABORTED
    assert monitor.check(0, 1000) is None


# ----------------------------------------------------------------------------- active nodes

def write_sequest_log(work_dir, hosts, spawned_line=True):
    lines = ["Starting the SEQUEST task on {} node(s)".format(len(hosts)),
             "Waiting for ready messages from {} node(s)".format(len(hosts))]
    lines += [f"{i + 1}.  received ready messsage from {host}(c000{i})" for i, host in enumerate(hosts)]
    if spawned_line:
        lines.append(f"Spawned {len(hosts)} slave processes")
    (work_dir / "sequest.log").write_text("\n".join(lines) + "\n")


def test_active_node_check_boundaries(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=6, clock=clock)
    write_sequest_log(work_dir, ["p6", "p7", "p8", "p9", "p10", "p11"])
    assert monitor.check_spawned_nodes(remaining_dta=100)
    assert monitor.spawned == 6

    # exactly half of the nodes active
    assert not monitor.check_active_nodes(output=ACTIVE_NODES_OUTPUT)
    assert not monitor.reset_requested

    clock.advance(minutes=6)
    assert monitor.check_active_nodes(output="")
    assert monitor.reset_requested
    assert monitor.active_error_count == 1

    monitor.reset_requested = False
    assert not monitor.check_active_nodes(output=ACTIVE_NODES_OUTPUT)
    assert monitor.active_error_count == 0


def test_recently_seen_nodes_stay_active(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=4, clock=clock)
    write_sequest_log(work_dir, ["p6", "p7", "p8", "p9"])
    monitor.check_spawned_nodes(remaining_dta=100)
    monitor.check_active_nodes(output=ACTIVE_NODES_OUTPUT)
    clock.advance(minutes=4)
    assert not monitor.check_active_nodes(output="")
    assert monitor.active_count() == 3


def test_ignore_active_errors(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=4, ignore_active_errors=True, clock=clock)
    write_sequest_log(work_dir, ["p6", "p7", "p8", "p9"])
    monitor.check_spawned_nodes(remaining_dta=100)
    assert not monitor.check_active_nodes(output="")
    assert not monitor.reset_requested


def test_too_few_nodes_spawned(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=10, clock=clock)
    write_sequest_log(work_dir, ["p1", "p2", "p3"])
    assert monitor.check_spawned_nodes(remaining_dta=100)
    assert monitor.spawn_error_count == 1
    assert monitor.reset_requested


def test_few_nodes_spawned_for_few_remaining_files(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=10, clock=clock)
    write_sequest_log(work_dir, ["p1", "p2", "p3"])
    assert monitor.check_spawned_nodes(remaining_dta=2)
    assert monitor.spawn_error_count == 0
    assert not monitor.reset_requested


def test_spawned_line_missing_after_timeout(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=4, clock=clock)
    write_sequest_log(work_dir, ["p1"], spawned_line=False)
    assert not monitor.check_spawned_nodes(remaining_dta=100)
    assert monitor.spawn_error_count == 0
    clock.advance(minutes=16)
    assert not monitor.check_spawned_nodes(remaining_dta=100)
    assert monitor.spawn_error_count == 1
    assert monitor.reset_requested


def test_active_node_snapshot(work_dir, clock):
    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(), expected_nodes=4, clock=clock)
    monitor.update_nodes(["p6    c0007"])
    monitor.write_snapshot(work_dir / "log")
    assert "p6    c0007" in (work_dir / "log" / "active_nodes.csv").read_text()


def test_status_command_output_is_parsed(tmp_path, work_dir, clock):
    pvm = tmp_path / "pvm"
    pvm.mkdir()
    (pvm / "CheckActiveNodes.sh").write_text("")
    (pvm / "CheckActiveNodes.bat").write_text("")

    def on_start(program, args, run_dir, console_file):
        console_file.write_text(ACTIVE_NODES_OUTPUT)

    monitor = ActiveNodeMonitor(work_dir, FakeSupervisor(on_start=on_start), pvm_folder=pvm, expected_nodes=6, clock=clock)
    write_sequest_log(work_dir, ["p1", "p2", "p3", "p4", "p5", "p6"])
    monitor.check_spawned_nodes(remaining_dta=100)
    assert not monitor.check_active_nodes()
    assert monitor.active_count() == 3


# ----------------------------------------------------------------------------- pool reset

def make_pvm_folder(tmp_path):
    pvm = tmp_path / "pvm"
    pvm.mkdir()
    for name in ("pvm", "pvm.exe", "HaltPVM.sh", "wipe_temp.sh", "StartPVM.sh", "AddHosts.sh",
                 "HaltPVM.bat", "wipe_temp.bat", "StartPVM.bat", "AddHosts.bat"):
        (pvm / name).write_text("")
    return pvm


def test_pool_reset_runs_all_steps(tmp_path, work_dir):
    supervisor = FakeSupervisor()
    resetter = PoolResetter(supervisor, make_pvm_folder(tmp_path), work_dir, sleep=lambda s: None)
    assert resetter.reset()
    assert [program.split(".")[0] for program, _ in supervisor.started] == ["HaltPVM", "wipe_temp", "StartPVM", "AddHosts"]


def test_pool_reset_retries(tmp_path, work_dir):
    # first attempt fails at the halt step , the second one at the start step
    supervisor = FakeSupervisor(exit_codes=[1, 0, 0, 1])
    resetter = PoolResetter(supervisor, make_pvm_folder(tmp_path), work_dir, sleep=lambda s: None)
    assert resetter.reset_with_retry(4)
    assert len(supervisor.started) == 1 + 3 + 4
    assert resetter.reset_count == 1


def test_pool_reset_gives_up(tmp_path, work_dir):
    supervisor = FakeSupervisor(exit_codes=[1] * 10)
    resetter = PoolResetter(supervisor, make_pvm_folder(tmp_path), work_dir, sleep=lambda s: None)
    assert not resetter.reset_with_retry(3)
    assert len(supervisor.started) == 3


def test_pool_reset_without_pvm_folder(tmp_path, work_dir):
    supervisor = FakeSupervisor()
    resetter = PoolResetter(supervisor, tmp_path / "missing", work_dir, sleep=lambda s: None)
    assert not resetter.reset_with_retry(0)
    assert supervisor.started == []
