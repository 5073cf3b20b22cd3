"""
tool locations and run constants.
every location can be overridden from the environment or from a .env file
"""

import os
import pathlib

from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv(usecwd=True))

VERSION = 1.2

# =============================================================================+==============================================
# defined path - please update the following links to the external software or set them in the .env file
# ============================================================================================================================
fragpipe_program_path = pathlib.Path(os.getenv("FRAGPIPE_PROGRAM", "/opt/fragpipe/bin/fragpipe"))
fragpipe_tools_folder = pathlib.Path(os.getenv("FRAGPIPE_TOOLS_FOLDER", "/opt/fragpipe/tools"))
diann_program_path = pathlib.Path(os.getenv("DIANN_PROGRAM", "/opt/fragpipe/tools/diann/diann-linux"))
python_program_path = pathlib.Path(os.getenv("FRAGPIPE_PYTHON", "/usr/bin/python3"))
sequest_program_path = pathlib.Path(os.getenv("SEQUEST_PROGRAM", "/opt/sequest/sequest"))
pvm_folder = pathlib.Path(os.getenv("PVM_FOLDER", "/opt/pvm3"))

# pool maintenance scripts live in the PVM folder; .bat on windows cluster heads
script_extension = ".bat" if os.name == "nt" else ".sh"

# =============================================================================
# FragPipe
# =============================================================================
FRAGPIPE_CONSOLE_OUTPUT = "FragPipe_ConsoleOutput.txt"
FRAGPIPE_MANIFEST = "datasets.fp-manifest"
FRAGPIPE_MEMORY_SIZE_MB = int(os.getenv("FRAGPIPE_MEMORY_SIZE_MB", "10000"))
FRAGPIPE_MIN_MEMORY_MB = 2000
FRAGPIPE_TIMEOUT_SEC = int(os.getenv("FRAGPIPE_TIMEOUT_SEC", "0"))
CONSOLE_PARSE_INTERVAL_SEC = 30
MONITOR_INTERVAL_SEC = 2.0
MIN_MONITOR_INTERVAL_SEC = 0.25
DECOY_PREFIX = "XXX_"

# =============================================================================
# Sequest cluster
# =============================================================================
TEMP_FILE_COPY_INTERVAL_SEC = 300
OUT_FILE_APPEND_INTERVAL_SEC = 30
OUT_FILE_APPEND_HOLDOFF_SEC = 30
STALE_NODE_THRESHOLD_MINUTES = 5
MAX_NODE_RESPAWN_ATTEMPTS = 6
MAX_SEARCH_TIMES_TO_TRACK = 500
STALL_THRESHOLD_MINUTES = 30
ACTIVE_NODE_CHECK_INTERVAL_SEC = 120
ACTIVE_NODE_LOG_INTERVAL_MINUTES = 10
SPAWN_CHECK_TIMEOUT_MINUTES = 15
PROGRESS_UPDATE_INTERVAL_SEC = 15
STATUS_UPDATE_INTERVAL_SEC = 5
WATCHER_POLL_INTERVAL_SEC = 1.0
PVM_RESET_ATTEMPTS = 4
SEQUEST_NODE_COUNT_EXPECTED = int(os.getenv("SEQUEST_NODE_COUNT_EXPECTED", "0"))
CHECK_ACTIVE_NODES_SCRIPT = "CheckActiveNodes" + script_extension
ACTIVE_NODES_OUTPUT = "ActiveNodesOutput.tmp"

# reset steps: name, script, timeout (seconds)
PVM_RESET_STEPS = [("HaltPVM", "HaltPVM" + script_extension, 90),
                   ("WipeTemp", "wipe_temp" + script_extension, 120),
                   ("StartPVM", "StartPVM" + script_extension, 120),
                   ("AddHosts", "AddHosts" + script_extension, 120)]
