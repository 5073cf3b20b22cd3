"""
the job context object handed to every component of a job attempt.
it holds the job identity, the parameters, the shared progress value, the job
messages and the status snapshot that used to live in module level globals
"""

import logging
import logging.handlers
import pathlib
import queue
import time
import xml.etree.ElementTree as ET

import pandas as pd

from msrunner import settings
from msrunner.closeOut import CloseOutType, JobMessages

LOG_QUEUE_SIZE = 10000


def setup_logging(work_dir, debug=False):
    """
    log records of all threads go through a bounded queue and are written by a
    single listener thread into <work_dir>/log/log.txt
    """
    log_dir = pathlib.Path(work_dir) / pathlib.Path('log')
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / "log.txt")
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s: %(message)s', datefmt='%m/%d/%Y %I:%M:%S %p'))
    log_queue = queue.Queue(maxsize=LOG_QUEUE_SIZE)
    listener = logging.handlers.QueueListener(log_queue, file_handler)
    logging.basicConfig(handlers=[logging.handlers.QueueHandler(log_queue)],
                        level=logging.DEBUG if debug else logging.INFO, force=True)
    listener.start()
    return listener


def header(tool_name):
    return ( "\n" +
        "      ===============================================================" + "\n" +
        "      |        msrunner  -  external search tool supervision        |" + "\n" +
        "      |" + f"{tool_name:^61}" + "|" + "\n" +
        "      |                      Version " + str(settings.VERSION) +"                            |" + "\n" +
        "      |                   " + time.strftime("%a, %d %b %Y %H:%M:%S", time.localtime()) + "                 |" + "\n" +
        "      ===============================================================" + "\n" +
        "\n")


class JobContext:
    """state of one job attempt"""

    def __init__(self, work_dir, dataset, job=0, params=None, transfer_folder=None, debug_level=1):
        self.work_dir = pathlib.Path(work_dir).resolve()
        self.dataset = dataset
        self.job = job
        self.params = dict(params) if params else dict()
        self.transfer_folder = pathlib.Path(transfer_folder) if transfer_folder else None
        self.debug_level = debug_level
        self.messages = JobMessages()
        self.progress = 0.0
        self.tool_version = ""
        self.need_to_abort = False
        self.status = {"job": {"dataset": dataset, "job": job, "progress": 0.0, "closeout": "UN",
                               "message": "", "tool_version": "", "updated": ""}}
        self.summary_lines = []

    def param(self, name, default=None):
        value = self.params.get(name, default)
        if value is None or value == "":
            return default
        return value

    def int_param(self, name, default=0):
        try:
            return int(self.param(name, default))
        except (TypeError, ValueError):
            logging.warning(f"parameter {name} is not an integer: {self.params.get(name)} , using {default}")
            return default

    def bool_param(self, name, default=False):
        value = self.param(name, default)
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("true", "1", "yes")

    def job_parameters_path(self):
        return self.work_dir / f"JobParameters_{self.job}.xml"

    def write_job_parameters(self):
        """
        write the parameters as <sections><section name="JobParameters"><item key= value=/>.
        keys are sorted; a resumed search requires the same file as the staged copy
        """
        root = ET.Element("sections")
        section = ET.SubElement(root, "section", name="JobParameters")
        ET.SubElement(section, "item", key="Job", value=str(self.job))
        ET.SubElement(section, "item", key="Dataset", value=str(self.dataset))
        for name in sorted(self.params):
            ET.SubElement(section, "item", key=name, value=str(self.params[name]))
        path = self.job_parameters_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
        return path

    @property
    def log_dir(self):
        return self.work_dir / pathlib.Path('log')

    def set_progress(self, value):
        # single scalar write , readers never need a lock
        self.progress = float(value)

    def update_status(self, closeout=None, **extra):
        job_status = self.status["job"]
        job_status["progress"] = round(self.progress, 2)
        job_status["message"] = self.messages.full_message()
        job_status["tool_version"] = self.tool_version
        job_status["updated"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        if closeout is not None:
            job_status["closeout"] = CloseOutType(closeout).name
        job_status.update(extra)
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            pd.DataFrame.from_dict(self.status).T.to_csv(self.log_dir / "job_status.csv")
        except OSError as err:
            logging.warning(f"couldn't write status snapshot: {err}")

    def add_summary_line(self, line):
        self.summary_lines.append(line)

    def write_summary(self):
        summary_file = self.work_dir / "AnalysisSummary.txt"
        with summary_file.open('a') as f:
            for line in self.summary_lines:
                f.write(f"{line}\n")
        self.summary_lines = []
        return summary_file
