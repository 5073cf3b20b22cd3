"""
closeout codes returned by every top level operation and the job message policy
(first fatal message wins, later messages are kept as context)
"""

import enum
import logging


class CloseOutType(enum.IntEnum):
    SUCCESS = 0
    FAILED = 1
    NO_DTA_FILES = 2
    FILE_NOT_FOUND = 14
    ERROR_ZIPPING_FILE = 15
    NO_DATA = 20
    RESET_JOB_STEP = 23
    RESET_JOB_STEP_INSUFFICIENT_MEMORY = 24


# text markers written by the java based tools when they run out of memory
insufficient_memory_message_dict = {
        "java.lang.OutOfMemoryError: Java heap space" : "java heap space",
        "java.lang.OutOfMemoryError: GC overhead limit exceeded" : "GC overhead",
        "java.lang.OutOfMemoryError" : "java out of memory",
        "There is insufficient memory for the Java Runtime Environment to continue" : "ENV java memory"}


def find_insufficient_memory_marker(line):
    """return the reason of the first memory marker found in line or None"""
    for key in insufficient_memory_message_dict.keys():
        if line.find(key) != -1:
            return insufficient_memory_message_dict[key]
    return None


class JobMessages:
    """
    keeps the single human readable message of a job.
    the first error message is the message; later errors are appended as context
    """

    def __init__(self):
        self.message = ""
        self.secondary = []
        self.warnings = []

    def error(self, msg, log=True):
        if log:
            logging.error(msg)
        if self.message == "":
            self.message = msg
        elif msg != self.message and msg not in self.secondary:
            self.secondary.append(msg)

    def warning(self, msg, log=True):
        if log:
            logging.warning(msg)
        if msg not in self.warnings:
            self.warnings.append(msg)

    @property
    def has_error(self):
        return self.message != ""

    def full_message(self):
        return "; ".join([self.message] + self.secondary) if self.message else ""

    def __str__(self):
        return self.full_message()
