"""
attempt loop of a cluster search: launch , wait , reset the pool and relaunch
while inputs remain , then apply the acceptance rule to the artifact count.

the tool object supplies the hooks:
    launch_attempt(attempt) -> bool         run the program until it exits or is cancelled
    remaining_inputs() -> int               inputs without an artifact
    artifact_counts() -> (produced , expected)
    failure_counters() -> dict              name -> count of node errors
    reset_pool(attempts) -> bool
    stall_abort_message -> str              non empty when the stall monitor aborted
"""

import logging
import time

from msrunner import settings
from msrunner.closeOut import CloseOutType

# produced / expected must be at least 999 / 1000
ACCEPTANCE_NUMERATOR = 999
ACCEPTANCE_DENOMINATOR = 1000


def evaluate_artifact_count(produced, expected):
    """returns (accepted , message)"""
    if produced == expected:
        return True, ""
    if produced > expected:
        return True, f"more .out files than .dta files: {produced} vs. {expected}"
    if produced * ACCEPTANCE_DENOMINATOR >= expected * ACCEPTANCE_NUMERATOR:
        return True, f"{expected - produced} .out file(s) missing ({produced} of {expected}); within tolerance"
    return False, f"only {produced} .out files were created for {expected} .dta files"


class RunAttempt:
    def __init__(self, index, start_time, artifacts_before):
        self.index = index
        self.start_time = start_time
        self.end_time = None
        self.success = False
        self.artifacts_before = artifacts_before
        self.artifacts_total = artifacts_before

    @property
    def artifacts_produced(self):
        return self.artifacts_total - self.artifacts_before

    def __repr__(self):
        return f"RunAttempt({self.index}, success={self.success}, produced={self.artifacts_produced})"


class OrchestrationDriver:

    def __init__(self, ctx, tool, max_failures=settings.MAX_NODE_RESPAWN_ATTEMPTS,
                 reset_attempts=settings.PVM_RESET_ATTEMPTS, clock=time.time):
        self.ctx = ctx
        self.tool = tool
        self.max_failures = max_failures
        self.reset_attempts = reset_attempts
        self.clock = clock
        self.attempts = []
        self.idle_attempts = 0

    def _abort(self, message):
        self.ctx.messages.error(message)
        # disables further local attempts of this job
        self.ctx.need_to_abort = True
        return CloseOutType.FAILED

    def run(self):
        while True:
            produced, expected = self.tool.artifact_counts()
            attempt = RunAttempt(len(self.attempts) + 1, self.clock(), produced)
            self.attempts.append(attempt)
            logging.info(f"starting attempt {attempt.index}; {produced} of {expected} artifacts exist")

            attempt.success = self.tool.launch_attempt(attempt)
            attempt.end_time = self.clock()
            attempt.artifacts_total = self.tool.artifact_counts()[0]
            logging.info(f"attempt {attempt.index} finished after {(attempt.end_time - attempt.start_time) / 60.0:.1f} minutes; "
                         f"{attempt.artifacts_produced} new artifacts")

            if self.tool.stall_abort_message:
                return self._abort(self.tool.stall_abort_message)

            remaining = self.tool.remaining_inputs()
            if remaining == 0:
                break

            if attempt.artifacts_produced == 0:
                self.idle_attempts += 1
            else:
                self.idle_attempts = 0
            counters = dict(self.tool.failure_counters())
            counters["attempts without new artifacts"] = self.idle_attempts
            exhausted = [name for name, count in counters.items() if count >= self.max_failures]
            if exhausted:
                return self._abort(f"{remaining} inputs remain and the retry limit was reached ({', '.join(exhausted)})")

            logging.warning(f"{remaining} inputs remain after attempt {attempt.index}; resetting the pool")
            if not self.tool.reset_pool(self.reset_attempts):
                return self._abort("Error resetting PVM")

        produced, expected = self.tool.artifact_counts()
        accepted, message = evaluate_artifact_count(produced, expected)
        if not accepted:
            self.ctx.messages.error(message)
            return CloseOutType.FAILED
        if message:
            self.ctx.messages.warning(message)
        return CloseOutType.SUCCESS
