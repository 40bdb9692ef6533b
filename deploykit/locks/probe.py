# deploykit/locks/probe.py
"""
Adapters for the infrastructure tool's own state lock.

The lock manager only needs two answers from the infrastructure layer: is
the stage's state locked, and please clear it. ``SstStateLockProbe`` gets
them by running the SST CLI.
"""
import subprocess
from pathlib import Path
from typing import List, Optional, Union

import structlog

logger = structlog.get_logger()


class StateLockProbe:
    """Interface for querying and clearing an infrastructure state lock"""

    def is_locked(self, stage: str) -> bool:
        raise NotImplementedError

    def unlock(self, stage: str) -> bool:
        """Clear the lock. Returns True if the stage is no longer locked."""
        raise NotImplementedError


class NullStateLockProbe(StateLockProbe):
    """Probe for projects without an infrastructure-level lock"""

    def is_locked(self, stage: str) -> bool:
        return False

    def unlock(self, stage: str) -> bool:
        return True


class SstStateLockProbe(StateLockProbe):
    """
    Detects and clears Pulumi state locks through ``npx sst``.

    ``is_locked`` runs ``sst status`` and looks for a lock marker in the
    output. Errors (missing CLI, timeout, non-zero exit) propagate to the
    caller; the lock manager decides how to treat them.
    """

    LOCK_MARKERS = ("locked", "Lock")

    def __init__(self,
                 project_root: Union[str, Path],
                 timeout_seconds: float = 30.0,
                 command: Optional[List[str]] = None):
        self.project_root = Path(project_root)
        self.timeout_seconds = timeout_seconds
        self.command = command or ["npx", "sst"]

    @staticmethod
    def sst_stage(stage: str) -> str:
        """Map a deployment stage to the SST stage name"""
        return "prod" if stage == "production" else stage

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [*self.command, *args],
            cwd=str(self.project_root),
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
            check=False,
        )

    def is_locked(self, stage: str) -> bool:
        result = self._run("status", "--stage", self.sst_stage(stage))
        output = f"{result.stdout}\n{result.stderr}"
        return any(marker in output for marker in self.LOCK_MARKERS)

    def unlock(self, stage: str) -> bool:
        result = self._run("unlock", "--stage", self.sst_stage(stage))
        if result.returncode != 0:
            logger.warning("sst unlock failed", stage=stage,
                           returncode=result.returncode,
                           stderr=result.stderr.strip())
            return False
        logger.info("Cleared infrastructure state lock", stage=stage)
        return True
