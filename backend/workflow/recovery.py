"""
Run Recovery Service.

Detects and resumes workflow runs interrupted by a crash, restart or
unexpected shutdown.

Recovery flow:
1. Scan the store for runs still "running" that have not been updated
   within the stale threshold (no live engine is advancing them)
2. Move each to "paused" so it becomes resumable
3. Resume it through the engine (last successful step + 1)

A failure while recovering one run is recorded on its RecoveryResult and
the scan moves on to the next run.
"""

from collections import deque
from datetime import timedelta
from typing import List, Optional

import structlog

from core.constants import RunStatus
from core.utils import utc_now
from workflow.engine import WorkflowEngine
from workflow.persistence import RunStore
from workflow.run_state import RunStateMachine

logger = structlog.get_logger(__name__)

# Most recent recovery attempts kept for get_recovery_log
RECOVERY_LOG_SIZE = 200


class RecoveryResult:
    """Result of a recovery attempt for a single run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.recovered: bool = False
        self.resume_from_step: int = 0
        self.status: Optional[RunStatus] = None
        self.error: Optional[str] = None
        self.timestamp = utc_now()

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "recovered": self.recovered,
            "resume_from_step": self.resume_from_step,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """
    Handles recovery of interrupted runs, typically on startup.

    Only safe when no other engine process is still executing the stale
    runs; the stale threshold should comfortably exceed the longest step
    timeout.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        store: Optional[RunStore] = None,
        log_size: int = RECOVERY_LOG_SIZE,
    ):
        self.engine = engine
        self.store = store or engine.store
        self._recovery_log: deque[RecoveryResult] = deque(maxlen=log_size)

    async def scan_interrupted_runs(self, stale_after_seconds: Optional[float] = None) -> List[str]:
        """Ids of running runs not updated within ``stale_after_seconds``."""
        if stale_after_seconds is None:
            stale_after_seconds = self.engine.settings.RECOVERY_STALE_SECONDS
        threshold = utc_now() - timedelta(seconds=stale_after_seconds)

        runs = await self.store.list_runs(status=RunStatus.RUNNING, updated_before=threshold)
        run_ids = [run.id for run in runs]
        if run_ids:
            logger.info("Found interrupted runs", count=len(run_ids), run_ids=run_ids[:10])
        return run_ids

    async def recover_run(self, run_id: str) -> RecoveryResult:
        """Pause and resume a single interrupted run."""
        result = RecoveryResult(run_id)

        try:
            machine = await RunStateMachine.load(self.store, run_id)
            if machine.status != RunStatus.RUNNING:
                result.status = machine.status
                result.error = f"Run in non-recoverable state: {machine.status.value}"
                logger.info("Run cannot be recovered", run_id=run_id, status=machine.status.value)
                self._recovery_log.append(result)
                return result

            result.resume_from_step = machine.run.last_success_index + 1
            await machine.pause()

            run = await self.engine.resume_workflow(run_id)
            result.recovered = True
            result.status = run.status

            logger.info(
                "Run recovered",
                run_id=run_id,
                resume_from=result.resume_from_step,
                status=run.status.value,
            )

        except Exception as e:
            result.error = str(e)
            logger.error("Recovery failed", run_id=run_id, error=str(e), error_type=type(e).__name__)

        self._recovery_log.append(result)
        return result

    async def recover_interrupted(self, stale_after_seconds: Optional[float] = None) -> List[RecoveryResult]:
        """
        Scan and recover all interrupted runs.

        Returns one RecoveryResult per stale run found.
        """
        logger.info("Starting run recovery scan")

        run_ids = await self.scan_interrupted_runs(stale_after_seconds)
        if not run_ids:
            logger.info("No interrupted runs found")
            return []

        results = [await self.recover_run(run_id) for run_id in run_ids]

        logger.info(
            "Recovery scan complete",
            total=len(results),
            recovered=sum(1 for r in results if r.recovered),
            failed=sum(1 for r in results if not r.recovered),
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
