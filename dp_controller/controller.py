"""
Build controller with reconciliation loop for dispatching submission builds.

The controller continuously reconciles the desired state (pending
submissions in the DB) with the actual state (builds in flight), starting
builds on a bounded pool of concurrent workers.
"""

import asyncio
import logging

from dp_builder.worker import BuildWorker
from dp_common.models import Submission, SubmissionStatus
from dp_common.repository import SubmissionRepository

logger = logging.getLogger(__name__)

PENDING_STATUSES = [SubmissionStatus.SUBMITTED, SubmissionStatus.SUBMITTED_FOR_REBUILD]


class BuildController:
    """
    Controller that dispatches pending submissions to build workers.

    This controller runs a continuous loop that:
    1. Fetches pending submissions from the database
    2. Skips the ones already being built
    3. Starts builds until the concurrency limit is reached
    Builds of different submissions share nothing but the repository.
    """

    def __init__(
        self,
        repository: SubmissionRepository,
        worker: BuildWorker | None = None,
        reconcile_interval: float = 2.0,
        max_concurrent_builds: int = 2,
    ):
        """
        Initialize the build controller.

        Args:
            repository: Submission repository for persisting state
            worker: Worker that builds one submission
            reconcile_interval: Seconds between reconciliation loops
            max_concurrent_builds: Builds allowed to run at the same time
        """
        self.repository = repository
        self.worker = worker or BuildWorker(repository)
        self.reconcile_interval = reconcile_interval
        self.max_concurrent_builds = max_concurrent_builds

        self.active_builds: dict[str, asyncio.Task] = {}  # submission_id -> build task
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the controller reconciliation loop."""
        if self._running:
            logger.warning("Controller already running")
            return

        self._running = True

        # Builds that were running when the previous process died never finished
        await self.recover_interrupted_builds()

        self._task = asyncio.create_task(self._run_loop())
        logger.info("Build controller started")

    async def stop(self) -> None:
        """Stop the controller, cancelling builds in flight."""
        if not self._running:
            return

        logger.info("Stopping build controller...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        # Cancelled builds stay RUNNING and are re-queued on the next start
        for submission_id, task in list(self.active_builds.items()):
            logger.info(f"Cancelling build of submission {submission_id}")
            task.cancel()
        if self.active_builds:
            await asyncio.gather(*self.active_builds.values(), return_exceptions=True)

        self.active_builds.clear()
        logger.info("Build controller stopped")

    async def recover_interrupted_builds(self) -> int:
        """
        Re-queue submissions left RUNNING by a crashed process.

        Returns:
            Number of submissions re-queued
        """
        interrupted = await self.repository.list_submissions_by_status([SubmissionStatus.RUNNING])
        requeued = 0
        for submission in interrupted:
            if submission.id in self.active_builds:
                continue
            status = (
                SubmissionStatus.SUBMITTED_FOR_REBUILD
                if submission.rebuild_principal
                else SubmissionStatus.SUBMITTED
            )
            logger.warning(f"Re-queuing interrupted build of submission {submission.id}")
            submission.set_status(status, dont_update_status_date=True)
            await self.repository.save_submission(submission)
            requeued += 1
        return requeued

    async def _run_loop(self) -> None:
        """Main reconciliation loop."""
        while self._running:
            try:
                await self.reconcile_once()
                await asyncio.sleep(self.reconcile_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(self.reconcile_interval)

    async def reconcile_once(self) -> None:
        """
        Perform one reconciliation cycle.

        Starts builds for pending submissions, oldest first, while there is
        capacity left in the pool.
        """
        try:
            pending = await self.repository.list_submissions_by_status(PENDING_STATUSES)
            logger.debug(
                f"Reconciliation: {len(pending)} pending submissions, "
                f"{len(self.active_builds)} builds in flight"
            )

            for submission in pending:
                if len(self.active_builds) >= self.max_concurrent_builds:
                    break
                if submission.id in self.active_builds:
                    continue
                self._dispatch(submission)

        except Exception as e:
            logger.error(f"Error in reconciliation cycle: {e}", exc_info=True)

    def _dispatch(self, submission: Submission) -> None:
        """Start a build of the submission in the background."""
        task = asyncio.create_task(self._build(submission))
        self.active_builds[submission.id] = task
        task.add_done_callback(lambda _: self.active_builds.pop(submission.id, None))
        logger.info(f"Dispatched build of submission {submission.id} ({submission.status.value})")

    async def _build(self, submission: Submission) -> None:
        """
        Build one submission.

        Args:
            submission: Pending submission

        Note: the worker records every outcome, including infrastructure failures.
        """
        if submission.status is SubmissionStatus.SUBMITTED_FOR_REBUILD:
            await self.worker.check_project(
                submission,
                principal_name=submission.rebuild_principal,
                rebuild_by_teacher=True,
                dont_change_status_date=True,
            )
        else:
            await self.worker.check_project(submission)

    async def wait_idle(self) -> None:
        """Wait until every build in flight has finished."""
        while self.active_builds:
            await asyncio.gather(*list(self.active_builds.values()), return_exceptions=True)
