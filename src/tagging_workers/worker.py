import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

import pydantic

from storage_api.adapters.queue import BaseQueue, QueuedTask
from storage_api.adapters.storage import BaseStorage, parse_access_ref
from storage_api.database.local import MetadataStore
from storage_api.errors import (
    AnalysisFailed,
    BackendMismatch,
    NotFound,
    ObjectNotFound,
    StorageApiError,
    StorageReadFailed,
)
from storage_api.schemas import TAG_IMAGE_TASK, EnrichmentJob
from storage_api.utils.decorators import async_log_execution_time
from tagging_workers.taggers import BaseTagger

logger = logging.getLogger(__name__)

# Failures that redelivery cannot fix; the job is acked and dropped
PERMANENT_FAILURES = (NotFound, ObjectNotFound, BackendMismatch)


class JobState(str, Enum):
    """Lifecycle of a single enrichment job"""
    RECEIVED = "received"
    BYTES_RESOLVED = "bytes_resolved"
    ANALYZED = "analyzed"
    PERSISTED = "persisted"      # terminal
    FAILED = "failed"            # terminal


@dataclass
class JobOutcome:
    message_id: str
    record_id: Optional[int] = None
    state: JobState = JobState.RECEIVED
    tags: Optional[List[str]] = None
    error: Optional[str] = None
    should_ack: bool = False
    history: List[JobState] = field(default_factory=lambda: [JobState.RECEIVED])

    def advance(self, state: JobState) -> None:
        logger.debug("Job %s (record %s): %s -> %s", self.message_id, self.record_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: str, drop: bool) -> None:
        self.advance(JobState.FAILED)
        self.error = reason
        self.should_ack = drop
        logger.error(
            "Job %s failed for record %s: %s (%s)",
            self.message_id, self.record_id, reason,
            "dropped" if drop else "left for redelivery",
        )


class EnrichmentWorker:
    """
    Consumes tagging jobs and writes the resulting tags onto file records.

    Jobs run concurrently up to `concurrency`. The worker never retries a job
    itself: failed jobs are either dropped or left un-acked so the queue
    delivers them again after the visibility timeout.
    """

    def __init__(
        self,
        queue: BaseQueue,
        storage: BaseStorage,
        metadata_store: MetadataStore,
        tagger: BaseTagger,
        concurrency: int = 4,
        poll_interval: float = 1.0,
        analysis_timeout: float = 30.0,
        temp_dir: Optional[str] = None,
    ):
        self.queue = queue
        self.storage = storage
        self.metadata_store = metadata_store
        self.tagger = tagger
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.analysis_timeout = analysis_timeout
        self.temp_dir = Path(temp_dir or tempfile.gettempdir())
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.running = True
        logger.info("Worker initialized with %s and concurrency %d", type(tagger).__name__, concurrency)

    @async_log_execution_time
    async def process_task(self, task: QueuedTask) -> JobOutcome:
        """Run one job through its states. Never raises for job-level failures."""
        outcome = JobOutcome(message_id=task.message_id)
        logger.info("Processing task %s (receive %d): %s", task.message_id, task.receive_count, task.body)

        task_type = task.body.get("task_type") if isinstance(task.body, dict) else None
        if task_type != TAG_IMAGE_TASK:
            logger.warning("Unknown task type: %s", task_type)
            outcome.fail(f"unknown task type {task_type!r}", drop=True)
            return outcome

        try:
            job = EnrichmentJob.model_validate(task.body)
        except pydantic.ValidationError as e:
            outcome.fail(f"malformed payload: {e.error_count()} validation errors", drop=True)
            return outcome
        outcome.record_id = job.record_id

        temp_path: Optional[Path] = None
        try:
            data, temp_path = await self._resolve_bytes(job)
            outcome.advance(JobState.BYTES_RESOLVED)

            tags = await self._analyze(data)
            outcome.tags = tags
            outcome.advance(JobState.ANALYZED)

            # Setting tags is idempotent, so a redelivered job just writes them again
            await asyncio.to_thread(self.metadata_store.update_tags, job.record_id, tags)
            outcome.advance(JobState.PERSISTED)
            outcome.should_ack = True
            logger.info("Tagged record %d with %s", job.record_id, tags)
        except PERMANENT_FAILURES as e:
            outcome.fail(f"{e.code}: {e.message}", drop=True)
        except StorageApiError as e:
            outcome.fail(f"{e.code}: {e.message}", drop=False)
        except Exception as e:
            logger.exception("Unexpected error processing task %s", task.message_id)
            outcome.fail(f"unexpected error: {e}", drop=False)
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
                logger.debug("Removed temporary file %s", temp_path)
        return outcome

    async def _resolve_bytes(self, job: EnrichmentJob):
        """
        Get the bytes to analyze.

        Local references are read in place. Remote objects are downloaded to
        a temporary file which the caller must remove; its path is returned
        alongside the bytes.
        """
        try:
            parsed = parse_access_ref(job.storage_ref)
        except ValueError as e:
            raise BackendMismatch(str(e)) from e
        key = self.storage.key_for_ref(job.storage_ref)

        if not parsed.is_remote:
            try:
                return await asyncio.to_thread(parsed.path.read_bytes), None
            except FileNotFoundError as e:
                raise ObjectNotFound(f"Object not found: {key}", storage_key=key) from e
            except OSError as e:
                raise StorageReadFailed(f"Could not read {key}: {e}", storage_key=key) from e

        fd, temp_name = tempfile.mkstemp(dir=self.temp_dir, prefix="job-")
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            await asyncio.to_thread(self.storage.download, key, temp_name)
            return temp_path.read_bytes(), temp_path
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    async def _analyze(self, data: bytes) -> List[str]:
        try:
            tags = await asyncio.wait_for(
                asyncio.to_thread(self.tagger.analyze, data),
                timeout=self.analysis_timeout,
            )
        except asyncio.TimeoutError as e:
            raise AnalysisFailed(f"Analysis timed out after {self.analysis_timeout}s", retryable=True) from e
        except AnalysisFailed:
            raise
        except Exception as e:
            raise AnalysisFailed(f"Tagger error: {e}") from e
        # Ordered set: keep first occurrence of each label
        return list(dict.fromkeys(tags))

    async def _handle_task(self, task: QueuedTask) -> JobOutcome:
        outcome = await self.process_task(task)
        if outcome.should_ack:
            try:
                await self.queue.ack_task(task)
            except Exception as e:
                # The job comes back after the visibility timeout and is applied again
                logger.error("Could not ack task %s: %s", task.message_id, e)
        return outcome

    async def _handle_bounded(self, task: QueuedTask, semaphore: asyncio.Semaphore) -> JobOutcome:
        try:
            return await self._handle_task(task)
        finally:
            semaphore.release()

    async def run_until_empty(self) -> List[JobOutcome]:
        """Process everything currently visible on the queue, then return the outcomes."""
        semaphore = asyncio.Semaphore(self.concurrency)
        jobs = []
        try:
            while True:
                await semaphore.acquire()
                try:
                    task = await self.queue.get_task()
                except BaseException:
                    semaphore.release()
                    raise
                if task is None:
                    semaphore.release()
                    break
                jobs.append(asyncio.create_task(self._handle_bounded(task, semaphore)))
        finally:
            # Jobs already started run to completion even when receiving fails
            outcomes = await asyncio.gather(*jobs)
        return list(outcomes)

    async def listen_for_tasks(self):
        """Listen for tasks until `stop` is called"""
        logger.info("Worker started listening for tasks")
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: Set[asyncio.Task] = set()
        consecutive_errors = 0

        while self.running:
            await semaphore.acquire()
            try:
                task = await self.queue.get_task()
            except Exception as e:
                semaphore.release()
                consecutive_errors += 1
                logger.error("Error receiving from queue: %s", str(e), exc_info=True)

                # Exponential backoff
                backoff_time = min(30, 2 ** consecutive_errors)
                logger.warning("Backing off for %d seconds after error...", backoff_time)
                await asyncio.sleep(backoff_time)
                continue

            consecutive_errors = 0
            if task is None:
                semaphore.release()
                await asyncio.sleep(self.poll_interval)
                continue

            job = asyncio.create_task(self._handle_bounded(task, semaphore))
            in_flight.add(job)
            job.add_done_callback(in_flight.discard)

        if in_flight:
            logger.info("Waiting for %d in-flight jobs to finish", len(in_flight))
            await asyncio.gather(*in_flight)
        logger.info("Worker stopped listening")

    def stop(self):
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self.running = False
