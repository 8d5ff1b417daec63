"""
Topic worker - consumes topic jobs and runs them through a job handler.

Runs as a standalone service (or inside the API process) that:
1. Pulls jobs from the topic job stream, at most ``concurrency`` at a time
2. Hands each job to the handler (TopicJobProcessor)
3. Completes the job, or fails it so the queue retries or dead-letters it
4. Periodically promotes delayed retries back onto the stream
"""

import asyncio
from typing import Any, Protocol

import structlog

from topic_tracker.config.settings import get_settings
from topic_tracker.observability.logging import job_context
from topic_tracker.observability.tracing import extract_trace_context, get_tracer, traced
from topic_tracker.queues.backoff import ExponentialBackoff
from topic_tracker.queues.work_queue import TopicJob, TopicJobQueue

logger = structlog.get_logger(__name__)


class JobHandler(Protocol):
    async def process(self, job: TopicJob) -> dict[str, Any]:
        ...

    def is_retryable(self, exc: BaseException) -> bool:
        ...

    async def abandon(self, task_id: str, reason: str) -> None:
        ...


class TopicWorker:
    """
    Worker pool for topic jobs.

    A semaphore of ``concurrency`` slots bounds the jobs in progress; a
    slot is taken before the next message is read, so a busy worker leaves
    messages on the stream for other workers.

    Usage:
        worker = TopicWorker(queue, processor, concurrency=2)
        await worker.start()  # Runs until stop()
    """

    def __init__(
        self,
        queue: TopicJobQueue,
        handler: JobHandler,
        concurrency: int | None = None,
        block_ms: int = 5000,
    ):
        self._queue = queue
        self._handler = handler
        # Jobs the queue drops without running still close their task
        self._queue.on_abandoned = handler.abandon
        self._concurrency = concurrency or get_settings().worker_concurrency
        self._block_ms = block_ms

        self._running = False
        self._stop_event = asyncio.Event()
        self._slots = asyncio.Semaphore(self._concurrency)
        self._in_progress: set[asyncio.Task] = set()
        self._tracer = get_tracer("topic_tracker.worker")

        logger.info("TopicWorker initialized", concurrency=self._concurrency)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run until stop() is called. Waits for in-progress jobs before returning."""
        self._running = True
        self._stop_event.clear()
        logger.info("Starting topic worker")

        await self._queue.connect()
        promoter = asyncio.create_task(self._promote_loop())

        try:
            await self._consume_loop()
        except asyncio.CancelledError:
            logger.info("Topic worker cancelled")
        finally:
            self._running = False
            promoter.cancel()
            await asyncio.gather(promoter, return_exceptions=True)
            if self._in_progress:
                logger.info("Draining in-progress jobs", count=len(self._in_progress))
                await asyncio.gather(*self._in_progress, return_exceptions=True)
            await self._queue.close()
            logger.info("Topic worker stopped")

    async def stop(self) -> None:
        logger.info("Stopping topic worker")
        self._running = False
        self._stop_event.set()

    async def _consume_loop(self) -> None:
        consumer = self._queue.consume(count=1, block_ms=self._block_ms)
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        backoff = ExponentialBackoff()

        try:
            while self._running:
                await self._slots.acquire()

                try:
                    paused = await self._queue.is_paused()
                except Exception as e:
                    logger.error("Failed to read pause flag", error=str(e))
                    paused = False
                if paused:
                    self._slots.release()
                    await self._wait_or_stop(stop_waiter, backoff.next_delay())
                    continue
                backoff.reset()

                next_job = asyncio.ensure_future(anext(consumer))
                await asyncio.wait({next_job, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

                if not next_job.done():
                    next_job.cancel()
                    await asyncio.gather(next_job, return_exceptions=True)
                    self._slots.release()
                    break

                try:
                    job = next_job.result()
                except StopAsyncIteration:
                    self._slots.release()
                    break

                task = asyncio.create_task(self._handle(job))
                self._in_progress.add(task)
                task.add_done_callback(self._job_done)
        finally:
            stop_waiter.cancel()
            await consumer.aclose()

    def _job_done(self, task: asyncio.Task) -> None:
        self._in_progress.discard(task)
        self._slots.release()

    async def _wait_or_stop(self, stop_waiter: asyncio.Task, seconds: float) -> None:
        await asyncio.wait({stop_waiter}, timeout=seconds)

    async def _handle(self, job: TopicJob) -> None:
        parent = extract_trace_context(job.trace_fields)

        with job_context(job.job_id, job.kind.value, job.topic_slug), traced(
            self._tracer,
            f"job.{job.kind.value}",
            {"job.id": job.job_id, "topic.slug": job.topic_slug, "job.attempt": job.attempt},
            parent_context=parent,
        ):
            try:
                if not await self._queue.start(job):
                    return
            except Exception as e:
                logger.error("Failed to mark job active", error=str(e))
                return

            logger.info("Job started", attempt=job.attempt, max_attempts=job.max_attempts)
            try:
                result = await self._handler.process(job)
            except Exception as e:
                retryable = self._handler.is_retryable(e)
                try:
                    will_retry = await self._queue.fail(job, str(e), retryable=retryable)
                except Exception as queue_error:
                    logger.error("Failed to record job failure", error=str(queue_error))
                    return
                logger.warning("Job failed", error=str(e), retryable=retryable, will_retry=will_retry)
                return

            try:
                await self._queue.complete(job, result)
            except Exception as e:
                logger.error("Failed to record job completion", error=str(e))
                return
            logger.info("Job completed")

    async def _promote_loop(self) -> None:
        interval = self._queue.queue_config.promote_interval_seconds
        while self._running:
            try:
                await self._queue.promote_delayed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to promote delayed jobs", error=str(e))
            await asyncio.sleep(interval)
