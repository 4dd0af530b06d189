"""
Pipeline host: the execution context that owns the orchestrator.
Runs in the same process as the FastAPI application.

The router posts detectObjects messages into the host's inbox; the host
answers each one with exactly one detectionResults message through the
deliver callback.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set

from bubble_translate.exceptions import ImageDecodeError
from bubble_translate.models.messages import (
    DetectObjectsMessage,
    DetectionPayload,
    DetectionResultsMessage,
    RequestSettings,
)
from bubble_translate.services.pipeline_service import PipelineOrchestrator, build_orchestrator
from bubble_translate.utils.image_utils import decode_image_payload, mask_to_data_url

logger = logging.getLogger(__name__)

DeliverCallback = Callable[[DetectionResultsMessage], Awaitable[None]]


class PipelineHost:
    """
    Consumes detection requests from an inbox, one task per request.

    Requests run concurrently; the orchestrator's limiters bound the
    recognition and translation work underneath them.
    """

    def __init__(
        self,
        deliver: DeliverCallback,
        orchestrator_factory: Callable[[], PipelineOrchestrator] = build_orchestrator,
    ):
        """
        Args:
            deliver: Coroutine receiving every detectionResults message
            orchestrator_factory: Builds the orchestrator on start
        """
        self._deliver = deliver
        self._orchestrator_factory = orchestrator_factory
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_alive(self) -> bool:
        return self._running and self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Start the consumer loop."""
        if self._running:
            logger.warning("Pipeline host already running")
            return

        if self.orchestrator is None:
            self.orchestrator = self._orchestrator_factory()
        self._inbox = asyncio.Queue()
        self._running = True
        self._loop_task = asyncio.create_task(self._consume_loop())
        logger.info("Pipeline host started")

    async def stop(self) -> None:
        """Stop the host, letting in-flight requests finish first."""
        if not self._running:
            return

        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} requests to complete...")
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.orchestrator is not None:
            await self.orchestrator.close()
            self.orchestrator = None

        logger.info("Pipeline host stopped")

    async def post(self, message: DetectObjectsMessage) -> None:
        """
        Queue a request.

        Raises:
            RuntimeError: when the host is not running
        """
        if not self.is_alive or self._inbox is None:
            raise RuntimeError("Pipeline host is not running")
        await self._inbox.put(message)

    async def _consume_loop(self) -> None:
        """Main consumer loop."""
        while self._running:
            message = await self._inbox.get()
            task = asyncio.create_task(self._handle(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _handle(self, message: DetectObjectsMessage) -> None:
        request_id = message.request_id or ""
        try:
            reply = await self._process(message, request_id)
        except Exception as e:
            logger.error(f"[Request {request_id}] Failed to build reply: {e}", exc_info=True)
            reply = DetectionResultsMessage(request_id=request_id, error=f"Pipeline error: {e}")
        try:
            await self._deliver(reply)
        except Exception as e:
            logger.error(f"[Request {request_id}] Failed to deliver results: {e}")

    async def _process(self, message: DetectObjectsMessage, request_id: str) -> DetectionResultsMessage:
        start_time = time.time()
        settings = message.settings or RequestSettings()

        try:
            image = await asyncio.to_thread(decode_image_payload, message.image_data)
        except ImageDecodeError as e:
            logger.warning(f"[Request {request_id}] {e}")
            return DetectionResultsMessage(request_id=request_id, error=str(e))

        try:
            outcome = await self.orchestrator.run(image, settings, request_id)
        except Exception as e:
            logger.error(f"[Request {request_id}] Unexpected pipeline error: {e}", exc_info=True)
            return DetectionResultsMessage(request_id=request_id, error=f"Pipeline error: {e}")

        if not outcome.ok:
            return DetectionResultsMessage(request_id=request_id, error=outcome.error or "Detection failed")

        results = [
            DetectionPayload.model_validate(d.to_payload(mask_encoder=mask_to_data_url))
            for d in outcome.detections
        ]
        logger.info(
            f"[Request {request_id}] Replying with {len(results)} detections, "
            f"{int((time.time() - start_time) * 1000)}ms"
        )
        return DetectionResultsMessage(request_id=request_id, results=results)
