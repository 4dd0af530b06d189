"""
Request router: correlates detection requests with their results.

Two caller paths share one pending map:
- submit(): same-process callers await a future;
- dispatch(): cross-boundary callers (WebSocket) get the reply pushed to
  their origin, tagged with the id they sent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from bubble_translate.config import Settings, get_settings
from bubble_translate.exceptions import DuplicateRequestError
from bubble_translate.models.messages import (
    DetectObjectsMessage,
    DetectionResultsMessage,
    ImagePayload,
    RequestId,
    RequestSettings,
    new_request_id,
)
from bubble_translate.worker import DeliverCallback, PipelineHost

logger = logging.getLogger(__name__)

HostFactory = Callable[[DeliverCallback], PipelineHost]


@dataclass
class RouteOrigin:
    """Where a cross-boundary reply goes, and the tag the caller used."""
    send: Callable[[Dict[str, Any]], Awaitable[None]]
    tag: Optional[str] = None
    tab_id: Optional[int] = None
    frame_id: Optional[int] = None


@dataclass
class PendingRequestEntry:
    request_id: RequestId
    reply: Optional[asyncio.Future] = None
    origin: Optional[RouteOrigin] = None
    created_at: float = field(default_factory=time.time)


def default_settings_from(config: Settings) -> RequestSettings:
    return RequestSettings(
        ocr_service=config.DEFAULT_OCR_SERVICE,
        translation_service=config.DEFAULT_TRANSLATION_SERVICE,
        source_language=config.DEFAULT_SOURCE_LANGUAGE,
        target_language=config.DEFAULT_TARGET_LANGUAGE,
    )


class RequestRouter:
    """
    Accepts detection requests, forwards them to the pipeline host and
    routes each result back to its caller exactly once.
    """

    def __init__(
        self,
        host_factory: HostFactory = PipelineHost,
        default_settings: Optional[RequestSettings] = None,
    ):
        self._host_factory = host_factory
        self._host: Optional[PipelineHost] = None
        self._host_lock = asyncio.Lock()
        self._pending: Dict[str, PendingRequestEntry] = {}
        self._default_settings = default_settings or default_settings_from(get_settings())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def default_settings(self) -> RequestSettings:
        return self._default_settings

    @property
    def host(self) -> Optional[PipelineHost]:
        return self._host

    def update_settings(self, settings: RequestSettings) -> None:
        """Replace the settings snapshot used by requests that carry none."""
        self._default_settings = settings
        logger.info(
            f"Default settings updated: ocr={settings.ocr_service}, translation={settings.translation_service}, "
            f"{settings.source_language} -> {settings.target_language}"
        )

    async def _ensure_host(self) -> PipelineHost:
        """Create and start the pipeline host if it is not alive."""
        host = self._host
        if host is not None and host.is_alive:
            return host
        async with self._host_lock:
            if self._host is not None and self._host.is_alive:
                return self._host
            logger.info("Starting pipeline host")
            host = self._host_factory(self.handle_message)
            await host.start()
            self._host = host
            return host

    async def warm_up(self) -> None:
        """Start the host and load the detector model ahead of the first request."""
        host = await self._ensure_host()
        if host.orchestrator is not None:
            await host.orchestrator.detector.load()

    def _register(self, entry: PendingRequestEntry) -> None:
        if entry.request_id in self._pending:
            raise DuplicateRequestError(f"Request {entry.request_id} is already in flight")
        self._pending[entry.request_id] = entry

    async def _forward(self, message: DetectObjectsMessage) -> None:
        request_id = message.request_id
        try:
            host = await self._ensure_host()
            await host.post(message)
        except Exception as e:
            logger.error(f"[Request {request_id}] Failed to forward to pipeline host: {e}")
            await self.handle_message(
                DetectionResultsMessage(request_id=request_id, error=f"Pipeline unavailable: {e}")
            )

    async def submit(
        self,
        image_data: ImagePayload,
        settings: Optional[RequestSettings] = None,
        request_id: Optional[str] = None,
    ) -> DetectionResultsMessage:
        """
        Run a detection request and wait for its result.

        Args:
            image_data: Encoded image or raw pixel buffer
            settings: Settings for this request (defaults to the current snapshot)
            request_id: Caller-chosen id; a fresh one is assigned when absent

        Returns:
            detectionResults with either results or error

        Raises:
            DuplicateRequestError: when request_id is already in flight
        """
        request_id = RequestId(request_id or new_request_id())
        future = asyncio.get_running_loop().create_future()
        self._register(PendingRequestEntry(request_id=request_id, reply=future))

        try:
            await self._forward(
                DetectObjectsMessage(
                    image_data=image_data,
                    request_id=request_id,
                    settings=settings or self._default_settings,
                )
            )
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def dispatch(self, message: DetectObjectsMessage, origin: RouteOrigin) -> RequestId:
        """
        Forward a request whose reply is pushed back to its origin.

        The caller's requestId is kept as the origin's tag; the pipeline
        sees a fresh id so tags from different callers never collide.
        """
        request_id = new_request_id()
        if origin.tag is None:
            origin.tag = message.request_id
        self._register(PendingRequestEntry(request_id=request_id, origin=origin))

        logger.info(f"[Request {request_id}] Dispatched (tab={origin.tab_id}, frame={origin.frame_id}, tag={origin.tag})")
        await self._forward(
            message.model_copy(
                update={
                    "request_id": request_id,
                    "settings": message.settings or self._default_settings,
                }
            )
        )
        return request_id

    async def handle_message(self, message: DetectionResultsMessage) -> None:
        """
        Completion path: route a result to its caller and forget the request.
        Results for unknown ids are dropped.
        """
        entry = self._pending.pop(message.request_id, None)
        if entry is None:
            logger.warning(f"[Request {message.request_id}] Result for unknown request dropped")
            return

        elapsed = int((time.time() - entry.created_at) * 1000)
        if message.ok:
            logger.info(f"[Request {entry.request_id}] Completed with {len(message.results or [])} detections, {elapsed}ms")
        else:
            logger.warning(f"[Request {entry.request_id}] Completed with error: {message.error}, {elapsed}ms")

        if entry.reply is not None:
            if not entry.reply.done():
                entry.reply.set_result(message)
            return

        if entry.origin is not None:
            reply = message.model_copy(update={"request_id": entry.origin.tag or entry.request_id})
            try:
                await entry.origin.send(reply.to_wire())
            except Exception as e:
                logger.error(f"[Request {entry.request_id}] Failed to send result to caller: {e}")

    def drop_origin(self, send: Callable[[Dict[str, Any]], Awaitable[None]]) -> int:
        """Forget every pending reply addressed to a closed channel."""
        stale = [rid for rid, e in self._pending.items() if e.origin is not None and e.origin.send is send]
        for rid in stale:
            self._pending.pop(rid, None)
        return len(stale)

    async def shutdown(self) -> None:
        """Stop the host and fail every outstanding request."""
        for request_id, entry in list(self._pending.items()):
            self._pending.pop(request_id, None)
            if entry.reply is not None and not entry.reply.done():
                entry.reply.set_result(
                    DetectionResultsMessage(request_id=request_id, error="Service shutting down")
                )

        if self._host is not None:
            await self._host.stop()
            self._host = None
        logger.info("Request router stopped")


# Global router instance
_router: Optional[RequestRouter] = None


def get_router() -> RequestRouter:
    """Get or create the global router instance."""
    global _router
    if _router is None:
        _router = RequestRouter()
    return _router


async def shutdown_router() -> None:
    """Stop the global router."""
    global _router
    if _router:
        await _router.shutdown()
        _router = None
