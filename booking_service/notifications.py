import asyncio
import logging
from typing import Mapping

from .events import build_event, to_json

logger = logging.getLogger(__name__)


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


class Notifier:
    """
    Fire-and-forget bridge to the notification layer.

    Publishing runs in a background task; callers never wait on delivery and a
    failed publish is logged and dropped.
    """

    def __init__(self, publisher, templates: Mapping[str, Mapping[str, str]]):
        self.publisher = publisher
        self.templates = templates
        self._tasks: set[asyncio.Task] = set()

    def render(self, status: str, booking, reason: str | None = None) -> str:
        category = getattr(booking, "service_category", None)
        template = None
        if category and category in self.templates:
            template = self.templates[category].get(status)
        if template is None:
            template = self.templates["default"].get(status, "")
        return template.format_map(_SafeDict(
            booking_id=booking.id,
            status=status,
            reason=reason or getattr(booking, "cancellation_reason", None) or "",
        ))

    def emit(self, routing_key: str, data: dict) -> None:
        event = build_event(routing_key, data)
        try:
            task = asyncio.get_running_loop().create_task(self._publish(routing_key, to_json(event)))
        except RuntimeError:
            logger.debug("no running loop, dropping %s", routing_key)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, routing_key: str, body: str):
        try:
            await self.publisher.publish(routing_key, body)
        except Exception:
            logger.exception("notification publish failed for %s", routing_key)

    def status_changed(self, booking, old_status, new_status, actor_role) -> None:
        self.emit(
            "booking.status_changed",
            {
                "booking_id": booking.id,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "old_status": str(old_status),
                "new_status": str(new_status),
                "actor_role": str(actor_role),
                "message": self.render(str(new_status), booking),
            },
        )

    def job_request_event(self, event_type: str, job_request) -> None:
        self.emit(
            event_type,
            {
                "job_request_id": job_request.id,
                "booking_id": job_request.booking_id,
                "provider_id": job_request.provider_id,
                "status": str(job_request.status),
                "expires_at": job_request.expires_at,
            },
        )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
