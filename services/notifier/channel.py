from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from services.routines.errors import ChannelError
from shared.contracts.enums import EventType
from shared.contracts.models import ChannelMessage

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    def publish(self, channel: str, event: EventType, payload: Dict[str, Any]) -> None:
        """Deliver ``event`` to every connection subscribed to ``channel``.

        Raises ChannelError when the message could not be handed to the transport.
        """

    def close(self) -> None: ...


@dataclass
class InMemoryChannel:
    """Records every published message; used in tests and single-process runs."""

    sent: List[ChannelMessage] = field(default_factory=list)

    def publish(self, channel: str, event: EventType, payload: Dict[str, Any]) -> None:
        self.sent.append(ChannelMessage(channel=channel, event=event, payload=payload))
        logger.debug("Published %s to channel %s", event.value, channel)

    def events(self, event: Optional[EventType] = None, channel: Optional[str] = None) -> List[ChannelMessage]:
        return [
            message
            for message in self.sent
            if (event is None or message.event == event) and (channel is None or message.channel == channel)
        ]

    def close(self) -> None:
        pass


class HttpChannel:
    """Forwards messages to the notifier gateway's ``/publish`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.publish_url = f"{base_url.rstrip('/')}/publish"
        self._client = client or httpx.Client(timeout=timeout)

    def publish(self, channel: str, event: EventType, payload: Dict[str, Any]) -> None:
        message = ChannelMessage(channel=channel, event=event, payload=payload)
        try:
            response = self._client.post(self.publish_url, json=message.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ChannelError(f"Notifier unreachable for channel {channel}: {exc}") from exc

    def close(self) -> None:
        self._client.close()
