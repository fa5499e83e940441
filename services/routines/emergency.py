from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Union

from services.notifier.channel import NotificationChannel
from services.routines.errors import ChannelError
from services.routines.lifecycle import parse_payload
from shared.contracts.enums import EventType
from shared.contracts.models import EmergencyAlert, EmergencyCancelled, EmergencyRequest, utcnow

logger = logging.getLogger(__name__)


class EmergencyAlerts:
    """Pushes emergency and emergency-cancel events to a caregiver's channel.

    Unlike routine change events, a failed publish raises ChannelError.
    """

    def __init__(self, channel: NotificationChannel, clock: Callable[[], datetime] = utcnow) -> None:
        self.channel = channel
        self.clock = clock

    def raise_alert(self, request: Union[EmergencyRequest, Mapping[str, Any]]) -> EmergencyAlert:
        request = parse_payload(EmergencyRequest, request)
        alert = EmergencyAlert(
            caregiver_id=request.caregiver_id,
            dependent_id=request.dependent_id,
            timestamp=request.timestamp or self.clock(),
        )
        self._publish(request.caregiver_id, EventType.EMERGENCY, alert.model_dump(mode="json", exclude_none=True))
        logger.warning(
            "Emergency alert sent to caregiver %s (dependent %s)", request.caregiver_id, request.dependent_id
        )
        return alert

    def cancel_alert(self, request: Union[EmergencyRequest, Mapping[str, Any]]) -> EmergencyCancelled:
        request = parse_payload(EmergencyRequest, request)
        cancelled = EmergencyCancelled(caregiver_id=request.caregiver_id, dependent_id=request.dependent_id)
        self._publish(
            request.caregiver_id,
            EventType.EMERGENCY_CANCEL,
            cancelled.model_dump(mode="json", exclude_none=True),
        )
        logger.info("Emergency cancelled for caregiver %s", request.caregiver_id)
        return cancelled

    def _publish(self, caregiver_id: str, event: EventType, payload: dict[str, Any]) -> None:
        try:
            self.channel.publish(caregiver_id, event, payload)
        except ChannelError:
            logger.error("Could not deliver %s to caregiver %s", event.value, caregiver_id)
            raise
