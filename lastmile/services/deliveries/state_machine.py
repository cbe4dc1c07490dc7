"""Delivery record state machine.

This module implements DeliveryStateMachine, which validates lifecycle events
against the current state of a delivery record and applies the per-event side
effects on the record itself (timestamps, coordinates, proof of delivery,
computed duration and distance). Propagation to the parent order and route
stop is handled by DeliveryService.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, StateConflictError, ValidationFailedError
from lastmile.core.logging import get_logger
from lastmile.database.base import as_utc, utcnow
from lastmile.database.models import DeliveryRecord, DeliveryState
from lastmile.services.geo.service import haversine_km

logger = get_logger(__name__)


class DeliveryEvent(str, Enum):
    """Courier or dispatcher action on a delivery record."""

    START = "start"
    ARRIVE = "arrive"
    COMPLETE = "complete"
    CANCEL = "cancel"
    FAIL = "fail"


# Happy-path transitions; CANCEL and FAIL are accepted from every
# non-terminal state.
TRANSITIONS: Dict[tuple[DeliveryState, DeliveryEvent], DeliveryState] = {
    (DeliveryState.ASSIGNED, DeliveryEvent.START): DeliveryState.IN_TRANSIT,
    (DeliveryState.IN_TRANSIT, DeliveryEvent.ARRIVE): DeliveryState.ARRIVED,
    (DeliveryState.IN_TRANSIT, DeliveryEvent.COMPLETE): DeliveryState.DELIVERED,
    (DeliveryState.ARRIVED, DeliveryEvent.COMPLETE): DeliveryState.DELIVERED,
}

EXIT_EVENTS: Dict[DeliveryEvent, DeliveryState] = {
    DeliveryEvent.CANCEL: DeliveryState.CANCELLED,
    DeliveryEvent.FAIL: DeliveryState.FAILED,
}


class DeliveryStateMachine:
    """State machine for a single delivery record.

    Validates events against TRANSITIONS, runs the guard registered for the
    event and applies its side effect. Records are mutated in place; the
    caller owns persistence.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._guards: Dict[DeliveryEvent, Callable[[DeliveryRecord, Dict[str, Any]], None]] = (
            self._initialize_guards()
        )
        self._side_effects: Dict[
            DeliveryEvent, Callable[[DeliveryRecord, datetime, Dict[str, Any]], None]
        ] = self._initialize_side_effects()

    def _initialize_guards(self):
        return {
            DeliveryEvent.ARRIVE: self._guard_arrival_coordinates,
        }

    def _initialize_side_effects(self):
        return {
            DeliveryEvent.START: self._effect_started,
            DeliveryEvent.ARRIVE: self._effect_arrived,
            DeliveryEvent.COMPLETE: self._effect_delivered,
            DeliveryEvent.CANCEL: self._effect_cancelled,
            DeliveryEvent.FAIL: self._effect_failed,
        }

    def allowed_events(self, state: DeliveryState) -> Set[DeliveryEvent]:
        if state.is_terminal:
            return set()
        events = {event for (source, event) in TRANSITIONS if source == state}
        return events | set(EXIT_EVENTS)

    def target_state(self, record: DeliveryRecord, event: DeliveryEvent) -> DeliveryState:
        """Resolve the state an event leads to.

        Raises:
            StateConflictError: If the record is terminal or the event is not
                accepted from its current state
        """
        current = record.state

        if current.is_terminal:
            raise StateConflictError(
                f"Delivery is already {current.value}",
                code=ErrorCode.DELIVERY_TERMINAL,
                delivery_id=str(record.id),
                current_state=current.value,
                event=event.value,
            )

        if event in EXIT_EVENTS:
            return EXIT_EVENTS[event]

        target = TRANSITIONS.get((current, event))
        if target is None:
            raise StateConflictError(
                f"Cannot {event.value} a delivery that is {current.value}",
                code=ErrorCode.INVALID_DELIVERY_TRANSITION,
                delivery_id=str(record.id),
                current_state=current.value,
                event=event.value,
                allowed_events=sorted(e.value for e in self.allowed_events(current)),
            )
        return target

    def apply(
        self,
        record: DeliveryRecord,
        event: DeliveryEvent,
        now: Optional[datetime] = None,
        **payload: Any,
    ) -> DeliveryState:
        """Validate and apply an event to a delivery record.

        Args:
            record: Delivery record to transition
            event: Event to apply
            now: Transition time, defaults to the current UTC time
            **payload: Event data (coordinates, proof, reasons)

        Returns:
            The state the record moved to
        """
        old_state = record.state
        target = self.target_state(record, event)

        guard = self._guards.get(event)
        if guard is not None:
            guard(record, payload)

        now = now or utcnow()
        record.state = target
        self._side_effects[event](record, now, payload)

        logger.info(
            "Delivery transition applied",
            delivery_id=str(record.id),
            order_id=str(record.order_id),
            transition=f"{old_state.value}->{target.value}",
            delivery_event=event.value,
        )
        return target

    # Guards

    def _guard_arrival_coordinates(self, record: DeliveryRecord, payload: Dict[str, Any]) -> None:
        if payload.get("lat") is None or payload.get("lon") is None:
            raise ValidationFailedError(
                "Arrival requires the courier's coordinates",
                code=ErrorCode.INVALID_COORDINATES,
                delivery_id=str(record.id),
            )

    # Side effects

    def _effect_started(self, record: DeliveryRecord, now: datetime, payload: Dict[str, Any]) -> None:
        record.departed_at = now
        if payload.get("lat") is not None and payload.get("lon") is not None:
            record.departure_lat = payload["lat"]
            record.departure_lon = payload["lon"]

    def _effect_arrived(self, record: DeliveryRecord, now: datetime, payload: Dict[str, Any]) -> None:
        record.arrived_at = now
        record.arrival_lat = payload["lat"]
        record.arrival_lon = payload["lon"]

    def _effect_delivered(self, record: DeliveryRecord, now: datetime, payload: Dict[str, Any]) -> None:
        record.delivered_at = now

        if record.arrival_position is None and payload.get("lat") is not None and payload.get("lon") is not None:
            record.arrival_lat = payload["lat"]
            record.arrival_lon = payload["lon"]

        departed_at = as_utc(record.departed_at)
        if departed_at is not None:
            elapsed = (now - departed_at).total_seconds()
            record.duration_minutes = max(0, round(elapsed / 60))

        arrival = record.arrival_position
        if arrival is not None:
            origin = record.departure_position or self.settings.depot
            record.distance_km = round(haversine_km(origin, arrival), 3)
            record.distance_estimated = True

        for field in ("signature", "photo_url", "notes"):
            if payload.get(field):
                setattr(record, field, payload[field])

    def _effect_cancelled(self, record: DeliveryRecord, now: datetime, payload: Dict[str, Any]) -> None:
        record.cancelled_at = now
        record.cancel_reason = payload.get("reason")
        record.cancel_detail = payload.get("detail")
        record.cancelled_by = payload.get("actor_id")

    def _effect_failed(self, record: DeliveryRecord, now: datetime, payload: Dict[str, Any]) -> None:
        record.failed_at = now
        record.failure_reason = " - ".join(
            part for part in (payload.get("reason"), payload.get("detail")) if part
        ) or None


def get_delivery_state_machine(settings: Optional[Settings] = None) -> DeliveryStateMachine:
    """Factory for DeliveryStateMachine."""
    return DeliveryStateMachine(settings)
