"""
Domain events raised by cycle and payment services.

Events are collected while a store transaction runs, recorded as CycleEvent
rows, and handed to the dispatcher once the transaction commits. They travel
to the Celery delivery task as plain dicts (see as_dict / event_from_dict).
"""
from typing import Any, Dict, List, Optional


class DomainEvent:
    """Base class for events. Subclasses set event_type and the message."""

    event_type = 'domain_event'
    title = ''

    def __init__(self, cycle_id: int, user_ids: Optional[List[int]] = None, **data):
        self.cycle_id = cycle_id
        self.user_ids = list(user_ids or [])
        self.data = data

    def __eq__(self, other):
        return (
            isinstance(other, DomainEvent)
            and self.event_type == other.event_type
            and self.as_dict() == other.as_dict()
        )

    def __repr__(self):
        return f"<{self.__class__.__name__} cycle={self.cycle_id} users={self.user_ids}>"

    def as_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type,
            'cycle_id': self.cycle_id,
            'user_ids': self.user_ids,
            'data': self.data,
        }

    def body(self) -> str:
        raise NotImplementedError

    def to_notification(self) -> Dict[str, Any]:
        """Render the {title, body, data} payload handed to the sink."""
        data = {'type': self.event_type, 'cycle_id': str(self.cycle_id)}
        data.update({key: str(value) for key, value in self.data.items()})
        return {
            'title': self.title,
            'body': self.body(),
            'data': data,
        }


class OrderPlaced(DomainEvent):
    event_type = 'order_placed'
    title = 'Order Placed'

    def body(self):
        return (
            f"Your order of {self.data.get('total_amount')} has been added "
            f"to the group order."
        )


class OrderWithdrawn(DomainEvent):
    event_type = 'order_withdrawn'
    title = 'Order Withdrawn'

    def body(self):
        return "Your order has been removed from the group order."


class ThresholdReached(DomainEvent):
    event_type = 'threshold_reached'
    title = 'Minimum Reached'

    def body(self):
        return "Every product in the group order has reached its minimum quantity."


class PaymentWindowOpened(DomainEvent):
    event_type = 'payment_window_opened'
    title = 'Payment Window Open'

    def body(self):
        return (
            f"Ordering has closed. Please pay before "
            f"{self.data.get('payment_window_ends_at')}."
        )


class PaymentReminder(DomainEvent):
    event_type = 'payment_reminder'
    title = 'Payment Reminder'

    def body(self):
        return f"Payment window ends in {self.data.get('hours_remaining')} hours."


class PaymentReceived(DomainEvent):
    event_type = 'payment_received'
    title = 'Payment Successful'

    def body(self):
        return f"We received your payment of {self.data.get('amount')}."


class OrderConfirmed(DomainEvent):
    event_type = 'order_confirmed'
    title = 'Order Confirmed'

    def body(self):
        return "The group order is confirmed and will be processed shortly."


class CycleCancelled(DomainEvent):
    event_type = 'cycle_cancelled'
    title = 'Group Order Cancelled'

    def body(self):
        reason = self.data.get('reason')
        message = "The group order was cancelled"
        if reason:
            message += f" ({reason.replace('_', ' ')})"
        return message + ". Any payment you made will be refunded."


class PhaseChanged(DomainEvent):
    """Fulfilment progress (processing, completed). Broadcast only."""
    event_type = 'phase_changed'
    title = 'Order Update'

    def body(self):
        return f"Your group order is now {self.data.get('new_phase')}."


EVENT_TYPES = {
    cls.event_type: cls for cls in (
        OrderPlaced, OrderWithdrawn, ThresholdReached, PaymentWindowOpened,
        PaymentReminder, PaymentReceived, OrderConfirmed, CycleCancelled,
        PhaseChanged,
    )
}


def event_from_dict(payload: Dict[str, Any]) -> DomainEvent:
    """Rebuild an event serialized with as_dict()."""
    event_class = EVENT_TYPES.get(payload.get('event_type'))
    if event_class is None:
        raise ValueError(f"Unknown event type: {payload.get('event_type')}")
    return event_class(
        payload['cycle_id'],
        payload.get('user_ids') or [],
        **(payload.get('data') or {})
    )
