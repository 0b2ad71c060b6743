"""Exception taxonomy for the billing pipeline

Where each error is handled:
- WebhookValidationError: webhook route, 400, nothing persisted
- IngestionPersistenceError: webhook route, 200 "processing may be delayed"
- ProcessingError: event processor, event marked FAILED, never re-raised
- EventNotFoundError / RepairError: admin repair routes, 404 / 500
"""


class PayhookError(Exception):
    """Base class for all billing pipeline errors"""


class WebhookValidationError(PayhookError):
    """Webhook rejected at the boundary (signature, timestamp, body)"""

    def __init__(self, error: str, message: str):
        super().__init__(message)
        self.error = error
        self.message = message


class IngestionPersistenceError(PayhookError):
    """Raw event could not be durably written"""


class ProcessingError(PayhookError):
    """An event could not be turned into state changes"""


class EventNotFoundError(PayhookError):
    """No raw event with the given provider event id"""

    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class RepairError(PayhookError):
    """An operator-invoked repair did not complete"""
