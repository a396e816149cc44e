"""Error taxonomy for the task event pipeline."""


class EventPipelineError(Exception):
    """Base class for messaging errors."""


class BrokerUnavailableError(EventPipelineError):
    """No live channel and a connection could not be established."""


class PublishError(EventPipelineError):
    """The broker refused a message or the publish timed out."""


class NotificationPublishError(PublishError):
    """A derived notification could not be published."""


class EventDecodeError(EventPipelineError):
    """A work-queue payload is not a valid task event."""
