"""
Error taxonomy for the ingestion and conversation pipeline.

Transient errors are redelivered by the consumer, configuration errors fail
the job for good, and malformed model output never produces side effects.
"""


class OrderDeskError(Exception):
    """Base class for all pipeline errors."""


class TransientError(OrderDeskError):
    """Network or timeout failure; safe to retry on the next tick or redelivery."""


class SourceFetchError(TransientError):
    """The spreadsheet source could not be fetched or parsed."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


class ConfigurationError(OrderDeskError):
    """Missing or invalid configuration. Fatal for the job, never retried."""


class ChannelConfigurationError(ConfigurationError):
    """No usable messaging channel for a store."""


class ConversationNotFoundError(ConfigurationError):
    """An event referenced a conversation that does not exist for the store."""


class PlanParseError(OrderDeskError):
    """The language model returned a conversation plan that does not parse."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class InvalidTransitionError(OrderDeskError):
    """A parsed plan asks for an action the current conversation state forbids."""

    def __init__(self, state: str, action: str):
        super().__init__(f"Action {action} is not allowed in state {state}")
        self.state = state
        self.action = action


class ModelRequestError(OrderDeskError):
    """The model provider rejected the request itself (a 4xx other than 429)."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
