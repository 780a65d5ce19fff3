class PipelineError(Exception):
    """Base class for webhook pipeline errors."""


class SignatureVerificationError(PipelineError):
    """The webhook signature header is missing, stale or does not match."""


class MalformedPayloadError(PipelineError):
    """The provider payload lacks the fields a handler needs."""


class EntityNotFoundError(PipelineError):
    """No local record matches the provider-issued id."""

    def __init__(self, entity: str, provider_id: str):
        super().__init__(f"{entity} not found for provider id {provider_id}")
        self.entity = entity
        self.provider_id = provider_id


class ConfigurationError(PipelineError):
    """Raised at startup when handler or subscriber wiring is inconsistent."""


class RegistryFrozenError(PipelineError):
    """Raised when subscribing after the event bus has been frozen."""
