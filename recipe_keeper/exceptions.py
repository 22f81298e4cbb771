class ExtractionError(Exception):
    """Raised when no usable recipe could be produced from a URL."""


class ConfigurationError(ExtractionError):
    """The generation endpoint or model has not been configured."""


class FetchError(ExtractionError):
    """The recipe page could not be fetched."""


class GenerationError(ExtractionError):
    """The text-generation service failed or returned an unusable reply."""


class MalformedResponseError(ExtractionError):
    """The completion did not contain a usable recipe object."""


__all__ = [
    "ConfigurationError",
    "ExtractionError",
    "FetchError",
    "GenerationError",
    "MalformedResponseError",
]
