"""Exception types raised across prwarden_core."""


class PrwardenError(Exception):
    """Base class for all prwarden errors."""


class ConfigError(PrwardenError):
    """Configuration is incomplete or invalid."""


class AnalysisProviderError(PrwardenError):
    """The analysis provider failed on every retry attempt."""


class SourceControlError(PrwardenError):
    """Fetching from or posting to the source-control platform failed."""


class WebhookSignatureError(PrwardenError):
    """An inbound webhook did not carry a valid signature."""
