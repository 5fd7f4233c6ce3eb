"""Exception types shared across the pipeline."""


class JobTimelineError(Exception):
    """Base class for all job timeline errors."""


class ConfigurationError(JobTimelineError):
    """Missing model, missing account or invalid settings. Fatal to a sync run."""


class ClassifierError(JobTimelineError):
    """A classifier call failed in a way that may succeed on retry."""


class ModelUnavailableError(ClassifierError):
    """The configured model cannot serve requests at all (unknown model, bad key)."""


class ProviderError(JobTimelineError):
    """The mailbox provider failed to return a page of messages."""
