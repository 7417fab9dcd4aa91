"""Error types shared across alphahub components."""


class AlphaHubError(Exception):
    """Base error for alphahub."""


class DataSourceError(AlphaHubError):
    """A data source failed to return a usable token listing."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(message)
        self.source = source


class DataSourceTimeoutError(DataSourceError):
    """A data source request was aborted by its timeout."""


class RepositoryError(AlphaHubError):
    """A storage write could not be applied."""


class NotificationError(AlphaHubError):
    """The messaging API rejected a notification."""
