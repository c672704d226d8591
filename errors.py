"""
Error types shared by the report services and the conversation engine.
"""


class ReportBotError(Exception):
    """Base class for every error the bot knows how to report to a chat."""


class ConfigError(ReportBotError):
    """Settings file is missing, unreadable or incomplete."""


class PersistenceError(ReportBotError):
    """Writing the user list back to the settings file failed."""


class RemoteAPIError(ReportBotError):
    """The POS server answered with an error or an unreadable body."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(RemoteAPIError):
    """Credential exchange failed or the server rejected the session key."""


class TransientNetworkError(RemoteAPIError):
    """Timeout, connection failure or 5xx that survived every retry."""


class NotFoundError(ReportBotError):
    """Requested shift, server alias or OLAP category does not exist."""


class ValidationError(ReportBotError):
    """User input was rejected (e.g. an empty username)."""


class AccessDenied(ReportBotError):
    """Sender is neither in the allow-list nor in the admin list."""
