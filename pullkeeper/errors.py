"""Error hierarchy for scheduling and backup execution."""


class PullkeeperError(RuntimeError):
    """Base exception for backup related failures."""


class ConfigurationError(PullkeeperError):
    """Raised for malformed schedules, missing paths and invalid configuration rows."""


class AuthenticationError(PullkeeperError):
    """Raised when no configured credential yields a working SSH session."""


class TransportError(PullkeeperError):
    """Raised when the SSH connection or a remote command fails."""


class TransferError(PullkeeperError):
    """Raised when no transfer mechanism is usable or the transfer itself fails."""


class RetentionError(PullkeeperError):
    """Raised when an old version directory cannot be removed."""


class HistoryStateError(PullkeeperError):
    """Raised on an attempt to move a history entry out of a terminal state."""


__all__ = [
    'PullkeeperError',
    'ConfigurationError',
    'AuthenticationError',
    'TransportError',
    'TransferError',
    'RetentionError',
    'HistoryStateError',
]
