"""Exception types for the security core.

Only ConfigurationError is meant to escape to the caller of a public
operation (process startup). Everything else is converted to result data
inside the component that raises it.
"""


class SecurityError(Exception):
    """Base class for security core errors."""


class ConfigurationError(SecurityError):
    """Fatal configuration problem detected at startup."""


class PathValidationError(SecurityError):
    """Output path rejected before any filesystem write."""


class EncryptionError(SecurityError):
    """Screenshot encryption or decryption failed."""


class TargetError(SecurityError):
    """The live target could not be reached or returned a protocol error."""


class CommandArgumentError(SecurityError):
    """An interaction verb received unusable or dangerous arguments."""
