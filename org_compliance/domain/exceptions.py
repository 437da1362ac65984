"""Exception taxonomy shared by the domain, application and adapters."""


class ComplianceException(Exception):
    """Base class for all errors raised by the compliance engine."""
    pass


class AuthenticationMissingException(ComplianceException):
    """Raised when a remote operation needs a token and none was found."""
    pass


class RateLimitException(ComplianceException):
    """Exception raised when rate limit is hit."""
    pass


class RepositoryNotFoundException(ComplianceException):
    """The repository does not exist or is invisible to the token."""
    pass


class PermissionDeniedException(ComplianceException):
    """The token lacks the scopes needed for the requested operation."""
    pass


class TransientException(ComplianceException):
    """Network or server failure that may succeed on a later run."""
    pass


class DiscoveryException(ComplianceException):
    """Repository discovery failed; nothing can be audited."""
    pass


class StorageIOException(ComplianceException):
    """History snapshot could not be read or written."""
    pass


class DuplicateManagedIssueException(ComplianceException):
    """More than one open issue carries the managed label set."""

    def __init__(self, numbers):
        self.numbers = tuple(numbers)
        super().__init__(
            "Multiple open managed issues found: "
            + ", ".join(f"#{number}" for number in self.numbers)
        )
