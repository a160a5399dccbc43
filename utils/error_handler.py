"""Custom exception classes for the application."""


class BaseGraderException(Exception):
    """Base exception for all application-specific errors."""
    pass


class ConfigError(BaseGraderException):
    """Error related to configuration loading or values."""
    pass


class AuthenticationError(BaseGraderException):
    """Error during the OAuth 2.0 / service account authentication process."""
    pass


class APIError(BaseGraderException):
    """Error interacting with an external API (Google APIs, Gemini, DOMjudge)."""
    def __init__(self, message: str, status_code: int | None = None, service: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.service = service

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.service:
            details.append(f"Service: {self.service}")
        if self.status_code:
            details.append(f"Status Code: {self.status_code}")
        if details:
            return f"{base} ({', '.join(details)})"
        return base


class ParseError(APIError):
    """A provider answered, but the payload could not be understood."""
    pass


class NoCandidatesError(ParseError):
    """Gemini returned a response without any candidate."""
    pass


class InputMissingError(BaseGraderException):
    """A submission row lacks the reference a stage needs (flowchart, code, submission id)."""
    pass


class ResolutionError(BaseGraderException):
    """A reference is present but cannot be resolved (blob id, problem code)."""
    pass


class FileUnavailableError(ResolutionError):
    """A blob could not be fetched from Drive or is empty."""
    pass


class UserCancelledError(BaseGraderException):
    """Error raised when the user cancels an operation."""
    pass
