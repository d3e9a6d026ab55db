"""
Error taxonomy for the AML screening engine

Every failure a caller may need to branch on has its own type and a stable
``code``. ``to_dict()`` gives the structured form used by the API layer.
"""

from typing import Any, Dict, Optional


class AMLError(Exception):
    """Base class for screening errors"""
    code = "AML_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details(),
        }


class ValidationError(AMLError, ValueError):
    """Raised when a request is rejected before any search runs

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        suggestion: Optional hint for fixing the input
    """
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = "unknown",
                 code: str = "VALIDATION_ERROR", suggestion: str = ""):
        super().__init__(message, code)
        self.field = field
        self.suggestion = suggestion

    def details(self) -> Dict[str, Any]:
        return {'field': self.field, 'suggestion': self.suggestion}


class ListUnavailableError(AMLError):
    """A source list could not be fetched or parsed"""
    code = "LIST_UNAVAILABLE"

    def __init__(self, list_id: str, message: str = ""):
        super().__init__(message or f"Source list unavailable: {list_id}")
        self.list_id = list_id

    def details(self) -> Dict[str, Any]:
        return {'list_id': self.list_id}


class ScreeningTimeout(AMLError):
    """The vendor call or screening exceeded the caller's deadline"""
    code = "SCREENING_TIMEOUT"

    def __init__(self, timeout: float, message: str = ""):
        super().__init__(message or f"Screening exceeded timeout of {timeout:.2f}s")
        self.timeout = timeout

    def details(self) -> Dict[str, Any]:
        return {'timeout_seconds': self.timeout}


class InternalMatchingError(AMLError):
    """Unexpected failure while scoring a watchlist entity"""
    code = "INTERNAL_MATCHING_ERROR"

    def __init__(self, entity_id: str, message: str = ""):
        super().__init__(message or f"Matching failed for entity {entity_id}")
        self.entity_id = entity_id

    def details(self) -> Dict[str, Any]:
        return {'entity_id': self.entity_id}


class ScreeningNotFoundError(AMLError, LookupError):
    code = "SCREENING_NOT_FOUND"

    def __init__(self, screening_id: Any):
        super().__init__(f"Screening not found: {screening_id}")
        self.screening_id = str(screening_id)

    def details(self) -> Dict[str, Any]:
        return {'screening_id': self.screening_id}


class MatchNotFoundError(AMLError, LookupError):
    code = "MATCH_NOT_FOUND"

    def __init__(self, match_id: Any):
        super().__init__(f"Match not found: {match_id}")
        self.match_id = str(match_id)

    def details(self) -> Dict[str, Any]:
        return {'match_id': self.match_id}


class EDDError(AMLError):
    """Enhanced due diligence cannot be completed for this screening"""
    code = "EDD_NOT_ALLOWED"


class ScreeningStateError(AMLError):
    """Operation not allowed in the screening's current lifecycle state"""
    code = "INVALID_SCREENING_STATE"
