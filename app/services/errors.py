from typing import Any, Dict, List, Optional


class MeasurementError(ValueError):
    """Base class for failures that abort a single measurement run."""

    code = "measurement_error"
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "errors": self.errors}


class InvalidInputError(MeasurementError):
    """Malformed frame, too few polygon vertices, non-finite coordinates."""

    code = "invalid_input"
    status_code = 400


class FootprintUnavailableError(MeasurementError):
    """No source produced a usable footprint candidate."""

    code = "cannot_measure"
    status_code = 422


class FootprintValidationError(MeasurementError):
    """The resolved footprint fell outside the residential area envelope."""

    code = "footprint_invalid"
    status_code = 422

    def __init__(self, message: str, errors: Optional[List[str]] = None, footprint: Any = None):
        super().__init__(message, errors)
        self.footprint = footprint

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.footprint is not None:
            detail["footprint"] = self.footprint.to_dict()
        return detail
