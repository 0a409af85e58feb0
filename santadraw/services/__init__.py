from santadraw.services.assignment import generate_assignments
from santadraw.services.errors import (
    AlreadyDrawn,
    Forbidden,
    InfeasibleConstraints,
    NotFound,
    PermanentDeliveryFailure,
    SantaError,
    TransientDeliveryFailure,
    ValidationError,
)
from santadraw.services.feasibility import validate_feasibility

__all__ = [
    "AlreadyDrawn",
    "Forbidden",
    "InfeasibleConstraints",
    "NotFound",
    "PermanentDeliveryFailure",
    "SantaError",
    "TransientDeliveryFailure",
    "ValidationError",
    "generate_assignments",
    "validate_feasibility",
]
