# Offer Analysis
# Procurement offer scoring, negotiation rounds and collaborative edit locks

from .document import ProjectDocument, create_default_lot, create_default_project
from .errors import AnalysisError, InvalidInput, LockConflict, NotFound, TransitionRejected

__version__ = "1.0.0"

__all__ = [
    "ProjectDocument",
    "create_default_lot",
    "create_default_project",
    "AnalysisError",
    "InvalidInput",
    "LockConflict",
    "NotFound",
    "TransitionRejected",
]
