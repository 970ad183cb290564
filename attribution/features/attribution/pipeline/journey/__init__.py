from .credit import CREDIT_MODELS, TouchpointCredit, allocate_credit
from .service import assemble, score_confidence

__all__ = [
    "CREDIT_MODELS",
    "TouchpointCredit",
    "allocate_credit",
    "assemble",
    "score_confidence",
]
