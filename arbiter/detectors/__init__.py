from .base import DetectionReport, Evaluation
from .carry import CarryDetector, clamp_holding_hours
from .cross_exchange import CrossExchangeDetector
from .triangular import TriangularDetector, confidence_for_triangular

__all__ = [
    "CarryDetector",
    "CrossExchangeDetector",
    "DetectionReport",
    "Evaluation",
    "TriangularDetector",
    "clamp_holding_hours",
    "confidence_for_triangular",
]
