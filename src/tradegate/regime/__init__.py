"""Market regime classification."""
from tradegate.regime.classifier import RegimeClassifier

__all__ = [
    "RegimeClassifier",
]
