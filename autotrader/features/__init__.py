"""Technical feature extraction."""

from .feature_engineer import FeatureVector, extract_features

__all__ = ["FeatureVector", "extract_features"]
