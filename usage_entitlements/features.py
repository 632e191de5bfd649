"""
Metered feature keys.

Feature keys are plain strings in the plan catalog so new features can be
introduced by editing config/plans.json. The enum below names the features
the dashboard currently gates.
"""

from enum import Enum
from typing import FrozenSet, Union


class Feature(str, Enum):
    """Features gated by plan limits."""
    GENERATE_PRODUCT = "generateProduct"
    VIDEO_GENERATION = "videoGeneration"
    IMAGE_GENERATION = "imageGeneration"
    PRODUCT_EXPORTER = "productExporter"
    SHOP_EXPORTER = "shopExporter"
    IMPORT_THEME = "importTheme"
    SHOP_TRACKER = "shopTracker"


# Slot-based features: balance counts free slots, released on removal.
COUNTED_FEATURES: FrozenSet[str] = frozenset({Feature.SHOP_TRACKER.value})

FeatureKey = Union[Feature, str]


def normalize_feature(feature: FeatureKey) -> str:
    """Return the catalog key for a feature, rejecting blank keys."""
    if isinstance(feature, Feature):
        return feature.value
    normalized = str(feature).strip()
    if not normalized:
        raise ValueError("feature is required")
    return normalized


def is_counted_feature(feature: FeatureKey) -> bool:
    return normalize_feature(feature) in COUNTED_FEATURES
