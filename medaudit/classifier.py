"""
Content classification.

The classifier is a capability: anything implementing `Classifier` can be
plugged into the record service. The reference implementation maps the
SHA-256 digest of the content onto one of six canned chest X-ray results.

Design principles:
- Deterministic (identical content yields identical results)
- Side-effect free
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from .errors import ClassificationError
from .models import Finding


@dataclass(frozen=True)
class Classification:
    """Classifier output: label, aggregate confidence and ordered findings."""
    label: str
    confidence: float
    findings: List[Finding] = field(default_factory=list)


class Classifier(ABC):
    """Abstract interface for content classifiers."""

    @abstractmethod
    def classify(self, data: bytes) -> Classification:
        """
        Classify content.

        Args:
            data: Raw content bytes

        Returns:
            Classification for the content
        """
        pass


def _f(finding: str, location: str, severity: str, confidence: float) -> Finding:
    return Finding(finding=finding, location=location, severity=severity, confidence=confidence)


BUCKET_TABLE: Tuple[Classification, ...] = (
    Classification(
        "Normal chest X-ray - No acute cardiopulmonary process",
        0.92,
        [
            _f("Clear lung fields", "Bilateral", "Normal", 0.94),
            _f("Normal cardiac silhouette", "Mediastinum", "Normal", 0.89),
        ],
    ),
    Classification(
        "Pneumonia detected in right lower lobe - Recommend clinical correlation",
        0.87,
        [
            _f("Consolidation", "Right lower lobe", "Moderate", 0.87),
            _f("Air bronchograms", "Right lower lobe", "Mild", 0.73),
        ],
    ),
    Classification(
        "Possible pleural effusion - Suggest further imaging",
        0.78,
        [
            _f("Blunted costophrenic angle", "Right lateral", "Mild", 0.78),
        ],
    ),
    Classification(
        "Cardiomegaly noted - Consider echocardiogram",
        0.85,
        [
            _f("Enlarged cardiac silhouette", "Mediastinum", "Moderate", 0.85),
        ],
    ),
    Classification(
        "Bilateral pulmonary edema - Urgent clinical evaluation recommended",
        0.91,
        [
            _f("Bilateral alveolar infiltrates", "Bilateral perihilar", "Severe", 0.91),
            _f("Kerley B lines", "Bilateral lower lobes", "Moderate", 0.82),
        ],
    ),
    Classification(
        "Pneumothorax detected - Immediate medical attention required",
        0.89,
        [
            _f("Pleural space widening", "Left upper lobe", "Moderate", 0.89),
            _f("Lung collapse", "Left upper lobe", "Moderate", 0.84),
        ],
    ),
)


def numeric_bucket(digest: bytes) -> int:
    """First four digest bytes as a big-endian integer, mod table size."""
    return int.from_bytes(digest[:4], "big") % len(BUCKET_TABLE)


def legacy_prefix_bucket(digest: bytes) -> int:
    """
    Length of the eight-character hex prefix, mod table size.

    Always bucket 2. Kept so records match those produced by earlier
    deployments that selected on the prefix string rather than its value.
    """
    seed = digest.hex()[:8]
    return len(seed) % len(BUCKET_TABLE)


BUCKET_SELECTORS: Dict[str, Callable[[bytes], int]] = {
    "numeric": numeric_bucket,
    "legacy_prefix": legacy_prefix_bucket,
}


class HashBucketClassifier(Classifier):
    """Reference classifier backed by the fixed bucket table."""

    def __init__(self, selector: Callable[[bytes], int] = numeric_bucket):
        self._selector = selector

    def classify(self, data: bytes) -> Classification:
        digest = hashlib.sha256(data).digest()
        return BUCKET_TABLE[self._selector(digest)]


def check_classification(result: Classification) -> Classification:
    """Reject classifier output that cannot be signed into a record."""
    if not result.label:
        raise ClassificationError("Classifier returned an empty label")
    if not 0.0 <= result.confidence <= 1.0:
        raise ClassificationError(f"Classifier confidence out of range: {result.confidence}")
    return result


def get_classifier(mode: str = "numeric") -> Classifier:
    """Build the reference classifier for a bucket mode (numeric|legacy_prefix)."""
    try:
        selector = BUCKET_SELECTORS[mode]
    except KeyError:
        raise ValueError(f"Unknown classifier bucket mode: {mode}") from None
    return HashBucketClassifier(selector)
