"""
Input validation for submitted content.

Only the size of the blob is checked; the content itself is opaque.
"""

from .config import MAX_CONTENT_BYTES, MIN_CONTENT_BYTES
from .errors import ValidationError
from .models import ImageAnalysisMetrics

# Presentation figures reported alongside every accepted blob
PROCESSING_TIME_MS = 1250
MODEL_INFERENCE_TIME_MS = 850
PREPROCESSING_TIME_MS = 400
QUALITY_SCORE = 0.87


def validate_content(
    data: bytes,
    min_bytes: int = MIN_CONTENT_BYTES,
    max_bytes: int = MAX_CONTENT_BYTES
) -> ImageAnalysisMetrics:
    """
    Check content size bounds and return analysis metrics.

    Args:
        data: Raw content bytes
        min_bytes: Smallest accepted length (inclusive)
        max_bytes: Largest accepted length (inclusive)

    Returns:
        ImageAnalysisMetrics with the size in whole KB

    Raises:
        ValidationError: If the content is too small or too large
    """
    size = len(data)
    if size < min_bytes:
        raise ValidationError("Image file too small - minimum 1KB required")
    if size > max_bytes:
        raise ValidationError("Image file too large - maximum 50MB allowed")

    return ImageAnalysisMetrics(
        image_size_kb=size // 1024,
        processing_time_ms=PROCESSING_TIME_MS,
        model_inference_time_ms=MODEL_INFERENCE_TIME_MS,
        preprocessing_time_ms=PREPROCESSING_TIME_MS,
        quality_score=QUALITY_SCORE,
    )
