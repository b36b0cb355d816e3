"""
Band normalisation before export.

Multi-image exports need every image to carry the same band names in the
same order with the same dtype.
"""

import logging
from typing import List, Sequence

import numpy as np

from .errors import BandMismatchError, ConfigurationError
from .image import Image

logger = logging.getLogger(__name__)


def check_band_consistency(images: Sequence[Image]) -> None:
    """
    Verify that all images share the first image's band list and order.

    Raises:
    -------
    BandMismatchError
        Naming the offending position and its missing / extra bands
    """
    if not images:
        return
    expected = images[0].band_names
    for position, image in enumerate(images[1:], start=1):
        names = image.band_names
        if names == expected:
            continue
        missing = [b for b in expected if b not in names]
        extra = [b for b in names if b not in expected]
        if not missing and not extra:
            raise BandMismatchError(
                f"Image {position} has bands in a different order: {names} (expected {expected})"
            )
        raise BandMismatchError(
            f"Image {position} does not match image 0: missing {missing}, extra {extra}"
        )


def normalize_bands(
    images: Sequence[Image],
    drop: Sequence[str] = ('QA_PIXEL',),
    dtype: str = 'float32'
) -> List[Image]:
    """
    Drop non-data bands and cast every image to one float dtype.

    Parameters:
    -----------
    images : Sequence[Image]
        Composites to export together
    drop : Sequence[str]
        Bands removed when present (default: QA_PIXEL)
    dtype : str
        Target floating-point dtype (default: 'float32')

    Returns:
    --------
    List[Image] : Normalised copies, in input order

    Raises:
    -------
    BandMismatchError
        If the images differ in band set or order after dropping
    """
    if not images:
        return []
    if not np.issubdtype(np.dtype(dtype), np.floating):
        raise ConfigurationError(f"Export dtype must be floating point, got {dtype}")

    normalized = [image.drop(drop).astype(dtype) for image in images]
    check_band_consistency(normalized)
    logger.debug(f"Normalised {len(normalized)} image(s) to {dtype} with bands {normalized[0].band_names}")
    return normalized
