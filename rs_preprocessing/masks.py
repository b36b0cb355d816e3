"""
Pixel masks.

Every mask takes an Image and returns a copy whose validity mask has been
narrowed. Masked pixels drop out of later index math and reductions; they
are never zero-filled. Within one mask all invalid categories (cloud OR
shadow OR snow, ...) are combined first, then negated and ANDed into the
image's validity.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .bands import LANDSAT, SENTINEL2, BandAliases
from .dates import advance
from .errors import ConfigurationError
from .image import Image
from .landcover import CONIFEROUS, AnnualLandcover

logger = logging.getLogger(__name__)

MaskFunction = Callable[..., Image]

# Landsat Collection 2 QA_PIXEL bits
QA_FILL = 0
QA_CLOUD = 3
QA_CLOUD_SHADOW = 4
QA_SNOW = 5
# Landsat Collection 2 QA_RADSAT bit
RADSAT_TERRAIN_OCCLUSION = 9

# Sentinel-2 QA60 bits
S2_OPAQUE_CLOUD = 10
S2_CIRRUS = 11

# Sentinel-2 scene classification values
SCL_VEGETATION = 4
SCL_WATER = 6
SCL_SNOW = 11

DYNAMIC_WORLD_CLASSES = (
    'water', 'trees', 'grass', 'flooded_vegetation', 'crops',
    'shrub_and_scrub', 'built', 'bare', 'snow_and_ice',
)


# ============================================================================
# HELPERS
# ============================================================================

def combine_masks(*grids: np.ndarray) -> np.ndarray:
    """Logical AND of boolean validity grids."""
    if not grids:
        raise ConfigurationError("combine_masks needs at least one grid")
    valid = np.asarray(grids[0], dtype=bool).copy()
    for grid in grids[1:]:
        valid &= np.asarray(grid, dtype=bool)
    return valid


def apply_mask_chain(image: Image, chain: Iterable[MaskFunction]) -> Image:
    """Apply mask callables in order."""
    for mask in chain:
        image = mask(image)
    return image


def _bits_set(band: np.ma.MaskedArray, bits: Sequence[int]) -> np.ma.MaskedArray:
    """True where any of the given bits is set; masked where the QA band is."""
    bitmask = 0
    for bit in bits:
        bitmask |= 1 << bit
    data = np.ma.getdata(band).astype(np.int64)
    return np.ma.MaskedArray((data & bitmask) != 0, mask=np.ma.getmaskarray(band))


def _keep_where_not(image: Image, invalid: np.ma.MaskedArray) -> Image:
    valid = np.ma.MaskedArray(~np.ma.getdata(invalid), mask=np.ma.getmaskarray(invalid))
    return image.update_mask(valid)


# ============================================================================
# LANDSAT COLLECTION 2
# ============================================================================

def mask_cloud(image: Image, aliases: BandAliases = LANDSAT) -> Image:
    """Mask QA_PIXEL cloud (bit 3) and cloud shadow (bit 4)."""
    qa = image[aliases['qa']]
    return _keep_where_not(image, _bits_set(qa, (QA_CLOUD, QA_CLOUD_SHADOW)))


def mask_cloud_snow(image: Image, aliases: BandAliases = LANDSAT) -> Image:
    """Mask QA_PIXEL cloud (bit 3), cloud shadow (bit 4) and snow (bit 5)."""
    qa = image[aliases['qa']]
    return _keep_where_not(image, _bits_set(qa, (QA_CLOUD, QA_CLOUD_SHADOW, QA_SNOW)))


def mask_fill(image: Image, aliases: BandAliases = LANDSAT) -> Image:
    qa = image[aliases['qa']]
    return _keep_where_not(image, _bits_set(qa, (QA_FILL,)))


def mask_qa_radsat(image: Image, aliases: BandAliases = LANDSAT, band: str = 'QA_RADSAT') -> Image:
    """Mask pixels flagged in QA_RADSAT bit 9 (terrain occlusion)."""
    radsat = image[band]
    return _keep_where_not(image, _bits_set(radsat, (RADSAT_TERRAIN_OCCLUSION,)))


def mask_negative_reflectance(image: Image, aliases: BandAliases = LANDSAT) -> Image:
    """Mask pixels where any surface reflectance band is below zero."""
    invalid = np.zeros(image.shape, dtype=bool)
    for name in aliases.reflectance_bands():
        band = image[name]
        invalid |= np.ma.getdata(band) < 0
    return image.update_mask(~invalid)


# ============================================================================
# SENTINEL-2
# ============================================================================

def mask_s2_clouds(image: Image, aliases: BandAliases = SENTINEL2) -> Image:
    """Mask QA60 opaque clouds (bit 10) and cirrus (bit 11)."""
    qa = image[aliases['qa']]
    return _keep_where_not(image, _bits_set(qa, (S2_OPAQUE_CLOUD, S2_CIRRUS)))


def _scl_equals(image: Image, aliases: BandAliases, value: int) -> np.ma.MaskedArray:
    scl = image[aliases['scl']]
    return np.ma.MaskedArray(np.ma.getdata(scl) == value, mask=np.ma.getmaskarray(scl))


def mask_s2_snow(image: Image, aliases: BandAliases = SENTINEL2) -> Image:
    return _keep_where_not(image, _scl_equals(image, aliases, SCL_SNOW))


def mask_s2_water(image: Image, aliases: BandAliases = SENTINEL2) -> Image:
    return _keep_where_not(image, _scl_equals(image, aliases, SCL_WATER))


def mask_s2_vegetation(image: Image, aliases: BandAliases = SENTINEL2) -> Image:
    """Keep only pixels classified as vegetation (SCL == 4)."""
    return image.update_mask(_scl_equals(image, aliases, SCL_VEGETATION))


# Masks that need nothing beyond the image and its band aliases
MASKS: Dict[str, MaskFunction] = OrderedDict([
    ('mask_cloud', mask_cloud),
    ('mask_cloud_snow', mask_cloud_snow),
    ('mask_fill', mask_fill),
    ('mask_qa_radsat', mask_qa_radsat),
    ('mask_negative_reflectance', mask_negative_reflectance),
    ('mask_s2_clouds', mask_s2_clouds),
    ('mask_s2_snow', mask_s2_snow),
    ('mask_s2_water', mask_s2_water),
    ('mask_s2_vegetation', mask_s2_vegetation),
])


_LANDSAT_ONLY = ('landsat',)
_SENTINEL2_ONLY = ('sentinel2',)

# Sensor groups whose QA bands each mask understands
MASK_SENSORS: Dict[str, Tuple[str, ...]] = {
    'mask_cloud': _LANDSAT_ONLY,
    'mask_cloud_snow': _LANDSAT_ONLY,
    'mask_fill': _LANDSAT_ONLY,
    'mask_qa_radsat': _LANDSAT_ONLY,
    'mask_negative_reflectance': ('landsat', 'sentinel2', 'modis'),
    'mask_s2_clouds': _SENTINEL2_ONLY,
    'mask_s2_snow': _SENTINEL2_ONLY,
    'mask_s2_water': _SENTINEL2_ONLY,
    'mask_s2_vegetation': _SENTINEL2_ONLY,
}

SENSOR_DEFAULT_MASKS: Dict[str, Tuple[str, ...]] = {
    'landsat': ('mask_cloud_snow',),
    'sentinel2': ('mask_s2_clouds',),
    'modis': (),
}


def get_mask(name: str) -> MaskFunction:
    try:
        return MASKS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown mask '{name}'. Available masks: {list(MASKS)}")


def build_mask_chain(names: Sequence[str], aliases: BandAliases) -> List[MaskFunction]:
    """Bind registry masks to one sensor's aliases, preserving order."""
    chain = []
    for name in names:
        mask = get_mask(name)
        chain.append(lambda image, _mask=mask: _mask(image, aliases))
    return chain


# ============================================================================
# COLLABORATOR-BACKED MASKS
# ============================================================================

def mask_landcover(
    image: Image,
    landcover: AnnualLandcover,
    classes: Sequence[int] = (CONIFEROUS,)
) -> Image:
    """
    Keep pixels whose land-cover class for the image year is in classes.

    The year comes from the image's 'year' property, so this mask must run
    after the compositor has stamped it.
    """
    year = image.get('year')
    if year is None:
        raise ConfigurationError("mask_landcover requires a 'year' property on the image")
    return image.update_mask(landcover.class_mask(year, classes))


def mask_forest_age(image: Image, age: object, threshold: float = 60) -> Image:
    """Keep pixels whose stand age exceeds threshold years."""
    age = np.ma.asarray(age)
    valid = np.ma.MaskedArray(np.ma.getdata(age) > threshold, mask=np.ma.getmaskarray(age))
    return image.update_mask(valid)


def _in_window(scene: Image, start: datetime, end: datetime, months: Tuple[int, int]) -> bool:
    date = scene.date
    if date is None:
        return False
    return start <= date < end and months[0] <= date.month <= months[1]


def mask_dynamic_world(
    image: Image,
    probabilities: Sequence[Image],
    target_class: int = 1,
    months: Tuple[int, int] = (6, 9)
) -> Image:
    """
    Keep pixels whose dominant Dynamic World class is target_class.

    Class-probability scenes dated in [image date, image date + 1 year) and
    within the month range are averaged per class; the dominant class is the
    per-pixel argmax over the nine classes (0 water, 1 trees, ... 8
    snow_and_ice). With no scenes in the window every pixel is masked.

    Parameters:
    -----------
    image : Image
        Image carrying a 'date' property
    probabilities : Sequence[Image]
        Dynamic World scenes with one band per class name and a 'date' property
    target_class : int
        Class index to keep (default: 1, trees)
    months : Tuple[int, int]
        Inclusive month range (default: June to September)
    """
    start = image.date
    if start is None:
        raise ConfigurationError("mask_dynamic_world requires a 'date' property on the image")
    end = advance(start, 1, 'years')

    scenes = [s for s in probabilities if _in_window(s, start, end, months)]
    if not scenes:
        logger.warning(
            f"No Dynamic World scenes between {start:%Y-%m-%d} and {end:%Y-%m-%d}; "
            "all pixels masked"
        )
        return image.update_mask(np.zeros(image.shape, dtype=bool))

    means = []
    for name in DYNAMIC_WORLD_CLASSES:
        stack = np.ma.stack([s[name].astype(np.float64) for s in scenes])
        means.append(stack.mean(axis=0))
    means = np.ma.stack(means)

    # Masked class means can never win the argmax
    filled = means.filled(-np.inf)
    dominant = np.argmax(filled, axis=0)
    defined = ~np.all(np.ma.getmaskarray(means), axis=0)
    return image.update_mask((dominant == target_class) & defined)
