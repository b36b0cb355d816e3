"""
Local GeoTIFF export of composites.

Output file names are a function of each image's stamped metadata
(<prefix>_<year> by default). Several images mapping to one name is a
collision; the policy decides whether the last one silently wins, a
warning is logged, or the export is refused.
"""

import logging
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import rasterio

from .errors import ConfigurationError
from .image import Image
from .normalize import check_band_consistency

logger = logging.getLogger(__name__)

FileNameFunction = Callable[[Image, str], str]

COLLISION_POLICIES = ('overwrite', 'warn', 'error')


def default_file_name(image: Image, prefix: str) -> str:
    """<prefix>_<year>, or <prefix>_unknown when the image has no year."""
    year = image.get('year')
    return f"{prefix}_{year if year is not None else 'unknown'}"


def interval_file_name(image: Image, prefix: str) -> str:
    """<prefix>_<YYYY-MM-DD>, unique for sub-annual cadences."""
    return f"{prefix}_{image.get('date', 'unknown')}"


def plan_exports(
    images: Sequence[Image],
    prefix: str,
    file_name_fn: Optional[FileNameFunction] = None,
    on_collision: str = 'overwrite'
) -> List[Tuple[str, Image]]:
    """
    Assign an output name to each image.

    Parameters:
    -----------
    images : Sequence[Image]
        Images in export order
    prefix : str
        File name prefix passed to file_name_fn
    file_name_fn : Optional[FileNameFunction]
        (image, prefix) -> name without extension (default: default_file_name)
    on_collision : str
        'overwrite' (later images replace earlier ones), 'warn' (same, with a
        warning) or 'error' (raise ConfigurationError)

    Returns:
    --------
    List[Tuple[str, Image]] : (name, image) pairs. Every pair is kept, so a
                              name may repeat under overwrite/warn.
    """
    if on_collision not in COLLISION_POLICIES:
        raise ConfigurationError(
            f"on_collision must be one of {COLLISION_POLICIES}, got '{on_collision}'"
        )
    file_name_fn = file_name_fn or default_file_name

    plan = []
    seen: Dict[str, int] = {}
    for position, image in enumerate(images):
        name = file_name_fn(image, prefix)
        if name in seen:
            message = (
                f"Export name '{name}' of image {position} collides with image {seen[name]}"
            )
            if on_collision == 'error':
                raise ConfigurationError(message)
            if on_collision == 'warn':
                logger.warning(f"{message}; the later image overwrites the earlier one")
        seen[name] = position
        plan.append((name, image))
    return plan


def write_geotiff(image: Image, output_path: str, dtype: str = 'float32') -> str:
    """
    Write an image as a multi-band GeoTIFF.

    Band descriptions are the band names, masked pixels are written as NaN
    nodata, and image properties are stored as dataset tags.

    Parameters:
    -----------
    image : Image
        Image with a CRS and transform
    output_path : str
        Destination file (overwritten if it exists)
    dtype : str
        Floating-point output dtype (default: 'float32')

    Returns:
    --------
    str : output_path
    """
    if image.transform is None or image.crs is None:
        raise ConfigurationError("Image needs a CRS and transform to be written as GeoTIFF")
    if not image.band_names:
        raise ConfigurationError("Image has no bands to write")

    height, width = image.shape
    meta = {
        'driver': 'GTiff',
        'height': height,
        'width': width,
        'count': len(image.band_names),
        'dtype': dtype,
        'crs': image.crs,
        'transform': image.transform,
        'nodata': np.nan,
    }

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with rasterio.open(output_path, 'w', **meta) as dst:
        for band_idx, name in enumerate(image.band_names, 1):
            band = image[name].astype(dtype)
            dst.write(band.filled(np.nan), band_idx)
            dst.set_band_description(band_idx, name)

        dst.update_tags(**{key: str(value) for key, value in image.properties.items()})

    logger.info(f"Saved {output_path} ({len(image.band_names)} bands)")
    return output_path


def read_geotiff(path: str) -> Image:
    """Read a GeoTIFF into an Image; nodata pixels become masked."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Image file not found: {path}")

    with rasterio.open(path) as src:
        data = src.read(masked=True)
        names = [
            desc if desc else f"Band{idx}"
            for idx, desc in enumerate(src.descriptions, 1)
        ]
        properties = src.tags()
        crs = src.crs
        transform = src.transform

    if 'year' in properties and properties['year'].isdigit():
        properties['year'] = int(properties['year'])
    bands = {name: data[i] for i, name in enumerate(names)}
    return Image(bands, crs=crs, transform=transform, properties=properties)


def export_collection(
    images: Sequence[Image],
    output_dir: str,
    prefix: str,
    file_name_fn: Optional[FileNameFunction] = None,
    on_collision: str = 'overwrite'
) -> List[str]:
    """
    Write every image of a normalised collection to output_dir.

    Returns:
    --------
    List[str] : Distinct written paths, in first-written order
    """
    check_band_consistency(images)
    plan = plan_exports(images, prefix, file_name_fn=file_name_fn, on_collision=on_collision)

    os.makedirs(output_dir, exist_ok=True)
    written = []
    for name, image in plan:
        path = write_geotiff(image, os.path.join(output_dir, f"{name}.tif"))
        if path not in written:
            written.append(path)

    logger.info(f"Exported {len(plan)} image(s) to {len(written)} file(s) in {output_dir}")
    return written
