"""
In-memory raster image model and area-of-interest helpers.

An Image is an ordered set of named 2-D bands on one grid, stored as numpy
masked arrays. Masked pixels are undefined: they are excluded from per-pixel
math and from reductions, never treated as zero. Every operation returns a
new Image and leaves its input untouched.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.features import geometry_mask
from rasterio.transform import array_bounds
from shapely.geometry import Point, Polygon, box, mapping
from shapely.geometry.base import BaseGeometry

from .errors import ConfigurationError


def _as_masked(values: Any) -> np.ma.MaskedArray:
    array = np.ma.asarray(values)
    if array.ndim != 2:
        raise ConfigurationError(f"Bands must be 2-D arrays, got shape {array.shape}")
    mask = np.ma.getmaskarray(array).copy()
    if np.issubdtype(array.dtype, np.floating):
        mask |= ~np.isfinite(np.ma.getdata(array))
    return np.ma.MaskedArray(np.ma.getdata(array).copy(), mask=mask)


class Image:
    """
    A multi-band raster held in memory.

    Parameters:
    -----------
    bands : Mapping[str, array-like]
        Band name to 2-D array. Non-finite float values become masked.
    crs : Optional[Union[str, rasterio.crs.CRS]]
        Coordinate reference system of the grid
    transform : Optional[rasterio.Affine]
        Affine transform of the grid
    properties : Optional[Dict]
        Scalar metadata (date, year, month, sensor, cloud cover, ...)
    """

    def __init__(
        self,
        bands: Mapping[str, Any],
        crs: Optional[Union[str, rasterio.crs.CRS]] = None,
        transform: Optional[rasterio.Affine] = None,
        properties: Optional[Dict[str, Any]] = None
    ):
        self._bands = OrderedDict()
        shape = None
        for name, values in bands.items():
            array = _as_masked(values)
            if shape is None:
                shape = array.shape
            elif array.shape != shape:
                raise ConfigurationError(
                    f"Band '{name}' has shape {array.shape}, expected {shape}"
                )
            self._bands[name] = array
        self._shape = shape
        self.crs = crs
        self.transform = transform
        self.properties = dict(properties or {})

    def __repr__(self) -> str:
        return f"Image(bands={self.band_names}, shape={self.shape}, properties={self.properties})"

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __getitem__(self, name: str) -> np.ma.MaskedArray:
        try:
            return self._bands[name]
        except KeyError:
            raise KeyError(f"Band '{name}' not found. Available bands: {self.band_names}")

    @property
    def band_names(self) -> List[str]:
        return list(self._bands)

    @property
    def shape(self) -> Optional[Tuple[int, int]]:
        return self._shape

    @property
    def dtypes(self) -> Dict[str, np.dtype]:
        return {name: band.dtype for name, band in self._bands.items()}

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    @property
    def date(self) -> Optional[datetime]:
        value = self.properties.get('date')
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        return datetime.strptime(str(value)[:10], '%Y-%m-%d')

    def _derive(self, bands: Mapping[str, Any], properties: Optional[Dict] = None) -> 'Image':
        return Image(
            bands,
            crs=self.crs,
            transform=self.transform,
            properties=self.properties if properties is None else properties
        )

    def copy(self) -> 'Image':
        return self._derive(self._bands)

    def set(self, **properties: Any) -> 'Image':
        """Return a copy with properties added or replaced."""
        merged = dict(self.properties)
        merged.update(properties)
        return self._derive(self._bands, merged)

    def select(self, names: Union[str, Sequence[str]]) -> 'Image':
        if isinstance(names, str):
            names = [names]
        missing = [n for n in names if n not in self._bands]
        if missing:
            raise KeyError(f"Bands {missing} not found. Available bands: {self.band_names}")
        return self._derive(OrderedDict((n, self._bands[n]) for n in names))

    def drop(self, names: Iterable[str]) -> 'Image':
        names = set(names)
        return self._derive(OrderedDict((n, b) for n, b in self._bands.items() if n not in names))

    def rename(self, mapping_: Mapping[str, str]) -> 'Image':
        return self._derive(OrderedDict((mapping_.get(n, n), b) for n, b in self._bands.items()))

    def add_bands(self, other: Union['Image', Mapping[str, Any]], overwrite: bool = False) -> 'Image':
        """
        Append bands from another image or mapping.

        Existing band names are replaced in place when overwrite is True and
        rejected otherwise.
        """
        new_bands = other._bands if isinstance(other, Image) else other
        bands = OrderedDict(self._bands)
        for name, values in new_bands.items():
            if name in bands and not overwrite:
                raise ConfigurationError(f"Band '{name}' already exists in image")
            bands[name] = values
        return self._derive(bands)

    def update_mask(self, valid: Any) -> 'Image':
        """
        AND a boolean validity grid into every band's mask.

        Pixels where valid is False (or itself masked) become undefined.
        """
        valid = np.ma.asarray(valid)
        if valid.shape != self.shape:
            raise ConfigurationError(f"Mask shape {valid.shape} does not match image shape {self.shape}")
        invalid = ~np.ma.getdata(valid).astype(bool) | np.ma.getmaskarray(valid)
        bands = OrderedDict(
            (name, np.ma.MaskedArray(np.ma.getdata(band), mask=np.ma.getmaskarray(band) | invalid))
            for name, band in self._bands.items()
        )
        return self._derive(bands)

    def valid_mask(self) -> np.ndarray:
        """Boolean grid, True where every band is defined."""
        valid = np.ones(self.shape, dtype=bool)
        for band in self._bands.values():
            valid &= ~np.ma.getmaskarray(band)
        return valid

    def astype(self, dtype: Any) -> 'Image':
        return self._derive(OrderedDict(
            (name, band.astype(dtype)) for name, band in self._bands.items()
        ))

    def same_grid(self, other: 'Image') -> bool:
        return self.shape == other.shape and self.transform == other.transform

    def footprint(self) -> BaseGeometry:
        """Bounding polygon of the grid in its CRS."""
        if self.transform is None or self.shape is None:
            raise ConfigurationError("Image has no transform; cannot compute footprint")
        height, width = self.shape
        west, south, east, north = array_bounds(height, width, self.transform)
        return box(west, south, east, north)

    def intersects(self, aoi: Optional[BaseGeometry]) -> bool:
        if aoi is None:
            return True
        return self.footprint().intersects(aoi)

    def clip(self, aoi: Optional[BaseGeometry]) -> 'Image':
        """Mask pixels whose centres fall outside the area of interest."""
        if aoi is None:
            return self.copy()
        if self.transform is None:
            raise ConfigurationError("Image has no transform; cannot clip to area of interest")
        inside = geometry_mask(
            [mapping(aoi)],
            out_shape=self.shape,
            transform=self.transform,
            invert=True
        )
        return self.update_mask(inside)


def parse_aoi(
    coordinates: Union[Tuple[float, float], List[List[float]], List[float], BaseGeometry],
    buffer_distance: float = 0.0
) -> BaseGeometry:
    """
    Convert coordinates to a shapely area of interest.

    Parameters:
    -----------
    coordinates : Union[Tuple[float, float], List[List[float]], List[float], BaseGeometry]
        Either:
        - Point: (x, y) tuple, buffered by buffer_distance (CRS units)
        - Polygon: list of [x, y] coordinate pairs
        - Bounding box: [min_x, min_y, max_x, max_y]
        - shapely geometry: passed through
    buffer_distance : float
        Buffer applied to point coordinates (default: 0.0)

    Returns:
    --------
    BaseGeometry : Immutable shapely geometry
    """
    if isinstance(coordinates, BaseGeometry):
        return coordinates

    if isinstance(coordinates, tuple) and len(coordinates) == 2:
        x, y = coordinates
        point = Point(x, y)
        return point.buffer(buffer_distance) if buffer_distance else point

    if isinstance(coordinates, (list, tuple)) and len(coordinates) > 0:
        if all(isinstance(c, (list, tuple)) and len(c) == 2 for c in coordinates):
            if len(coordinates) < 3:
                raise ConfigurationError("Polygon coordinates need at least 3 [x, y] pairs")
            return Polygon(coordinates)
        if len(coordinates) == 4 and all(isinstance(c, (int, float)) for c in coordinates):
            return box(*coordinates)

    raise ConfigurationError(
        "Coordinates must be either a (x, y) tuple, "
        "a list of [x, y] pairs for a polygon, "
        "a [min_x, min_y, max_x, max_y] bounding box, "
        "or a shapely geometry"
    )
