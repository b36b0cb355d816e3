"""
Interval compositing for the local back end.

For each interval: filter scenes by date and area of interest, harmonise and
scale them per sensor, mask, add indices, reduce per band, clip and stamp
the interval metadata.
"""

import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
from shapely.geometry.base import BaseGeometry

from .bands import BandAliases
from .dates import Interval
from .errors import ConfigurationError, EmptyResultError
from .image import Image
from .indices import add_indices
from .masks import MaskFunction, apply_mask_chain
from .sensors import SensorSpec, prepare_scene

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_EMPTY = 'empty'
STATUS_ERROR = 'error'


@dataclass
class SceneSource:
    """Raw scenes of one sensor. Each scene needs a 'date' property."""
    sensor: SensorSpec
    scenes: Sequence[Image] = field(default_factory=list)
    max_cloud_cover: Optional[float] = None

    def accepts(self, scene: Image, interval: Interval, aoi: Optional[BaseGeometry]) -> bool:
        date = scene.date
        if date is None or not interval.contains(date):
            return False
        if self.max_cloud_cover is not None and self.sensor.cloud_property:
            cloud = scene.get(self.sensor.cloud_property)
            if cloud is not None and cloud > self.max_cloud_cover:
                return False
        return scene.intersects(aoi)


# ============================================================================
# REDUCERS
# ============================================================================

def _reduce_first(stack: np.ma.MaskedArray) -> np.ma.MaskedArray:
    result = np.ma.masked_all(stack.shape[1:], dtype=stack.dtype)
    for layer in stack:
        fill = np.ma.getmaskarray(result) & ~np.ma.getmaskarray(layer)
        result[fill] = layer[fill]
    return result


REDUCERS: Dict[str, Callable[[np.ma.MaskedArray], np.ma.MaskedArray]] = {
    'mean': lambda stack: stack.mean(axis=0),
    'median': lambda stack: np.ma.median(stack, axis=0),
    'max': lambda stack: stack.max(axis=0),
    'min': lambda stack: stack.min(axis=0),
    'first': _reduce_first,
}


def reduce_images(images: Sequence[Image], statistic: str = 'mean') -> Image:
    """
    Reduce a stack of same-grid images per band, ignoring masked pixels.

    Bands missing from some images are reduced over the images that carry
    them. 'first' takes the first defined value in list order. Pixels with
    no defined value stay masked.
    """
    if statistic not in REDUCERS:
        raise ConfigurationError(
            f"Unknown statistic '{statistic}'. Choose from: {sorted(REDUCERS)}"
        )
    if not images:
        raise EmptyResultError("No images to reduce")

    reference = images[0]
    for image in images[1:]:
        if not image.same_grid(reference):
            raise ConfigurationError(
                f"Scenes do not share a grid: {image.shape} vs {reference.shape}"
            )

    band_names = []
    for image in images:
        band_names.extend(n for n in image.band_names if n not in band_names)

    reducer = REDUCERS[statistic]
    bands = OrderedDict()
    for name in band_names:
        stack = np.ma.stack([image[name] for image in images if name in image])
        reduced = reducer(stack)
        bands[name] = np.ma.MaskedArray(
            np.ma.getdata(reduced),
            mask=np.ma.getmaskarray(reduced)
        )
    return Image(bands, crs=reference.crs, transform=reference.transform)


# ============================================================================
# COMPOSITES
# ============================================================================

def interval_stamp(interval: Interval) -> Dict[str, object]:
    """Interval metadata carried by every composite, used for export naming."""
    return {
        'date': interval.label,
        'year': interval.year,
        'month': interval.month,
        'interval_end': interval.end.strftime('%Y-%m-%d'),
    }


def empty_composite(template: Image, interval: Interval, statistic: str = 'mean') -> Image:
    """
    Fully masked composite for an interval without contributing scenes.

    Band names and grid come from template, so the result exports alongside
    the interval's neighbours.
    """
    bands = OrderedDict(
        (name, np.ma.MaskedArray(np.full(template.shape, np.nan), mask=True))
        for name in template.band_names
    )
    return Image(
        bands,
        crs=template.crs,
        transform=template.transform,
        properties=dict(interval_stamp(interval), scene_count=0, statistic=statistic)
    )


def composite(
    interval: Interval,
    sources: Sequence[SceneSource],
    aoi: Optional[BaseGeometry] = None,
    mask_chain: Iterable[MaskFunction] = (),
    indices: Sequence[str] = (),
    statistic: str = 'mean',
    aliases: Optional[BandAliases] = None,
    select: Optional[Sequence[str]] = None
) -> Image:
    """
    Build one composite for an interval.

    Parameters:
    -----------
    interval : Interval
        Half-open window [start, end)
    sources : Sequence[SceneSource]
        Scene sources; merged in sensor priority order (Landsat 7 last)
    aoi : Optional[BaseGeometry]
        Scenes must intersect it; the result is clipped to it
    mask_chain : Iterable[MaskFunction]
        Masks applied to each scaled scene, in order
    indices : Sequence[str]
        Index names appended to each scene before reduction
    statistic : str
        'mean', 'median', 'max', 'min' or 'first'
    aliases : Optional[BandAliases]
        Alias map for index inputs (default: each source sensor's own)
    select : Optional[Sequence[str]]
        Restrict the output to these bands

    Returns:
    --------
    Image : Composite with date, year, month, interval_end and scene_count
            properties

    Raises:
    -------
    EmptyResultError
        If no scene falls in the interval and area of interest
    ConfigurationError
        If the scenes do not share a grid or a parameter is invalid
    """
    if statistic not in REDUCERS:
        raise ConfigurationError(
            f"Unknown statistic '{statistic}'. Choose from: {sorted(REDUCERS)}"
        )
    mask_chain = list(mask_chain)
    stamp = interval_stamp(interval)

    prepared = []
    # Stable sort keeps caller order among equal priorities
    for source in sorted(sources, key=lambda s: -s.sensor.priority):
        accepted = [s for s in source.scenes if source.accepts(s, interval, aoi)]
        accepted.sort(key=lambda s: s.date)
        for scene in accepted:
            # Interval properties go on first so year-dependent masks can run
            image = prepare_scene(scene, source.sensor).set(**stamp)
            image = apply_mask_chain(image, mask_chain)
            if indices:
                image = add_indices(image, indices, aliases or source.sensor.aliases)
            prepared.append(image)

    if not prepared:
        raise EmptyResultError(f"No scenes between {interval.label} and {stamp['interval_end']}")

    result = reduce_images(prepared, statistic).clip(aoi)
    if select:
        result = result.select(list(select))
    return result.set(scene_count=len(prepared), statistic=statistic, **stamp)


@dataclass
class IntervalResult:
    interval: Interval
    status: str
    image: Optional[Image] = None
    error: Optional[str] = None


class CompositeCollection:
    """Per-interval composite results in interval order."""

    def __init__(self, results: Sequence[IntervalResult]):
        self.results = list(results)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[IntervalResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> IntervalResult:
        return self.results[index]

    def images(self) -> List[Image]:
        """
        Images to export, in interval order: successful composites and the
        fully masked stand-ins of empty intervals. Failed intervals have none.
        """
        return [r.image for r in self.results if r.image is not None]

    def failed(self) -> List[IntervalResult]:
        return [r for r in self.results if r.status == STATUS_ERROR]

    def summary(self) -> Dict[str, int]:
        counts = {STATUS_SUCCESS: 0, STATUS_EMPTY: 0, STATUS_ERROR: 0}
        for result in self.results:
            counts[result.status] += 1
        return counts


def composite_time_series(
    intervals: Sequence[Interval],
    sources: Sequence[SceneSource],
    aoi: Optional[BaseGeometry] = None,
    mask_chain: Iterable[MaskFunction] = (),
    indices: Sequence[str] = (),
    statistic: str = 'mean',
    aliases: Optional[BandAliases] = None,
    select: Optional[Sequence[str]] = None,
    post: Sequence[Callable[[Image], Image]] = (),
    max_workers: int = 1
) -> CompositeCollection:
    """
    Composite every interval, recording a status per interval.

    An interval with no scenes is recorded as 'empty' and any other failure
    as 'error'; neither stops the run. Empty intervals carry a fully masked
    image shaped like the first successful composite (none when no interval
    succeeded). post callables (e.g. NDRS) run on each successful composite
    in order. With max_workers > 1 intervals are processed on a thread pool;
    results keep interval order.
    """
    mask_chain = list(mask_chain)

    def run(interval: Interval) -> IntervalResult:
        try:
            image = composite(
                interval, sources, aoi=aoi, mask_chain=mask_chain, indices=indices,
                statistic=statistic, aliases=aliases, select=select
            )
            for step in post:
                image = step(image)
        except EmptyResultError as e:
            logger.warning(f"{interval.label}: empty ({e})")
            return IntervalResult(interval, STATUS_EMPTY, error=str(e))
        except Exception as e:
            logger.error(f"{interval.label}: failed ({e})")
            return IntervalResult(interval, STATUS_ERROR, error=str(e))
        logger.info(f"{interval.label}: composite from {image.get('scene_count')} scene(s)")
        return IntervalResult(interval, STATUS_SUCCESS, image=image)

    if max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(run, intervals))
    else:
        results = [run(interval) for interval in intervals]

    template = next((r.image for r in results if r.status == STATUS_SUCCESS), None)
    if template is not None:
        for result in results:
            if result.status == STATUS_EMPTY:
                result.image = empty_composite(template, result.interval, statistic)

    collection = CompositeCollection(results)
    logger.info(f"Time series complete: {collection.summary()}")
    return collection
