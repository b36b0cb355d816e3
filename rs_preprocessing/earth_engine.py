"""
Earth Engine back end.

Builds the same pipeline as the local back end (scale factors, masks,
indices, interval composites) as lazy ee.Image / ee.ImageCollection graphs.
Only getInfo(), task submission and downloads block. Engine failures are
raised as ExternalServiceError naming the interval or file they concern.

Authenticate once with `earthengine authenticate`, then call initialize().
"""

import io
import logging
import os
import shutil
import tempfile
import zipfile
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import ee
import rasterio
import requests
from ee.ee_exception import EEException
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from .bands import BandAliases
from .compositor import (
    STATUS_EMPTY, STATUS_ERROR, STATUS_SUCCESS, CompositeCollection, IntervalResult,
    interval_stamp
)
from .dates import Interval
from .errors import ConfigurationError, EmptyResultError, ExternalServiceError
from .export import plan_exports
from .image import parse_aoi
from .indices import get_index, ndrs_band_name
from .landcover import CONIFEROUS, FOREST_CLASSES
from .masks import (
    DYNAMIC_WORLD_CLASSES, QA_CLOUD, QA_CLOUD_SHADOW, QA_FILL, QA_SNOW,
    RADSAT_TERRAIN_OCCLUSION, S2_CIRRUS, S2_OPAQUE_CLOUD, SCL_SNOW,
    SCL_VEGETATION, SCL_WATER
)
from .sensors import SensorSpec, order_by_priority

logger = logging.getLogger(__name__)

LANDCOVER_COLLECTION = 'projects/sat-io/open-datasets/CA_FOREST_LC_VLCE2'
LANDCOVER_LAST_YEAR = 2019
FOREST_AGE_IMAGE = 'projects/sat-io/open-datasets/CA_FOREST/CA_forest_age_2019'
DYNAMIC_WORLD_COLLECTION = 'GOOGLE/DYNAMICWORLD/V1'

# QA bands carried through band harmonisation untouched
PASSTHROUGH_BANDS = ('QA_PIXEL', 'QA_RADSAT')

EEMask = Callable[[ee.Image, BandAliases], ee.Image]


def initialize(project: Optional[str] = None) -> None:
    """
    Initialize the Earth Engine client.

    Raises:
    -------
    ExternalServiceError
        If the client is not authenticated or the project is not accessible
    """
    try:
        ee.Initialize(project=project)
    except EEException as e:
        raise ExternalServiceError(
            f"Earth Engine initialization failed ({e}). "
            "Authenticate by running 'earthengine authenticate' in your terminal."
        )
    logger.info(f"Earth Engine initialized (project: {project or 'default'})")


def to_ee_geometry(
    aoi: Union[Tuple[float, float], List[List[float]], List[float], BaseGeometry, ee.Geometry],
    buffer_distance: int = 10000
) -> ee.Geometry:
    """
    Convert an area of interest to ee.Geometry.

    Parameters:
    -----------
    aoi : Union[Tuple[float, float], List[List[float]], List[float], BaseGeometry, ee.Geometry]
        Either:
        - Point: (lon, lat) tuple, buffered by buffer_distance metres
        - Polygon: list of [lon, lat] pairs
        - Bounding box: [min_lon, min_lat, max_lon, max_lat]
        - shapely geometry in EPSG:4326
        - ee.Geometry: passed through
    buffer_distance : int
        Buffer in metres for point coordinates (default: 10000)
    """
    if isinstance(aoi, tuple) and len(aoi) == 2:
        lon, lat = aoi
        return ee.Geometry.Point([lon, lat]).buffer(buffer_distance)
    if hasattr(aoi, 'getInfo'):
        return aoi
    return ee.Geometry(mapping(parse_aoi(aoi)))


# ============================================================================
# SCENES
# ============================================================================

def ee_harmonize_bands(image: ee.Image, sensor: SensorSpec) -> ee.Image:
    """Rename Landsat 8/9 bands to the TM/ETM+ convention, dropping the extras."""
    if not sensor.rename:
        return image
    sources = list(sensor.rename) + list(PASSTHROUGH_BANDS)
    targets = list(sensor.rename.values()) + list(PASSTHROUGH_BANDS)
    return image.select(sources, targets)


def ee_apply_scale_factors(image: ee.Image, sensor: SensorSpec) -> ee.Image:
    """value * multiply + add for every band matching a scale rule."""
    for pattern, multiply, add in sensor.scale_rules:
        scaled = image.select(pattern).multiply(multiply).add(add)
        image = image.addBands(scaled, None, True)
    return image


def prepare_ee_scene(image: ee.Image, sensor: SensorSpec) -> ee.Image:
    image = ee_harmonize_bands(image, sensor)
    image = ee_apply_scale_factors(image, sensor)
    return image.set({'sensor': sensor.name, 'priority': sensor.priority})


def scene_collection(
    sensor: SensorSpec,
    interval: Interval,
    region: ee.Geometry,
    max_cloud_cover: Optional[float] = None
) -> ee.ImageCollection:
    """Scaled, harmonised scenes of one sensor in [interval.start, interval.end)."""
    collection = (
        ee.ImageCollection(sensor.collection_id)
        .filterDate(interval.label, interval.end.strftime('%Y-%m-%d'))
        .filterBounds(region)
    )
    if max_cloud_cover is not None and sensor.cloud_property:
        collection = collection.filter(ee.Filter.lt(sensor.cloud_property, max_cloud_cover))
    return collection.map(lambda img: prepare_ee_scene(img, sensor))


def merged_collection(
    sensors: Sequence[SensorSpec],
    interval: Interval,
    region: ee.Geometry,
    max_cloud_cover: Optional[float] = None
) -> ee.ImageCollection:
    """Union of sensor collections, merged highest priority first."""
    if not sensors:
        raise ConfigurationError("At least one sensor is required")
    merged = None
    for sensor in order_by_priority(sensors):
        collection = scene_collection(sensor, interval, region, max_cloud_cover)
        merged = collection if merged is None else merged.merge(collection)
    return merged


# ============================================================================
# MASKS
# ============================================================================

def _ee_bits_clear(band: str, bits: Sequence[int]) -> EEMask:
    bitmask = 0
    for bit in bits:
        bitmask |= 1 << bit

    def mask(image: ee.Image, aliases: BandAliases) -> ee.Image:
        name = aliases[band] if band in aliases else band
        return image.updateMask(image.select(name).bitwiseAnd(bitmask).eq(0))
    return mask


def _ee_negative_reflectance(image: ee.Image, aliases: BandAliases) -> ee.Image:
    lowest = image.select(aliases.reflectance_bands()).reduce(ee.Reducer.min())
    return image.updateMask(lowest.gte(0))


def _ee_scl(value: int, keep: bool) -> EEMask:
    def mask(image: ee.Image, aliases: BandAliases) -> ee.Image:
        scl = image.select(aliases['scl'])
        return image.updateMask(scl.eq(value) if keep else scl.neq(value))
    return mask


EE_MASKS: Dict[str, EEMask] = {
    'mask_cloud': _ee_bits_clear('qa', (QA_CLOUD, QA_CLOUD_SHADOW)),
    'mask_cloud_snow': _ee_bits_clear('qa', (QA_CLOUD, QA_CLOUD_SHADOW, QA_SNOW)),
    'mask_fill': _ee_bits_clear('qa', (QA_FILL,)),
    'mask_qa_radsat': _ee_bits_clear('QA_RADSAT', (RADSAT_TERRAIN_OCCLUSION,)),
    'mask_negative_reflectance': _ee_negative_reflectance,
    'mask_s2_clouds': _ee_bits_clear('qa', (S2_OPAQUE_CLOUD, S2_CIRRUS)),
    'mask_s2_snow': _ee_scl(SCL_SNOW, keep=False),
    'mask_s2_water': _ee_scl(SCL_WATER, keep=False),
    'mask_s2_vegetation': _ee_scl(SCL_VEGETATION, keep=True),
}


def get_ee_mask(name: str) -> EEMask:
    try:
        return EE_MASKS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown mask '{name}'. Available masks: {list(EE_MASKS)}")


def ee_landcover(year: int) -> ee.Image:
    """Land-cover classification for a year; years after the last mapped year use that year."""
    year = min(int(year), LANDCOVER_LAST_YEAR)
    return ee.Image(
        ee.ImageCollection(LANDCOVER_COLLECTION)
        .filterDate(f"{year}-01-01", f"{year}-12-31")
        .first()
    )


def ee_mask_landcover(image: ee.Image, year: int, classes: Sequence[int] = (CONIFEROUS,)) -> ee.Image:
    classes = list(classes)
    allowed = ee_landcover(year).remap(classes, [1] * len(classes), 0)
    return image.updateMask(allowed)


def ee_mask_forest_age(image: ee.Image, threshold: float = 60) -> ee.Image:
    return image.updateMask(ee.Image(FOREST_AGE_IMAGE).gt(threshold))


def ee_mask_dynamic_world(
    image: ee.Image,
    date: str,
    target_class: int = 1,
    months: Tuple[int, int] = (6, 9)
) -> ee.Image:
    """Keep pixels whose mean Dynamic World top class over the following year is target_class."""
    start = ee.Date(date)
    probabilities = (
        ee.ImageCollection(DYNAMIC_WORLD_COLLECTION)
        .filterDate(start, start.advance(1, 'year'))
        .filter(ee.Filter.calendarRange(months[0], months[1], 'month'))
        .select(list(DYNAMIC_WORLD_CLASSES))
    )
    top = probabilities.reduce(ee.Reducer.mean()).toArray().arrayArgmax().arrayGet(0)
    return image.updateMask(top.eq(target_class))


# ============================================================================
# INDICES
# ============================================================================

def ee_add_index(image: ee.Image, name: str, aliases: BandAliases) -> ee.Image:
    """Append an index computed with its Earth Engine expression."""
    definition = get_index(name)
    variables = {var: image.select(aliases[role]) for var, role in definition.inputs.items()}
    index = image.expression(definition.expression, variables).rename(definition.name)
    if definition.clamp is not None:
        index = index.clamp(*definition.clamp)
    return image.addBands(index)


def ee_add_indices(image: ee.Image, names: Sequence[str], aliases: BandAliases) -> ee.Image:
    for name in names:
        image = ee_add_index(image, name, aliases)
    return image


def ee_add_ndrs(
    image: ee.Image,
    region: ee.Geometry,
    year: int,
    forest_types: Sequence[int] = FOREST_CLASSES,
    scale: int = 1000
) -> ee.Image:
    """
    Append NDRS, normalising DRS by its min/max over forest pixels in region.

    Blocks on one reduceRegion call to fetch the min and max.
    """
    forest_types = list(forest_types)
    name = ndrs_band_name(forest_types)
    forest = ee_landcover(year).remap(forest_types, [1] * len(forest_types), 0)
    drs = image.select('DRS')

    try:
        stats = drs.updateMask(forest).reduceRegion(
            reducer=ee.Reducer.minMax(),
            geometry=region.bounds(),
            scale=scale,
            maxPixels=1e10,
            bestEffort=True,
            tileScale=8
        ).getInfo()
    except EEException as e:
        raise ExternalServiceError(f"DRS min/max reduction failed: {e}", unit=str(year))

    low, high = stats.get('DRS_min'), stats.get('DRS_max')
    if low is None or high is None or high == low:
        logger.warning(f"No forest DRS range for {name} in {year}; band is fully masked")
        return image.addBands(ee.Image.constant(0).rename(name).updateMask(0))

    ndrs = drs.clamp(low, high).subtract(low).divide(high - low).rename(name)
    return image.addBands(ndrs)


# ============================================================================
# COMPOSITES
# ============================================================================

def _reduce(collection: ee.ImageCollection, statistic: str) -> ee.Image:
    if statistic == 'mean':
        return collection.mean()
    if statistic == 'median':
        return collection.median()
    if statistic == 'max':
        return collection.max()
    if statistic == 'min':
        return collection.min()
    if statistic == 'first':
        # mosaic() puts the last image on top
        return collection.sort('priority').mosaic()
    raise ConfigurationError(
        f"Unknown statistic '{statistic}'. Choose from: ['first', 'max', 'mean', 'median', 'min']"
    )


def ee_composite(
    interval: Interval,
    sensors: Sequence[SensorSpec],
    region: ee.Geometry,
    masks: Sequence[str] = (),
    indices: Sequence[str] = (),
    statistic: str = 'mean',
    aliases: Optional[BandAliases] = None,
    max_cloud_cover: Optional[float] = None,
    select: Optional[Sequence[str]] = None,
    require_scenes: bool = True
) -> ee.Image:
    """
    Build one interval composite as an Earth Engine graph.

    Parameters:
    -----------
    interval : Interval
        Half-open window [start, end)
    sensors : Sequence[SensorSpec]
        Sensors to merge (priority order applied)
    region : ee.Geometry
        Scenes must intersect it; the composite is clipped to it
    masks : Sequence[str]
        Mask names from EE_MASKS, applied in order
    indices : Sequence[str]
        Index names appended before reduction
    statistic : str
        'mean', 'median', 'max', 'min' or 'first'
    aliases : Optional[BandAliases]
        Alias map (default: the first sensor's)
    max_cloud_cover : Optional[float]
        Scene-level cloud filter for sensors that report one
    select : Optional[Sequence[str]]
        Restrict the output to these bands
    require_scenes : bool
        Check the scene count (one blocking call) and raise EmptyResultError
        when it is zero (default: True)

    Returns:
    --------
    ee.Image : Composite with date, year, month, interval_end and
               system:time_start properties
    """
    aliases = aliases or sensors[0].aliases
    mask_functions = [get_ee_mask(name) for name in masks]
    collection = merged_collection(sensors, interval, region, max_cloud_cover)

    if require_scenes:
        try:
            size = collection.size().getInfo()
        except EEException as e:
            raise ExternalServiceError(f"Scene count failed: {e}", unit=interval.label)
        if size == 0:
            raise EmptyResultError(f"No scenes between {interval.label} and {interval.end:%Y-%m-%d}")

    def process(image):
        for mask in mask_functions:
            image = mask(image, aliases)
        return ee_add_indices(image, indices, aliases)

    composite = _reduce(collection.map(process), statistic).clip(region)
    if select:
        composite = composite.select(list(select))
    properties = interval_stamp(interval)
    properties.update({
        'statistic': statistic,
        'system:time_start': ee.Date(interval.label).millis(),
    })
    return composite.set(properties)


def ee_empty_composite(template: ee.Image, interval: Interval, statistic: str = 'mean') -> ee.Image:
    """Fully masked float image with template's band names and the interval's properties."""
    names = template.bandNames()
    empty = (
        ee.Image.constant(ee.List.repeat(0, names.size()))
        .rename(names)
        .toFloat()
        .updateMask(0)
    )
    properties = interval_stamp(interval)
    properties.update({
        'statistic': statistic,
        'scene_count': 0,
        'system:time_start': ee.Date(interval.label).millis(),
    })
    return empty.set(properties)


def ee_time_series(
    intervals: Sequence[Interval],
    sensors: Sequence[SensorSpec],
    region: ee.Geometry,
    post: Sequence[Callable[[ee.Image, Interval], ee.Image]] = (),
    **composite_kwargs
) -> CompositeCollection:
    """
    Composite every interval; empty intervals and engine failures are
    recorded per interval and do not stop the run. Empty intervals carry a
    fully masked image with the first successful composite's bands.

    post callables receive (image, interval), e.g. to add NDRS for the
    interval's year.
    """
    results = []
    for interval in intervals:
        try:
            image = ee_composite(interval, sensors, region, **composite_kwargs)
            for step in post:
                image = step(image, interval)
        except EmptyResultError as e:
            logger.warning(f"{interval.label}: empty ({e})")
            results.append(IntervalResult(interval, STATUS_EMPTY, error=str(e)))
            continue
        except ExternalServiceError as e:
            logger.error(f"{interval.label}: failed ({e})")
            results.append(IntervalResult(interval, STATUS_ERROR, error=str(e)))
            continue
        logger.info(f"{interval.label}: composite graph built")
        results.append(IntervalResult(interval, STATUS_SUCCESS, image=image))

    template = next((r.image for r in results if r.status == STATUS_SUCCESS), None)
    if template is not None:
        statistic = composite_kwargs.get('statistic', 'mean')
        for result in results:
            if result.status == STATUS_EMPTY:
                result.image = ee_empty_composite(template, result.interval, statistic)

    collection = CompositeCollection(results)
    logger.info(f"Earth Engine time series: {collection.summary()}")
    return collection


def ee_normalize_bands(images: Sequence[ee.Image], drop: Sequence[str] = ('QA_PIXEL',)) -> List[ee.Image]:
    """Drop non-data bands and cast every image to float."""
    dropped = set(drop)

    def normalize(image):
        names = image.bandNames().removeAll(list(dropped))
        return image.select(names).toFloat()
    return [normalize(image) for image in images]


# ============================================================================
# EXPORT
# ============================================================================

class _YearStamp:
    """Minimal property view so local file-naming functions work on ee results."""

    def __init__(self, interval: Interval):
        self.properties = {'year': interval.year, 'date': interval.label}

    def get(self, key, default=None):
        return self.properties.get(key, default)


def export_image_collection(
    results: CompositeCollection,
    region: ee.Geometry,
    folder: str,
    prefix: str = 'landsat_multiband',
    scale: int = 30,
    crs: str = 'EPSG:4326',
    file_name_fn=None,
    drop: Sequence[str] = ('QA_PIXEL',),
    on_collision: str = 'overwrite'
) -> List[ee.batch.Task]:
    """
    Submit one Google Drive export task per composite, including the fully
    masked images of empty intervals.

    Parameters:
    -----------
    results : CompositeCollection
        Output of ee_time_series
    region : ee.Geometry
        Export region
    folder : str
        Google Drive folder
    prefix : str
        File name prefix (default: 'landsat_multiband')
    scale : int
        Resolution in metres (default: 30)
    crs : str
        Coordinate reference system (default: 'EPSG:4326')
    file_name_fn : Optional[Callable]
        (properties view, prefix) -> file name (default: <prefix>_<year>)
    drop : Sequence[str]
        Bands removed before export (default: QA_PIXEL)
    on_collision : str
        'overwrite', 'warn' or 'error' when two composites share a file name

    Returns:
    --------
    List[ee.batch.Task] : Started tasks
    """
    exportable = [r for r in results if r.image is not None]
    plan = plan_exports(
        [_YearStamp(r.interval) for r in exportable],
        prefix,
        file_name_fn=file_name_fn,
        on_collision=on_collision
    )
    images = ee_normalize_bands([r.image for r in exportable], drop=drop)

    tasks = []
    for idx, ((name, _), image) in enumerate(zip(plan, images), 1):
        logger.info(f"[{idx}/{len(images)}] Submitting export {name}")
        try:
            task = ee.batch.Export.image.toDrive(
                image=image,
                description=name,
                folder=folder,
                fileNamePrefix=name,
                region=region,
                scale=scale,
                crs=crs,
                maxPixels=1e13
            )
            task.start()
        except EEException as e:
            raise ExternalServiceError(f"Export submission failed: {e}", unit=name)
        tasks.append(task)
    return tasks


def _sort_band_files(tif_files: List[str], band_order: Sequence[str]) -> List[str]:
    """Sort per-band files from a download zip into band_order; unknown bands go last."""
    def get_band_priority(filename: str) -> int:
        # "<id>.<band>.tif"
        parts = filename.split('.')
        for part in parts:
            if part in band_order:
                return list(band_order).index(part)
        return len(band_order)

    return sorted(tif_files, key=get_band_priority)


def download_image(
    image: ee.Image,
    region: ee.Geometry,
    output_path: str,
    scale: int = 30,
    crs: str = 'EPSG:4326',
    band_order: Optional[Sequence[str]] = None,
    timeout: int = 300
) -> str:
    """
    Download a small image via getDownloadURL as one multi-band GeoTIFF.

    Earth Engine returns a zip with one .tif per band; they are merged in
    band_order with band descriptions set to the band names.

    Raises:
    -------
    ExternalServiceError
        If the URL request or download fails, or the zip holds no .tif files
    """
    unit = os.path.basename(output_path)
    try:
        url = image.getDownloadURL({
            'scale': scale,
            'crs': crs,
            'region': region.getInfo()['coordinates']
        })
        response = requests.get(url, stream=True, timeout=timeout)
        response.raise_for_status()
    except (EEException, requests.RequestException) as e:
        raise ExternalServiceError(f"Download failed: {e}", unit=unit)

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with zipfile.ZipFile(io.BytesIO(response.content)) as z:
        tif_files = _sort_band_files(
            [name for name in z.namelist() if name.endswith('.tif')],
            band_order or ()
        )
        if not tif_files:
            raise ExternalServiceError("No .tif files found in downloaded zip", unit=unit)

        temp_dir = tempfile.mkdtemp()
        try:
            band_files = []
            for tif_name in tif_files:
                temp_path = os.path.join(temp_dir, os.path.basename(tif_name))
                with open(temp_path, 'wb') as f:
                    f.write(z.read(tif_name))
                band_files.append(temp_path)

            with rasterio.open(band_files[0]) as src0:
                meta = src0.meta.copy()
                meta.update(count=len(band_files))

            with rasterio.open(output_path, 'w', **meta) as dst:
                for idx, band_file in enumerate(band_files, 1):
                    with rasterio.open(band_file) as src:
                        dst.write(src.read(1), idx)
                    # "<id>.<band>.tif" -> "<band>"
                    dst.set_band_description(idx, os.path.basename(band_file).split('.')[-2])
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    logger.info(f"Saved {len(band_files)}-band image to {output_path}")
    return output_path
