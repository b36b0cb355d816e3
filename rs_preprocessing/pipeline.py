"""
End-to-end time-series runs driven by a PipelineConfig.

interval generation -> per-interval composite (masks, indices, NDRS) ->
band normalisation -> export
"""

import logging
from typing import List, Optional, Sequence

from . import earth_engine
from .bands import get_aliases
from .compositor import CompositeCollection, SceneSource, composite_time_series
from .config import PipelineConfig
from .errors import ConfigurationError
from .export import export_collection
from .image import parse_aoi
from .indices import add_ndrs
from .landcover import AnnualLandcover
from .logging_utils import log_section, timer
from .masks import build_mask_chain
from .normalize import normalize_bands

logger = logging.getLogger(__name__)


def _ndrs_steps(config: PipelineConfig, landcover: Optional[AnnualLandcover], aoi):
    forest_types = config.time_series.ndrs_forest_types
    if not forest_types:
        return []
    if 'DRS' not in config.time_series.indices:
        raise ConfigurationError("NDRS needs the DRS index; add 'DRS' to indices")
    if landcover is None:
        raise ConfigurationError("NDRS needs an AnnualLandcover; pass landcover or clear ndrs_forest_types")
    return [
        lambda image, types=types: add_ndrs(image, landcover, forest_types=types, aoi=aoi)
        for types in forest_types
    ]


def run_time_series(
    config: PipelineConfig,
    sources: Sequence[SceneSource],
    output_dir: str,
    landcover: Optional[AnnualLandcover] = None,
    max_workers: int = 1
) -> List[str]:
    """
    Composite, normalise and export a local time series.

    Parameters:
    -----------
    config : PipelineConfig
        Time series and export settings
    sources : Sequence[SceneSource]
        Raw scenes per sensor
    output_dir : str
        Directory for the exported GeoTIFFs
    landcover : Optional[AnnualLandcover]
        Required when config.time_series.ndrs_forest_types is not empty
    max_workers : int
        Threads for interval compositing (default: 1)

    Returns:
    --------
    List[str] : Written GeoTIFF paths
    """
    ts = config.time_series
    aliases = get_aliases(ts.sensor)
    aoi = parse_aoi(ts.aoi) if ts.aoi else None

    log_section(logger, "TIME SERIES")
    logger.info(f"Sensor: {ts.sensor}")
    logger.info(f"Date range: {ts.start_date} to {ts.end_date} every {ts.step} {ts.unit}")
    logger.info(f"Window: {ts.window} {ts.window_unit}, statistic: {ts.statistic}")
    logger.info(f"Indices: {ts.indices}")

    intervals = config.time_series.intervals()
    with timer(logger, f"Compositing {len(intervals)} interval(s)"):
        collection: CompositeCollection = composite_time_series(
            intervals,
            sources,
            aoi=aoi,
            mask_chain=build_mask_chain(ts.masks, aliases),
            indices=ts.indices,
            statistic=ts.statistic,
            aliases=aliases,
            post=_ndrs_steps(config, landcover, aoi),
            max_workers=max_workers
        )

    images = collection.images()
    if not images:
        logger.warning("No successful composites; nothing to export")
        return []

    log_section(logger, "EXPORT")
    normalized = normalize_bands(images, drop=ts.drop_bands)
    return export_collection(
        normalized,
        output_dir,
        config.export.prefix,
        on_collision=config.export.on_collision
    )


def run_ee_time_series(config: PipelineConfig, submit: bool = True):
    """
    Build the Earth Engine time series for config and submit Drive exports.

    Returns:
    --------
    Tuple[CompositeCollection, List[ee.batch.Task]] : Per-interval results
        and the started tasks (empty when submit is False)
    """
    ts = config.time_series
    if not ts.aoi:
        raise ConfigurationError("Earth Engine runs need an aoi")
    region = earth_engine.to_ee_geometry(ts.aoi)
    aliases = get_aliases(ts.sensor)

    post = []
    if ts.ndrs_forest_types:
        if 'DRS' not in ts.indices:
            raise ConfigurationError("NDRS needs the DRS index; add 'DRS' to indices")
        for types in ts.ndrs_forest_types:
            post.append(
                lambda image, interval, types=types: earth_engine.ee_add_ndrs(
                    image, region, interval.year, forest_types=types
                )
            )

    log_section(logger, "EARTH ENGINE TIME SERIES")
    results = earth_engine.ee_time_series(
        ts.intervals(),
        ts.sensors(),
        region,
        post=post,
        masks=ts.masks,
        indices=ts.indices,
        statistic=ts.statistic,
        aliases=aliases,
        max_cloud_cover=ts.max_cloud_cover
    )

    tasks = []
    if submit:
        log_section(logger, "EARTH ENGINE EXPORT")
        tasks = earth_engine.export_image_collection(
            results,
            region,
            folder=config.export.folder,
            prefix=config.export.prefix,
            scale=config.export.scale,
            crs=config.export.crs,
            drop=ts.drop_bands,
            on_collision=config.export.on_collision
        )
    return results, tasks
