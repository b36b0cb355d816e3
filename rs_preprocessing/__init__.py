"""
rs_preprocessing

Remote-sensing preprocessing: spectral indices, cloud / snow / land-cover
masks, interval composites from Landsat, Sentinel-2 and MODIS imagery,
band normalisation, GeoTIFF export and year-grouped tile mosaics. Runs
in memory on numpy arrays or lazily on Google Earth Engine.
"""

from .dates import (
    Interval,
    advance,
    chunk_intervals,
    generate_intervals,
    make_intervals,
)

from .image import Image, parse_aoi

from .indices import (
    INDEX_DEFINITIONS,
    add_index,
    add_indices,
    add_ndrs,
    add_ndrs_stressed,
    add_snow,
    available_indices,
    compute_index,
)

from .masks import (
    apply_mask_chain,
    combine_masks,
    mask_cloud,
    mask_cloud_snow,
    mask_dynamic_world,
    mask_forest_age,
    mask_landcover,
)

from .compositor import (
    CompositeCollection,
    SceneSource,
    composite,
    composite_time_series,
)

from .normalize import check_band_consistency, normalize_bands

from .export import default_file_name, export_collection, plan_exports, write_geotiff

from .mosaic import (
    group_tiles_by_year,
    mosaic,
    mosaic_by_year,
    mosaic_directory,
    parse_year_token,
)

from .config import PipelineConfig, load_config

from .errors import (
    BandMismatchError,
    ConfigurationError,
    EmptyResultError,
    ExternalServiceError,
    InvalidRangeError,
    PreprocessingError,
)

__all__ = [
    # Dates
    'Interval',
    'advance',
    'chunk_intervals',
    'generate_intervals',
    'make_intervals',
    # Images
    'Image',
    'parse_aoi',
    # Indices
    'INDEX_DEFINITIONS',
    'add_index',
    'add_indices',
    'add_ndrs',
    'add_ndrs_stressed',
    'add_snow',
    'available_indices',
    'compute_index',
    # Masks
    'apply_mask_chain',
    'combine_masks',
    'mask_cloud',
    'mask_cloud_snow',
    'mask_dynamic_world',
    'mask_forest_age',
    'mask_landcover',
    # Compositing
    'CompositeCollection',
    'SceneSource',
    'composite',
    'composite_time_series',
    # Export
    'check_band_consistency',
    'normalize_bands',
    'default_file_name',
    'export_collection',
    'plan_exports',
    'write_geotiff',
    # Mosaics
    'group_tiles_by_year',
    'mosaic',
    'mosaic_by_year',
    'mosaic_directory',
    'parse_year_token',
    # Configuration
    'PipelineConfig',
    'load_config',
    # Errors
    'BandMismatchError',
    'ConfigurationError',
    'EmptyResultError',
    'ExternalServiceError',
    'InvalidRangeError',
    'PreprocessingError',
]

__version__ = '0.1.0'
