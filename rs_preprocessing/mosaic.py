"""
Mosaicking of GeoTIFF tiles.

Tiles are placed on the union of their extents using the first tile's CRS
and resolution. Overlapping pixels are aggregated by one of the mosaic
functions; nodata pixels never contribute. Tiles can be grouped by the year
token in their file names (e.g. 'tile_07_2019-06-01.tif') and mosaicked one
output per year.
"""

import gc
import glob
import logging
import os
import re
import warnings
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.merge import merge

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MOSAIC_FUNCTIONS = ('mean', 'sum', 'min', 'max', 'median', 'first', 'last')
UNMATCHED_POLICIES = ('warn', 'ignore', 'error')

# Greedy: the last '_YYYY-' in the name wins
YEAR_PATTERN = re.compile(r'.*_(\d{4})-.*')


class YearToken(NamedTuple):
    path: str
    year: Optional[int]
    matched: bool


def parse_year_token(path: str) -> YearToken:
    """Extract the acquisition year from a tile file name."""
    match = YEAR_PATTERN.match(os.path.basename(path))
    if match is None:
        return YearToken(path, None, False)
    return YearToken(path, int(match.group(1)), True)


def list_tiles(directory: str) -> List[str]:
    """All .tif files below directory, sorted."""
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"Input directory not found: {directory}")
    return sorted(glob.glob(os.path.join(directory, '**', '*.tif'), recursive=True))


def group_tiles_by_year(
    tile_files: Sequence[str],
    on_unmatched: str = 'warn'
) -> Dict[int, List[str]]:
    """
    Group tile paths by the year in their file names.

    Parameters:
    -----------
    tile_files : Sequence[str]
        Tile paths
    on_unmatched : str
        What to do with names lacking a '_YYYY-' token: 'warn' (log and
        skip), 'ignore' (skip) or 'error' (raise ConfigurationError)

    Returns:
    --------
    Dict[int, List[str]] : Year to tile paths, years ascending
    """
    if on_unmatched not in UNMATCHED_POLICIES:
        raise ConfigurationError(
            f"on_unmatched must be one of {UNMATCHED_POLICIES}, got '{on_unmatched}'"
        )

    groups: Dict[int, List[str]] = {}
    for path in tile_files:
        token = parse_year_token(path)
        if not token.matched:
            if on_unmatched == 'error':
                raise ConfigurationError(f"No year token ('_YYYY-') in tile name: {path}")
            if on_unmatched == 'warn':
                logger.warning(f"Skipping tile without year token: {os.path.basename(path)}")
            continue
        groups.setdefault(token.year, []).append(path)
    return {year: groups[year] for year in sorted(groups)}


# ============================================================================
# MOSAIC
# ============================================================================

class _MedianStack:
    """
    merge() method that files each tile's valid pixels into the next free
    layer of a per-pixel stack. The stack is as deep as the largest overlap,
    not as deep as the tile list.
    """

    def __init__(self, depth: int, shape: Tuple[int, int, int]):
        self.layers = np.full((max(depth, 1),) + shape, np.nan, dtype=np.float32)
        self.depth = np.zeros(shape, dtype=np.int32)

    def __call__(self, merged_data, new_data, merged_mask, new_mask, index=None, roff=None, coff=None):
        valid = ~np.broadcast_to(np.asarray(new_mask, dtype=bool), new_data.shape)
        rows = slice(roff, roff + new_data.shape[1])
        cols = slice(coff, coff + new_data.shape[2])
        depth = self.depth[:, rows, cols]
        band, row, col = np.nonzero(valid)
        self.layers[depth[band, row, col], band, row + roff, col + coff] = new_data[band, row, col]
        depth[valid] += 1
        np.copyto(merged_data, new_data, where=valid & merged_mask)

    def median(self) -> np.ndarray:
        # All-NaN columns stay NaN
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            return np.nanmedian(self.layers, axis=0)


def _check_tiles(tile_files: Sequence[str]) -> Tuple[dict, Tuple[str, ...]]:
    """Reject tiles that disagree with the first on CRS, resolution or band count."""
    with rasterio.open(tile_files[0]) as first:
        crs = first.crs
        res = first.res
        count = first.count
        descriptions = first.descriptions

    for path in tile_files[1:]:
        with rasterio.open(path) as src:
            if src.crs != crs:
                raise ConfigurationError(
                    f"Tile {os.path.basename(path)} has CRS {src.crs}, expected {crs}"
                )
            if not np.allclose(src.res, res):
                raise ConfigurationError(
                    f"Tile {os.path.basename(path)} has resolution {src.res}, expected {res}"
                )
            if src.count != count:
                raise ConfigurationError(
                    f"Tile {os.path.basename(path)} has {src.count} bands, expected {count}"
                )

    profile = {
        'driver': 'GTiff',
        'count': count,
        'dtype': 'float32',
        'crs': crs,
        'nodata': np.nan,
    }
    return profile, descriptions


def _merge(tile_files: Sequence[str], method) -> Tuple[np.ndarray, rasterio.Affine]:
    return merge(list(tile_files), nodata=np.nan, dtype='float64', method=method)


def _aggregate(tile_files: Sequence[str], fun: str) -> Tuple[np.ndarray, rasterio.Affine]:
    """Overlap aggregation on the union grid; uncovered and all-nodata pixels are NaN."""
    if fun not in ('mean', 'median'):
        return _merge(tile_files, fun)

    counts, transform = _merge(tile_files, 'count')
    if fun == 'mean':
        total, _ = _merge(tile_files, 'sum')
        with np.errstate(divide='ignore', invalid='ignore'):
            return total / counts, transform

    stack = _MedianStack(int(np.nan_to_num(counts).max()), counts.shape)
    del counts
    _merge(tile_files, stack)
    return stack.median(), transform


def mosaic(tile_files: Sequence[str], output_path: str, fun: str = 'mean') -> str:
    """
    Mosaic GeoTIFF tiles into one float32 GeoTIFF.

    Parameters:
    -----------
    tile_files : Sequence[str]
        Tiles sharing a CRS, resolution and band count
    output_path : str
        Destination file (overwritten if it exists)
    fun : str
        Overlap aggregation: 'mean' (default), 'sum', 'min', 'max',
        'median', 'first' or 'last'

    Returns:
    --------
    str : output_path

    Raises:
    -------
    ConfigurationError
        If tile_files is empty, fun is unknown, or the tiles disagree on CRS,
        resolution or band count
    FileNotFoundError
        If a tile does not exist

    Example:
    --------
    >>> mosaic(['tile_a.tif', 'tile_b.tif'], 'mosaic.tif', fun='max')
    'mosaic.tif'
    """
    if not tile_files:
        raise ConfigurationError("tile_files cannot be empty")
    if fun not in MOSAIC_FUNCTIONS:
        raise ConfigurationError(f"Unknown mosaic function '{fun}'. Choose from: {MOSAIC_FUNCTIONS}")
    for path in tile_files:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Tile not found: {path}")

    profile, descriptions = _check_tiles(tile_files)
    result, transform = _aggregate(tile_files, fun)
    profile.update(height=result.shape[1], width=result.shape[2], transform=transform)

    logger.info(f"Mosaicked {len(tile_files)} tile(s) with '{fun}' onto {result.shape[2]}x{result.shape[1]} pixels")

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with rasterio.open(output_path, 'w', **profile) as dst:
        dst.write(result.astype(np.float32))
        for idx, desc in enumerate(descriptions, 1):
            if desc:
                dst.set_band_description(idx, desc)
        dst.update_tags(
            mosaic_function=fun,
            source_tiles=len(tile_files),
        )

    del result
    gc.collect()

    logger.info(f"Saved mosaic to {output_path}")
    return output_path


def mosaic_directory(input_dir: str, output_path: str, fun: str = 'mean') -> str:
    """Mosaic every .tif below input_dir."""
    return mosaic(list_tiles(input_dir), output_path, fun=fun)


def mosaic_by_year(
    input_dir: str,
    output_dir: str,
    fun: str = 'mean',
    prefix: str = 'mosaic_',
    workers: int = 1,
    on_unmatched: str = 'warn'
) -> Dict[int, str]:
    """
    Write one mosaic per year token found below input_dir.

    Parameters:
    -----------
    input_dir : str
        Directory searched recursively for .tif tiles
    output_dir : str
        Directory for <prefix><year>.tif outputs
    fun : str
        Overlap aggregation (see mosaic)
    prefix : str
        Output file name prefix (default: 'mosaic_')
    workers : int
        Number of processes; one task per year (default: 1)
    on_unmatched : str
        Policy for tiles without a year token (see group_tiles_by_year)

    Returns:
    --------
    Dict[int, str] : Year to output path
    """
    if fun not in MOSAIC_FUNCTIONS:
        raise ConfigurationError(f"Unknown mosaic function '{fun}'. Choose from: {MOSAIC_FUNCTIONS}")

    groups = group_tiles_by_year(list_tiles(input_dir), on_unmatched=on_unmatched)
    if not groups:
        logger.warning(f"No year-tagged tiles found in {input_dir}")
        return {}

    os.makedirs(output_dir, exist_ok=True)
    targets = {year: os.path.join(output_dir, f"{prefix}{year}.tif") for year in groups}

    if workers > 1:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {
                year: executor.submit(mosaic, groups[year], targets[year], fun)
                for year in groups
            }
            outputs = {year: future.result() for year, future in futures.items()}
    else:
        outputs = {year: mosaic(groups[year], targets[year], fun) for year in groups}

    logger.info(f"Wrote {len(outputs)} yearly mosaic(s) to {output_dir}")
    return outputs
