"""
Shared fixtures: temporary directories, synthetic GeoTIFFs and Images.
"""

import os
import shutil
import sys
import tempfile

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_bounds, from_origin

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from rs_preprocessing.image import Image


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    tmpdir = tempfile.mkdtemp()
    yield tmpdir
    shutil.rmtree(tmpdir)


@pytest.fixture
def create_test_geotiff():
    """Factory fixture to create test GeoTIFF files"""
    def _create(filepath, data=None, bounds=(0.0, 0.0, 10.0, 10.0), width=10, height=10,
                num_bands=1, band_descriptions=None, crs='EPSG:3857', nodata=None):
        """Create a GeoTIFF; random float32 data unless data is given"""
        if data is None:
            data = np.random.rand(num_bands, height, width).astype(np.float32)
        data = np.asarray(data, dtype=np.float32)
        if data.ndim == 2:
            data = data[np.newaxis, ...]
        count, height, width = data.shape

        meta = {
            'driver': 'GTiff',
            'height': height,
            'width': width,
            'count': count,
            'dtype': 'float32',
            'crs': crs,
            'transform': from_bounds(*bounds, width, height),
        }
        if nodata is not None:
            meta['nodata'] = nodata

        with rasterio.open(filepath, 'w', **meta) as dst:
            dst.write(data)
            if band_descriptions:
                for idx, desc in enumerate(band_descriptions, 1):
                    dst.set_band_description(idx, desc)

        return filepath

    return _create


@pytest.fixture
def make_image():
    """Factory fixture for in-memory Images on a 1-unit pixel grid"""
    def _make(bands, properties=None, origin=(0.0, 10.0), crs='EPSG:3857'):
        bands = {name: np.ma.asarray(values) for name, values in bands.items()}
        return Image(
            bands,
            crs=crs,
            transform=from_origin(origin[0], origin[1], 1.0, 1.0),
            properties=properties
        )

    return _make


@pytest.fixture
def landsat_dn():
    """
    Raw Landsat Collection 2 digital numbers for one pixel-uniform 2x2 scene.

    DN = (reflectance + 0.2) / 0.0000275, so these scale to
    blue 0.05, green 0.08, red 0.06, nir 0.30, swir1 0.15, swir2 0.08.
    """
    def dn(reflectance):
        return np.full((2, 2), round((reflectance + 0.2) / 0.0000275), dtype=np.uint16)

    return {
        'SR_B1': dn(0.05),
        'SR_B2': dn(0.08),
        'SR_B3': dn(0.06),
        'SR_B4': dn(0.30),
        'SR_B5': dn(0.15),
        'SR_B7': dn(0.08),
        'QA_PIXEL': np.zeros((2, 2), dtype=np.uint16),
    }
