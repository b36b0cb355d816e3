"""
Tests for spectral index definitions and their local evaluation
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from rs_preprocessing.bands import BAND_ALIASES, LANDSAT, MODIS, SENTINEL2
from rs_preprocessing.errors import ConfigurationError
from rs_preprocessing.indices import (
    INDEX_DEFINITIONS,
    LANDSAT_DEFAULT_INDICES,
    SENSOR_DEFAULT_INDICES,
    add_drs,
    add_index,
    add_indices,
    add_ndrs,
    add_ndrs_stressed,
    add_ndvi,
    add_snow,
    available_indices,
    compute_index,
    get_index,
    ndrs_band_name,
    supports_sensor,
)
from rs_preprocessing.landcover import AnnualLandcover


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def reflectance(make_image):
    """2x2 Landsat-named reflectance image"""
    def _create(blue=0.05, green=0.08, red=0.06, nir=0.30, swir1=0.15, swir2=0.08, properties=None):
        values = {
            'SR_B1': blue, 'SR_B2': green, 'SR_B3': red,
            'SR_B4': nir, 'SR_B5': swir1, 'SR_B7': swir2,
        }
        bands = {
            name: np.broadcast_to(np.asarray(v, dtype=np.float64), (2, 2)).copy()
            for name, v in values.items()
        }
        return make_image(bands, properties=properties)

    return _create


@pytest.fixture
def random_reflectance(make_image):
    """Random finite reflectance in [0, 1) on a 50x50 grid"""
    rng = np.random.default_rng(42)
    bands = {name: rng.random((50, 50)) for name in ('SR_B1', 'SR_B2', 'SR_B3', 'SR_B4', 'SR_B5', 'SR_B7')}
    return make_image(bands)


# ============================================================================
# TESTS FOR THE REGISTRY
# ============================================================================

class TestRegistry:
    """Tests for index definitions"""

    def test_default_landsat_indices_are_registered(self):
        assert len(LANDSAT_DEFAULT_INDICES) == 20
        for name in LANDSAT_DEFAULT_INDICES:
            assert name in INDEX_DEFINITIONS

    def test_available_indices_lists_registry(self):
        assert available_indices() == list(INDEX_DEFINITIONS)
        assert 'NDRE3' in available_indices()

    def test_lookup_is_case_insensitive(self):
        assert get_index('ndvi').name == 'NDVI'

    def test_unknown_index(self):
        with pytest.raises(ConfigurationError, match="Unknown index"):
            get_index('XYZ')

    def test_clamp_policy(self):
        assert INDEX_DEFINITIONS['EVI'].clamp == (-2.0, 2.0)
        assert INDEX_DEFINITIONS['DSWI'].clamp == (0.0, 3.0)
        assert INDEX_DEFINITIONS['RVI'].clamp == (0.0, 10.0)
        assert INDEX_DEFINITIONS['LAI'].clamp == (0.0, 10.0)
        assert INDEX_DEFINITIONS['NDVI'].clamp is None

    def test_supports_sensor(self):
        assert supports_sensor('NDRE3', SENTINEL2)
        assert not supports_sensor('NDRE3', LANDSAT)
        assert not supports_sensor('NDRE3', MODIS)
        assert supports_sensor('ndvi', MODIS)

    def test_sensor_defaults_are_supported(self):
        for sensor, names in SENSOR_DEFAULT_INDICES.items():
            aliases = BAND_ALIASES[sensor]
            assert all(supports_sensor(name, aliases) for name in names), sensor


# ============================================================================
# TESTS FOR INDEX VALUES
# ============================================================================

class TestIndexValues:
    """Tests for individual index formulas"""

    def test_ndvi(self, reflectance):
        image = reflectance(nir=0.3, red=0.1)

        result = add_ndvi(image)

        np.testing.assert_allclose(result['NDVI'], 0.5)

    def test_drs(self, reflectance):
        image = reflectance(red=0.06, swir1=0.08)

        result = add_drs(image)

        np.testing.assert_allclose(result['DRS'], 0.1)

    def test_savi(self, reflectance):
        image = reflectance(nir=0.3, red=0.1)

        result = compute_index(image, 'SAVI')

        np.testing.assert_allclose(result['SAVI'], 0.2 / 0.828 * 1.428)

    def test_si(self, reflectance):
        image = reflectance(blue=0.1, green=0.2, red=0.5)

        result = compute_index(image, 'SI')

        np.testing.assert_allclose(result['SI'], 0.9 * 0.8 * 0.5)

    def test_division_by_zero_is_masked(self, reflectance):
        image = reflectance(nir=0.0, red=0.0)

        result = compute_index(image, 'NDVI')

        assert np.ma.getmaskarray(result['NDVI']).all()

    def test_masked_input_stays_masked(self, reflectance):
        image = reflectance()
        valid = np.array([[True, False], [True, True]])

        result = add_ndvi(image.update_mask(valid))

        assert np.ma.getmaskarray(result['NDVI']).tolist() == [[False, True], [False, False]]

    def test_evi_is_clamped(self, reflectance):
        """Near-zero denominator would give EVI ~ 16.7"""
        image = reflectance(nir=0.5, red=0.0, blue=0.19)

        result = compute_index(image, 'EVI')

        np.testing.assert_allclose(result['EVI'], 2.0)

    @pytest.mark.parametrize('name', ['EVI', 'DSWI', 'RVI', 'LAI'])
    def test_clamped_indices_stay_in_range(self, random_reflectance, name):
        low, high = INDEX_DEFINITIONS[name].clamp

        values = compute_index(random_reflectance, name)[name].compressed()

        assert values.size > 0
        assert values.min() >= low
        assert values.max() <= high

    def test_sentinel2_aliases(self, make_image):
        image = make_image({
            'B7': np.full((2, 2), 0.2),
            'B8': np.full((2, 2), 0.4),
        })

        result = add_index(image, 'NDRE3', SENTINEL2)

        np.testing.assert_allclose(result['NDRE3'], 0.2 / 0.6)

    def test_missing_role(self, make_image):
        image = make_image({'SR_B4': np.ones((2, 2))})

        with pytest.raises(ConfigurationError, match="red_edge3"):
            add_index(image, 'NDRE3', LANDSAT)


class TestPurity:
    """Index functions do not modify their input and are repeatable"""

    def test_repeated_calls_identical(self, random_reflectance):
        first = add_indices(random_reflectance, LANDSAT_DEFAULT_INDICES)
        second = add_indices(random_reflectance, LANDSAT_DEFAULT_INDICES)

        assert first.band_names == second.band_names
        for name in first.band_names:
            np.testing.assert_array_equal(first[name].filled(np.nan), second[name].filled(np.nan))

    def test_input_not_modified(self, reflectance):
        image = reflectance()
        before = image.band_names

        add_indices(image, ['NDVI', 'EVI'])

        assert image.band_names == before

    def test_bands_are_appended_in_order(self, reflectance):
        result = add_indices(reflectance(), ['NBR', 'NDVI'])

        assert result.band_names[-2:] == ['NBR', 'NDVI']

    def test_properties_preserved(self, reflectance):
        result = add_ndvi(reflectance(properties={'year': 2019}))

        assert result.get('year') == 2019


class TestSnow:
    """Tests for add_snow"""

    def test_snow_flag(self, reflectance):
        snowy = add_snow(reflectance(green=0.5, swir1=0.1))
        clear = add_snow(reflectance(green=0.1, swir1=0.3))

        assert snowy['snow'].dtype == np.uint8
        assert (snowy['snow'] == 1).all()
        assert (clear['snow'] == 0).all()


# ============================================================================
# TESTS FOR NDRS
# ============================================================================

class TestNDRS:
    """Tests for NDRS normalisation over forest pixels"""

    @pytest.fixture
    def drs_image(self, make_image):
        return make_image(
            {'DRS': np.array([[0.1, 0.2], [0.3, 0.5]])},
            properties={'year': 2019}
        )

    @pytest.mark.parametrize('types,name', [
        ([210], 'NDRS_coni'),
        ([220], 'NDRS_deci'),
        ([210, 220, 230], 'NDRS_mixed'),
        ([230], 'NDRS_mixed'),
    ])
    def test_band_name(self, types, name):
        assert ndrs_band_name(types) == name

    def test_normalised_by_forest_min_max(self, drs_image):
        landcover = AnnualLandcover({2019: np.array([[210, 220], [20, 230]])})

        result = add_ndrs(drs_image, landcover)

        # Forest DRS: 0.1, 0.2, 0.5; the water pixel is rescaled with the same range
        np.testing.assert_allclose(
            result['NDRS_mixed'].filled(np.nan),
            [[0.0, 0.25], [0.5, 1.0]]
        )

    def test_non_forest_values_clamped(self, drs_image):
        landcover = AnnualLandcover({2019: np.array([[210, 210], [20, 20]])})

        result = add_ndrs(drs_image, landcover, forest_types=[210])

        values = result['NDRS_coni'].filled(np.nan)
        np.testing.assert_allclose(values, [[0.0, 1.0], [1.0, 1.0]])

    def test_zero_forest_pixels(self, drs_image):
        landcover = AnnualLandcover({2019: np.full((2, 2), 20)})

        result = add_ndrs(drs_image, landcover)

        assert np.ma.getmaskarray(result['NDRS_mixed']).all()

    def test_degenerate_range(self, make_image):
        image = make_image({'DRS': np.full((2, 2), 0.2)}, properties={'year': 2019})
        landcover = AnnualLandcover({2019: np.full((2, 2), 210)})

        result = add_ndrs(image, landcover)

        assert np.ma.getmaskarray(result['NDRS_mixed']).all()

    def test_uses_landcover_year_fallback(self, drs_image):
        """2021 resolves to the last mapped year"""
        landcover = AnnualLandcover({
            2018: np.full((2, 2), 20),
            2019: np.array([[210, 220], [20, 230]]),
        })

        result = add_ndrs(drs_image.set(year=2021), landcover)

        assert not np.ma.getmaskarray(result['NDRS_mixed']).all()

    def test_missing_year(self, make_image):
        image = make_image({'DRS': np.ones((2, 2))})
        landcover = AnnualLandcover({2019: np.full((2, 2), 210)})

        with pytest.raises(ConfigurationError, match="year"):
            add_ndrs(image, landcover)

    def test_missing_drs(self, make_image):
        image = make_image({'NDVI': np.ones((2, 2))}, properties={'year': 2019})
        landcover = AnnualLandcover({2019: np.full((2, 2), 210)})

        with pytest.raises(ConfigurationError, match="DRS"):
            add_ndrs(image, landcover)

    def test_aoi_restricts_reduction(self, drs_image):
        """Only the left column (x in [0, 1]) contributes to min/max"""
        from shapely.geometry import box

        landcover = AnnualLandcover({2019: np.full((2, 2), 210)})

        result = add_ndrs(drs_image, landcover, forest_types=[210], aoi=box(0.0, 8.0, 1.0, 10.0))

        # Left column DRS 0.1 and 0.3 define the range
        np.testing.assert_allclose(
            result['NDRS_coni'].filled(np.nan),
            [[0.0, 0.5], [1.0, 1.0]]
        )

    def test_stressed(self, make_image):
        image = make_image(
            {'NDRS_coni': np.array([[0.2, 0.8], [0.9, 0.9]])},
            properties={'year': 2019}
        )
        landcover = AnnualLandcover({2019: np.array([[210, 210], [210, 20]])})

        result = add_ndrs_stressed(image, landcover)

        assert result['NDRS_stressed'].dtype == np.uint8
        assert result['NDRS_stressed'].tolist() == [[0, 1], [1, 0]]
