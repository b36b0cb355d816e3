"""
Tests for the Earth Engine back end (ee is mocked throughout)
"""

import io
import os
import sys
import zipfile
from datetime import datetime
from unittest.mock import MagicMock, Mock, call, patch

import numpy as np
import pytest
import rasterio
import requests
from ee.ee_exception import EEException

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from rs_preprocessing.bands import LANDSAT, SENTINEL2
from rs_preprocessing.compositor import (
    STATUS_EMPTY, STATUS_ERROR, STATUS_SUCCESS, CompositeCollection, IntervalResult
)
from rs_preprocessing.dates import Interval
from rs_preprocessing.earth_engine import (
    EE_MASKS,
    _sort_band_files,
    download_image,
    ee_add_index,
    ee_add_ndrs,
    ee_apply_scale_factors,
    ee_composite,
    ee_harmonize_bands,
    ee_landcover,
    ee_mask_dynamic_world,
    ee_normalize_bands,
    ee_time_series,
    export_image_collection,
    get_ee_mask,
    initialize,
    merged_collection,
    scene_collection,
    to_ee_geometry,
)
from rs_preprocessing.errors import (
    ConfigurationError, EmptyResultError, ExternalServiceError
)
from rs_preprocessing.masks import MASKS
from rs_preprocessing.sensors import LANDSAT_5, LANDSAT_8, MODIS_TERRA, get_sensor_group

SUMMER_2019 = Interval(datetime(2019, 6, 1), datetime(2019, 9, 30))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def mock_ee():
    """Mock Earth Engine module"""
    with patch('rs_preprocessing.earth_engine.ee') as mock:
        yield mock


@pytest.fixture
def mock_collection(mock_ee):
    """ImageCollection whose filters and maps return itself"""
    coll = MagicMock()
    coll.filterDate.return_value = coll
    coll.filterBounds.return_value = coll
    coll.filter.return_value = coll
    coll.map.return_value = coll
    coll.merge.return_value = coll
    coll.size.return_value.getInfo.return_value = 3
    mock_ee.ImageCollection.return_value = coll
    return coll


@pytest.fixture
def mock_geometry():
    """Mock Earth Engine Geometry"""
    geom = Mock()
    geom.getInfo.return_value = {
        'type': 'Polygon',
        'coordinates': [[[-115.0, 53.0], [-114.0, 53.0], [-114.0, 54.0], [-115.0, 54.0], [-115.0, 53.0]]]
    }
    return geom


# ============================================================================
# TESTS FOR CLIENT SETUP AND GEOMETRY
# ============================================================================

class TestInitialize:
    """Tests for initialize"""

    def test_success(self, mock_ee):
        initialize('my-project')

        mock_ee.Initialize.assert_called_once_with(project='my-project')

    def test_not_authenticated(self, mock_ee):
        mock_ee.Initialize.side_effect = EEException("Please authorize access")

        with pytest.raises(ExternalServiceError, match="earthengine authenticate"):
            initialize()


class TestToEEGeometry:
    """Tests for to_ee_geometry"""

    def test_point_is_buffered(self, mock_ee):
        result = to_ee_geometry((-114.5, 53.5))

        mock_ee.Geometry.Point.assert_called_once_with([-114.5, 53.5])
        mock_ee.Geometry.Point.return_value.buffer.assert_called_once_with(10000)
        assert result is mock_ee.Geometry.Point.return_value.buffer.return_value

    def test_bbox(self, mock_ee):
        to_ee_geometry([-115.0, 53.0, -114.0, 54.0])

        geojson = mock_ee.Geometry.call_args[0][0]
        assert geojson['type'] == 'Polygon'

    def test_ee_geometry_passthrough(self, mock_ee, mock_geometry):
        assert to_ee_geometry(mock_geometry) is mock_geometry

    def test_invalid(self, mock_ee):
        with pytest.raises(ConfigurationError):
            to_ee_geometry([1.0, 2.0, 3.0])


# ============================================================================
# TESTS FOR SCENES
# ============================================================================

class TestScenes:
    """Tests for harmonisation, scaling and scene collections"""

    def test_oli_select_and_rename(self):
        image = MagicMock()

        ee_harmonize_bands(image, LANDSAT_8)

        sources, targets = image.select.call_args[0]
        assert 'SR_B1' not in sources
        assert sources[targets.index('SR_B1')] == 'SR_B2'
        assert 'QA_PIXEL' in targets

    def test_tm_unchanged(self):
        image = MagicMock()

        assert ee_harmonize_bands(image, LANDSAT_5) is image
        image.select.assert_not_called()

    def test_scale_factors(self):
        image = MagicMock()

        ee_apply_scale_factors(image, LANDSAT_5)

        image.select.assert_called_once_with(r'^SR_B\d+$')
        image.select.return_value.multiply.assert_called_once_with(0.0000275)
        image.select.return_value.multiply.return_value.add.assert_called_once_with(-0.2)
        assert image.addBands.call_args[0][1:] == (None, True)

    def test_scene_collection_filters(self, mock_ee, mock_collection, mock_geometry):
        scene_collection(LANDSAT_5, SUMMER_2019, mock_geometry, max_cloud_cover=50)

        mock_ee.ImageCollection.assert_called_once_with('LANDSAT/LT05/C02/T1_L2')
        mock_collection.filterDate.assert_called_once_with('2019-06-01', '2019-09-30')
        mock_collection.filterBounds.assert_called_once_with(mock_geometry)
        mock_ee.Filter.lt.assert_called_once_with('CLOUD_COVER', 50)

    def test_no_cloud_filter_without_property(self, mock_ee, mock_collection, mock_geometry):
        scene_collection(MODIS_TERRA, SUMMER_2019, mock_geometry, max_cloud_cover=50)

        mock_ee.Filter.lt.assert_not_called()

    def test_merge_order_puts_landsat_7_last(self, mock_ee, mock_collection, mock_geometry):
        merged_collection(get_sensor_group('landsat'), SUMMER_2019, mock_geometry)

        ids = [c[0][0] for c in mock_ee.ImageCollection.call_args_list]
        assert ids == [
            'LANDSAT/LC08/C02/T1_L2',
            'LANDSAT/LC09/C02/T1_L2',
            'LANDSAT/LT05/C02/T1_L2',
            'LANDSAT/LE07/C02/T1_L2',
        ]

    def test_merge_requires_sensors(self, mock_geometry):
        with pytest.raises(ConfigurationError):
            merged_collection([], SUMMER_2019, mock_geometry)


# ============================================================================
# TESTS FOR MASKS
# ============================================================================

class TestEEMasks:
    """Tests for Earth Engine masks"""

    def test_same_mask_names_as_local(self):
        assert list(EE_MASKS) == list(MASKS)

    @pytest.mark.parametrize('name,aliases,band,bitmask', [
        ('mask_cloud', LANDSAT, 'QA_PIXEL', 0b11000),
        ('mask_cloud_snow', LANDSAT, 'QA_PIXEL', 0b111000),
        ('mask_fill', LANDSAT, 'QA_PIXEL', 0b1),
        ('mask_qa_radsat', LANDSAT, 'QA_RADSAT', 1 << 9),
        ('mask_s2_clouds', SENTINEL2, 'QA60', (1 << 10) | (1 << 11)),
    ])
    def test_bit_masks(self, name, aliases, band, bitmask):
        image = MagicMock()

        get_ee_mask(name)(image, aliases)

        image.select.assert_called_once_with(band)
        image.select.return_value.bitwiseAnd.assert_called_once_with(bitmask)
        image.select.return_value.bitwiseAnd.return_value.eq.assert_called_once_with(0)
        image.updateMask.assert_called_once()

    def test_scl_vegetation_keeps_class(self):
        image = MagicMock()

        get_ee_mask('mask_s2_vegetation')(image, SENTINEL2)

        image.select.assert_called_once_with('SCL')
        image.select.return_value.eq.assert_called_once_with(4)

    def test_scl_water_removes_class(self):
        image = MagicMock()

        get_ee_mask('mask_s2_water')(image, SENTINEL2)

        image.select.return_value.neq.assert_called_once_with(6)

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown mask"):
            get_ee_mask('mask_aliens')

    def test_landcover_year_capped(self, mock_ee, mock_collection):
        ee_landcover(2023)

        mock_collection.filterDate.assert_called_once_with('2019-01-01', '2019-12-31')

    def test_dynamic_world(self, mock_ee, mock_collection):
        image = MagicMock()

        ee_mask_dynamic_world(image, '2019-06-01')

        mock_ee.Date.assert_called_once_with('2019-06-01')
        mock_ee.Filter.calendarRange.assert_called_once_with(6, 9, 'month')
        classes = mock_collection.select.call_args[0][0]
        assert classes[1] == 'trees'
        image.updateMask.assert_called_once()


# ============================================================================
# TESTS FOR INDICES
# ============================================================================

class TestEEIndices:
    """Tests for Earth Engine index expressions"""

    def test_ndvi_expression(self):
        image = MagicMock()

        ee_add_index(image, 'NDVI', LANDSAT)

        expression, variables = image.expression.call_args[0]
        assert expression == '(NIR - Red) / (NIR + Red)'
        assert set(variables) == {'NIR', 'Red'}
        assert call('SR_B4') in image.select.call_args_list
        assert call('SR_B3') in image.select.call_args_list
        image.expression.return_value.rename.assert_called_once_with('NDVI')
        image.expression.return_value.rename.return_value.clamp.assert_not_called()

    def test_evi_is_clamped(self):
        image = MagicMock()

        ee_add_index(image, 'EVI', LANDSAT)

        image.expression.return_value.rename.return_value.clamp.assert_called_once_with(-2.0, 2.0)

    def test_sentinel2_band_names(self):
        image = MagicMock()

        ee_add_index(image, 'NDRE3', SENTINEL2)

        assert call('B7') in image.select.call_args_list
        assert call('B8') in image.select.call_args_list


class TestEENDRS:
    """Tests for ee_add_ndrs"""

    def _stats(self, image):
        return image.select.return_value.updateMask.return_value.reduceRegion.return_value.getInfo

    def test_normalised(self, mock_ee, mock_collection, mock_geometry):
        image = MagicMock()
        self._stats(image).return_value = {'DRS_min': 0.1, 'DRS_max': 0.5}

        ee_add_ndrs(image, mock_geometry, 2019)

        drs = image.select.return_value
        drs.clamp.assert_called_once_with(0.1, 0.5)
        drs.clamp.return_value.subtract.assert_called_once_with(0.1)
        assert drs.clamp.return_value.subtract.return_value.divide.call_args[0][0] == pytest.approx(0.4)
        drs.clamp.return_value.subtract.return_value.divide.return_value.rename.assert_called_once_with('NDRS_mixed')

    def test_no_forest_pixels(self, mock_ee, mock_collection, mock_geometry):
        image = MagicMock()
        self._stats(image).return_value = {'DRS_min': None, 'DRS_max': None}

        ee_add_ndrs(image, mock_geometry, 2019, forest_types=[210])

        mock_ee.Image.constant.return_value.rename.assert_called_once_with('NDRS_coni')
        image.select.return_value.clamp.assert_not_called()

    def test_degenerate_range(self, mock_ee, mock_collection, mock_geometry):
        image = MagicMock()
        self._stats(image).return_value = {'DRS_min': 0.2, 'DRS_max': 0.2}

        ee_add_ndrs(image, mock_geometry, 2019)

        image.select.return_value.clamp.assert_not_called()

    def test_engine_failure_names_year(self, mock_ee, mock_collection, mock_geometry):
        image = MagicMock()
        self._stats(image).side_effect = EEException("Computation timed out")

        with pytest.raises(ExternalServiceError) as exc_info:
            ee_add_ndrs(image, mock_geometry, 2019)

        assert exc_info.value.unit == '2019'


# ============================================================================
# TESTS FOR COMPOSITES
# ============================================================================

class TestEEComposite:
    """Tests for ee_composite and ee_time_series"""

    def test_mean_composite_properties(self, mock_ee, mock_collection, mock_geometry):
        result = ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry)

        mock_collection.mean.return_value.clip.assert_called_once_with(mock_geometry)
        properties = mock_collection.mean.return_value.clip.return_value.set.call_args[0][0]
        assert properties['date'] == '2019-06-01'
        assert properties['year'] == 2019
        assert properties['month'] == 6
        assert properties['interval_end'] == '2019-09-30'
        assert result is mock_collection.mean.return_value.clip.return_value.set.return_value

    def test_first_sorts_by_priority(self, mock_ee, mock_collection, mock_geometry):
        ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry, statistic='first')

        mock_collection.sort.assert_called_once_with('priority')
        mock_collection.sort.return_value.mosaic.assert_called_once()

    def test_unknown_statistic(self, mock_ee, mock_collection, mock_geometry):
        with pytest.raises(ConfigurationError):
            ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry, statistic='mode')

    def test_empty_interval(self, mock_ee, mock_collection, mock_geometry):
        mock_collection.size.return_value.getInfo.return_value = 0

        with pytest.raises(EmptyResultError):
            ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry)

    def test_scene_count_skipped(self, mock_ee, mock_collection, mock_geometry):
        ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry, require_scenes=False)

        mock_collection.size.assert_not_called()

    def test_scene_count_failure(self, mock_ee, mock_collection, mock_geometry):
        mock_collection.size.return_value.getInfo.side_effect = EEException("Too many requests")

        with pytest.raises(ExternalServiceError) as exc_info:
            ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry)

        assert exc_info.value.unit == '2019-06-01'

    def test_masks_then_indices_per_scene(self, mock_ee, mock_collection, mock_geometry):
        ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry, masks=['mask_cloud'], indices=['NDVI'])
        process = mock_collection.map.call_args_list[-1][0][0]
        scene = MagicMock()

        process(scene)

        scene.updateMask.assert_called_once()
        scene.updateMask.return_value.expression.assert_called_once()

    def test_unknown_mask_raises_before_requests(self, mock_ee, mock_collection, mock_geometry):
        with pytest.raises(ConfigurationError):
            ee_composite(SUMMER_2019, [LANDSAT_5], mock_geometry, masks=['mask_aliens'])

        mock_collection.size.assert_not_called()

    @patch('rs_preprocessing.earth_engine.ee_composite')
    def test_time_series_statuses(self, mock_composite, mock_ee, mock_geometry):
        intervals = [
            Interval(datetime(y, 6, 1), datetime(y, 9, 30)) for y in (2019, 2020, 2021)
        ]
        image = Mock()
        mock_composite.side_effect = [
            image,
            EmptyResultError("No scenes"),
            ExternalServiceError("Quota exceeded", unit='2021-06-01'),
        ]
        seen = []

        def post(img, interval):
            seen.append(interval.year)
            return img

        results = ee_time_series(intervals, [LANDSAT_5], mock_geometry, post=[post], indices=['NDVI'])

        assert [r.status for r in results] == [STATUS_SUCCESS, STATUS_EMPTY, STATUS_ERROR]
        assert results[0].image is image
        assert results[2].image is None
        assert seen == [2019]
        assert mock_composite.call_args[1]['indices'] == ['NDVI']

    @patch('rs_preprocessing.earth_engine.ee_composite')
    def test_empty_interval_gets_masked_image(self, mock_composite, mock_ee, mock_geometry):
        intervals = [
            Interval(datetime(y, 6, 1), datetime(y, 9, 30)) for y in (2019, 2020)
        ]
        template = MagicMock()
        mock_composite.side_effect = [template, EmptyResultError("No scenes")]

        results = ee_time_series(intervals, [LANDSAT_5], mock_geometry, statistic='median')

        assert results[1].status == STATUS_EMPTY
        names = template.bandNames.return_value
        mock_ee.List.repeat.assert_called_once_with(0, names.size.return_value)
        constant = mock_ee.Image.constant.return_value
        constant.rename.assert_called_once_with(names)
        masked = constant.rename.return_value.toFloat.return_value.updateMask
        masked.assert_called_once_with(0)
        properties = masked.return_value.set.call_args[0][0]
        assert properties['date'] == '2020-06-01'
        assert properties['year'] == 2020
        assert properties['scene_count'] == 0
        assert properties['statistic'] == 'median'
        assert results[1].image is masked.return_value.set.return_value
        assert len(results.images()) == 2

    @patch('rs_preprocessing.earth_engine.ee_composite')
    def test_no_success_leaves_empty_without_image(self, mock_composite, mock_ee, mock_geometry):
        mock_composite.side_effect = EmptyResultError("No scenes")

        results = ee_time_series([SUMMER_2019], [LANDSAT_5], mock_geometry)

        assert results[0].image is None
        assert results.images() == []

    def test_normalize_bands(self):
        image = MagicMock()

        ee_normalize_bands([image])

        image.bandNames.return_value.removeAll.assert_called_once_with(['QA_PIXEL'])
        image.select.return_value.toFloat.assert_called_once()


# ============================================================================
# TESTS FOR EXPORT AND DOWNLOAD
# ============================================================================

class TestExport:
    """Tests for export_image_collection"""

    @pytest.fixture
    def results(self):
        def interval(year):
            return Interval(datetime(year, 6, 1), datetime(year, 9, 30))

        return CompositeCollection([
            IntervalResult(interval(2019), STATUS_SUCCESS, image=MagicMock()),
            IntervalResult(interval(2020), STATUS_EMPTY, error='No scenes'),
            IntervalResult(interval(2021), STATUS_SUCCESS, image=MagicMock()),
        ])

    def test_one_task_per_success(self, mock_ee, results, mock_geometry):
        tasks = export_image_collection(results, mock_geometry, 'gee_exports', prefix='p')

        assert len(tasks) == 2
        kwargs = [c[1] for c in mock_ee.batch.Export.image.toDrive.call_args_list]
        assert [k['fileNamePrefix'] for k in kwargs] == ['p_2019', 'p_2021']
        assert kwargs[0]['folder'] == 'gee_exports'
        assert kwargs[0]['scale'] == 30
        assert kwargs[0]['crs'] == 'EPSG:4326'
        assert mock_ee.batch.Export.image.toDrive.return_value.start.call_count == 2

    def test_masked_empty_interval_exported(self, mock_ee, results, mock_geometry):
        results[1].image = MagicMock()

        export_image_collection(results, mock_geometry, 'f', prefix='p')

        kwargs = [c[1] for c in mock_ee.batch.Export.image.toDrive.call_args_list]
        assert [k['fileNamePrefix'] for k in kwargs] == ['p_2019', 'p_2020', 'p_2021']

    def test_custom_file_names(self, mock_ee, results, mock_geometry):
        export_image_collection(
            results, mock_geometry, 'f', prefix='ts',
            file_name_fn=lambda image, prefix: f"{prefix}_{image.get('date')}"
        )

        kwargs = mock_ee.batch.Export.image.toDrive.call_args_list[0][1]
        assert kwargs['description'] == 'ts_2019-06-01'

    def test_collision_error_submits_nothing(self, mock_ee, results, mock_geometry):
        with pytest.raises(ConfigurationError, match="collides"):
            export_image_collection(
                results, mock_geometry, 'f', prefix='p',
                file_name_fn=lambda image, prefix: prefix, on_collision='error'
            )

        mock_ee.batch.Export.image.toDrive.assert_not_called()

    def test_submission_failure(self, mock_ee, results, mock_geometry):
        mock_ee.batch.Export.image.toDrive.side_effect = EEException("Quota exceeded")

        with pytest.raises(ExternalServiceError) as exc_info:
            export_image_collection(results, mock_geometry, 'f', prefix='p')

        assert exc_info.value.unit == 'p_2019'


class TestDownload:
    """Tests for download_image and band-file ordering"""

    def test_sort_band_files(self):
        files = ['dl.QA.tif', 'dl.NDVI.tif', 'dl.EVI.tif']

        assert _sort_band_files(files, ['EVI', 'NDVI']) == ['dl.EVI.tif', 'dl.NDVI.tif', 'dl.QA.tif']

    def _zip_response(self, members):
        response = Mock()
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as zf:
            for name, payload in members.items():
                zf.writestr(name, payload)
        response.content = buffer.getvalue()
        response.raise_for_status = Mock()
        return response

    @patch('rs_preprocessing.earth_engine.requests.get')
    def test_download_merges_bands(self, mock_get, create_test_geotiff, temp_dir, mock_geometry):
        members = {}
        for name, value in (('NDVI', 0.5), ('EVI', 0.3)):
            path = create_test_geotiff(
                os.path.join(temp_dir, f'dl.{name}.tif'),
                data=np.full((4, 4), value, dtype=np.float32)
            )
            with open(path, 'rb') as f:
                members[f'dl.{name}.tif'] = f.read()
        mock_get.return_value = self._zip_response(members)
        image = Mock()
        image.getDownloadURL.return_value = 'http://fake.url/download'
        output = os.path.join(temp_dir, 'out', 'composite_2019.tif')

        download_image(image, mock_geometry, output, band_order=['EVI', 'NDVI'])

        with rasterio.open(output) as src:
            assert src.count == 2
            assert src.descriptions == ('EVI', 'NDVI')
            np.testing.assert_allclose(src.read(1), 0.3)
        request = image.getDownloadURL.call_args[0][0]
        assert request['scale'] == 30
        assert request['region'] == mock_geometry.getInfo.return_value['coordinates']

    @patch('rs_preprocessing.earth_engine.requests.get')
    def test_http_error(self, mock_get, temp_dir, mock_geometry):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        mock_get.return_value = response
        image = Mock()
        image.getDownloadURL.return_value = 'http://fake.url/download'

        with pytest.raises(ExternalServiceError) as exc_info:
            download_image(image, mock_geometry, os.path.join(temp_dir, 'x.tif'))

        assert exc_info.value.unit == 'x.tif'

    @patch('rs_preprocessing.earth_engine.requests.get')
    def test_no_tif_in_zip(self, mock_get, temp_dir, mock_geometry):
        mock_get.return_value = self._zip_response({'readme.txt': b'no tif here'})
        image = Mock()
        image.getDownloadURL.return_value = 'http://fake.url/download'

        with pytest.raises(ExternalServiceError, match="No .tif"):
            download_image(image, mock_geometry, os.path.join(temp_dir, 'x.tif'))

    def test_url_failure(self, temp_dir, mock_geometry):
        image = Mock()
        image.getDownloadURL.side_effect = EEException("Total request size must be less than 50 MB")

        with pytest.raises(ExternalServiceError, match="Download failed"):
            download_image(image, mock_geometry, os.path.join(temp_dir, 'x.tif'))
