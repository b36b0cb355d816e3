"""
Pipeline configuration.

Replaces script-level globals with validated pydantic models that can be
loaded from YAML or JSON files.

Example YAML:

    time_series:
      start_date: '2001-06-01'
      end_date: '2005-06-01'
      window: 121
      indices: [NDVI, NBR, DRS]
      aoi: [-115.0, 53.0, -114.0, 54.0]
    export:
      folder: gee_exports
      prefix: landsat_multiband
"""

import json
import os
from typing import List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .bands import get_aliases
from .dates import Interval, UNIT_ALIASES, make_intervals, parse_date
from .errors import ConfigurationError
from .indices import INDEX_DEFINITIONS, LANDSAT_DEFAULT_INDICES, SENSOR_DEFAULT_INDICES, supports_sensor
from .masks import MASK_SENSORS, MASKS, SENSOR_DEFAULT_MASKS
from .sensors import SensorSpec, get_sensor_group

_MODEL_CONFIG = ConfigDict(
    str_strip_whitespace=True,
    validate_assignment=True,
    extra='forbid'
)

# QA bands removed before export when drop_bands is not given
SENSOR_DEFAULT_DROP_BANDS = {
    'landsat': ('QA_PIXEL',),
    'sentinel2': ('QA60', 'SCL'),
    'modis': ('state_1km',),
}


class TimeSeriesConfig(BaseModel):
    """What to composite, when and where."""
    model_config = _MODEL_CONFIG

    start_date: str = Field(
        '2001-06-01',
        description="First interval start in YYYY-MM-DD format",
        pattern=r'^\d{4}-\d{2}-\d{2}$'
    )
    end_date: str = Field(
        '2005-06-01',
        description="Last allowed interval start in YYYY-MM-DD format",
        pattern=r'^\d{4}-\d{2}-\d{2}$'
    )
    step: int = Field(1, description="Cadence between interval starts", gt=0)
    unit: str = Field('years', description="Cadence unit: days, weeks, months or years")
    window: int = Field(121, description="Window length of each interval", gt=0)
    window_unit: str = Field('days', description="Window unit: days, weeks, months or years")
    sensor: Literal['landsat', 'sentinel2', 'modis'] = 'landsat'
    indices: List[str] = Field(default_factory=lambda: list(LANDSAT_DEFAULT_INDICES))
    statistic: Literal['mean', 'median', 'max', 'min', 'first'] = 'mean'
    masks: List[str] = Field(default_factory=lambda: ['mask_cloud_snow'])
    ndrs_forest_types: List[List[int]] = Field(
        default_factory=lambda: [[210], [220], [210, 220, 230]],
        description="One NDRS band per forest class list"
    )
    drop_bands: List[str] = Field(default_factory=lambda: ['QA_PIXEL'])
    max_cloud_cover: Optional[float] = Field(None, ge=0.0, le=100.0)
    aoi: Optional[List] = Field(
        None,
        description="[min_lon, min_lat, max_lon, max_lat] or a list of [lon, lat] pairs"
    )

    @field_validator('unit', 'window_unit')
    @classmethod
    def validate_unit(cls, v: str) -> str:
        if v.lower() not in UNIT_ALIASES:
            raise ValueError(f"Unknown unit '{v}'. Use days, weeks, months or years")
        return UNIT_ALIASES[v.lower()]

    @field_validator('start_date', 'end_date')
    @classmethod
    def validate_date(cls, v: str) -> str:
        parse_date(v)
        return v

    @field_validator('end_date')
    @classmethod
    def validate_date_range(cls, v: str, info) -> str:
        """Ensure end_date is not before start_date."""
        start = info.data.get('start_date')
        if start and parse_date(v) < parse_date(start):
            raise ValueError(f"end_date ({v}) must not be before start_date ({start})")
        return v

    @field_validator('indices')
    @classmethod
    def validate_indices(cls, v: List[str]) -> List[str]:
        names = [name.upper() for name in v]
        unknown = [name for name in names if name not in INDEX_DEFINITIONS]
        if unknown:
            raise ValueError(f"Unknown indices {unknown}. Available: {list(INDEX_DEFINITIONS)}")
        return names

    @field_validator('masks')
    @classmethod
    def validate_masks(cls, v: List[str]) -> List[str]:
        unknown = [name for name in v if name not in MASKS]
        if unknown:
            raise ValueError(f"Unknown masks {unknown}. Available: {list(MASKS)}")
        return v

    @model_validator(mode='before')
    @classmethod
    def apply_sensor_defaults(cls, data):
        """Fill indices, masks and drop_bands from the sensor group when not given."""
        if not isinstance(data, dict):
            return data
        sensor = data.get('sensor', 'landsat')
        if not isinstance(sensor, str) or sensor not in SENSOR_DEFAULT_MASKS:
            return data
        data = dict(data)
        data.setdefault('indices', list(SENSOR_DEFAULT_INDICES[sensor]))
        data.setdefault('masks', list(SENSOR_DEFAULT_MASKS[sensor]))
        data.setdefault('drop_bands', list(SENSOR_DEFAULT_DROP_BANDS[sensor]))
        return data

    @model_validator(mode='after')
    def validate_sensor_compatibility(self):
        """Masks and indices must work on the sensor group's bands."""
        wrong_masks = [name for name in self.masks if self.sensor not in MASK_SENSORS[name]]
        if wrong_masks:
            raise ValueError(f"Masks {wrong_masks} do not apply to sensor '{self.sensor}'")
        aliases = get_aliases(self.sensor)
        wrong_indices = [name for name in self.indices if not supports_sensor(name, aliases)]
        if wrong_indices:
            raise ValueError(f"Indices {wrong_indices} are not available for sensor '{self.sensor}'")
        return self

    def intervals(self) -> List[Interval]:
        return make_intervals(
            self.start_date, self.end_date, self.step, self.unit,
            window=self.window, window_unit=self.window_unit
        )

    def sensors(self) -> Tuple[SensorSpec, ...]:
        return get_sensor_group(self.sensor)


class ExportConfig(BaseModel):
    """Where and how composites are written."""
    model_config = _MODEL_CONFIG

    folder: str = Field('gee_exports', min_length=1)
    prefix: str = Field('landsat_multiband', min_length=1)
    scale: int = Field(30, description="Resolution in meters", gt=0)
    crs: str = Field('EPSG:4326', pattern=r'^EPSG:\d+$')
    on_collision: Literal['overwrite', 'warn', 'error'] = 'overwrite'


class MosaicConfig(BaseModel):
    """Tile mosaicking inputs and policy."""
    model_config = _MODEL_CONFIG

    input_dir: str = Field(..., min_length=1)
    output_dir: str = Field(..., min_length=1)
    prefix: str = 'mosaic_'
    fun: Literal['mean', 'sum', 'min', 'max', 'median', 'first', 'last'] = 'mean'
    workers: int = Field(1, ge=1, le=64)
    on_unmatched: Literal['warn', 'ignore', 'error'] = 'warn'


class PipelineConfig(BaseModel):
    model_config = _MODEL_CONFIG

    time_series: TimeSeriesConfig = Field(default_factory=TimeSeriesConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    mosaic: Optional[MosaicConfig] = None


def load_config(config_path: str) -> PipelineConfig:
    """
    Load and validate a pipeline configuration file.

    Parameters:
    -----------
    config_path : str
        .yml / .yaml (read with yaml.safe_load) or .json file

    Returns:
    --------
    PipelineConfig : Validated configuration

    Raises:
    -------
    FileNotFoundError
        If the file does not exist
    ConfigurationError
        If the file cannot be parsed or fails validation
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    extension = os.path.splitext(config_path)[1].lower()
    try:
        with open(config_path, 'r') as f:
            if extension in ('.yml', '.yaml'):
                raw = yaml.safe_load(f)
            elif extension == '.json':
                raw = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration format '{extension}'. Use .yaml, .yml or .json"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid configuration file {config_path}: {e}")

    try:
        return PipelineConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}")
