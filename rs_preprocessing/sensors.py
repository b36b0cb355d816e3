"""
Sensor definitions: collection IDs, band harmonisation, scale factors and
compositing priority.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .bands import LANDSAT, MODIS, OLI_TO_TM, SENTINEL2, BandAliases
from .errors import ConfigurationError
from .image import Image

# (band-name regex, multiply, add)
ScaleRule = Tuple[str, float, float]

LANDSAT_C2_SCALE: Tuple[ScaleRule, ...] = (
    (r'^SR_B\d+$', 0.0000275, -0.2),
    (r'^ST_B(6|10)$', 0.00341802, 149.0),
)
SENTINEL2_SCALE: Tuple[ScaleRule, ...] = (
    (r'^B\d+A?$', 0.0001, 0.0),
)
MODIS_SCALE: Tuple[ScaleRule, ...] = (
    (r'^sur_refl_b\d+$', 0.0001, 0.0),
)


@dataclass(frozen=True)
class SensorSpec:
    """
    Static description of one source sensor.

    priority orders sensors inside a merged collection; higher values come
    first, so priority-sensitive reducers prefer them on overlap.
    """
    name: str
    collection_id: str
    aliases: BandAliases
    scale_rules: Tuple[ScaleRule, ...] = ()
    rename: Mapping[str, str] = field(default_factory=dict)
    drop: Tuple[str, ...] = ()
    priority: int = 0
    cloud_property: Optional[str] = None


LANDSAT_5 = SensorSpec(
    name='LANDSAT_5',
    collection_id='LANDSAT/LT05/C02/T1_L2',
    aliases=LANDSAT,
    scale_rules=LANDSAT_C2_SCALE,
    priority=2,
    cloud_property='CLOUD_COVER',
)
# Lowest priority: scan-line-corrector failure leaves striped gaps across ~20% of each scene
LANDSAT_7 = SensorSpec(
    name='LANDSAT_7',
    collection_id='LANDSAT/LE07/C02/T1_L2',
    aliases=LANDSAT,
    scale_rules=LANDSAT_C2_SCALE,
    priority=0,
    cloud_property='CLOUD_COVER',
)
LANDSAT_8 = SensorSpec(
    name='LANDSAT_8',
    collection_id='LANDSAT/LC08/C02/T1_L2',
    aliases=LANDSAT,
    scale_rules=LANDSAT_C2_SCALE,
    rename=OLI_TO_TM,
    drop=('SR_B1',),
    priority=3,
    cloud_property='CLOUD_COVER',
)
LANDSAT_9 = SensorSpec(
    name='LANDSAT_9',
    collection_id='LANDSAT/LC09/C02/T1_L2',
    aliases=LANDSAT,
    scale_rules=LANDSAT_C2_SCALE,
    rename=OLI_TO_TM,
    drop=('SR_B1',),
    priority=3,
    cloud_property='CLOUD_COVER',
)
SENTINEL_2 = SensorSpec(
    name='SENTINEL_2',
    collection_id='COPERNICUS/S2_SR_HARMONIZED',
    aliases=SENTINEL2,
    scale_rules=SENTINEL2_SCALE,
    priority=1,
    cloud_property='CLOUDY_PIXEL_PERCENTAGE',
)
MODIS_TERRA = SensorSpec(
    name='MODIS_TERRA',
    collection_id='MODIS/061/MOD09GA',
    aliases=MODIS,
    scale_rules=MODIS_SCALE,
    priority=1,
)

SENSORS: Dict[str, SensorSpec] = OrderedDict(
    (s.name, s) for s in (LANDSAT_5, LANDSAT_7, LANDSAT_8, LANDSAT_9, SENTINEL_2, MODIS_TERRA)
)

# Sensor groups selectable by configuration
SENSOR_GROUPS: Dict[str, Tuple[SensorSpec, ...]] = {
    'landsat': (LANDSAT_5, LANDSAT_7, LANDSAT_8, LANDSAT_9),
    'sentinel2': (SENTINEL_2,),
    'modis': (MODIS_TERRA,),
}


def get_sensor(name: str) -> SensorSpec:
    try:
        return SENSORS[name.upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown sensor '{name}'. Available: {list(SENSORS)}")


def get_sensor_group(name: str) -> Tuple[SensorSpec, ...]:
    try:
        return SENSOR_GROUPS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown sensor group '{name}'. Available: {sorted(SENSOR_GROUPS)}"
        )


def order_by_priority(specs: Sequence[SensorSpec]) -> List[SensorSpec]:
    """Stable sort, highest priority first."""
    return sorted(specs, key=lambda s: -s.priority)


def harmonize_bands(image: Image, sensor: SensorSpec) -> Image:
    """Drop sensor-specific extras and rename bands to the shared convention."""
    if sensor.drop:
        image = image.drop([b for b in sensor.drop if b in image])
    if sensor.rename:
        image = image.rename(sensor.rename)
    return image


def apply_scale_factors(image: Image, sensor: SensorSpec) -> Image:
    """
    Convert raw digital numbers to physical units.

    Bands matching one of the sensor's rules become value * multiply + add
    (float64); QA and classification bands are left untouched.
    """
    scaled = OrderedDict()
    for name in image.band_names:
        for pattern, multiply, add in sensor.scale_rules:
            if re.match(pattern, name):
                scaled[name] = image[name].astype(np.float64) * multiply + add
                break
    if not scaled:
        return image.copy()
    return image.add_bands(scaled, overwrite=True)


def prepare_scene(image: Image, sensor: SensorSpec) -> Image:
    """Harmonise, scale and tag a raw scene with its sensor name."""
    image = harmonize_bands(image, sensor)
    image = apply_scale_factors(image, sensor)
    return image.set(sensor=sensor.name, priority=sensor.priority)
