"""
Sensor band-alias maps.

Index and mask functions never hard-code band names. They look up a
spectral role (blue, nir, swir1, ...) in a BandAliases map tagged with the
sensor, so one index definition runs against Landsat and Sentinel-2 names.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from .errors import ConfigurationError

ROLES = ('blue', 'green', 'red', 'red_edge3', 'nir', 'swir1', 'swir2', 'thermal', 'qa', 'scl')


@dataclass(frozen=True)
class BandAliases:
    """Role to band-name mapping for one sensor."""
    sensor: str
    bands: Mapping[str, str] = field(default_factory=dict)

    def __getitem__(self, role: str) -> str:
        try:
            return self.bands[role]
        except KeyError:
            raise ConfigurationError(
                f"Sensor '{self.sensor}' has no band for role '{role}'"
            )

    def __contains__(self, role: str) -> bool:
        return role in self.bands

    def reflectance_bands(self) -> List[str]:
        """Surface reflectance band names in spectral order."""
        return [self.bands[r] for r in ('blue', 'green', 'red', 'nir', 'swir1', 'swir2') if r in self.bands]


# Landsat generations are harmonised to TM/ETM+ names before indices run
LANDSAT = BandAliases('landsat', {
    'blue': 'SR_B1',
    'green': 'SR_B2',
    'red': 'SR_B3',
    'nir': 'SR_B4',
    'swir1': 'SR_B5',
    'swir2': 'SR_B7',
    'thermal': 'ST_B6',
    'qa': 'QA_PIXEL',
})

SENTINEL2 = BandAliases('sentinel2', {
    'blue': 'B2',
    'green': 'B3',
    'red': 'B4',
    'red_edge3': 'B7',
    'nir': 'B8',
    'swir1': 'B11',
    'swir2': 'B12',
    'qa': 'QA60',
    'scl': 'SCL',
})

MODIS = BandAliases('modis', {
    'blue': 'sur_refl_b03',
    'green': 'sur_refl_b04',
    'red': 'sur_refl_b01',
    'nir': 'sur_refl_b02',
    'swir1': 'sur_refl_b06',
    'swir2': 'sur_refl_b07',
    'qa': 'state_1km',
})

BAND_ALIASES: Dict[str, BandAliases] = {
    LANDSAT.sensor: LANDSAT,
    SENTINEL2.sensor: SENTINEL2,
    MODIS.sensor: MODIS,
}

# Landsat 8/9 OLI/TIRS to TM/ETM+ naming
OLI_TO_TM = {
    'SR_B2': 'SR_B1',
    'SR_B3': 'SR_B2',
    'SR_B4': 'SR_B3',
    'SR_B5': 'SR_B4',
    'SR_B6': 'SR_B5',
    'SR_B7': 'SR_B7',
    'ST_B10': 'ST_B6',
}


def get_aliases(sensor: str) -> BandAliases:
    try:
        return BAND_ALIASES[sensor.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown sensor '{sensor}'. Available: {sorted(BAND_ALIASES)}"
        )
