"""
Spectral index definitions and their local evaluation.

Each IndexDefinition carries two renderings of the same formula: an
expression string for the Earth Engine back end and a numpy function for
in-memory images. Inputs are looked up through a BandAliases map, so the
same definition serves Landsat and Sentinel-2 band names.

Undefined results (division by zero, square root of a negative) are masked,
never returned as NaN/Inf. Clamping policy: EVI [-2, 2], DSWI [0, 3],
RVI [0, 10] and LAI [0, 10]; every other index is unbounded.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry.base import BaseGeometry

from .bands import LANDSAT, BandAliases
from .errors import ConfigurationError
from .image import Image
from .landcover import FOREST_CLASSES, AnnualLandcover

logger = logging.getLogger(__name__)

Formula = Callable[[Dict[str, np.ma.MaskedArray]], np.ma.MaskedArray]


@dataclass(frozen=True)
class IndexDefinition:
    """
    A spectral index.

    name : output band name
    expression : Earth Engine expression over the variables in inputs
    inputs : expression variable to spectral role (e.g. {'NIR': 'nir'})
    formula : numpy rendering of the expression
    clamp : (low, high) applied to the result, or None
    value_range : documented output range, or None when unbounded
    """
    name: str
    expression: str
    inputs: Mapping[str, str]
    formula: Formula
    clamp: Optional[Tuple[float, float]] = None
    value_range: Optional[Tuple[float, float]] = None
    description: str = ''
    sensors: Tuple[str, ...] = field(default=('landsat', 'sentinel2', 'modis'))


def _define(*definitions: IndexDefinition) -> 'OrderedDict[str, IndexDefinition]':
    return OrderedDict((d.name, d) for d in definitions)


INDEX_DEFINITIONS: Dict[str, IndexDefinition] = _define(
    IndexDefinition(
        name='BSI',
        expression='((Red + SWIR) - (NIR + Blue)) / ((Red + SWIR) + (NIR + Blue))',
        inputs={'NIR': 'nir', 'Red': 'red', 'Blue': 'blue', 'SWIR': 'swir1'},
        formula=lambda v: ((v['Red'] + v['SWIR']) - (v['NIR'] + v['Blue']))
        / ((v['Red'] + v['SWIR']) + (v['NIR'] + v['Blue'])),
        value_range=(-1.0, 1.0),
        description='Bare Soil Index',
    ),
    IndexDefinition(
        name='DRS',
        expression='sqrt(((RED) * (RED)) + ((SWIR) * (SWIR)))',
        inputs={'RED': 'red', 'SWIR': 'swir1'},
        formula=lambda v: np.ma.sqrt(v['RED'] * v['RED'] + v['SWIR'] * v['SWIR']),
        description='Distance Red & SWIR',
    ),
    IndexDefinition(
        name='DSWI',
        expression='(NIR + Green) / (SWIR + Red)',
        inputs={'NIR': 'nir', 'Green': 'green', 'SWIR': 'swir1', 'Red': 'red'},
        formula=lambda v: (v['NIR'] + v['Green']) / (v['SWIR'] + v['Red']),
        clamp=(0.0, 3.0),
        value_range=(0.0, 3.0),
        description='Disease Stress Water Index (Galvao et al. 2005)',
    ),
    IndexDefinition(
        name='EVI',
        expression='2.5 * ((NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1))',
        inputs={'NIR': 'nir', 'RED': 'red', 'BLUE': 'blue'},
        formula=lambda v: 2.5 * ((v['NIR'] - v['RED']) / (v['NIR'] + 6 * v['RED'] - 7.5 * v['BLUE'] + 1)),
        clamp=(-2.0, 2.0),
        value_range=(-2.0, 2.0),
        description='Enhanced Vegetation Index',
    ),
    IndexDefinition(
        name='GNDVI',
        expression='(NIR - Green) / (NIR + Green)',
        inputs={'NIR': 'nir', 'Green': 'green'},
        formula=lambda v: (v['NIR'] - v['Green']) / (v['NIR'] + v['Green']),
        value_range=(-1.0, 1.0),
        description='Green Normalized Difference Vegetation Index (Gitelson and Merzlyak 1998)',
    ),
    IndexDefinition(
        name='LAI',
        expression='3.618 * (2.5 * ((NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1 + 1e-10))) - 0.118',
        inputs={'NIR': 'nir', 'RED': 'red', 'BLUE': 'blue'},
        formula=lambda v: 3.618 * (
            2.5 * ((v['NIR'] - v['RED']) / (v['NIR'] + 6 * v['RED'] - 7.5 * v['BLUE'] + 1 + 1e-10))
        ) - 0.118,
        clamp=(0.0, 10.0),
        value_range=(0.0, 10.0),
        description='Leaf Area Index derived from EVI',
    ),
    IndexDefinition(
        name='NBR',
        expression='(NIR - SWIR2) / (NIR + SWIR2)',
        inputs={'NIR': 'nir', 'SWIR2': 'swir2'},
        formula=lambda v: (v['NIR'] - v['SWIR2']) / (v['NIR'] + v['SWIR2']),
        value_range=(-1.0, 1.0),
        description='Normalized Burn Ratio',
    ),
    IndexDefinition(
        name='NDMI',
        expression='(NIR - SWIR1) / (NIR + SWIR1)',
        inputs={'NIR': 'nir', 'SWIR1': 'swir1'},
        formula=lambda v: (v['NIR'] - v['SWIR1']) / (v['NIR'] + v['SWIR1']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Moisture Index',
    ),
    IndexDefinition(
        name='NDSI',
        expression='(GREEN - SWIR) / (GREEN + SWIR)',
        inputs={'GREEN': 'green', 'SWIR': 'swir1'},
        formula=lambda v: (v['GREEN'] - v['SWIR']) / (v['GREEN'] + v['SWIR']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Snow Index',
    ),
    IndexDefinition(
        name='NDVI',
        expression='(NIR - Red) / (NIR + Red)',
        inputs={'NIR': 'nir', 'Red': 'red'},
        formula=lambda v: (v['NIR'] - v['Red']) / (v['NIR'] + v['Red']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Vegetation Index',
    ),
    IndexDefinition(
        name='NDWI',
        expression='(Green - NIR) / (Green + NIR)',
        inputs={'NIR': 'nir', 'Green': 'green'},
        formula=lambda v: (v['Green'] - v['NIR']) / (v['Green'] + v['NIR']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Water Index',
    ),
    IndexDefinition(
        name='SAVI',
        expression='((NIR - R) / (NIR + R + 0.428)) * (1.428)',
        inputs={'NIR': 'nir', 'R': 'red'},
        formula=lambda v: ((v['NIR'] - v['R']) / (v['NIR'] + v['R'] + 0.428)) * 1.428,
        description='Soil Adjusted Vegetation Index',
    ),
    IndexDefinition(
        name='SI',
        expression='(1 - blue) * (1 - green) * (1 - red)',
        inputs={'blue': 'blue', 'green': 'green', 'red': 'red'},
        formula=lambda v: (1 - v['blue']) * (1 - v['green']) * (1 - v['red']),
        description='Shadow Index',
    ),
    IndexDefinition(
        name='RVI',
        expression='NIR / Red',
        inputs={'NIR': 'nir', 'Red': 'red'},
        formula=lambda v: v['NIR'] / v['Red'],
        clamp=(0.0, 10.0),
        value_range=(0.0, 10.0),
        description='Ratio Vegetation Index (Tucker 1979)',
    ),
    IndexDefinition(
        name='DVI',
        expression='NIR - Red',
        inputs={'NIR': 'nir', 'Red': 'red'},
        formula=lambda v: v['NIR'] - v['Red'],
        description='Difference Vegetation Index (Jordan 1969)',
    ),
    IndexDefinition(
        name='TVI',
        expression='0.5 * (120 * (NIR - Green) - 200 * (Red - Green))',
        inputs={'NIR': 'nir', 'Red': 'red', 'Green': 'green'},
        formula=lambda v: 0.5 * (120 * (v['NIR'] - v['Green']) - 200 * (v['Red'] - v['Green'])),
        description='Triangle Vegetation Index (Broge and Leblanc 2001)',
    ),
    IndexDefinition(
        name='CI',
        expression='SWIR1 / SWIR2',
        inputs={'SWIR1': 'swir1', 'SWIR2': 'swir2'},
        formula=lambda v: v['SWIR1'] / v['SWIR2'],
        description='Clay Index',
    ),
    IndexDefinition(
        name='BI',
        expression='sqrt((pow(Red,2) + pow(NIR,2)) / 2)',
        inputs={'Red': 'red', 'NIR': 'nir'},
        formula=lambda v: np.ma.sqrt((v['Red'] ** 2 + v['NIR'] ** 2) / 2),
        description='Brightness Index',
    ),
    IndexDefinition(
        name='NDBI',
        expression='(SWIR - NIR) / (SWIR + NIR)',
        inputs={'NIR': 'nir', 'SWIR': 'swir1'},
        formula=lambda v: (v['SWIR'] - v['NIR']) / (v['SWIR'] + v['NIR']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Built-up Index (Zha et al. 2003)',
    ),
    IndexDefinition(
        name='NSRVI',
        expression='NIR / SWIR1',
        inputs={'NIR': 'nir', 'SWIR1': 'swir1'},
        formula=lambda v: v['NIR'] / v['SWIR1'],
        description='NIR / SWIR1 simple ratio',
    ),
    IndexDefinition(
        name='NDRE3',
        expression='(NIR - RE3) / (NIR + RE3)',
        inputs={'NIR': 'nir', 'RE3': 'red_edge3'},
        formula=lambda v: (v['NIR'] - v['RE3']) / (v['NIR'] + v['RE3']),
        value_range=(-1.0, 1.0),
        description='Normalized Difference Red Edge (red edge 3)',
        sensors=('sentinel2',),
    ),
    IndexDefinition(
        name='RDI',
        expression='SWIR2 / NIR',
        inputs={'SWIR2': 'swir2', 'NIR': 'nir'},
        formula=lambda v: v['SWIR2'] / v['NIR'],
        description='Ratio Drought Index',
    ),
)

# Indices computed for Landsat time series by default
LANDSAT_DEFAULT_INDICES = (
    'BSI', 'DRS', 'DSWI', 'EVI', 'GNDVI',
    'LAI', 'NBR', 'NDMI', 'NDSI', 'NDVI',
    'NDWI', 'SAVI', 'SI',
    'RVI', 'DVI', 'TVI', 'CI', 'BI',
    'NDBI', 'NSRVI',
)


# Default index set per sensor group
SENSOR_DEFAULT_INDICES: Dict[str, Tuple[str, ...]] = {
    'landsat': LANDSAT_DEFAULT_INDICES,
    'sentinel2': LANDSAT_DEFAULT_INDICES + ('NDRE3', 'RDI'),
    'modis': ('DRS', 'EVI', 'NBR', 'NDMI', 'NDSI', 'NDVI', 'SAVI'),
}


def supports_sensor(name: str, aliases: BandAliases) -> bool:
    """True when the index is defined for the sensor and all its inputs have a band."""
    definition = get_index(name)
    return (aliases.sensor in definition.sensors
            and all(role in aliases for role in definition.inputs.values()))


def available_indices() -> List[str]:
    return list(INDEX_DEFINITIONS)


def get_index(name: str) -> IndexDefinition:
    try:
        return INDEX_DEFINITIONS[name.upper()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown index '{name}'. Available indices: {available_indices()}"
        )


def compute_index(image: Image, name: str, aliases: BandAliases = LANDSAT) -> Image:
    """
    Evaluate one index on an image.

    Parameters:
    -----------
    image : Image
        Scaled reflectance image
    name : str
        Index name (see available_indices())
    aliases : BandAliases
        Sensor band-alias map (default: Landsat TM/ETM+ names)

    Returns:
    --------
    Image : New single-band image named after the index. The input is not
            modified.
    """
    definition = get_index(name)
    variables = {
        var: image[aliases[role]].astype(np.float64)
        for var, role in definition.inputs.items()
    }
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        result = definition.formula(variables)
        result = np.ma.masked_invalid(result)
        if definition.clamp is not None:
            low, high = definition.clamp
            result = np.ma.clip(result, low, high)
    return Image(
        {definition.name: result},
        crs=image.crs,
        transform=image.transform,
        properties=image.properties
    )


def add_index(image: Image, name: str, aliases: BandAliases = LANDSAT) -> Image:
    """Append an index band to a copy of the image."""
    return image.add_bands(compute_index(image, name, aliases), overwrite=True)


def add_indices(image: Image, names: Sequence[str], aliases: BandAliases = LANDSAT) -> Image:
    for name in names:
        image = add_index(image, name, aliases)
    return image


def _index_adder(name: str) -> Callable[..., Image]:
    def adder(image: Image, aliases: BandAliases = LANDSAT) -> Image:
        return add_index(image, name, aliases)
    adder.__name__ = f"add_{name.lower()}"
    adder.__doc__ = f"Append the {INDEX_DEFINITIONS[name].description} ({name}) band."
    return adder


add_bsi = _index_adder('BSI')
add_drs = _index_adder('DRS')
add_dswi = _index_adder('DSWI')
add_evi = _index_adder('EVI')
add_gndvi = _index_adder('GNDVI')
add_lai = _index_adder('LAI')
add_nbr = _index_adder('NBR')
add_ndmi = _index_adder('NDMI')
add_ndsi = _index_adder('NDSI')
add_ndvi = _index_adder('NDVI')
add_ndwi = _index_adder('NDWI')
add_savi = _index_adder('SAVI')
add_si = _index_adder('SI')
add_rvi = _index_adder('RVI')
add_dvi = _index_adder('DVI')
add_tvi = _index_adder('TVI')
add_ci = _index_adder('CI')
add_bi = _index_adder('BI')
add_ndbi = _index_adder('NDBI')
add_nsrvi = _index_adder('NSRVI')
add_ndre3 = _index_adder('NDRE3')
add_rdi = _index_adder('RDI')


def add_snow(image: Image, aliases: BandAliases = LANDSAT, threshold: float = 0.4) -> Image:
    """Append a 0/1 'snow' band, 1 where NDSI > threshold."""
    ndsi = compute_index(image, 'NDSI', aliases)['NDSI']
    snow = np.ma.MaskedArray((np.ma.getdata(ndsi) > threshold).astype(np.uint8), mask=np.ma.getmaskarray(ndsi))
    return image.add_bands({'snow': snow}, overwrite=True)


# ============================================================================
# NORMALIZED DISTANCE RED & SWIR
# ============================================================================

def ndrs_band_name(forest_types: Sequence[int]) -> str:
    """
    Output band name for NDRS over a forest-type subset.

    [210] -> NDRS_coni, [220] -> NDRS_deci, anything else -> NDRS_mixed.
    """
    forest_types = list(forest_types)
    if len(forest_types) == 1:
        if forest_types[0] == 210:
            return 'NDRS_coni'
        if forest_types[0] == 220:
            return 'NDRS_deci'
    return 'NDRS_mixed'


def add_ndrs(
    image: Image,
    landcover: AnnualLandcover,
    forest_types: Sequence[int] = FOREST_CLASSES,
    aoi: Optional[BaseGeometry] = None,
    band: str = 'DRS'
) -> Image:
    """
    Append the Normalized Distance Red & SWIR band.

    DRS is rescaled with the min/max of DRS over forest pixels of the
    image's year (land cover resolved with the collaborator's year
    fallback), optionally restricted to an area of interest:

        NDRS = (clamp(DRS, min, max) - min) / (max - min)

    Forest class codes: 210 coniferous, 220 broadleaf, 230 mixedwood.

    Parameters:
    -----------
    image : Image
        Composite carrying a DRS band and a 'year' property
    landcover : AnnualLandcover
        Annual land-cover classification aligned to the image grid
    forest_types : Sequence[int]
        Forest classes defining the normalisation region (default: all three)
    aoi : Optional[BaseGeometry]
        Region for the min/max reduction (default: whole image)
    band : str
        Name of the DRS band (default: 'DRS')

    Returns:
    --------
    Image : Copy of the image with an NDRS_coni / NDRS_deci / NDRS_mixed band.
            The band is fully masked when the region holds no forest pixels
            or min equals max.

    Raises:
    -------
    ConfigurationError
        If the DRS band or the 'year' property is missing
    """
    if band not in image:
        raise ConfigurationError(f"NDRS requires a '{band}' band; add DRS first")
    year = image.get('year')
    if year is None:
        raise ConfigurationError("NDRS requires a 'year' property on the image")

    name = ndrs_band_name(forest_types)
    drs = image[band].astype(np.float64)

    region = landcover.class_mask(year, forest_types)
    if aoi is not None:
        region &= image.select(band).clip(aoi).valid_mask()
    forest_drs = np.ma.MaskedArray(np.ma.getdata(drs), mask=np.ma.getmaskarray(drs) | ~region)

    if forest_drs.count() == 0:
        logger.warning(f"No forest pixels for {name} in year {year}; band is fully masked")
        return image.add_bands({name: np.ma.masked_all(drs.shape, dtype=np.float64)}, overwrite=True)

    low = float(forest_drs.min())
    high = float(forest_drs.max())
    if high == low:
        logger.warning(f"Forest DRS range is zero for {name} in year {year}; band is fully masked")
        return image.add_bands({name: np.ma.masked_all(drs.shape, dtype=np.float64)}, overwrite=True)

    ndrs = (np.ma.clip(drs, low, high) - low) / (high - low)
    return image.add_bands({name: ndrs}, overwrite=True)


def add_ndrs_stressed(
    image: Image,
    landcover: AnnualLandcover,
    threshold: float = 0.5,
    forest_classes: Sequence[int] = (210,),
    band: Optional[str] = None
) -> Image:
    """
    Append a binary 'NDRS_stressed' band.

    Non-forest and undefined pixels count as 0 so the band is continuous;
    forest pixels are 1 where NDRS exceeds the threshold.
    """
    band = band or ndrs_band_name(forest_classes)
    if band not in image:
        raise ConfigurationError(f"Band '{band}' not found; run add_ndrs first")
    year = image.get('year')
    if year is None:
        raise ConfigurationError("NDRS_stressed requires a 'year' property on the image")

    forest = landcover.class_mask(year, forest_classes)
    ndrs = image[band]
    values = np.where(forest & ~np.ma.getmaskarray(ndrs), np.ma.getdata(ndrs), 0.0)
    stressed = (values > threshold).astype(np.uint8)
    return image.add_bands({'NDRS_stressed': stressed}, overwrite=True)
