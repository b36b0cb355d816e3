"""
Annual land-cover classification collaborator.

Wraps a set of yearly categorical grids (e.g. the Canada forest land cover
VLCE2 product) and resolves a requested year to an available one.
"""

from typing import Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from .errors import ConfigurationError

LANDCOVER_CLASSES: Dict[int, str] = {
    0: 'Unclassified',
    20: 'Water',
    31: 'Snow_Ice',
    32: 'Rock_Rubble',
    33: 'Exposed_Barren_land',
    40: 'Bryoids',
    50: 'Shrubs',
    80: 'Wetland',
    81: 'Wetland-treed',
    100: 'Herbs',
    210: 'Coniferous',
    220: 'Broadleaf',
    230: 'Mixedwood',
}

CONIFEROUS = 210
BROADLEAF = 220
MIXEDWOOD = 230
FOREST_CLASSES = (CONIFEROUS, BROADLEAF, MIXEDWOOD)


class AnnualLandcover:
    """
    Yearly categorical rasters aligned to the imagery grid.

    Parameters:
    -----------
    grids : Mapping[int, array-like]
        Year to 2-D class-code grid. Masked cells are unclassified.
    last_year : Optional[int]
        Last year the product covers. Defaults to the latest year in grids.
    """

    def __init__(self, grids: Mapping[int, object], last_year: Optional[int] = None):
        if not grids:
            raise ConfigurationError("AnnualLandcover needs at least one classification year")
        self._grids = {int(year): np.ma.asarray(grid) for year, grid in grids.items()}
        self.years = sorted(self._grids)
        self.last_year = last_year if last_year is not None else self.years[-1]

    def resolve_year(self, year: int) -> int:
        """
        Map a requested year to an available classification year.

        Any year at or after the product's last year maps to that last year;
        other years fall back to the nearest available year (earlier wins
        on ties).
        """
        year = int(year)
        if year >= self.last_year:
            year = self.last_year
        if year in self._grids:
            return year
        return min(self.years, key=lambda y: (abs(y - year), y))

    def for_year(self, year: int) -> np.ma.MaskedArray:
        return self._grids[self.resolve_year(year)]

    def class_mask(self, year: int, classes: Iterable[int]) -> np.ndarray:
        """Boolean grid, True where the class code is in classes."""
        grid = self.for_year(year)
        inside = np.isin(np.ma.getdata(grid), list(classes))
        return inside & ~np.ma.getmaskarray(grid)


def class_proportions(
    grid: object,
    classes: Optional[Sequence[int]] = None
) -> Dict[str, float]:
    """
    Fraction of valid pixels in each land-cover class.

    Parameters:
    -----------
    grid : array-like
        2-D class-code grid; masked cells are ignored
    classes : Optional[Sequence[int]]
        Class codes to report (default: all LANDCOVER_CLASSES)

    Returns:
    --------
    Dict[str, float] : Class name to proportion. All zeros when the grid
                       has no valid pixels.
    """
    grid = np.ma.asarray(grid)
    values = grid.compressed()
    total = values.size
    codes = LANDCOVER_CLASSES if classes is None else {c: LANDCOVER_CLASSES.get(c, str(c)) for c in classes}
    return {
        name: (float(np.count_nonzero(values == code)) / total if total else 0.0)
        for code, name in codes.items()
    }
