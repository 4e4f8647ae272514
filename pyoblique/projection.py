import numpy as np
from functools import lru_cache
from typing import Any, Dict, Optional, Sequence, Union

from pyproj import CRS, Transformer


class Projection:
    """
    A coordinate reference system used by oblique data.

    Wraps a pyproj CRS built from an EPSG code (``"EPSG:25833"`` or ``25833``)
    or a proj string. Coordinates are always handled in x/y (east/north) order.
    """

    def __init__(self, epsg: Optional[Union[str, int]] = None, proj4: Optional[str] = None):
        if epsg is None and proj4 is None:
            raise ValueError("A projection needs either an epsg code or a proj4 definition")
        self.epsg = epsg
        self.proj4 = proj4
        if proj4 is not None:
            self.crs = CRS.from_user_input(proj4)
        elif isinstance(epsg, int) or str(epsg).isdigit():
            self.crs = CRS.from_epsg(int(epsg))
        else:
            self.crs = CRS.from_user_input(epsg)

    @classmethod
    def from_dict(cls, options: Union["Projection", Dict[str, Any]]) -> "Projection":
        if isinstance(options, Projection):
            return options
        return cls(epsg=options.get("epsg"), proj4=options.get("proj4"))

    def to_dict(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        if self.epsg is not None:
            config["epsg"] = self.epsg
        if self.proj4 is not None:
            config["proj4"] = self.proj4
        return config

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Projection):
            return NotImplemented
        return self.crs == other.crs

    def __hash__(self) -> int:
        return hash(self.crs.to_wkt())

    def __repr__(self) -> str:
        return f"Projection({self.epsg or self.proj4!r})"


mercator_projection = Projection("EPSG:3857")
wgs84_projection = Projection("EPSG:4326")


@lru_cache(maxsize=32)
def _get_transformer(source: Projection, dest: Projection) -> Transformer:
    return Transformer.from_crs(source.crs, dest.crs, always_xy=True)


def is_same_projection(source: Optional[Projection], dest: Optional[Projection]) -> bool:
    """None stands for web mercator."""
    source = source or mercator_projection
    dest = dest or mercator_projection
    return source is dest or source == dest


def transform_coordinate(coordinate: Sequence[float],
                         source: Optional[Projection],
                         dest: Optional[Projection]) -> np.ndarray:
    """Transforms one coordinate, keeping any dimension beyond x and y."""
    result = np.array(coordinate, dtype=np.float64)
    if is_same_projection(source, dest):
        return result
    transformer = _get_transformer(source or mercator_projection, dest or mercator_projection)
    result[0], result[1] = transformer.transform(result[0], result[1])
    return result


def transform_coordinates(coordinates: Sequence[Sequence[float]],
                          source: Optional[Projection],
                          dest: Optional[Projection]) -> np.ndarray:
    """Transforms an (N, 2+) array of coordinates."""
    result = np.array(coordinates, dtype=np.float64)
    if result.size == 0 or is_same_projection(source, dest):
        return result
    transformer = _get_transformer(source or mercator_projection, dest or mercator_projection)
    xs, ys = transformer.transform(result[:, 0], result[:, 1])
    result[:, 0] = xs
    result[:, 1] = ys
    return result
