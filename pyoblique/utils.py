import math
import re
import numpy as np
from typing import List, Optional, Sequence, Tuple

from .types import MERCATOR_HALF_WIDTH, TileCoordinate, ViewDirection

Extent = Tuple[float, float, float, float]  # min_x, min_y, max_x, max_y


def radial_distortion_correction(coefficients: Optional[Sequence[float]],
                                 point: Sequence[float],
                                 principal_point: Sequence[float],
                                 pixel_size: Sequence[float]) -> np.ndarray:
    """Applies a radial distortion polynomial to an image coordinate.

    The polynomial is evaluated in the squared radial distance of the point
    from the principal point, measured in sensor units (pixel offsets scaled
    by the pixel size). The result is the point shifted radially by
    ``(point - principal_point) * poly(r^2)``.

    Args:
        coefficients: Polynomial coefficients, lowest order first.
        point: Image coordinate (x, y).
        principal_point: Principal point (x, y) in pixels.
        pixel_size: Pixel size (x, y) in sensor units.

    Returns:
        The corrected (x, y) coordinate as a numpy array.
    """
    p = np.asarray(point[:2], dtype=np.float64)
    if coefficients is None or len(coefficients) == 0:
        return p.copy()

    pp = np.asarray(principal_point, dtype=np.float64)
    offset = p - pp
    scaled = offset * np.asarray(pixel_size, dtype=np.float64)
    r2 = float(np.dot(scaled, scaled))

    factor = 0.0
    for c in reversed(coefficients): # Horner
        factor = factor * r2 + float(c)

    return p + offset * factor


def distance_squared_2d(a: Sequence[float], b: Sequence[float]) -> float:
    dx = a[0] - b[0]
    dy = a[1] - b[1]
    return dx * dx + dy * dy


def bounding_extent(coordinates: Sequence[Sequence[float]]) -> Extent:
    arr = np.asarray([c[:2] for c in coordinates], dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Cannot compute the extent of an empty coordinate list")
    min_x, min_y = arr.min(axis=0)
    max_x, max_y = arr.max(axis=0)
    return float(min_x), float(min_y), float(max_x), float(max_y)


def buffer_extent(extent: Extent, value: float) -> Extent:
    return extent[0] - value, extent[1] - value, extent[2] + value, extent[3] + value


def extent_center(extent: Extent) -> Tuple[float, float]:
    return (extent[0] + extent[2]) / 2.0, (extent[1] + extent[3]) / 2.0


def contains_coordinate(extent: Extent, coordinate: Sequence[float]) -> bool:
    return (extent[0] <= coordinate[0] <= extent[2] and
            extent[1] <= coordinate[1] <= extent[3])


def extents_intersect(a: Extent, b: Extent) -> bool:
    return a[0] <= b[2] and a[2] >= b[0] and a[1] <= b[3] and a[3] >= b[1]


def point_in_polygon(point: Sequence[float], ring: Sequence[Sequence[float]]) -> bool:
    """Even-odd test of a point against a (closed or open) linear ring."""
    x, y = point[0], point[1]
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def sort_footprint_corners(corners: Sequence[Sequence[float]],
                           view_direction: Optional[ViewDirection] = None) -> List[np.ndarray]:
    """Orders four corner points as lower left, lower right, upper right, upper left.

    Each corner of the bounding extent claims the closest remaining input
    corner. For EAST, SOUTH and WEST facing images the order is rotated, so
    that the first corner corresponds to the image's lower left.

        3----2   ^
        |    |   |
        0----1 north
    """
    remaining = [np.asarray(c, dtype=np.float64) for c in corners]
    min_x, min_y, max_x, max_y = bounding_extent(remaining)
    extent_points = [(min_x, min_y), (max_x, min_y), (max_x, max_y), (min_x, max_y)]

    sorted_corners = []
    for extent_point in extent_points:
        distances = [distance_squared_2d(extent_point, c) for c in remaining]
        sorted_corners.append(remaining.pop(int(np.argmin(distances))))

    s = sorted_corners
    if view_direction == ViewDirection.EAST:
        s = [s[3], s[0], s[1], s[2]]
    elif view_direction == ViewDirection.SOUTH:
        s = [s[2], s[3], s[0], s[1]]
    elif view_direction == ViewDirection.WEST:
        s = [s[1], s[2], s[3], s[0]]
    return s


def bilinear_interpolate(quad: Sequence[Sequence[float]], u: float, v: float) -> np.ndarray:
    """Point at the fractional position (u, v) of a sorted quadrilateral."""
    c0, c1, c2, c3 = (np.asarray(c[:2], dtype=np.float64) for c in quad)
    return ((1 - u) * (1 - v) * c0 + u * (1 - v) * c1 +
            u * v * c2 + (1 - u) * v * c3)


def inverse_bilinear(quad: Sequence[Sequence[float]], point: Sequence[float],
                     max_iterations: int = 30, tolerance: float = 1e-12) -> Optional[Tuple[float, float]]:
    """Finds (u, v) with bilinear_interpolate(quad, u, v) == point.

    Uses Newton iteration. Returns None for degenerate quadrilaterals or when
    the iteration does not converge.
    """
    c0, c1, c2, c3 = (np.asarray(c[:2], dtype=np.float64) for c in quad)
    target = np.asarray(point[:2], dtype=np.float64)
    e = c1 - c0
    f = c3 - c0
    k = c0 - c1 + c2 - c3

    u, v = 0.5, 0.5
    scale = max(np.abs(np.concatenate([e, f])).max(), 1.0)
    for _ in range(max_iterations):
        residual = c0 + e * u + f * v + k * u * v - target
        if np.abs(residual).max() <= tolerance * scale:
            return float(u), float(v)
        jacobian = np.column_stack((e + k * v, f + k * u))
        det = np.linalg.det(jacobian)
        if abs(det) < 1e-15:
            return None
        du, dv = np.linalg.solve(jacobian, residual)
        u -= du
        v -= dv

    residual = c0 + e * u + f * v + k * u * v - target
    if np.abs(residual).max() <= 1e-6 * scale:
        return float(u), float(v)
    return None


# XYZ tile grid in web mercator with the origin in the top left corner

def _tile_span(z: int) -> float:
    return 2.0 * MERCATOR_HALF_WIDTH / (2 ** z)


def tile_coordinate_for_coordinate(coordinate: Sequence[float], z: int) -> TileCoordinate:
    """Returns the (z, x, y) tile containing a web mercator coordinate."""
    span = _tile_span(z)
    max_index = 2 ** z - 1
    x = int(math.floor((coordinate[0] + MERCATOR_HALF_WIDTH) / span))
    y = int(math.floor((MERCATOR_HALF_WIDTH - coordinate[1]) / span))
    return z, min(max(x, 0), max_index), min(max(y, 0), max_index)


def tile_extent(z: int, x: int, y: int) -> Extent:
    span = _tile_span(z)
    min_x = -MERCATOR_HALF_WIDTH + x * span
    max_y = MERCATOR_HALF_WIDTH - y * span
    return min_x, max_y - span, min_x + span, max_y


def tile_coordinates_for_extent(extent: Extent, z: int) -> List[TileCoordinate]:
    _, min_tx, min_ty = tile_coordinate_for_coordinate((extent[0], extent[3]), z)
    _, max_tx, max_ty = tile_coordinate_for_coordinate((extent[2], extent[1]), z)
    return [(z, x, y)
            for x in range(min_tx, max_tx + 1)
            for y in range(min_ty, max_ty + 1)]


def normalize_url(url: str) -> Tuple[str, str]:
    """Returns the document url and the base url of a data set url.

    Urls not ending in ``.json`` get ``image.json`` appended.
    """
    if not url.endswith(".json"):
        url = re.sub(r"/?$", "/image.json", url, count=1)
    base_url = re.sub(r"/?([^/]+\.json)?$", "", url, count=1)
    return url, base_url
