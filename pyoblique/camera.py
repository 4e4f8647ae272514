import dataclasses
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from .projection import Projection
from .utils import radial_distortion_correction


@dataclass(frozen=True)
class CameraModel:
    """
    Calibration of one physical oblique camera, shared by all images it took.

    Attributes:
        name: Camera name, used by legacy documents to reference the camera.
        size: Nominal image size (width, height) in pixels. (0, 0) if unknown.
        tile_size: Size (width, height) of an image tile in pixels.
        tile_resolution: Pixels per tile unit for each zoom level.
        principal_point: Principal point (x, y) in pixels, None without camera.
        pixel_size: Pixel size (x, y) in sensor units.
        distortion_forward_coeffs: Found-to-expected radial polynomial
            (observed pixel to ideal pixel).
        distortion_inverse_coeffs: Expected-to-found radial polynomial
            (ideal pixel to observed pixel).
        projection: Projection of the ground coordinates of the images.
    """

    name: str = "default"
    size: Tuple[int, int] = (0, 0)
    tile_size: Tuple[int, int] = (0, 0)
    tile_resolution: Tuple[float, ...] = ()
    principal_point: Optional[Tuple[float, float]] = None
    pixel_size: Optional[Tuple[float, float]] = None
    distortion_forward_coeffs: Tuple[float, ...] = ()
    distortion_inverse_coeffs: Tuple[float, ...] = ()
    projection: Optional[Projection] = None
    url: str = ""
    terrain_provider: Any = field(default=None, compare=False, repr=False)
    headers: Optional[Dict[str, str]] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        # Normalize sequences so instances stay hashable and comparable
        def as_tuple(value, cast=float):
            return tuple(cast(v) for v in value) if value is not None else None

        size = as_tuple(self.size, int) or (0, 0)
        if len(size) != 2 or size[0] < 0 or size[1] < 0:
            raise ValueError(f"Camera '{self.name}' has an invalid image size {self.size}")
        object.__setattr__(self, "size", size)
        object.__setattr__(self, "tile_size", as_tuple(self.tile_size, int) or (0, 0))
        object.__setattr__(self, "tile_resolution", as_tuple(self.tile_resolution) or ())
        object.__setattr__(self, "principal_point", as_tuple(self.principal_point))
        object.__setattr__(self, "pixel_size", as_tuple(self.pixel_size))
        object.__setattr__(self, "distortion_forward_coeffs", as_tuple(self.distortion_forward_coeffs) or ())
        object.__setattr__(self, "distortion_inverse_coeffs", as_tuple(self.distortion_inverse_coeffs) or ())

        if self.principal_point is not None and len(self.principal_point) != 2:
            raise ValueError("principal_point must have two components")
        if self.pixel_size is not None and len(self.pixel_size) != 2:
            raise ValueError("pixel_size must have two components")

    @property
    def has_camera(self) -> bool:
        """Whether exact projective transformation is possible."""
        return self.principal_point is not None

    @property
    def has_radial(self) -> bool:
        return (self.principal_point is not None and self.pixel_size is not None and
                bool(self.distortion_forward_coeffs or self.distortion_inverse_coeffs))

    @property
    def has_size(self) -> bool:
        return self.size[0] > 0 and self.size[1] > 0

    def radial_distortion_coordinate(self, coordinate: Sequence[float], use_forward: bool) -> np.ndarray:
        """
        Applies the forward (observed to ideal) or inverse (ideal to observed)
        distortion polynomial of this camera to an image coordinate.
        """
        coefficients = self.distortion_forward_coeffs if use_forward else self.distortion_inverse_coeffs
        if not coefficients or self.principal_point is None or self.pixel_size is None:
            return np.asarray(coordinate[:2], dtype=np.float64)
        return radial_distortion_correction(coefficients, coordinate, self.principal_point, self.pixel_size)

    def with_size(self, size: Sequence[int]) -> "CameraModel":
        return dataclasses.replace(self, size=tuple(size))

    def with_tile_resolution(self, tile_resolution: Sequence[float]) -> "CameraModel":
        return dataclasses.replace(self, tile_resolution=tuple(tile_resolution))
