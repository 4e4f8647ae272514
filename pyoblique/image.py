import logging
import numpy as np
from typing import Optional, Sequence
from numpy.typing import NDArray

from .camera import CameraModel
from .errors import ConversionError
from .projection import Projection
from .types import ViewDirection
from .utils import bilinear_interpolate, inverse_bilinear, sort_footprint_corners

log = logging.getLogger(__name__)


class ObliqueImage:
    """
    One oblique photograph and its georeferencing.

    Pixel coordinates have their origin in the lower left corner of the image
    with y pointing up. Ground coordinates are in the projection of the
    image's camera model.

    Images without a full camera pose (projection center and both matrices)
    are transformed with a bilinear approximation over their footprint.
    """

    name: str
    view_direction: ViewDirection
    view_direction_angle: Optional[float] # radians, 0 = east, pi / 2 = north
    meta: CameraModel

    ground_coordinates: NDArray[np.float64] # Shape (4, 3)
    center_point_on_ground: NDArray[np.float64] # Shape (3,)

    projection_center: Optional[NDArray[np.float64]] # Shape (3,)
    p_to_realworld: Optional[NDArray[np.float64]] # Shape (3, 3), pixel to world direction
    p_to_image: Optional[NDArray[np.float64]] # Shape (4, 4), world to pixel

    def __init__(self, name: str, view_direction: ViewDirection, meta: CameraModel,
                 ground_coordinates: Sequence[Sequence[float]],
                 center_point_on_ground: Sequence[float],
                 view_direction_angle: Optional[float] = None,
                 projection_center: Optional[Sequence[float]] = None,
                 p_to_realworld: Optional[Sequence[Sequence[float]]] = None,
                 p_to_image: Optional[Sequence[Sequence[float]]] = None):
        ground = np.array(ground_coordinates, dtype=np.float64)
        if ground.ndim != 2 or ground.shape[0] != 4 or ground.shape[1] not in (2, 3):
            raise ValueError(f"Image '{name}' needs four ground coordinates, got shape {ground.shape}")
        if ground.shape[1] == 2:
            ground = np.hstack((ground, np.zeros((4, 1))))

        center = np.zeros(3, dtype=np.float64)
        center_input = np.asarray(center_point_on_ground, dtype=np.float64)
        center[:center_input.shape[0]] = center_input[:3]

        self.name = name
        self.view_direction = ViewDirection(view_direction)
        self.view_direction_angle = view_direction_angle
        self.meta = meta
        self.ground_coordinates = ground
        self.center_point_on_ground = center

        self.projection_center = None
        if projection_center is not None:
            self.projection_center = np.asarray(projection_center, dtype=np.float64).reshape(3)

        self.p_to_realworld = None
        if p_to_realworld is not None:
            self.p_to_realworld = np.asarray(p_to_realworld, dtype=np.float64).reshape(3, 3)

        self.p_to_image = None
        if p_to_image is not None:
            matrix = np.asarray(p_to_image, dtype=np.float64)
            if matrix.shape == (3, 4):
                matrix = np.vstack((matrix, [0.0, 0.0, 0.0, 1.0]))
            if matrix.shape != (4, 4):
                raise ValueError(f"p_to_image must be 3x4 or 4x4, got {matrix.shape}")
            self.p_to_image = matrix

        self._average_height: Optional[float] = None

    @property
    def projection(self) -> Optional[Projection]:
        return self.meta.projection

    @property
    def has_camera(self) -> bool:
        """Whether this image supports exact coordinate transformation."""
        return (self.meta.has_camera and self.projection_center is not None and
                self.p_to_realworld is not None and self.p_to_image is not None)

    @property
    def average_height(self) -> float:
        """Mean height of the footprint corners."""
        if self._average_height is None:
            self._average_height = float(np.mean(self.ground_coordinates[:, 2]))
        return self._average_height

    def transform_image_to_world(self, image_coordinate: Sequence[float],
                                 height: Optional[float] = None) -> np.ndarray:
        """
        Transforms an image coordinate onto the horizontal plane at ``height``.

        Args:
            image_coordinate: Pixel (x, y).
            height: Height of the intersection plane. Defaults to the average
                footprint height.

        Returns:
            World coordinate (x, y, height) in the image projection.

        Raises:
            ConversionError: If the viewing ray does not hit the plane.
        """
        h = self.average_height if height is None else float(height)
        if not self.has_camera:
            return self._transform_without_camera(image_coordinate, True, h)

        x, y = self.meta.radial_distortion_coordinate(image_coordinate, True)
        pixel = np.array([x, self.meta.size[1] - y, 1.0])
        ray = self.p_to_realworld @ pixel

        if abs(ray[2]) < 1e-12:
            raise ConversionError(f"Viewing ray of image '{self.name}' is parallel to the ground plane")
        r = (h - self.projection_center[2]) / ray[2]
        world = self.projection_center + ray * r
        return np.array([world[0], world[1], h])

    def transform_world_to_image(self, world_coordinate: Sequence[float],
                                 height: Optional[float] = None) -> np.ndarray:
        """
        Transforms a world coordinate into pixel coordinates.

        Args:
            world_coordinate: (x, y[, z]) in the image projection.
            height: Height used for the projection. Defaults to the average
                footprint height.

        Returns:
            Pixel (x, y).

        Raises:
            ConversionError: If the point projects to infinity.
        """
        h = self.average_height if height is None else float(height)
        if not self.has_camera:
            return self._transform_without_camera(world_coordinate, False, h)

        point = np.array([world_coordinate[0], world_coordinate[1], h, 1.0])
        cam = self.p_to_image @ point
        if abs(cam[2]) < 1e-12:
            raise ConversionError(f"World coordinate projects to infinity in image '{self.name}'")
        image_coords = [cam[0] / cam[2], self.meta.size[1] - cam[1] / cam[2]]
        return self.meta.radial_distortion_coordinate(image_coords, False)

    def _transform_without_camera(self, coordinate: Sequence[float], is_image: bool,
                                  height: float) -> np.ndarray:
        width, image_height = self.meta.size
        ground = sort_footprint_corners(self.ground_coordinates[:, :2], self.view_direction)

        if width > 0 and image_height > 0:
            if is_image:
                u = coordinate[0] / width
                v = coordinate[1] / image_height
                xy = bilinear_interpolate(ground, u, v)
                return np.array([xy[0], xy[1], height])

            uv = inverse_bilinear(ground, coordinate)
            if uv is not None:
                return np.array([uv[0] * width, uv[1] * image_height])

        log.error("Coordinate could not be determined from footprint of image '%s', "
                  "the center will be returned", self.name)
        center = self.center_point_on_ground
        if is_image:
            return np.array([center[0], center[1], height])
        return center[:2].copy()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObliqueImage):
            return NotImplemented
        return self.name == other.name and self.meta == other.meta and \
            self.view_direction == other.view_direction and \
            np.allclose(self.ground_coordinates, other.ground_coordinates)

    def __hash__(self) -> int:
        return hash(self.name)

    def __repr__(self) -> str:
        return (f"ObliqueImage(name='{self.name}', view_direction={self.view_direction.name}, "
                f"camera='{self.meta.name}', has_camera={self.has_camera})")
