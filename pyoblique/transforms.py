import asyncio
import logging
import numpy as np
from typing import List, NamedTuple, Optional, Protocol, Sequence

from .image import ObliqueImage
from .projection import Projection, mercator_projection, transform_coordinate, transform_coordinates
from .vector import Feature, Geometry, GeometryType, circle_to_polygon, convert_geometry_to_polygon

log = logging.getLogger(__name__)

# Shapes which stay rectangles when polygonized for editing
RECTANGLE_SHAPES = ("bbox", "rectangle")

TERRAIN_ERROR_THRESHOLD = 1.0
TERRAIN_ERROR_COUNT_THRESHOLD = 3


class TerrainProvider(Protocol):
    """Anything that can sample ground heights, e.g. a DEM service client."""

    async def sample_heights(self, coordinates: Sequence[Sequence[float]],
                             projection: Optional[Projection]) -> Sequence[Optional[float]]:
        """Heights for (x, y) coordinates in ``projection``, None where unknown."""
        ...


class TransformResult(NamedTuple):
    coords: np.ndarray
    height: float
    estimate: bool


async def _sample_heights(image: ObliqueImage, coordinates: Sequence[Sequence[float]]) -> List[Optional[float]]:
    """Heights from the image's terrain provider. Failures count as unknown."""
    provider = image.meta.terrain_provider
    try:
        heights = await provider.sample_heights(coordinates, image.projection)
    except Exception as e:
        log.warning("The terrain of image '%s' could not be queried, positions might be inaccurate: %s",
                    image.name, e)
        return [None] * len(coordinates)
    return [None if h is None else float(h) for h in heights]


async def transform_to_image(image: ObliqueImage, world_coordinate: Sequence[float],
                             projection: Optional[Projection] = None,
                             use_terrain: bool = True) -> TransformResult:
    """
    Transforms a world coordinate into pixel coordinates of an image.

    The height used is the coordinate's own Z if it has a non zero one,
    otherwise a height sampled from the terrain provider of the image,
    otherwise the average footprint height (flagged as an estimate).

    Args:
        image: The image to transform into.
        world_coordinate: (x, y[, z]) in ``projection``.
        projection: Projection of the input, web mercator if None.
        use_terrain: Set False to ignore the terrain provider.
    """
    internal = transform_coordinate(world_coordinate, projection or mercator_projection, image.projection)

    if len(world_coordinate) > 2 and world_coordinate[2]:
        height = float(world_coordinate[2])
        return TransformResult(image.transform_world_to_image(internal, height), height, False)

    if use_terrain and image.meta.terrain_provider is not None:
        height = (await _sample_heights(image, [internal[:2]]))[0]
        if height is not None:
            return TransformResult(image.transform_world_to_image(internal, height), height, False)

    height = image.average_height
    return TransformResult(image.transform_world_to_image(internal, height), height, True)


async def transform_from_image(image: ObliqueImage, image_coordinate: Sequence[float],
                               projection: Optional[Projection] = None,
                               use_terrain: bool = True,
                               terrain_error_threshold: float = TERRAIN_ERROR_THRESHOLD,
                               terrain_error_count_threshold: int = TERRAIN_ERROR_COUNT_THRESHOLD) -> TransformResult:
    """
    Transforms a pixel of an image onto the ground.

    Without terrain the pixel is intersected with the average footprint
    height. With a terrain provider the height is refined iteratively until
    it changes by less than ``terrain_error_threshold`` or more than
    ``terrain_error_count_threshold`` rounds were taken.

    Returns:
        Coordinates (x, y, z) in ``projection`` (web mercator if None).
    """
    height = image.average_height
    world = image.transform_image_to_world(image_coordinate, height)
    estimate = True

    if use_terrain and image.meta.terrain_provider is not None:
        count = 0
        while True:
            count += 1
            sampled = (await _sample_heights(image, [world[:2]]))[0]
            if sampled is None:
                break
            world = image.transform_image_to_world(image_coordinate, sampled)
            if abs(height - sampled) < terrain_error_threshold or count > terrain_error_count_threshold:
                height = sampled
                estimate = False
                break
            height = sampled

    coords = transform_coordinate(world, image.projection, projection or mercator_projection)
    return TransformResult(coords, height, estimate)


async def mercator_geometry_to_image_geometry(geometry: Geometry, image: ObliqueImage) -> Geometry:
    """
    Returns a new geometry with the coordinates of a web mercator geometry in
    pixel coordinates of an image. Circles are approximated by polygons.

    Raises:
        ConversionError: If a coordinate cannot be projected into the image.
    """
    source = circle_to_polygon(geometry) if geometry.type == GeometryType.CIRCLE else geometry.clone()
    positions = source.flat_coordinates()
    if not positions:
        return source

    internal = transform_coordinates([p[:2] for p in positions], mercator_projection, image.projection)
    heights: List[Optional[float]] = [p[2] if len(p) > 2 and p[2] else None for p in positions]

    missing = [i for i, h in enumerate(heights) if h is None]
    if missing and image.meta.terrain_provider is not None:
        sampled = await _sample_heights(image, [internal[i] for i in missing])
        for i, h in zip(missing, sampled):
            heights[i] = h

    for position, coordinate, height in zip(positions, internal, heights):
        pixel = image.transform_world_to_image(coordinate, height if height else image.average_height)
        position[0] = float(pixel[0])
        position[1] = float(pixel[1])
    return source


async def image_geometry_to_mercator_geometry(geometry: Geometry, image: ObliqueImage) -> Geometry:
    """
    Returns a new geometry with the pixel coordinates of an image geometry
    transformed to web mercator. Positions gain a height.
    """
    source = geometry.clone()
    positions = source.flat_coordinates()
    results = await asyncio.gather(*(transform_from_image(image, p[:2]) for p in positions))
    for position, result in zip(positions, results):
        position[:] = [float(c) for c in result.coords[:3]]
    return source


def get_polygonized_geometry(feature: Feature, retain_rectangle: bool = False) -> Geometry:
    """
    An editable polygonal version of the geometry of a feature.

    Rectangles keep their geometry if ``retain_rectangle`` is set, so that
    edits to them stay rectangular.
    """
    geometry = feature.geometry
    if geometry is None:
        raise ValueError(f"Feature {feature.id!r} has no geometry")
    if retain_rectangle and geometry.properties.get("shape") in RECTANGLE_SHAPES:
        return geometry
    return convert_geometry_to_polygon(geometry)
