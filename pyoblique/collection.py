import asyncio
import logging
import math
import numpy as np
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

import requests

from .dataset import ObliqueDataSet
from .events import Event
from .image import ObliqueImage
from .projection import mercator_projection, transform_coordinate, transform_coordinates
from .types import (
    ADJACENT_NEIGHBOUR_COUNT,
    ADJACENT_SEARCH_BUFFER,
    DataState,
    ViewDirection,
    get_state_from_states,
    tile_coordinate_from_string,
)
from .utils import (
    Extent,
    bounding_extent,
    buffer_extent,
    distance_squared_2d,
    extent_center,
    point_in_polygon,
    sort_footprint_corners,
    tile_extent,
)
from .vector import Feature, Geometry, GeometryType, VectorSource

log = logging.getLogger(__name__)

DataSetLike = Union[ObliqueDataSet, Dict[str, Any]]


class _IndexedImage(NamedTuple):
    image: ObliqueImage
    footprint: np.ndarray # Shape (4, 2), mercator, sorted into a ring
    center: np.ndarray # Shape (2,), mercator


def _index_image(image: ObliqueImage) -> _IndexedImage:
    footprint = transform_coordinates(image.ground_coordinates[:, :2], image.projection, mercator_projection)
    center = transform_coordinate(image.center_point_on_ground[:2], image.projection, mercator_projection)
    return _IndexedImage(image, np.asarray(sort_footprint_corners(footprint)), center)


def _image_feature(indexed: _IndexedImage) -> Feature:
    ring = indexed.footprint.tolist()
    ring.append(list(ring[0]))
    return Feature(Geometry(GeometryType.POLYGON, [ring]), feature_id=indexed.image.name,
                   properties={"view_direction": indexed.image.view_direction})


def _tile_feature(tile: str, state: DataState) -> Feature:
    min_x, min_y, max_x, max_y = tile_extent(*tile_coordinate_from_string(tile))
    ring = [[min_x, min_y], [max_x, min_y], [max_x, max_y], [min_x, max_y], [min_x, min_y]]
    return Feature(Geometry(GeometryType.POLYGON, [ring]), feature_id=tile, properties={"state": state})


class ObliqueCollection:
    """
    Aggregates oblique data sets and resolves images for locations.

    Images are unique by name across all data sets. All coordinates and
    extents passed to or returned from a collection are web mercator.

    Attributes:
        images_loaded: Event raised with ``(images, tile_coordinate)`` when a
            data set delivers new images.
        image_changed: Event raised with the new image when the current image
            changes.
        destroyed: Event raised once when the collection is destroyed.
    """

    def __init__(self, name: Optional[str] = None,
                 data_sets: Optional[Sequence[DataSetLike]] = None,
                 max_zoom: int = 0,
                 min_zoom: int = 0,
                 scale_factor: float = 4,
                 hide_levels: int = 0,
                 datasource_id: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.name = name
        self.view_options = {
            "max_zoom": int(max_zoom),
            "min_zoom": int(min_zoom),
            "scale_factor": float(scale_factor),
            "hide_levels": int(hide_levels),
        }
        self.datasource_id = datasource_id
        self.session = session

        self.images_loaded = Event()
        self.image_changed = Event()
        self.destroyed = Event()

        self._data_sets: List[ObliqueDataSet] = []
        self._images: Dict[str, _IndexedImage] = {}
        self._current_image: Optional[ObliqueImage] = None
        self._tile_feature_source: Optional[VectorSource] = None
        self._image_feature_source: Optional[VectorSource] = None
        self._loading_task: Optional[asyncio.Task] = None
        self._loaded = False

        for data_set in data_sets or []:
            self._add_data_set(data_set)

    @staticmethod
    def get_default_options() -> Dict[str, Any]:
        return {
            "max_zoom": 0,
            "min_zoom": 0,
            "scale_factor": 4,
            "hide_levels": 0,
            "datasource_id": None,
        }

    @classmethod
    def from_dict(cls, options: Dict[str, Any], session: Optional[requests.Session] = None) -> "ObliqueCollection":
        defaults = cls.get_default_options()
        return cls(name=options.get("name"),
                   data_sets=options.get("data_sets"),
                   max_zoom=options.get("max_zoom", defaults["max_zoom"]),
                   min_zoom=options.get("min_zoom", defaults["min_zoom"]),
                   scale_factor=options.get("scale_factor", defaults["scale_factor"]),
                   hide_levels=options.get("hide_levels", defaults["hide_levels"]),
                   datasource_id=options.get("datasource_id"),
                   session=session)

    @property
    def data_sets(self) -> List[ObliqueDataSet]:
        return list(self._data_sets)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def images(self) -> List[ObliqueImage]:
        return [i.image for i in self._images.values()]

    @property
    def current_image(self) -> Optional[ObliqueImage]:
        return self._current_image

    def set_current_image(self, image: Optional[ObliqueImage]) -> None:
        """Makes an image the current one. Raises ``image_changed`` if it differs."""
        if image is self._current_image:
            return
        self._current_image = image
        log.debug("Current image is now %s", image.name if image else None)
        self.image_changed.raise_event(image)

    def get_extent_of_current_image(self) -> Optional[Extent]:
        """Mercator extent of the footprint of the current image."""
        if self._current_image is None:
            return None
        indexed = self._images.get(self._current_image.name)
        if indexed is None:
            indexed = _index_image(self._current_image)
        return bounding_extent(indexed.footprint)

    @property
    def tile_feature_source(self) -> VectorSource:
        """
        A source with a polygon for each tile of all data sets. The feature id
        is the tile coordinate string, the "state" property its merged DataState.
        """
        if self._tile_feature_source is None:
            self._tile_feature_source = VectorSource()
            self._tile_feature_source.add_features(
                [_tile_feature(tile, state) for tile, state in self.get_tiles().items()])
        return self._tile_feature_source

    @property
    def image_feature_source(self) -> VectorSource:
        """
        A source with the footprint of each loaded image. The feature id is
        the image name, the "view_direction" property its ViewDirection.
        """
        if self._image_feature_source is None:
            self._image_feature_source = VectorSource()
            self._image_feature_source.add_features([_image_feature(i) for i in self._images.values()])
        return self._image_feature_source

    def _add_data_set(self, data_set: DataSetLike) -> ObliqueDataSet:
        if not isinstance(data_set, ObliqueDataSet):
            data_set = ObliqueDataSet.from_dict(data_set, session=self.session)
        data_set.images_loaded.add_event_listener(self._load_images)
        data_set.tile_state_changed.add_event_listener(lambda _tile, _state: self._sync_tile_features())
        self._load_images(data_set.images)
        self._data_sets.append(data_set)
        return data_set

    async def _load_data_set(self, data_set: ObliqueDataSet) -> None:
        await data_set.load()
        self._sync_tile_features()

    def _sync_tile_features(self) -> None:
        if self._tile_feature_source is None:
            return
        for tile, state in self.get_tiles().items():
            feature = self._tile_feature_source.get_feature_by_id(tile)
            if feature is None:
                self._tile_feature_source.add_feature(_tile_feature(tile, state))
            elif feature.get("state") != state:
                feature.set("state", state)

    async def add_data_set(self, data_set: DataSetLike) -> ObliqueDataSet:
        """
        Adds a data set, or the options of one, to this collection. Data sets
        added after the collection was loaded are loaded right away.
        """
        loading = self._loading_task
        data_set = self._add_data_set(data_set)
        if loading is not None:
            await loading
            try:
                await self._load_data_set(data_set)
            except Exception as e:
                log.warning("Failed to load oblique data set %s: %s", data_set.url, e)
        self._sync_tile_features()
        return data_set

    async def load(self) -> None:
        """
        Loads all data sets in parallel. A failing data set is logged and does
        not keep the others from loading.
        """
        if self._loading_task is None:
            self._loading_task = asyncio.ensure_future(self._load())
        await self._loading_task

    async def _load(self) -> None:
        data_sets = list(self._data_sets)
        results = await asyncio.gather(*(self._load_data_set(d) for d in data_sets), return_exceptions=True)
        for data_set, result in zip(data_sets, results):
            if isinstance(result, Exception):
                log.warning("Failed to load oblique data set %s: %s", data_set.url, result)
        self._loaded = True

    def _load_images(self, images: Sequence[ObliqueImage], tile_coordinate: Optional[str] = None) -> None:
        indexed = [_index_image(image) for image in images]
        for item in indexed:
            self._images[item.image.name] = item

        if self._image_feature_source is not None:
            self._image_feature_source.add_features([_image_feature(i) for i in indexed])
        if images:
            self.images_loaded.raise_event(list(images), tile_coordinate)

    def get_tiles(self) -> Dict[str, DataState]:
        """All tiles of all data sets with their worst state across the data sets declaring them."""
        tiles: Dict[str, DataState] = {}
        for data_set in self._data_sets:
            for tile, state in data_set.get_tiles().items():
                tiles[tile] = get_state_from_states([state, tiles[tile]]) if tile in tiles else state
        return tiles

    def get_image_by_name(self, name: str) -> Optional[ObliqueImage]:
        indexed = self._images.get(name)
        return indexed.image if indexed else None

    def get_available_view_directions(self) -> List[ViewDirection]:
        directions = []
        for indexed in self._images.values():
            if indexed.image.view_direction not in directions:
                directions.append(indexed.image.view_direction)
        return directions

    def get_data_state_for_coordinate(self, mercator_coordinate: Sequence[float]) -> DataState:
        """
        Worst state across the data sets covering a location. If none covers
        it, every data set answers with its closest tile.
        """
        relevant = [d for d in self._data_sets if d.covers_coordinate(mercator_coordinate)] or self._data_sets
        return get_state_from_states(d.get_data_state_for_coordinate(mercator_coordinate) for d in relevant)

    def get_data_state_for_extent(self, extent: Extent) -> DataState:
        return get_state_from_states(d.get_data_state_for_extent(extent) for d in self._data_sets)

    async def _gather_data_sets(self, coroutines) -> None:
        data_sets = list(self._data_sets)
        results = await asyncio.gather(*coroutines, return_exceptions=True)
        for data_set, result in zip(data_sets, results):
            if isinstance(result, Exception):
                log.warning("Failed to load data of oblique data set %s: %s", data_set.url, result)

    async def load_data_for_coordinate(self, mercator_coordinate: Sequence[float]) -> None:
        """Loads the data of all data sets at a location. Failures are logged."""
        await self._gather_data_sets(d.load_data_for_coordinate(mercator_coordinate) for d in self._data_sets)

    async def load_data_for_extent(self, extent: Extent) -> None:
        """Loads the data of all data sets within an extent. Failures are logged."""
        await self._gather_data_sets(d.load_data_for_extent(extent) for d in self._data_sets)

    def get_image_for_coordinate(self, mercator_coordinate: Sequence[float],
                                 direction: ViewDirection) -> Optional[ObliqueImage]:
        """
        The best loaded image for a location.

        Candidates are the images whose footprint contains the location, or
        the single closest image by center if none does. A candidate facing
        ``direction`` is preferred (the closest one by center), otherwise the
        first candidate is returned. None only if nothing is loaded.
        """
        candidates = [i for i in self._images.values()
                      if point_in_polygon(mercator_coordinate, i.footprint)]
        if not candidates:
            closest = self._closest(self._images.values(), mercator_coordinate, 1)
            if not closest:
                return None
            candidates = closest

        matching = [i for i in candidates if i.image.view_direction == ViewDirection(direction)]
        if matching:
            return self._closest(matching, mercator_coordinate, 1)[0].image
        return candidates[0].image

    @staticmethod
    def _closest(items, coordinate: Sequence[float], count: int) -> List[_IndexedImage]:
        # sorted is stable, ties keep insertion order
        return sorted(items, key=lambda i: distance_squared_2d(i.center, coordinate))[:count]

    async def load_image_for_coordinate(self, mercator_coordinate: Sequence[float],
                                        direction: ViewDirection) -> Optional[ObliqueImage]:
        """Loads the data at a location, then selects an image as ``get_image_for_coordinate``."""
        await self.load_data_for_coordinate(mercator_coordinate)
        return self.get_image_for_coordinate(mercator_coordinate, direction)

    async def has_image_at_coordinate(self, mercator_coordinate: Sequence[float],
                                      direction: ViewDirection) -> bool:
        """Whether the image selected for a location actually covers it."""
        image = await self.load_image_for_coordinate(mercator_coordinate, direction)
        if image is None:
            return False
        return point_in_polygon(mercator_coordinate, self._images[image.name].footprint)

    async def load_adjacent_image(self, image: ObliqueImage, heading: float,
                                  deviation: float = math.pi / 4) -> Optional[ObliqueImage]:
        """
        Loads the neighbour of an image in a heading.

        Only images with the view direction of ``image`` are considered.

        Args:
            image: The image to start from.
            heading: Radians, 0 = east, pi / 2 = north, pi = west, 1.5 pi = south.
            deviation: Maximum angular difference to ``heading``.

        Returns:
            The closest neighbour within the deviation, None if there is none.
        """
        indexed = self._images.get(image.name) or _index_image(image)
        extent = bounding_extent(indexed.footprint)
        await self.load_data_for_extent(buffer_extent(extent, ADJACENT_SEARCH_BUFFER))

        center = extent_center(extent)
        same_direction = [i for i in self._images.values() if i.image.view_direction == image.view_direction]
        for neighbour in self._closest(same_direction, center, ADJACENT_NEIGHBOUR_COUNT):
            if neighbour.image.name == image.name:
                continue
            angle = math.atan2(neighbour.center[1] - center[1], neighbour.center[0] - center[0])
            if angle <= 0:
                angle += math.pi * 2
            difference = angle - heading
            if difference > math.pi:
                difference -= math.pi * 2
            elif difference < -math.pi:
                difference += math.pi * 2
            if -deviation <= difference <= deviation:
                return neighbour.image
        return None

    def destroy(self) -> None:
        """Destroys all data sets, images and image and tile features."""
        if self._loading_task is not None and not self._loading_task.done():
            self._loading_task.cancel()
        for data_set in self._data_sets:
            data_set.destroy()
        self._data_sets = []
        self._images.clear()
        self._current_image = None

        if self._tile_feature_source is not None:
            self._tile_feature_source.clear(silent=True)
            self._tile_feature_source = None
        if self._image_feature_source is not None:
            self._image_feature_source.clear(silent=True)
            self._image_feature_source = None

        self.images_loaded.destroy()
        self.image_changed.destroy()
        self.destroyed.raise_event()
        self.destroyed.destroy()

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the options which differ from the defaults."""
        config: Dict[str, Any] = {}
        if self.name is not None:
            config["name"] = self.name
        defaults = self.get_default_options()
        for key, value in self.view_options.items():
            if value != defaults[key]:
                config[key] = value
        if self.datasource_id != defaults["datasource_id"]:
            config["datasource_id"] = self.datasource_id
        if self._data_sets:
            config["data_sets"] = [d.to_dict() for d in self._data_sets]
        return config
