import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import requests

from .camera import CameraModel
from .errors import DataSetInitializedError, LoadError, ParseError
from .events import Event
from .image import ObliqueImage
from .io import parse_image_json, parse_image_meta, request_json
from .projection import Projection
from .types import (
    DataState,
    TileCoordinate,
    get_state_from_states,
    tile_coordinate_from_string,
    tile_coordinate_to_string,
)
from .utils import (
    Extent,
    distance_squared_2d,
    normalize_url,
    tile_coordinate_for_coordinate,
    tile_coordinates_for_extent,
)

log = logging.getLogger(__name__)


class ObliqueDataSet:
    """
    The image metadata of one oblique data source.

    Flat sources describe all images in one document. Tiled sources list
    their available tiles and every tile is fetched lazily as its own flat
    document from ``{base_url}/{z}/{x}/{y}.json``.

    Coordinates passed to the data state and loading methods are web mercator.

    Attributes:
        url: Url of the metadata document.
        base_url: Directory of the metadata document.
        projection: Projection of the ground coordinates, None to use the
            document's ``crs`` (or web mercator).
        images_loaded: Event raised with ``(images, tile_coordinate)`` once
            per parsed document. Raised for every loaded tile, even one
            without images. ``tile_coordinate`` is None for flat documents.
        tile_state_changed: Event raised with ``(tile_coordinate, state)``
            when a tile starts loading and when it is READY.
    """

    def __init__(self, url: str,
                 projection: Optional[Union[Projection, Dict[str, Any]]] = None,
                 terrain_provider: Any = None,
                 headers: Optional[Dict[str, str]] = None,
                 session: Optional[requests.Session] = None):
        self.url, self.base_url = normalize_url(url)
        self.projection = Projection.from_dict(projection) if projection is not None else None
        self.terrain_provider = terrain_provider
        self.session = session
        self._headers = dict(headers) if headers else None

        self.images_loaded = Event()
        self.tile_state_changed = Event()

        self._state = DataState.PENDING
        self._images: List[ObliqueImage] = []
        self._image_metas: List[CameraModel] = []
        self._tile_level: Optional[int] = None
        self._tiles: Dict[str, DataState] = {}
        self._failed_tiles: Set[str] = set()
        self._tile_tasks: Dict[str, asyncio.Task] = {}
        self._loading_task: Optional[asyncio.Task] = None

    @classmethod
    def from_dict(cls, options: Dict[str, Any], session: Optional[requests.Session] = None) -> "ObliqueDataSet":
        if "url" not in options:
            raise ValueError("Data set options need a 'url'")
        return cls(options["url"], projection=options.get("projection"),
                   terrain_provider=options.get("terrainProvider"),
                   headers=options.get("headers"), session=session)

    @property
    def images(self) -> List[ObliqueImage]:
        """The images loaded so far. Only ever grows."""
        return list(self._images)

    @property
    def state(self) -> DataState:
        """State of the metadata document. For tiled sources, not of the tiles."""
        return self._state

    @property
    def is_tiled(self) -> bool:
        return self._tile_level is not None

    @property
    def tile_level(self) -> Optional[int]:
        return self._tile_level

    @property
    def image_metas(self) -> List[CameraModel]:
        return list(self._image_metas)

    def get_tiles(self) -> Dict[str, DataState]:
        """All tiles of this data set with their state, keyed by ``z/x/y``."""
        return dict(self._tiles)

    def initialize(self, json: Dict[str, Any]) -> None:
        """
        Initializes the data set from an already fetched document.

        Raises:
            DataSetInitializedError: If the data set was loaded or initialized before.
            ParseError: If the document is malformed.
        """
        if self._state != DataState.PENDING:
            raise DataSetInitializedError(f"Data set '{self.url}' has already been loaded")
        self._initialize(json)

    def _initialize(self, json: Dict[str, Any]) -> None:
        if not isinstance(json, dict):
            raise ParseError(f"Metadata document of '{self.url}' is not an object")
        self._image_metas = parse_image_meta(json, self.base_url, self.projection,
                                             self.terrain_provider, self._headers)

        available_tiles = json.get("availableTiles")
        if available_tiles is not None:
            tiles = {}
            for tile in available_tiles:
                try:
                    tiles[tile_coordinate_to_string(tile_coordinate_from_string(tile))] = DataState.PENDING
                except ValueError as e:
                    raise ParseError(str(e)) from e
            tile_level = json.get("tileLevel")
            if tile_level is None and tiles:
                tile_level = tile_coordinate_from_string(next(iter(tiles)))[0]
            self._tile_level = int(tile_level) if tile_level is not None else None
            self._tiles = tiles
            self._state = DataState.READY
        else:
            images = parse_image_json(json, self._image_metas)
            self._state = DataState.READY
            self._images = images
            self.images_loaded.raise_event(images, None)
        log.debug("Initialized data set %s (%d images, %d tiles)",
                  self.url, len(self._images), len(self._tiles))

    async def load(self) -> None:
        """
        Fetches and parses the metadata document. Concurrent callers share
        the same request. After a failure the next call retries.

        Raises:
            LoadError: If the document could not be fetched.
            ParseError: If the document is malformed.
        """
        if self._state == DataState.READY:
            return
        if self._loading_task is None:
            self._state = DataState.LOADING
            self._loading_task = asyncio.ensure_future(self._load())
        await self._loading_task

    async def _load(self) -> None:
        try:
            json = await request_json(self.url, self._headers, self.session)
            self._initialize(json)
        except Exception:
            self._loading_task = None
            raise

    def _get_closest_tile_coordinate(self, mercator_coordinate: Sequence[float]) -> Optional[TileCoordinate]:
        """The tile containing the coordinate, or the closest available one by tile grid distance."""
        if self._tile_level is None:
            return None
        actual = tile_coordinate_for_coordinate(mercator_coordinate, self._tile_level)
        if tile_coordinate_to_string(actual) in self._tiles or not self._tiles:
            return actual

        closest = None
        min_distance = float("inf")
        for tile in self._tiles:
            tile_coordinate = tile_coordinate_from_string(tile)
            distance = distance_squared_2d(actual[1:], tile_coordinate[1:])
            if distance < min_distance:
                min_distance = distance
                closest = tile_coordinate
        return closest

    def _get_tiles_for_extent(self, extent: Extent) -> List[str]:
        """Available tiles within the extent that are not READY yet."""
        if self._tile_level is None:
            return []
        tiles = (tile_coordinate_to_string(tc) for tc in tile_coordinates_for_extent(extent, self._tile_level))
        return [t for t in tiles if t in self._tiles and self._tiles[t] != DataState.READY]

    def covers_coordinate(self, mercator_coordinate: Sequence[float]) -> bool:
        """False only for loaded tiled sources without a tile at the coordinate."""
        if self._state != DataState.READY or not self._tiles:
            return True
        tile = tile_coordinate_for_coordinate(mercator_coordinate, self._tile_level)
        return tile_coordinate_to_string(tile) in self._tiles

    def get_data_state_for_coordinate(self, mercator_coordinate: Sequence[float]) -> DataState:
        """State of the data at a location. Flat sources answer with their document state."""
        if self._state != DataState.READY or not self._tiles:
            return self._state
        tile = tile_coordinate_to_string(self._get_closest_tile_coordinate(mercator_coordinate))
        return self._tiles.get(tile, DataState.READY)

    def get_data_state_for_extent(self, extent: Extent) -> DataState:
        """Worst state of the tiles within an extent. No data is READY."""
        if self._state != DataState.READY or not self._tiles:
            return self._state
        return get_state_from_states(self._tiles[t] for t in self._get_tiles_for_extent(extent))

    def _load_tile(self, tile: str) -> "asyncio.Future[None]":
        task = self._tile_tasks.get(tile)
        if task is not None:
            return task

        state = self._tiles.get(tile)
        retry = state == DataState.LOADING and tile in self._failed_tiles
        if state != DataState.PENDING and not retry:
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done

        self._tiles[tile] = DataState.LOADING
        task = asyncio.ensure_future(self._fetch_tile(tile))
        self._tile_tasks[tile] = task
        if state == DataState.PENDING:
            self.tile_state_changed.raise_event(tile, DataState.LOADING)
        return task

    async def _fetch_tile(self, tile: str) -> None:
        url = f"{self.base_url}/{tile}.json"
        log.debug("Tile %s of %s is LOADING", tile, self.url)
        try:
            json = await request_json(url, self._headers, self.session)
            images = parse_image_json(json, self._image_metas)
        except (LoadError, ParseError) as e:
            self._failed_tiles.add(tile)
            log.warning("Failed to load tile %s of %s: %s", tile, self.url, e)
            raise
        finally:
            self._tile_tasks.pop(tile, None)

        self._failed_tiles.discard(tile)
        self._images.extend(images)
        self._tiles[tile] = DataState.READY
        log.debug("Tile %s of %s is READY (%d images)", tile, self.url, len(images))
        self.tile_state_changed.raise_event(tile, DataState.READY)
        self.images_loaded.raise_event(images, tile)

    async def load_data_for_coordinate(self, mercator_coordinate: Sequence[float]) -> None:
        """
        Loads the tile covering a location (or the closest available tile).

        Raises:
            LoadError: If the tile could not be fetched. The tile stays LOADING
                and is fetched again by the next request covering it.
        """
        tile_coordinate = self._get_closest_tile_coordinate(mercator_coordinate)
        if tile_coordinate is not None:
            await self._load_tile(tile_coordinate_to_string(tile_coordinate))

    async def load_data_for_extent(self, extent: Extent) -> None:
        """
        Loads all tiles within an extent. All tiles are attempted, the first
        failure is raised afterwards.
        """
        tiles = self._get_tiles_for_extent(extent)
        results = await asyncio.gather(*(self._load_tile(t) for t in tiles), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def destroy(self) -> None:
        for task in self._tile_tasks.values():
            task.cancel()
        self._tile_tasks.clear()
        if self._loading_task is not None and not self._loading_task.done():
            self._loading_task.cancel()
        self.images_loaded.destroy()
        self.tile_state_changed.destroy()
        self._images = []
        self._image_metas = []
        self._tiles.clear()
        self._failed_tiles.clear()

    def to_dict(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"url": self.url}
        if self.projection is not None:
            config["projection"] = self.projection.to_dict()
        if self._headers:
            config["headers"] = dict(self._headers)
        return config

    def __repr__(self) -> str:
        return f"ObliqueDataSet(url='{self.url}', state={self._state.name}, images={len(self._images)})"
