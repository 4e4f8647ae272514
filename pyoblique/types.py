from enum import Enum
from typing import Iterable, Tuple

# Half the width of the web mercator world in meters
MERCATOR_HALF_WIDTH = 20037508.342789244
MERCATOR_EXTENT = (-MERCATOR_HALF_WIDTH, -MERCATOR_HALF_WIDTH,
                   MERCATOR_HALF_WIDTH, MERCATOR_HALF_WIDTH)

# Quiet period before a geometry conversion runs, in seconds
DEBOUNCE_DELAY = 0.2

# Buffer (meters) around an image footprint when looking for neighbours
ADJACENT_SEARCH_BUFFER = 200.0
ADJACENT_NEIGHBOUR_COUNT = 20

CIRCLE_POLYGON_SIDES = 32

TileCoordinate = Tuple[int, int, int]


class ViewDirection(Enum):
    """Viewing direction of an oblique image."""
    NORTH = 1
    EAST = 2
    SOUTH = 3
    WEST = 4
    NADIR = 5


VIEW_DIRECTION_NAMES = {
    "north": ViewDirection.NORTH,
    "east": ViewDirection.EAST,
    "south": ViewDirection.SOUTH,
    "west": ViewDirection.WEST,
    "nadir": ViewDirection.NADIR,
}


class DataState(Enum):
    """Load state of a data set or tile. Ordered PENDING < LOADING < READY."""
    PENDING = 1
    LOADING = 2
    READY = 3

    def __lt__(self, other: "DataState") -> bool:
        if not isinstance(other, DataState):
            return NotImplemented
        return self.value < other.value


def get_state_from_states(states: Iterable[DataState]) -> DataState:
    """Merges states into the worst one. An empty input is READY."""
    states = list(states)
    if DataState.PENDING in states:
        return DataState.PENDING
    if DataState.LOADING in states:
        return DataState.LOADING
    return DataState.READY


def tile_coordinate_to_string(tile_coordinate: TileCoordinate) -> str:
    z, x, y = tile_coordinate
    return f"{int(z)}/{int(x)}/{int(y)}"


def tile_coordinate_from_string(value: str) -> TileCoordinate:
    parts = value.split("/")
    if len(parts) != 3:
        raise ValueError(f"Invalid tile coordinate '{value}', expected 'z/x/y'")
    z, x, y = (int(p) for p in parts)
    return z, x, y
