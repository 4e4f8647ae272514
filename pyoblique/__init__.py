__version__ = "0.1.0"

__all__ = [
    # Core classes
    "CameraModel",
    "ObliqueImage",
    "ObliqueDataSet",
    "ObliqueCollection",
    "SourceObliqueSync",
    "Projection",
    # Vector stores
    "Event",
    "Feature",
    "Geometry",
    "GeometryType",
    "VectorSource",
    # Types & Constants
    "DataState",
    "ViewDirection",
    "TileCoordinate",
    "DEBOUNCE_DELAY",
    "MERCATOR_EXTENT",
    "mercator_projection",
    "wgs84_projection",
    # Errors
    "ObliqueError",
    "LoadError",
    "ParseError",
    "DataSetInitializedError",
    "ConversionError",
    # Transform functions
    "transform_to_image",
    "transform_from_image",
    "mercator_geometry_to_image_geometry",
    "image_geometry_to_mercator_geometry",
    # Utility functions
    "radial_distortion_correction",
    "get_state_from_states",
    "tile_coordinate_to_string",
    "tile_coordinate_from_string",
]

import logging

from .camera import CameraModel
from .image import ObliqueImage
from .dataset import ObliqueDataSet
from .collection import ObliqueCollection
from .sync import SourceObliqueSync
from .projection import Projection, mercator_projection, wgs84_projection
from .events import Event
from .vector import Feature, Geometry, GeometryType, VectorSource
from .types import (
    DataState,
    ViewDirection,
    TileCoordinate,
    DEBOUNCE_DELAY,
    MERCATOR_EXTENT,
    get_state_from_states,
    tile_coordinate_to_string,
    tile_coordinate_from_string,
)
from .errors import (
    ObliqueError,
    LoadError,
    ParseError,
    DataSetInitializedError,
    ConversionError,
)
from .transforms import (
    transform_to_image,
    transform_from_image,
    mercator_geometry_to_image_geometry,
    image_geometry_to_mercator_geometry,
)
from .utils import radial_distortion_correction

logging.getLogger(__name__).addHandler(logging.NullHandler())
