import copy
import math
import numpy as np
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from .events import Event
from .types import CIRCLE_POLYGON_SIDES
from .utils import Extent, bounding_extent, extents_intersect

FeatureId = Union[str, int]


class GeometryType(Enum):
    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    CIRCLE = "Circle"


class Geometry:
    """
    A vector geometry with nested list coordinates.

    Point: [x, y(, z)], LineString: [[x, y], ...], Polygon: [[[x, y], ...], ...]
    (list of rings), Circle: center [x, y(, z)] plus ``radius``.

    ``changed`` is raised whenever the coordinates are replaced.
    """

    def __init__(self, geometry_type: GeometryType, coordinates: Any,
                 radius: Optional[float] = None, properties: Optional[Dict[str, Any]] = None):
        geometry_type = GeometryType(geometry_type)
        if geometry_type == GeometryType.CIRCLE and radius is None:
            raise ValueError("A circle geometry needs a radius")
        self.type = geometry_type
        self._coordinates = _as_lists(coordinates)
        self.radius = radius
        self.properties: Dict[str, Any] = dict(properties or {})
        self.changed = Event()

    @property
    def coordinates(self) -> Any:
        return self._coordinates

    def set_coordinates(self, coordinates: Any, radius: Optional[float] = None) -> None:
        self._coordinates = _as_lists(coordinates)
        if radius is not None:
            self.radius = radius
        self.changed.raise_event(self)

    def clone(self) -> "Geometry":
        return Geometry(self.type, copy.deepcopy(self._coordinates), self.radius, dict(self.properties))

    def flat_coordinates(self) -> List[List[float]]:
        """References to all positions of this geometry, mutable in place."""
        if self.type in (GeometryType.POINT, GeometryType.CIRCLE):
            return [self._coordinates]
        if self.type == GeometryType.LINE_STRING:
            return list(self._coordinates)
        return [c for ring in self._coordinates for c in ring]

    @property
    def is_empty(self) -> bool:
        """True if the geometry has no position."""
        return not any(len(p) >= 2 for p in self.flat_coordinates())

    def get_extent(self) -> Extent:
        if self.type == GeometryType.CIRCLE:
            x, y = self._coordinates[0], self._coordinates[1]
            return x - self.radius, y - self.radius, x + self.radius, y + self.radius
        return bounding_extent(self.flat_coordinates())

    def intersects_extent(self, extent: Extent) -> bool:
        if self.is_empty:
            return False
        return extents_intersect(self.get_extent(), extent)

    def __repr__(self) -> str:
        return f"Geometry({self.type.value}, {self._coordinates!r})"


def _as_lists(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (list, tuple)):
        return [_as_lists(v) for v in value]
    return float(value)


class Feature:
    """
    A feature with an id, a geometry and a style.

    ``geometry_changed`` is raised when the geometry object is replaced,
    ``changed`` for any change of the feature including its geometry's
    coordinates.
    """

    def __init__(self, geometry: Optional[Geometry] = None, feature_id: Optional[FeatureId] = None,
                 style: Any = None, properties: Optional[Dict[str, Any]] = None):
        self.id = feature_id
        self.properties: Dict[str, Any] = dict(properties or {})
        self._style = style
        self._geometry: Optional[Geometry] = None
        self._remove_geometry_listener: Callable[[], None] = lambda: None
        self.geometry_changed = Event()
        self.changed = Event()
        if geometry is not None:
            self._attach(geometry)

    @property
    def geometry(self) -> Optional[Geometry]:
        return self._geometry

    def _attach(self, geometry: Optional[Geometry]) -> None:
        self._remove_geometry_listener()
        self._geometry = geometry
        if geometry is not None:
            self._remove_geometry_listener = geometry.changed.add_event_listener(
                lambda _geometry: self.changed.raise_event(self))
        else:
            self._remove_geometry_listener = lambda: None

    def set_geometry(self, geometry: Optional[Geometry]) -> None:
        self._attach(geometry)
        self.geometry_changed.raise_event(self)
        self.changed.raise_event(self)

    @property
    def style(self) -> Any:
        return self._style

    def set_style(self, style: Any) -> None:
        self._style = style
        self.changed.raise_event(self)

    def set(self, key: str, value: Any) -> None:
        self.properties[key] = value
        self.changed.raise_event(self)

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    def __repr__(self) -> str:
        return f"Feature(id={self.id!r}, geometry={self._geometry!r})"


class VectorSource:
    """An id keyed feature store raising add, remove and change events."""

    def __init__(self):
        self._features: Dict[FeatureId, Feature] = {}
        self._listeners: Dict[FeatureId, Callable[[], None]] = {}
        self.feature_added = Event()
        self.feature_removed = Event()
        self.feature_changed = Event()

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(list(self._features.values()))

    @property
    def features(self) -> List[Feature]:
        return list(self._features.values())

    def add_feature(self, feature: Feature) -> None:
        if feature.id is None:
            raise ValueError("Features added to a source need an id")
        if feature.id in self._features:
            return
        self._features[feature.id] = feature
        self._listeners[feature.id] = feature.changed.add_event_listener(
            lambda f: self.feature_changed.raise_event(f))
        self.feature_added.raise_event(feature)

    def add_features(self, features: Sequence[Feature]) -> None:
        for feature in features:
            self.add_feature(feature)

    def remove_feature(self, feature: Feature) -> None:
        if self._features.get(feature.id) is not feature:
            return
        del self._features[feature.id]
        self._listeners.pop(feature.id)()
        self.feature_removed.raise_event(feature)

    def has_feature(self, feature: Feature) -> bool:
        return self._features.get(feature.id) is feature

    def get_feature_by_id(self, feature_id: FeatureId) -> Optional[Feature]:
        return self._features.get(feature_id)

    def features_in_extent(self, extent: Extent) -> List[Feature]:
        return [f for f in self._features.values()
                if f.geometry is not None and f.geometry.intersects_extent(extent)]

    def clear(self, silent: bool = False) -> None:
        features = list(self._features.values())
        for remove in self._listeners.values():
            remove()
        self._listeners.clear()
        self._features.clear()
        if not silent:
            for feature in features:
                self.feature_removed.raise_event(feature)


def circle_to_polygon(circle: Geometry, sides: int = CIRCLE_POLYGON_SIDES) -> Geometry:
    """Approximates a circle by a regular polygon."""
    center = circle.coordinates
    z = center[2:3]
    ring = []
    for i in range(sides):
        angle = 2.0 * math.pi * i / sides
        ring.append([center[0] + circle.radius * math.cos(angle),
                     center[1] + circle.radius * math.sin(angle), *z])
    ring.append(list(ring[0]))
    return Geometry(GeometryType.POLYGON, [ring], properties=dict(circle.properties))


def _clean_ring(ring: List[List[float]]) -> List[List[float]]:
    cleaned: List[List[float]] = []
    for position in ring:
        if not cleaned or position[:2] != cleaned[-1][:2]:
            cleaned.append(list(position))
    if cleaned and cleaned[0][:2] != cleaned[-1][:2]:
        cleaned.append(list(cleaned[0]))
    return cleaned


def convert_geometry_to_polygon(geometry: Geometry) -> Geometry:
    """
    Returns an editable polygonal copy of a geometry.

    Circles are approximated, polygon rings are closed and rid of repeated
    vertices. Points and line strings are cloned unchanged.
    """
    if geometry.type == GeometryType.CIRCLE:
        return circle_to_polygon(geometry)
    if geometry.type == GeometryType.POLYGON:
        rings = [_clean_ring(ring) for ring in geometry.coordinates]
        return Geometry(GeometryType.POLYGON, [r for r in rings if len(r) >= 4],
                        properties=dict(geometry.properties))
    return geometry.clone()


def fit_circle(ring: Sequence[Sequence[float]]) -> Geometry:
    """Circle through the mean of a ring's vertices with their mean distance as radius."""
    positions = [list(p) for p in ring]
    if len(positions) > 1 and positions[0][:2] == positions[-1][:2]:
        positions = positions[:-1]
    xy = np.asarray([p[:2] for p in positions], dtype=np.float64)
    center = xy.mean(axis=0).tolist()
    if all(len(p) > 2 for p in positions):
        center.append(float(np.mean([p[2] for p in positions])))
    radius = float(np.mean(np.linalg.norm(xy - np.asarray(center[:2]), axis=1)))
    return Geometry(GeometryType.CIRCLE, center, radius=radius)
