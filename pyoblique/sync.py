import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Coroutine, Dict, List, Optional, Set

from .collection import ObliqueCollection
from .errors import ConversionError
from .image import ObliqueImage
from .transforms import (
    get_polygonized_geometry,
    image_geometry_to_mercator_geometry,
    mercator_geometry_to_image_geometry,
)
from .types import DEBOUNCE_DELAY
from .utils import Extent
from .vector import Feature, FeatureId, Geometry, GeometryType, VectorSource, fit_circle

log = logging.getLogger(__name__)


class SyncStatus(Enum):
    IDLE = 0
    TO_IMAGE = 1
    TO_GROUND = 2


@dataclass
class FeatureSyncRecord:
    """Conversion state of one mirrored feature."""
    status: SyncStatus = SyncStatus.IDLE
    to_image_timer: Optional[asyncio.TimerHandle] = None
    to_ground_timer: Optional[asyncio.TimerHandle] = None
    to_ground_task: Optional[asyncio.Task] = None
    # Set once the image is left, a running write-back still commits
    detached: bool = False
    # Bumped by every request, results of older requests are discarded
    generation: int = 0

    def cancel_timers(self) -> None:
        if self.to_image_timer is not None:
            self.to_image_timer.cancel()
            self.to_image_timer = None
        if self.to_ground_timer is not None:
            self.to_ground_timer.cancel()
            self.to_ground_timer = None


@dataclass
class _FeatureListeners:
    remove_original_geometry: Callable[[], None]
    remove_shadow_geometry: Callable[[], None]
    others: List[Callable[[], None]] = field(default_factory=list)

    def remove_all(self) -> None:
        self.remove_original_geometry()
        self.remove_shadow_geometry()
        for remove in self.others:
            remove()


class SourceObliqueSync:
    """
    Mirrors the features of a ground (web mercator) source into an image
    space source for the current image of a collection.

    Changes of ground features are converted into the image after a quiet
    period of ``DEBOUNCE_DELAY`` seconds. Edits of image space (shadow)
    features are converted back onto their ground feature the same way.
    Only one direction converts a feature at a time; changes caused by a
    running conversion of the other direction are ignored.

    Must be used from within a running asyncio event loop.

    Attributes:
        oblique_source: The shadow source, owned by this sync. Shadow
            features share the id of their ground feature.
    """

    def __init__(self, source: VectorSource, collection: ObliqueCollection):
        self.source = source
        self.collection = collection
        self.oblique_source = VectorSource()

        self._active = False
        self._source_listeners: List[Callable[[], None]] = []
        self._image_listener: Optional[Callable[[], None]] = None

        self._records: Dict[FeatureId, FeatureSyncRecord] = {}
        self._originals: Dict[FeatureId, Feature] = {}
        self._feature_listeners: Dict[FeatureId, _FeatureListeners] = {}
        self._image_space: Set[FeatureId] = set()
        self._do_not_transform: Set[FeatureId] = set()
        self._flushing: Dict[FeatureId, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._current_image: Optional[ObliqueImage] = None
        self._current_image_name: Optional[str] = None
        self._current_extent: Optional[Extent] = None

    @property
    def active(self) -> bool:
        return self._active

    def get_original_feature(self, shadow: Feature) -> Optional[Feature]:
        """The ground feature a shadow feature mirrors."""
        if self.oblique_source.get_feature_by_id(shadow.id) is not shadow:
            return None
        if shadow.id in self._do_not_transform:
            return shadow
        return self._originals.get(shadow.id)

    def flag_image_space(self, feature_id: FeatureId) -> None:
        """
        Marks the geometry of a ground feature as being in image coordinates
        of the current image, e.g. because it was drawn on the image. Its
        changes are copied without conversion or delay until it is converted
        back onto the ground.
        """
        self._image_space.add(feature_id)

    def is_image_space(self, feature_id: FeatureId) -> bool:
        return feature_id in self._image_space

    def flag_do_not_transform(self, feature_id: FeatureId) -> None:
        """
        Marks a ground feature to be shown in the image as is. The feature
        itself is added to the oblique source, nothing is converted or synced.
        """
        self._do_not_transform.add(feature_id)

    def activate(self) -> None:
        """Starts syncing and mirrors the features in view of the current image."""
        if self._active:
            return
        self._active = True
        image = self.collection.current_image
        if self._current_image_name is not None:
            if image is None or image.name != self._current_image_name:
                self._clear_current_image()
            else:
                self._restore_features()

        self._source_listeners = [
            self.source.feature_added.add_event_listener(self._on_feature_added),
            self.source.feature_removed.add_event_listener(self._remove_feature),
            self.source.feature_changed.add_event_listener(self._on_feature_changed),
        ]
        self._image_listener = self.collection.image_changed.add_event_listener(self._on_image_changed)
        self._fetch_features_in_view()

    def deactivate(self) -> None:
        """
        Stops syncing. Pending edits of shadow features are written to the
        ground, pending image updates are dropped. Shadow features are kept
        until the image changes.
        """
        if not self._active:
            return
        self._active = False
        self._remove_source_listeners()
        for feature_id, record in list(self._records.items()):
            if record.to_image_timer is not None:
                record.to_image_timer.cancel()
                record.to_image_timer = None
            if record.to_ground_timer is not None:
                record.to_ground_timer.cancel()
                record.to_ground_timer = None
                self._run_to_ground(feature_id, self._current_image, record.generation)
        for listeners in self._feature_listeners.values():
            listeners.remove_all()
        self._feature_listeners.clear()

    def destroy(self) -> None:
        self._active = False
        self._remove_source_listeners()
        for record in self._records.values():
            record.cancel_timers()
        for listeners in self._feature_listeners.values():
            listeners.remove_all()
        for task in self._tasks:
            task.cancel()
        self._records.clear()
        self._originals.clear()
        self._feature_listeners.clear()
        self._image_space.clear()
        self._do_not_transform.clear()
        self._flushing.clear()
        self.oblique_source.clear(silent=True)
        self._current_image = None
        self._current_image_name = None
        self._current_extent = None

    async def wait_idle(self) -> None:
        """Waits for all running conversions. Pending debounce timers are not awaited."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _remove_source_listeners(self) -> None:
        for remove in self._source_listeners:
            remove()
        self._source_listeners = []
        if self._image_listener is not None:
            self._image_listener()
            self._image_listener = None

    def _spawn(self, coroutine: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Oblique sync task failed", exc_info=task.exception())

    def _feature_in_extent(self, feature: Feature) -> bool:
        if self._current_extent is None or feature.geometry is None:
            return False
        if feature.id in self._image_space or feature.id in self._do_not_transform:
            return True
        return feature.geometry.intersects_extent(self._current_extent)

    def _on_feature_added(self, feature: Feature) -> None:
        if self._feature_in_extent(feature):
            self._spawn(self._add_feature(feature))

    def _on_feature_changed(self, feature: Feature) -> None:
        if feature.id in self._feature_listeners:
            return
        record = self._records.get(feature.id)
        if record is not None:
            # Being added, the result is stale
            record.generation += 1
        elif self._feature_in_extent(feature):
            self._spawn(self._add_feature(feature))

    def _on_image_changed(self, _image: Optional[ObliqueImage]) -> None:
        self._clear_current_image()
        self._fetch_features_in_view()

    def _fetch_features_in_view(self) -> None:
        image = self.collection.current_image
        if not self._active or image is None or image.name == self._current_image_name:
            return
        self._current_image = image
        self._current_image_name = image.name
        self._current_extent = self.collection.get_extent_of_current_image()
        self._populate()

    def _populate(self) -> None:
        for feature in self.source.features_in_extent(self._current_extent):
            self._spawn(self._add_feature(feature))
        for feature in self.source:
            if feature.id in self._image_space or feature.id in self._do_not_transform:
                self._spawn(self._add_feature(feature))

    def _restore_features(self) -> None:
        """Reconnects kept shadow features after a reactivation on the same image."""
        for feature_id, original in list(self._originals.items()):
            shadow = self.oblique_source.get_feature_by_id(feature_id)
            if shadow is None or not self.source.has_feature(original):
                self._remove_feature(original)
                continue
            self._wire(feature_id, original, shadow)
            self._schedule_to_image(feature_id)
        self._populate()

    async def _convert_to_image(self, original: Feature, image: ObliqueImage) -> Geometry:
        if original.geometry is None:
            raise ValueError(f"Feature {original.id!r} has no geometry")
        if original.id in self._image_space:
            return original.geometry.clone()
        return await mercator_geometry_to_image_geometry(original.geometry, image)

    async def _add_feature(self, original: Feature) -> None:
        feature_id = original.id
        flushing = self._flushing.get(feature_id)
        if flushing is not None:
            await asyncio.wait([flushing])

        image = self._current_image
        if not self._active or image is None:
            return
        if feature_id in self._records or self.oblique_source.get_feature_by_id(feature_id) is not None:
            return
        if feature_id in self._do_not_transform:
            if original.geometry is not None:
                self.oblique_source.add_feature(original)
            return

        record = FeatureSyncRecord(status=SyncStatus.TO_IMAGE)
        self._records[feature_id] = record
        generation = record.generation
        geometry = None
        try:
            geometry = await self._convert_to_image(original, image)
        except (ConversionError, ValueError) as e:
            log.warning("Failed to convert feature %r to oblique: %s", feature_id, e)
        finally:
            if geometry is None and self._records.get(feature_id) is record:
                del self._records[feature_id]
        if geometry is None:
            return

        if self._records.get(feature_id) is not record:
            return
        if not self.source.has_feature(original) or image is not self._current_image:
            # Removed in between
            del self._records[feature_id]
            return

        shadow = Feature(geometry, feature_id=feature_id, style=original.style)
        self._originals[feature_id] = original
        self.oblique_source.add_feature(shadow)
        self._wire(feature_id, original, shadow)
        record.status = SyncStatus.IDLE
        log.debug("Mirrored feature %r into image %s", feature_id, image.name)
        if record.generation != generation:
            self._schedule_to_image(feature_id)

    def _wire(self, feature_id: FeatureId, original: Feature, shadow: Feature) -> None:
        old = self._feature_listeners.pop(feature_id, None)
        if old is not None:
            old.remove_all()

        listeners = _FeatureListeners(
            remove_original_geometry=self._listen_original_geometry(feature_id, original),
            remove_shadow_geometry=self._listen_shadow_geometry(feature_id, shadow),
        )
        listeners.others.append(original.geometry_changed.add_event_listener(
            lambda _f: self._on_original_geometry_replaced(feature_id)))
        listeners.others.append(original.changed.add_event_listener(
            lambda _f: self._sync_style(feature_id)))
        self._feature_listeners[feature_id] = listeners

    def _listen_original_geometry(self, feature_id: FeatureId, original: Feature) -> Callable[[], None]:
        if original.geometry is None:
            return lambda: None
        return original.geometry.changed.add_event_listener(lambda _g: self._schedule_to_image(feature_id))

    def _listen_shadow_geometry(self, feature_id: FeatureId, shadow: Feature) -> Callable[[], None]:
        if shadow.geometry is None:
            return lambda: None
        return shadow.geometry.changed.add_event_listener(lambda _g: self._schedule_to_ground(feature_id))

    def _on_original_geometry_replaced(self, feature_id: FeatureId) -> None:
        listeners = self._feature_listeners.get(feature_id)
        original = self._originals.get(feature_id)
        if listeners is None or original is None:
            return
        listeners.remove_original_geometry()
        listeners.remove_original_geometry = self._listen_original_geometry(feature_id, original)
        self._schedule_to_image(feature_id)

    def _sync_style(self, feature_id: FeatureId) -> None:
        original = self._originals.get(feature_id)
        shadow = self.oblique_source.get_feature_by_id(feature_id)
        if original is not None and shadow is not None and shadow.style is not original.style:
            shadow.set_style(original.style)

    def _schedule_to_image(self, feature_id: FeatureId) -> None:
        record = self._records.get(feature_id)
        if record is None or record.status == SyncStatus.TO_GROUND:
            return
        if record.to_image_timer is not None:
            record.to_image_timer.cancel()
            record.to_image_timer = None
        record.generation += 1
        if feature_id in self._image_space:
            self._run_to_image(feature_id, record.generation)
        else:
            record.to_image_timer = asyncio.get_running_loop().call_later(
                DEBOUNCE_DELAY, self._run_to_image, feature_id, record.generation)

    def _run_to_image(self, feature_id: FeatureId, generation: int) -> None:
        record = self._records.get(feature_id)
        original = self._originals.get(feature_id)
        if record is None or original is None or record.generation != generation:
            return
        record.to_image_timer = None
        if record.status == SyncStatus.TO_GROUND:
            record.to_image_timer = asyncio.get_running_loop().call_later(
                DEBOUNCE_DELAY, self._run_to_image, feature_id, generation)
            return
        record.status = SyncStatus.TO_IMAGE
        self._spawn(self._update_shadow(feature_id, original, record))

    async def _update_shadow(self, feature_id: FeatureId, original: Feature, record: FeatureSyncRecord) -> None:
        generation = record.generation
        try:
            try:
                geometry = await self._convert_to_image(original, self._current_image)
            except (ConversionError, ValueError) as e:
                log.warning("Failed to convert feature %r to oblique: %s", feature_id, e)
                return
            if self._records.get(feature_id) is not record or record.generation != generation:
                return
            shadow = self.oblique_source.get_feature_by_id(feature_id)
            if shadow is not None:
                self._write_shadow_geometry(feature_id, shadow, geometry)
        finally:
            if record.generation == generation and record.status == SyncStatus.TO_IMAGE:
                record.status = SyncStatus.IDLE

    def _write_shadow_geometry(self, feature_id: FeatureId, shadow: Feature, geometry: Geometry) -> None:
        if shadow.geometry is not None and shadow.geometry.type == geometry.type:
            shadow.geometry.set_coordinates(geometry.coordinates, radius=geometry.radius)
            return
        shadow.set_geometry(geometry)
        listeners = self._feature_listeners.get(feature_id)
        if listeners is not None:
            listeners.remove_shadow_geometry()
            listeners.remove_shadow_geometry = self._listen_shadow_geometry(feature_id, shadow)

    def _schedule_to_ground(self, feature_id: FeatureId) -> None:
        record = self._records.get(feature_id)
        if record is None or record.status == SyncStatus.TO_IMAGE:
            return
        if record.to_ground_timer is not None:
            record.to_ground_timer.cancel()
        record.generation += 1
        record.to_ground_timer = asyncio.get_running_loop().call_later(
            DEBOUNCE_DELAY, self._run_to_ground, feature_id, self._current_image, record.generation)

    def _run_to_ground(self, feature_id: FeatureId, image: Optional[ObliqueImage], generation: int) -> None:
        record = self._records.get(feature_id)
        original = self._originals.get(feature_id)
        shadow = self.oblique_source.get_feature_by_id(feature_id)
        if record is None or original is None or shadow is None or image is None:
            return
        if record.generation != generation:
            return
        record.to_ground_timer = None
        if record.status == SyncStatus.TO_IMAGE:
            record.to_ground_timer = asyncio.get_running_loop().call_later(
                DEBOUNCE_DELAY, self._run_to_ground, feature_id, image, generation)
            return
        record.status = SyncStatus.TO_GROUND
        image_geometry = get_polygonized_geometry(shadow, retain_rectangle=True).clone()
        record.to_ground_task = self._spawn(
            self._update_ground(feature_id, original, image_geometry, image, record))

    async def _update_ground(self, feature_id: FeatureId, original: Feature, image_geometry: Geometry,
                             image: ObliqueImage, record: Optional[FeatureSyncRecord]) -> None:
        generation = record.generation if record is not None else None
        try:
            try:
                geometry = await image_geometry_to_mercator_geometry(image_geometry, image)
            except (ConversionError, ValueError) as e:
                log.warning("Failed to update the ground geometry of feature %r: %s", feature_id, e)
                return
            if record is not None and (record.generation != generation or
                                       (not record.detached and self._records.get(feature_id) is not record)):
                return
            if not self.source.has_feature(original) or original.geometry is None:
                return
            self._image_space.discard(feature_id)
            self._write_ground_geometry(original, geometry)
            log.debug("Wrote image edits of feature %r to the ground", feature_id)
        finally:
            if record is not None and record.generation == generation and record.status == SyncStatus.TO_GROUND:
                record.status = SyncStatus.IDLE
                record.to_ground_task = None

    @staticmethod
    def _write_ground_geometry(original: Feature, geometry: Geometry) -> None:
        target = original.geometry
        if target.type == GeometryType.CIRCLE and geometry.type == GeometryType.POLYGON:
            if geometry.coordinates and geometry.coordinates[0]:
                circle = fit_circle(geometry.coordinates[0])
                target.set_coordinates(circle.coordinates, radius=circle.radius)
        elif target.type == geometry.type:
            target.set_coordinates(geometry.coordinates)
        else:
            original.set_geometry(geometry)

    def _remove_feature(self, original: Feature) -> None:
        feature_id = original.id
        if self._originals.get(feature_id, original) is not original:
            return
        record = self._records.pop(feature_id, None)
        if record is not None:
            record.cancel_timers()
        listeners = self._feature_listeners.pop(feature_id, None)
        if listeners is not None:
            listeners.remove_all()
        self._originals.pop(feature_id, None)
        self._image_space.discard(feature_id)
        self._do_not_transform.discard(feature_id)
        shadow = self.oblique_source.get_feature_by_id(feature_id)
        if shadow is not None:
            self.oblique_source.remove_feature(shadow)

    def _clear_current_image(self) -> None:
        """
        Drops all shadow features. Pending edits of shadow features and
        geometries still in image space are written to the ground first.
        Running write-backs are detached and still commit.
        """
        image = self._current_image
        for feature_id, record in list(self._records.items()):
            flush = record.to_ground_timer is not None or feature_id in self._image_space
            record.cancel_timers()
            original = self._originals.get(feature_id)
            shadow = self.oblique_source.get_feature_by_id(feature_id)
            task = None
            if flush and image is not None and original is not None and shadow is not None:
                image_geometry = get_polygonized_geometry(shadow, retain_rectangle=True).clone()
                task = self._spawn(self._update_ground(feature_id, original, image_geometry, image, None))
            elif record.status == SyncStatus.TO_GROUND and record.to_ground_task is not None:
                record.detached = True
                task = record.to_ground_task
            if task is not None:
                self._flushing[feature_id] = task
                task.add_done_callback(lambda t, i=feature_id: self._flush_done(i, t))

        for listeners in self._feature_listeners.values():
            listeners.remove_all()
        self._feature_listeners.clear()
        self._records.clear()
        self._originals.clear()
        self.oblique_source.clear(silent=True)
        self._current_image = None
        self._current_image_name = None
        self._current_extent = None

    def _flush_done(self, feature_id: FeatureId, task: asyncio.Task) -> None:
        if self._flushing.get(feature_id) is task:
            del self._flushing[feature_id]
