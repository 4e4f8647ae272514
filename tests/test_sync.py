import asyncio
import math
import unittest
from unittest import mock

import numpy as np

from pyoblique import Feature, Geometry, GeometryType, ObliqueCollection, SourceObliqueSync, VectorSource
from pyoblique.transforms import image_geometry_to_mercator_geometry, mercator_geometry_to_image_geometry

from .mock_data import create_camera_image

DELAY = 0.01

GROUND_RING = [[101.0, 201.0], [102.0, 201.0], [102.0, 202.0], [101.0, 201.0]]
IMAGE_RING = [[100.0, 100.0], [200.0, 100.0], [200.0, 200.0], [100.0, 100.0]]
MOVED_IMAGE_RING = [[200.0, 100.0], [300.0, 100.0], [300.0, 200.0], [200.0, 100.0]]
MOVED_GROUND_RING = [[102.0, 201.0, 0.0], [103.0, 201.0, 0.0], [103.0, 202.0, 0.0], [102.0, 201.0, 0.0]]


def polygon_feature(feature_id="a", ring=GROUND_RING, style=None):
    return Feature(Geometry(GeometryType.POLYGON, [ring]), feature_id=feature_id, style=style)


class SyncTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        patcher = mock.patch("pyoblique.sync.DEBOUNCE_DELAY", DELAY)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.image = create_camera_image()
        self.collection = ObliqueCollection()
        self.collection.set_current_image(self.image)
        self.source = VectorSource()
        self.sync = SourceObliqueSync(self.source, self.collection)
        self.addCleanup(self.sync.destroy)

    async def settle(self):
        """Lets debounce timers fire and waits for the conversions they start."""
        await asyncio.sleep(DELAY * 5)
        await self.sync.wait_idle()

    def shadow(self, feature_id="a"):
        return self.sync.oblique_source.get_feature_by_id(feature_id)


class TestMirroring(SyncTestCase):
    """Tests for mirroring ground features into the image."""

    async def test_activate_mirrors_features_in_view(self):
        original = polygon_feature(style="blue")
        self.source.add_features([original, polygon_feature("far", [[500, 500], [501, 500], [501, 501], [500, 500]])])

        self.sync.activate()
        await self.sync.wait_idle()

        self.assertTrue(self.sync.active)
        self.assertEqual(len(self.sync.oblique_source), 1)
        shadow = self.shadow()
        np.testing.assert_allclose(shadow.geometry.coordinates[0], IMAGE_RING, atol=1e-9)
        self.assertEqual(shadow.style, "blue")
        self.assertIs(self.sync.get_original_feature(shadow), original)
        self.assertIsNone(self.sync.get_original_feature(polygon_feature()))

    async def test_added_feature(self):
        self.sync.activate()
        self.source.add_feature(polygon_feature())
        await self.sync.wait_idle()
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], IMAGE_RING, atol=1e-9)

    async def test_no_current_image(self):
        collection = ObliqueCollection()
        sync = SourceObliqueSync(self.source, collection)
        self.source.add_feature(polygon_feature())
        sync.activate()
        await sync.wait_idle()
        self.assertEqual(len(sync.oblique_source), 0)

        collection.set_current_image(self.image)
        await sync.wait_idle()
        self.assertEqual(len(sync.oblique_source), 1)
        sync.destroy()

    async def test_features_are_mirrored_once(self):
        """Repeated add and change events never create a second shadow."""
        self.sync.activate()
        original = polygon_feature()
        self.source.add_feature(original)
        self.source.feature_added.raise_event(original)
        original.set_style("red")
        await self.settle()

        self.source.feature_added.raise_event(original)
        self.source.feature_changed.raise_event(original)
        await self.settle()

        self.assertEqual(len(self.sync.oblique_source), 1)
        self.assertEqual(self.shadow().style, "red")

    async def test_changes_are_debounced(self):
        """Bursts of ground edits are converted once."""
        original = polygon_feature()
        self.source.add_feature(original)
        self.sync.activate()
        await self.sync.wait_idle()

        converter = mock.AsyncMock(wraps=mercator_geometry_to_image_geometry)
        with mock.patch("pyoblique.sync.mercator_geometry_to_image_geometry", converter):
            for offset in (0.25, 0.5, 1.0):
                ring = [[x + offset, y] for x, y in GROUND_RING]
                original.geometry.set_coordinates([ring])
            await self.settle()

        self.assertEqual(converter.await_count, 1)
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)

    async def test_replaced_geometry(self):
        original = polygon_feature()
        self.source.add_feature(original)
        self.sync.activate()
        await self.sync.wait_idle()

        original.set_geometry(Geometry(GeometryType.POLYGON, [[[x + 1.0, y] for x, y in GROUND_RING]]))
        await self.settle()
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)

        # The new geometry is observed
        original.geometry.set_coordinates([GROUND_RING])
        await self.settle()
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], IMAGE_RING, atol=1e-9)

    async def test_style_sync(self):
        original = polygon_feature()
        self.source.add_feature(original)
        self.sync.activate()
        await self.sync.wait_idle()

        style = {"stroke": "red"}
        original.set_style(style)
        self.assertIs(self.shadow().style, style)

    async def test_remove_feature(self):
        original = polygon_feature()
        self.source.add_feature(original)
        self.sync.activate()
        await self.sync.wait_idle()

        self.source.remove_feature(original)
        self.assertIsNone(self.shadow())

        # Pending conversions of removed features are dropped
        self.source.add_feature(original)
        self.source.remove_feature(original)
        await self.settle()
        self.assertEqual(len(self.sync.oblique_source), 0)

    async def test_conversion_failure_is_logged(self):
        self.collection.set_current_image(
            create_camera_image(name="broken", p_to_image=[[1, 0, 0, 0], [0, 1, 0, 0], [0, 0, 0, 0]]))
        self.source.add_feature(polygon_feature())
        with self.assertLogs("pyoblique.sync", level="WARNING"):
            self.sync.activate()
            await self.sync.wait_idle()
        self.assertEqual(len(self.sync.oblique_source), 0)


    async def test_empty_geometry(self):
        self.sync.activate()
        self.source.add_feature(Feature(Geometry(GeometryType.POLYGON, []), feature_id="empty"))
        await self.sync.wait_idle()
        self.assertIsNone(self.shadow("empty"))

    async def test_unexpected_failure_skips_one_attempt(self):
        """An unexpected conversion error does not block later attempts."""
        original = polygon_feature()
        self.sync.activate()
        failing = mock.AsyncMock(side_effect=RuntimeError("projection failed"))
        with mock.patch("pyoblique.sync.mercator_geometry_to_image_geometry", failing):
            with self.assertLogs("pyoblique.sync", level="ERROR"):
                self.source.add_feature(original)
                await self.sync.wait_idle()
        self.assertIsNone(self.shadow())

        original.set_style("red")
        await self.sync.wait_idle()
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], IMAGE_RING, atol=1e-9)

    async def test_do_not_transform(self):
        """Flagged features are shown in the image as they are."""
        self.sync.activate()
        marker = Feature(Geometry(GeometryType.POINT, [300.0, 400.0]), feature_id="marker")
        self.sync.flag_do_not_transform("marker")
        self.source.add_feature(marker)
        await self.sync.wait_idle()

        self.assertIs(self.shadow("marker"), marker)
        self.assertIs(self.sync.get_original_feature(marker), marker)

        marker.geometry.set_coordinates([310.0, 400.0])
        await self.settle()
        self.assertEqual(marker.geometry.coordinates, [310.0, 400.0])

        self.source.remove_feature(marker)
        self.assertIsNone(self.shadow("marker"))


class TestWriteBack(SyncTestCase):
    """Tests for writing edits of shadow features to the ground."""

    async def asyncSetUp(self):
        self.original = polygon_feature()
        self.source.add_feature(self.original)
        self.sync.activate()
        await self.sync.wait_idle()

    async def test_shadow_edit(self):
        converter = mock.AsyncMock(wraps=mercator_geometry_to_image_geometry)
        with mock.patch("pyoblique.sync.mercator_geometry_to_image_geometry", converter):
            self.shadow().geometry.set_coordinates([MOVED_IMAGE_RING])
            await self.settle()

        np.testing.assert_allclose(self.original.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)
        # Writing the ground does not echo back into the image
        self.assertEqual(converter.await_count, 0)
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)

    async def test_circle_round_trip(self):
        """Circles are edited as polygons and refitted on the ground."""
        circle = Feature(Geometry(GeometryType.CIRCLE, [105.0, 205.0], radius=2.0), feature_id="circle")
        self.source.add_feature(circle)
        await self.sync.wait_idle()

        shadow = self.shadow("circle")
        self.assertEqual(shadow.geometry.type, GeometryType.POLYGON)
        ring = [[500 + (x - 500) * 1.5, 500 + (y - 500) * 1.5] for x, y in shadow.geometry.coordinates[0]]
        shadow.geometry.set_coordinates([ring])
        await self.settle()

        self.assertEqual(circle.geometry.type, GeometryType.CIRCLE)
        self.assertAlmostEqual(circle.geometry.radius, 3.0, places=6)
        self.assertAlmostEqual(circle.geometry.coordinates[0], 105.0, places=6)
        self.assertAlmostEqual(circle.geometry.coordinates[1], 205.0, places=6)

    async def test_deactivate_flushes_edits(self):
        """Pending shadow edits are written when deactivating, shadows are kept."""
        self.shadow().geometry.set_coordinates([MOVED_IMAGE_RING])
        self.sync.deactivate()
        await self.sync.wait_idle()

        self.assertFalse(self.sync.active)
        np.testing.assert_allclose(self.original.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)
        self.assertIsNotNone(self.shadow())

    async def test_reactivate_catches_up(self):
        """Ground edits made while inactive reach the kept shadow on reactivation."""
        self.sync.deactivate()
        shadow = self.shadow()
        self.original.geometry.set_coordinates([[[x + 1.0, y] for x, y in GROUND_RING]])
        await self.settle()
        np.testing.assert_allclose(shadow.geometry.coordinates[0], IMAGE_RING, atol=1e-9)

        self.sync.activate()
        await self.settle()
        self.assertIs(self.shadow(), shadow)
        np.testing.assert_allclose(shadow.geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)

    async def test_reactivate_on_other_image(self):
        self.sync.deactivate()
        self.collection.set_current_image(create_camera_image(name="img-2"))
        old_shadow = self.shadow()

        self.sync.activate()
        await self.sync.wait_idle()
        self.assertIsNot(self.shadow(), old_shadow)
        self.assertEqual(len(self.sync.oblique_source), 1)

    async def test_image_change_flushes_edits(self):
        """Pending edits are written to the ground before the image changes."""
        self.shadow().geometry.set_coordinates([MOVED_IMAGE_RING])
        self.collection.set_current_image(create_camera_image(name="img-2"))
        await self.settle()

        np.testing.assert_allclose(self.original.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)
        # Mirrored again into the new image from the flushed geometry
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)
        self.assertEqual(len(self.sync.oblique_source), 1)

    async def test_image_change_during_write_back(self):
        """A write-back already converting when the image changes still reaches the ground."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def held_conversion(geometry, image):
            started.set()
            await release.wait()
            return await image_geometry_to_mercator_geometry(geometry, image)

        with mock.patch("pyoblique.sync.image_geometry_to_mercator_geometry", held_conversion):
            self.shadow().geometry.set_coordinates([MOVED_IMAGE_RING])
            await asyncio.wait_for(started.wait(), 1)
            self.collection.set_current_image(create_camera_image(name="img-2"))
            release.set()
            await self.settle()

        np.testing.assert_allclose(self.original.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)
        np.testing.assert_allclose(self.shadow().geometry.coordinates[0], MOVED_IMAGE_RING, atol=1e-9)
        self.assertEqual(len(self.sync.oblique_source), 1)

    async def test_image_change_without_image(self):
        self.collection.set_current_image(None)
        await self.settle()
        self.assertEqual(len(self.sync.oblique_source), 0)

    async def test_destroy(self):
        self.sync.destroy()
        self.assertFalse(self.sync.active)
        self.assertEqual(len(self.sync.oblique_source), 0)
        self.original.geometry.set_coordinates([[[x + 1.0, y] for x, y in GROUND_RING]])
        self.source.add_feature(polygon_feature("b"))
        await self.settle()
        self.assertEqual(len(self.sync.oblique_source), 0)


class TestImageSpace(SyncTestCase):
    """Tests for features whose geometry is still in image coordinates."""

    async def test_image_space_feature(self):
        """Flagged features are copied without conversion until written back."""
        self.sync.activate()
        drawn = polygon_feature("drawn", IMAGE_RING)
        self.sync.flag_image_space("drawn")
        self.source.add_feature(drawn)
        await self.sync.wait_idle()

        self.assertTrue(self.sync.is_image_space("drawn"))
        self.assertEqual(self.shadow("drawn").geometry.coordinates[0], IMAGE_RING)

        # Copied right away, no debounce
        drawn.geometry.set_coordinates([MOVED_IMAGE_RING])
        await self.sync.wait_idle()
        self.assertEqual(self.shadow("drawn").geometry.coordinates[0], MOVED_IMAGE_RING)

        # Leaving the image converts the drawing onto the ground
        self.collection.set_current_image(create_camera_image(name="img-2"))
        await self.settle()
        self.assertFalse(self.sync.is_image_space("drawn"))
        np.testing.assert_allclose(drawn.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)

    async def test_shadow_edit_clears_flag(self):
        self.sync.activate()
        drawn = polygon_feature("drawn", IMAGE_RING)
        self.sync.flag_image_space("drawn")
        self.source.add_feature(drawn)
        await self.sync.wait_idle()

        self.shadow("drawn").geometry.set_coordinates([MOVED_IMAGE_RING])
        await self.settle()
        self.assertFalse(self.sync.is_image_space("drawn"))
        np.testing.assert_allclose(drawn.geometry.coordinates[0], MOVED_GROUND_RING, atol=1e-9)

    async def test_removed_feature_drops_flag(self):
        self.sync.activate()
        drawn = polygon_feature("drawn", IMAGE_RING)
        self.sync.flag_image_space("drawn")
        self.source.add_feature(drawn)
        await self.sync.wait_idle()
        self.source.remove_feature(drawn)
        self.assertFalse(self.sync.is_image_space("drawn"))


if __name__ == '__main__':
    unittest.main()
