import math
import unittest
import numpy as np

from pyoblique import (
    ConversionError,
    Feature,
    Geometry,
    GeometryType,
    image_geometry_to_mercator_geometry,
    mercator_geometry_to_image_geometry,
    transform_from_image,
    transform_to_image,
)
from pyoblique.transforms import get_polygonized_geometry

from .mock_data import FakeTerrain, create_camera, create_camera_image

GROUND_RING = [[101.0, 201.0], [102.0, 201.0], [102.0, 202.0], [101.0, 201.0]]
IMAGE_RING = [[100.0, 100.0], [200.0, 100.0], [200.0, 200.0], [100.0, 100.0]]


def create_terrain_image(terrain):
    return create_camera_image(meta=create_camera(terrain_provider=terrain))


class TestTransformToImage(unittest.IsolatedAsyncioTestCase):
    """Tests for projecting world coordinates into an image."""

    async def test_average_height(self):
        result = await transform_to_image(create_camera_image(), [101, 201])
        np.testing.assert_allclose(result.coords, [100, 100], atol=1e-9)
        self.assertEqual(result.height, 0.0)
        self.assertTrue(result.estimate)

    async def test_coordinate_height(self):
        terrain = FakeTerrain(10)
        result = await transform_to_image(create_terrain_image(terrain), [102.5, 202.5, 50])
        np.testing.assert_allclose(result.coords, [0, 0], atol=1e-9)
        self.assertEqual(result.height, 50.0)
        self.assertFalse(result.estimate)
        self.assertEqual(terrain.calls, 0)

    async def test_terrain_height(self):
        terrain = FakeTerrain(50)
        result = await transform_to_image(create_terrain_image(terrain), [102.5, 202.5])
        np.testing.assert_allclose(result.coords, [0, 0], atol=1e-9)
        self.assertEqual(result.height, 50.0)
        self.assertFalse(result.estimate)

        result = await transform_to_image(create_terrain_image(terrain), [102.5, 202.5], use_terrain=False)
        self.assertTrue(result.estimate)
        self.assertEqual(terrain.calls, 1)

    async def test_terrain_failure(self):
        """A failing terrain is logged and the average height used."""
        terrain = FakeTerrain(error=RuntimeError("terrain unavailable"))
        with self.assertLogs("pyoblique.transforms", level="WARNING"):
            result = await transform_to_image(create_terrain_image(terrain), [101, 201])
        np.testing.assert_allclose(result.coords, [100, 100], atol=1e-9)
        self.assertTrue(result.estimate)


class TestTransformFromImage(unittest.IsolatedAsyncioTestCase):
    """Tests for projecting image coordinates onto the ground."""

    async def test_average_height(self):
        result = await transform_from_image(create_camera_image(), [100, 100])
        np.testing.assert_allclose(result.coords, [101, 201, 0], atol=1e-9)
        self.assertTrue(result.estimate)

    async def test_terrain_refinement(self):
        """The height is refined until it stops changing."""
        terrain = FakeTerrain(10)
        image = create_terrain_image(terrain)

        result = await transform_from_image(image, [500, 500])
        np.testing.assert_allclose(result.coords, [105, 205, 10], atol=1e-9)
        self.assertEqual(result.height, 10.0)
        self.assertFalse(result.estimate)
        self.assertEqual(terrain.calls, 2)

        result = await transform_from_image(image, [0, 0])
        np.testing.assert_allclose(result.coords, [100.5, 200.5, 10], atol=1e-9)

    async def test_refinement_is_bounded(self):
        """A terrain which never settles stops after the configured rounds."""
        class RisingTerrain(FakeTerrain):
            async def sample_heights(self, coordinates, projection):
                self.calls += 1
                return [self.calls * 10.0 for _ in coordinates]

        terrain = RisingTerrain()
        result = await transform_from_image(create_terrain_image(terrain), [500, 500],
                                            terrain_error_count_threshold=3)
        self.assertEqual(terrain.calls, 4)
        self.assertEqual(result.height, 40.0)
        self.assertFalse(result.estimate)

    async def test_terrain_failure(self):
        terrain = FakeTerrain(error=RuntimeError("terrain unavailable"))
        with self.assertLogs("pyoblique.transforms", level="WARNING"):
            result = await transform_from_image(create_terrain_image(terrain), [100, 100])
        np.testing.assert_allclose(result.coords, [101, 201, 0], atol=1e-9)
        self.assertTrue(result.estimate)


class TestGeometryTransforms(unittest.IsolatedAsyncioTestCase):
    """Tests for converting whole geometries between ground and image."""

    async def test_to_image(self):
        geometry = Geometry(GeometryType.POLYGON, [GROUND_RING])
        converted = await mercator_geometry_to_image_geometry(geometry, create_camera_image())

        self.assertIsNot(converted, geometry)
        np.testing.assert_allclose(converted.coordinates[0], IMAGE_RING, atol=1e-9)
        self.assertEqual(geometry.coordinates[0], GROUND_RING)

    async def test_to_image_with_terrain(self):
        geometry = Geometry(GeometryType.POINT, [102.5, 202.5])
        converted = await mercator_geometry_to_image_geometry(geometry, create_terrain_image(FakeTerrain(50)))
        np.testing.assert_allclose(converted.coordinates, [0, 0], atol=1e-9)

    async def test_circle_to_image(self):
        """Circles are approximated by polygons in image space."""
        geometry = Geometry(GeometryType.CIRCLE, [105, 205], radius=1)
        converted = await mercator_geometry_to_image_geometry(geometry, create_camera_image())
        self.assertEqual(converted.type, GeometryType.POLYGON)
        for x, y in converted.coordinates[0]:
            self.assertAlmostEqual(math.hypot(x - 500, y - 500), 100, places=6)

    async def test_to_image_failure(self):
        image = create_camera_image(p_to_image=[[1, 0, 0, 0], [0, 1, 0, 0], [0, 0, 0, 0]])
        with self.assertRaises(ConversionError):
            await mercator_geometry_to_image_geometry(Geometry(GeometryType.POLYGON, [GROUND_RING]), image)

    async def test_to_mercator(self):
        """Positions converted to the ground gain a height."""
        geometry = Geometry(GeometryType.POLYGON, [IMAGE_RING])
        converted = await image_geometry_to_mercator_geometry(geometry, create_camera_image())

        self.assertIsNot(converted, geometry)
        expected = [[x, y, 0.0] for x, y in GROUND_RING]
        np.testing.assert_allclose(converted.coordinates[0], expected, atol=1e-9)
        self.assertEqual(geometry.coordinates[0], IMAGE_RING)

    async def test_to_mercator_line(self):
        geometry = Geometry(GeometryType.LINE_STRING, [[500, 500], [100, 100]])
        converted = await image_geometry_to_mercator_geometry(geometry, create_terrain_image(FakeTerrain(10)))
        np.testing.assert_allclose(converted.coordinates[0], [105, 205, 10], atol=1e-9)


class TestPolygonizedGeometry(unittest.TestCase):

    def test_rectangle(self):
        geometry = Geometry(GeometryType.POLYGON, [GROUND_RING], properties={"shape": "bbox"})
        feature = Feature(geometry, feature_id="a")
        self.assertIs(get_polygonized_geometry(feature, retain_rectangle=True), geometry)
        self.assertIsNot(get_polygonized_geometry(feature), geometry)

    def test_circle(self):
        feature = Feature(Geometry(GeometryType.CIRCLE, [0, 0], radius=1), feature_id="a")
        polygonized = get_polygonized_geometry(feature, retain_rectangle=True)
        self.assertEqual(polygonized.type, GeometryType.POLYGON)

    def test_no_geometry(self):
        with self.assertRaises(ValueError):
            get_polygonized_geometry(Feature(feature_id="a"))


if __name__ == '__main__':
    unittest.main()
