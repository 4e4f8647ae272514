import unittest
import numpy as np

from pyoblique import CameraModel, Projection


class TestCameraModel(unittest.TestCase):
    """Tests for CameraModel class."""

    def test_camera_initialization(self):
        """Test camera initialization normalizes its values."""
        camera = CameraModel(
            name="cam1",
            size=[1000, 800],
            tile_size=[256, 256],
            tile_resolution=[1, 2, 4],
            principal_point=[500, 400],
            pixel_size=[0.01, 0.01],
            distortion_forward_coeffs=[0.0, 1e-5],
        )

        self.assertEqual(camera.name, "cam1")
        self.assertEqual(camera.size, (1000, 800))
        self.assertEqual(camera.tile_size, (256, 256))
        self.assertEqual(camera.tile_resolution, (1.0, 2.0, 4.0))
        self.assertEqual(camera.principal_point, (500.0, 400.0))
        self.assertEqual(camera.distortion_inverse_coeffs, ())
        self.assertTrue(camera.has_camera)
        self.assertTrue(camera.has_radial)
        self.assertTrue(camera.has_size)

        # Default camera without calibration
        camera = CameraModel()
        self.assertEqual(camera.name, "default")
        self.assertEqual(camera.size, (0, 0))
        self.assertFalse(camera.has_camera)
        self.assertFalse(camera.has_radial)
        self.assertFalse(camera.has_size)

    def test_camera_validation(self):
        """Test invalid values are rejected."""
        with self.assertRaises(ValueError):
            CameraModel(size=[100])
        with self.assertRaises(ValueError):
            CameraModel(size=[-1, 100])
        with self.assertRaises(ValueError):
            CameraModel(principal_point=[1, 2, 3])

    def test_camera_is_immutable(self):
        camera = CameraModel(name="cam1")
        with self.assertRaises(AttributeError):
            camera.name = "other"

        sized = camera.with_size((640, 480))
        self.assertEqual(sized.size, (640, 480))
        self.assertEqual(camera.size, (0, 0))

        with_resolution = camera.with_tile_resolution([1, 2])
        self.assertEqual(with_resolution.tile_resolution, (1.0, 2.0))

    def test_camera_equality(self):
        """Cameras compare by value, ignoring terrain and headers."""
        a = CameraModel(name="cam1", size=(10, 10), projection=Projection("EPSG:25833"))
        b = CameraModel(name="cam1", size=[10, 10], projection=Projection(25833), headers={"a": "b"})
        self.assertEqual(a, b)
        self.assertEqual(hash(a), hash(b))
        self.assertNotEqual(a, CameraModel(name="cam2", size=(10, 10)))

    def test_radial_distortion_coordinate(self):
        """Test the forward and inverse polynomials are used by direction."""
        camera = CameraModel(
            size=(1000, 1000),
            principal_point=(500, 500),
            pixel_size=(0.01, 0.01),
            distortion_forward_coeffs=[0.0, 0.01],
            distortion_inverse_coeffs=[0.0, -0.01],
        )
        forward = camera.radial_distortion_coordinate([600, 500], True)
        np.testing.assert_allclose(forward, [601.0, 500.0])
        inverse = camera.radial_distortion_coordinate([600, 500], False)
        np.testing.assert_allclose(inverse, [599.0, 500.0])

        # Without pixel size no correction is possible
        camera = CameraModel(principal_point=(500, 500), distortion_forward_coeffs=[0.0, 0.01])
        np.testing.assert_allclose(camera.radial_distortion_coordinate([600, 500], True), [600, 500])


if __name__ == '__main__':
    unittest.main()
