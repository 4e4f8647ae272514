import logging
import re
import numpy as np
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..camera import CameraModel
from ..errors import ParseError
from ..image import ObliqueImage
from ..projection import Projection
from ..types import VIEW_DIRECTION_NAMES, ViewDirection

log = logging.getLogger(__name__)

# Column order of image rows in documents without a header row
DEFAULT_IMAGE_COLUMNS = [
    "name",
    "camera-index",
    "view-direction",
    "view-direction-angle",
    "groundCoordinates",
    "centerPointOnGround",
    "projection-center",
    "p-to-realworld",
    "p-to-image",
]

# Legacy documents carry the view direction angle from this tool version on
LEGACY_ANGLE_MIN_VERSION = (3.4, 18)


def get_version_from_image_json(json: Dict[str, Any]) -> Tuple[Optional[float], Optional[int]]:
    """Extracts (version, build number) from a version string like ``"v3.4-18-g7a9"``."""
    version = None
    build_number = None
    version_string = json.get("version")
    if version_string:
        number = re.search(r"\d+\.\d+", version_string)
        if number:
            version = float(number.group(0))
        build = re.search(r"-(\d+)-", version_string)
        if build:
            build_number = int(build.group(1))
    return version, build_number


def _camera_from_options(options: Dict[str, Any], defaults: Dict[str, Any]) -> CameraModel:
    kwargs = dict(defaults)
    if options.get("size"):
        kwargs["size"] = options["size"]
    return CameraModel(
        name=options.get("name", "default"),
        principal_point=options.get("principal-point"),
        pixel_size=options.get("pixel-size"),
        distortion_inverse_coeffs=options.get("radial-distorsion-expected-2-found") or (),
        distortion_forward_coeffs=options.get("radial-distorsion-found-2-expected") or (),
        **kwargs,
    )


def parse_image_meta(json: Dict[str, Any], url: str,
                     projection: Optional[Projection] = None,
                     terrain_provider: Any = None,
                     headers: Optional[Dict[str, str]] = None) -> List[CameraModel]:
    """
    Parses the camera models of a metadata document.

    Args:
        json: The metadata document.
        url: Base url of the data set.
        projection: Projection of the ground coordinates. If None, the
            document's ``crs`` is used.

    Returns:
        The camera models, at least one (named ``default``).

    Raises:
        ParseError: If the document has no ``generalImageInfo`` block.
    """
    general = json.get("generalImageInfo")
    if not isinstance(general, dict):
        raise ParseError("Metadata document is missing 'generalImageInfo'")

    size: Sequence[int] = (0, 0)
    if general.get("width") and general.get("height"):
        size = (general["width"], general["height"])
    elif general.get("size"):
        size = general["size"]

    tile_size: Sequence[int] = (0, 0)
    if general.get("tile-width") and general.get("tile-height"):
        tile_size = (general["tile-width"], general["tile-height"])
    elif general.get("tile-size"):
        tile_size = general["tile-size"]

    image_projection = projection
    if image_projection is None and general.get("crs"):
        image_projection = Projection(proj4=general["crs"])

    defaults = {
        "size": size,
        "tile_size": tile_size,
        "tile_resolution": general.get("tile-resolution") or (),
        "projection": image_projection,
        "url": url,
        "terrain_provider": terrain_provider,
        "headers": headers,
    }

    metas = []
    camera_parameter = general.get("cameraParameter")
    if isinstance(camera_parameter, list):
        for options in camera_parameter:
            metas.append(_camera_from_options(options, defaults))
    elif isinstance(camera_parameter, dict):
        for name, options in camera_parameter.items():
            metas.append(_camera_from_options({"name": name, **options}, defaults))

    if not metas:
        metas.append(CameraModel(name="default", **defaults))
    return metas


def _fill_meta(metas: List[CameraModel], index: int, width: Any, height: Any,
               tile_resolution: Any) -> CameraModel:
    """Completes a camera model with per-image size information, replacing it in ``metas``."""
    meta = metas[index]
    if not meta.has_size:
        if width and height:
            meta = meta.with_size((width, height))
        else:
            log.warning("Camera '%s' is missing its image size", meta.name)
    if not meta.tile_resolution:
        if tile_resolution:
            meta = meta.with_tile_resolution(tile_resolution)
        else:
            log.warning("Camera '%s' is missing its tile resolution", meta.name)
    metas[index] = meta
    return meta


def _is_header_row(row: Any) -> bool:
    return isinstance(row, list) and all(isinstance(v, str) for v in row) and "name" in row


def parse_image_data(json: Dict[str, Any], metas: List[CameraModel]) -> List[ObliqueImage]:
    """
    Parses the positional image rows of a current flat document.

    The first row may name the columns. Camera models completed with per-image
    size information are replaced in ``metas``.
    """
    rows = list(json.get("images") or [])
    columns = DEFAULT_IMAGE_COLUMNS
    if rows and _is_header_row(rows[0]):
        columns = rows.pop(0)
    indices = {name: i for i, name in enumerate(columns)}

    def value(row: Sequence[Any], key: str) -> Any:
        i = indices.get(key)
        if i is None or i >= len(row):
            return None
        return row[i]

    images = []
    for row in rows:
        camera_index = value(row, "camera-index") or 0
        if camera_index >= len(metas):
            raise ParseError(f"Image '{value(row, 'name')}' references unknown camera {camera_index}")
        meta = _fill_meta(metas, camera_index, value(row, "width"), value(row, "height"),
                          value(row, "tile-resolution"))

        images.append(ObliqueImage(
            name=value(row, "name"),
            view_direction=ViewDirection(value(row, "view-direction")),
            view_direction_angle=value(row, "view-direction-angle"),
            meta=meta,
            ground_coordinates=value(row, "groundCoordinates"),
            center_point_on_ground=value(row, "centerPointOnGround"),
            projection_center=value(row, "projection-center"),
            p_to_realworld=value(row, "p-to-realworld"),
            p_to_image=value(row, "p-to-image"),
        ))
    return images


def _legacy_matrices(camera_options: Dict[str, Any], image: Dict[str, Any]):
    """Builds projection center, pixel-to-world and world-to-pixel matrices."""
    camera_matrix = np.asarray(camera_options["camera-matrix"], dtype=np.float64).reshape(3, 3)
    rotation = np.asarray(image["rotation-matrix"], dtype=np.float64).reshape(3, 3)
    projection_center = np.asarray(image["projection-center"], dtype=np.float64)
    focal_length = float(camera_options["focal-length"]) * -1

    p_to_realworld = rotation.T @ (np.linalg.inv(camera_matrix) * focal_length)

    camera_matrix4 = np.eye(4)
    camera_matrix4[:3, :3] = camera_matrix
    rotation4 = np.eye(4)
    rotation4[:3, :3] = rotation
    translation = np.eye(4)
    translation[:3, 3] = -projection_center
    p_to_image = camera_matrix4 @ rotation4 @ translation
    return projection_center, p_to_realworld, p_to_image


def parse_legacy_image_data(json: Dict[str, Any], metas: List[CameraModel]) -> List[ObliqueImage]:
    """Parses the object-per-image layout of legacy flat documents."""
    camera_parameter = json["generalImageInfo"].get("cameraParameter") or {}
    version, build_number = get_version_from_image_json(json)
    min_version, min_build = LEGACY_ANGLE_MIN_VERSION
    has_angle = (version is not None and build_number is not None and
                 version >= min_version and build_number >= min_build)

    images = []
    for image in json.get("images") or []:
        camera_name = image.get("camera-name")
        index = next((i for i, m in enumerate(metas) if camera_name and m.name == camera_name), None)
        meta = _fill_meta(metas, index or 0, image.get("width"), image.get("height"),
                          image.get("tileResolution"))

        kwargs = {}
        camera_options = camera_parameter.get(camera_name) if isinstance(camera_parameter, dict) else None
        if index is not None and camera_options and "camera-matrix" in camera_options:
            center, p_to_realworld, p_to_image = _legacy_matrices(camera_options, image)
            kwargs = {
                "projection_center": center,
                "p_to_realworld": p_to_realworld,
                "p_to_image": p_to_image,
            }

        direction = image["view-direction"]
        if isinstance(direction, str):
            direction = VIEW_DIRECTION_NAMES[direction.lower()]

        images.append(ObliqueImage(
            name=image["name"],
            view_direction=direction,
            view_direction_angle=image.get("view-directionAngle") if has_angle else None,
            meta=meta,
            ground_coordinates=image["groundCoordinates"],
            center_point_on_ground=image["centerPointOnGround"],
            **kwargs,
        ))
    return images


def parse_image_json(json: Dict[str, Any], metas: List[CameraModel]) -> List[ObliqueImage]:
    """
    Parses the images of a flat document in either the current or the legacy layout.

    Raises:
        ParseError: If the document or an image entry is malformed.
    """
    if not isinstance(json, dict):
        raise ParseError("Image document is not an object")
    images = json.get("images")
    if not images:
        return []
    try:
        if isinstance(images[0], dict):
            return parse_legacy_image_data(json, metas)
        return parse_image_data(json, metas)
    except ParseError:
        raise
    except (KeyError, TypeError, ValueError, IndexError) as e:
        raise ParseError(f"Malformed image entry: {e!r}") from e
