from .fetch import request_json
from .parsing import (
    get_version_from_image_json,
    parse_image_meta,
    parse_image_data,
    parse_legacy_image_data,
    parse_image_json,
)

__all__ = [
    "request_json",
    "get_version_from_image_json",
    "parse_image_meta",
    "parse_image_data",
    "parse_legacy_image_data",
    "parse_image_json",
]
