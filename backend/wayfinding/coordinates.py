"""
Conversion between pixel coordinates on a rendered floorplan image and
resolution-independent percentage coordinates.

Every consumer (route responses, editor endpoints, serializers) goes through
these helpers instead of computing scale factors on its own.
"""
import math

from .exceptions import InvalidExtent


def _check_extent(total_extent):
    try:
        extent = float(total_extent)
    except (TypeError, ValueError):
        raise InvalidExtent(f'Extent must be a number, got {total_extent!r}', extent=total_extent)
    if not math.isfinite(extent) or extent <= 0:
        raise InvalidExtent(f'Extent must be a positive finite number, got {total_extent!r}', extent=total_extent)
    return extent


def to_percent(value: float, total_extent: float) -> float:
    """Pixel value -> percentage (0-100) of the total extent"""
    extent = _check_extent(total_extent)
    return float(value) / extent * 100.0


def to_pixel(percent: float, total_extent: float) -> float:
    """Percentage (0-100) -> pixel value on an image of the given extent"""
    extent = _check_extent(total_extent)
    return float(percent) / 100.0 * extent


def point_to_percent(x: float, y: float, width: float, height: float):
    return to_percent(x, width), to_percent(y, height)


def point_to_pixel(x_percent: float, y_percent: float, width: float, height: float):
    return to_pixel(x_percent, width), to_pixel(y_percent, height)


def rescale(value: float, from_extent: float, to_extent: float) -> float:
    """Pixel on one image size -> pixel on another, through percentages"""
    return to_pixel(to_percent(value, from_extent), to_extent)
