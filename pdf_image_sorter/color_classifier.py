"""Classify extracted images as small page assets, grayscale or colour.

The heuristic is intentionally cheap: a size gate catches logos, bullets and
rules that `pdfimages` pulls out of page designs, the declared colour type
short-circuits obviously monochrome images, and only then do we walk the
pixels (column by column) until roughly 3% of the checked pixels turn out to
be colourful.

Dependencies:
    pip install pillow
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Tuple

from PIL import Image, UnidentifiedImageError

# pdfimages happily emits scans far above Pillow's decompression bomb guard.
Image.MAX_IMAGE_PIXELS = None


DEFAULT_SMALL_THRESHOLD = 250
MIN_CHECKED_PIXELS = 100
COLORFUL_RATIO_DIVISOR = 33

# Pillow modes whose pixels are not RGB tuples and have to be converted
# before sampling.
CONVERT_TO_RGB_MODES = {"CMYK", "YCbCr", "LAB", "HSV"}
CONVERT_TO_RGBA_MODES = {"PA", "RGBa"}


Rgb = Tuple[int, int, int]


class ImageCategory(str, enum.Enum):
    SMALL = "small"
    GRAYSCALE = "grayscale"
    COLOR = "color"


class ColorType(str, enum.Enum):
    BILEVEL = "bilevel"
    GRAYSCALE = "grayscale"
    GRAYSCALE_ALPHA = "grayscale_alpha"
    COLOR = "color"


MONOCHROME_TYPES = {ColorType.BILEVEL, ColorType.GRAYSCALE, ColorType.GRAYSCALE_ALPHA}


class ImageDecodeError(ValueError):
    """Raised when an extracted file cannot be decoded as an image."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Cannot decode image {path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class ImageSample:
    """Decoded image metadata plus a lazy RGB accessor.

    ``pixel_at`` is only called by :func:`classify` once both gates have
    been passed, so monochrome samples may supply an accessor that never
    touches pixel data.
    """

    width: int
    height: int
    channels: int
    color_type: ColorType
    pixel_at: Callable[[int, int], Rgb]


def color_type_for_mode(mode: str) -> ColorType:
    if mode == "1":
        return ColorType.BILEVEL
    if mode in {"LA", "La"}:
        return ColorType.GRAYSCALE_ALPHA
    if mode in {"L", "I", "F"} or mode.startswith("I;"):
        return ColorType.GRAYSCALE
    return ColorType.COLOR


def normalise_mode(image: Image.Image) -> Image.Image:
    if image.mode == "P":
        return image.convert("RGBA" if "transparency" in image.info else "RGB")
    if image.mode in CONVERT_TO_RGBA_MODES:
        return image.convert("RGBA")
    if image.mode in CONVERT_TO_RGB_MODES:
        return image.convert("RGB")
    return image


def sample_from_pil(image: Image.Image) -> ImageSample:
    image = normalise_mode(image)
    color_type = color_type_for_mode(image.mode)
    bands = len(image.getbands())
    pixels = image.load()

    if bands >= 3:
        def pixel_at(x: int, y: int) -> Rgb:
            value = pixels[x, y]
            return value[0], value[1], value[2]
    else:
        def pixel_at(x: int, y: int) -> Rgb:
            value = pixels[x, y]
            level = value[0] if isinstance(value, tuple) else value
            return level, level, level

    return ImageSample(
        width=image.width,
        height=image.height,
        channels=bands,
        color_type=color_type,
        pixel_at=pixel_at,
    )


@contextmanager
def load_image_sample(path: Path) -> Iterator[ImageSample]:
    """Open ``path`` with Pillow and yield an :class:`ImageSample`.

    The underlying file is closed when the ``with`` block exits, so the
    sample must not be used afterwards.
    """
    try:
        image = Image.open(path)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageDecodeError(path, str(exc)) from exc
    with image:
        try:
            sample = sample_from_pil(image)
        except (OSError, ValueError) as exc:
            raise ImageDecodeError(path, str(exc)) from exc
        yield sample


def iter_pixels(sample: ImageSample) -> Iterator[Rgb]:
    for x in range(sample.width):
        for y in range(sample.height):
            yield sample.pixel_at(x, y)


def is_colorful_pixel(pixel: Rgb) -> bool:
    red, green, blue = pixel
    return red != green or green != blue


def is_colorful(sample: ImageSample) -> bool:
    if sample.color_type in MONOCHROME_TYPES or sample.channels < 3:
        return False

    checked = 0
    colorful = 0
    for pixel in iter_pixels(sample):
        checked += 1
        if is_colorful_pixel(pixel):
            colorful += 1
        if checked >= MIN_CHECKED_PIXELS and colorful * COLORFUL_RATIO_DIVISOR >= checked:
            return True
    # Samples with fewer than MIN_CHECKED_PIXELS pixels never reach the exit
    # above and end up grayscale even when colourful.
    return False


def is_small(sample: ImageSample, small_threshold: int) -> bool:
    return sample.width < small_threshold and sample.height < small_threshold


def classify(sample: ImageSample, small_threshold: int = DEFAULT_SMALL_THRESHOLD) -> ImageCategory:
    if is_small(sample, small_threshold):
        return ImageCategory.SMALL
    if is_colorful(sample):
        return ImageCategory.COLOR
    return ImageCategory.GRAYSCALE


def classify_file(path: Path, small_threshold: int = DEFAULT_SMALL_THRESHOLD) -> ImageCategory:
    with load_image_sample(path) as sample:
        try:
            return classify(sample, small_threshold)
        except (OSError, ValueError) as exc:
            # Truncated files only fail once Pillow decodes the pixel data.
            raise ImageDecodeError(path, str(exc)) from exc
