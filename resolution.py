"""Resolution classification and the per-class waifu2x pass policy."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from PIL import Image, UnidentifiedImageError

from toolchain import progress_write

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".gif", ".tif", ".tiff", ".webp")

# Very large drawings are legitimate input here, not decompression bombs.
Image.MAX_IMAGE_PIXELS = None


class SizeClass(enum.Enum):
    VERY_SMALL = "very_small"
    SMALL = "small"
    NORMAL = "normal"
    LARGE = "large"
    VERY_LARGE = "very_large"


# Lower pixel-count bounds, largest first. Anything below the last bound is VERY_SMALL.
SIZE_CLASS_THRESHOLDS = (
    (100_000_000, SizeClass.VERY_LARGE),  # 10000x10000
    (22_500_000, SizeClass.LARGE),  # 5000x4500
    (786_432, SizeClass.NORMAL),  # 1024x768
    (172_800, SizeClass.SMALL),  # 480x360
)


@dataclass(frozen=True)
class UpscalePass:
    magnification: int
    batch_size: int
    split_size: int


# Very small images are skipped: waifu2x uses disproportionate VRAM on them.
UPSCALE_POLICIES: dict[SizeClass, tuple[UpscalePass, ...]] = {
    SizeClass.VERY_LARGE: (UpscalePass(1, 2, 256), UpscalePass(2, 2, 256)),
    SizeClass.LARGE: (UpscalePass(1, 4, 256), UpscalePass(2, 4, 256)),
    SizeClass.NORMAL: (UpscalePass(2, 4, 256), UpscalePass(1, 4, 256)),
    SizeClass.SMALL: (UpscalePass(1, 6, 128), UpscalePass(2, 6, 128)),
    SizeClass.VERY_SMALL: (),
}


@dataclass(frozen=True)
class ImageTask:
    path: Path
    size_class: SizeClass
    width: int
    height: int

    @property
    def passes(self) -> tuple[UpscalePass, ...]:
        return UPSCALE_POLICIES[self.size_class]


class ClassificationError(Exception):
    """Raised when an image's dimensions cannot be read."""


def classify_pixel_count(pixel_count: int) -> SizeClass:
    for lower_bound, size_class in SIZE_CLASS_THRESHOLDS:
        if pixel_count >= lower_bound:
            return size_class
    return SizeClass.VERY_SMALL


def read_image_size(image_path: Path) -> tuple[int, int]:
    """Read width and height from the image header without decoding pixels."""
    try:
        with Image.open(image_path) as image:
            return image.size
    except (OSError, UnidentifiedImageError) as exc:
        raise ClassificationError(f"Cannot read dimensions of {image_path.name}: {exc}") from exc


def classify_image(image_path: Path) -> ImageTask:
    width, height = read_image_size(image_path)
    return ImageTask(
        path=image_path,
        size_class=classify_pixel_count(width * height),
        width=width,
        height=height,
    )


def build_image_tasks(image_paths: Iterable[Path]) -> list[ImageTask]:
    """Classify images in order, dropping any that cannot be read."""
    tasks: list[ImageTask] = []
    for image_path in image_paths:
        try:
            tasks.append(classify_image(image_path))
        except ClassificationError as exc:
            progress_write(f"Warning: Skipping unreadable image: {exc}")
    return tasks


def natural_sort_key(name: str) -> list[object]:
    """Sort key ordering embedded numbers numerically (img2 before img10)."""
    return [
        int(chunk) if chunk.isdigit() else chunk.casefold()
        for chunk in re.split(r"(\d+)", name)
    ]


def discover_images(source_dir: Path) -> list[Path]:
    """Return image files in `source_dir` in natural name order."""
    if not source_dir.is_dir():
        return []
    images = [
        entry
        for entry in source_dir.iterdir()
        if entry.is_file() and entry.suffix.lower() in IMAGE_EXTENSIONS
    ]
    return sorted(images, key=lambda entry: natural_sort_key(entry.name))
