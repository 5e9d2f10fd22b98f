"""
dataset.py
~~~~~~~~~~

Helpers that turn a directory of labelled digit images into training
samples.

Images are expected to be named ``<label>_<anything>.<ext>`` (for example
``7_0001.png``) and to be 28x28 grayscale pictures of a single digit.
"""

import logging
import os
import re
from typing import BinaryIO, List, Optional, Tuple, Union

import numpy as np
from PIL import Image

from .errors import ImageDecodeError, LabelParseError

logger = logging.getLogger(__name__)

IMAGE_SIZE = (28, 28)
NUM_CLASSES = 10

_LABEL_PATTERN = re.compile(r'[0-9]+')


def list_image_files(directory: str) -> List[str]:
    """
    Return the names of the regular files in ``directory``.

    The order is whatever the filesystem reports.  A missing or unreadable
    directory yields an empty list.
    """
    try:
        with os.scandir(directory) as entries:
            return [entry.name for entry in entries if entry.is_file()]
    except OSError as e:
        logger.warning(f"Cannot list directory '{directory}': {e}")
        return []


def extract_label(filename: str) -> int:
    """
    Parse the class label encoded before the first underscore.

    >>> extract_label("7_0001.png")
    7

    Raises:
        LabelParseError: If the prefix is not a non-negative integer.
    """
    prefix = os.path.basename(filename).split('_', 1)[0]
    if not _LABEL_PATTERN.fullmatch(prefix):
        raise LabelParseError(filename)
    return int(prefix)


def one_hot(label: int, num_classes: int = NUM_CLASSES) -> np.ndarray:
    """
    Vector of ``num_classes`` zeros with a 1.0 at ``label``.

    Raises:
        ValueError: If ``label`` is not in ``[0, num_classes)``.
    """
    if not 0 <= label < num_classes:
        raise ValueError(
            f"Label {label} is out of range for {num_classes} classes"
        )
    vector = np.zeros(num_classes, dtype=np.float32)
    vector[label] = 1.0
    return vector


def load_image(
    path: Union[str, BinaryIO],
    size: Optional[Tuple[int, int]] = IMAGE_SIZE
) -> np.ndarray:
    """
    Decode an image into a flat vector of brightness values in ``[0, 1]``.

    The image is converted to 8-bit luma and read row by row, so pixel
    ``(x, y)`` ends up at index ``y * width + x``.

    Args:
        path: Image file path or binary file object
        size: Required ``(width, height)``; None accepts any size

    Raises:
        ImageDecodeError: If the file cannot be opened or decoded, or has
            the wrong dimensions.
    """
    if isinstance(path, (str, os.PathLike)):
        name = os.fspath(path)
    else:
        name = getattr(path, 'name', '<stream>')
    try:
        with Image.open(path) as img:
            luma = img.convert('L')
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(name, str(e)) from e

    if size is not None and luma.size != tuple(size):
        raise ImageDecodeError(
            name,
            f"expected {size[0]}x{size[1]} pixels, got "
            f"{luma.size[0]}x{luma.size[1]}"
        )

    pixels = np.asarray(luma, dtype=np.float32).reshape(-1)
    return pixels / np.float32(255.0)
