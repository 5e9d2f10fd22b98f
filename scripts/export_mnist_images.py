#!/usr/bin/env python3
"""
Export an MNIST .npz archive as individual labelled PNG files.

The training driver reads directories of images named
``<label>_<index>.png``.  This script produces them from an archive with
the keys ``train_images``, ``train_labels``, ``test_images`` and
``test_labels`` (plus optional ``val_images``/``val_labels``).  Images may
be stored as flat 784-element rows or 28x28 arrays, as floats in [0, 1] or
as bytes.

Usage:
    python scripts/export_mnist_images.py data/mnist.npz data/mnist

The script will:
1. Load the archive
2. Write train/ and test/ directories of PNG files
3. Verify a sample of the written files decodes back to the same pixels
"""

import argparse
import os
import sys

import numpy as np
from PIL import Image

# Make the mlpnet package importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mlpnet.dataset import extract_label, load_image  # noqa: E402
from mlpnet.errors import MlpNetError  # noqa: E402


def to_pixels(image: np.ndarray) -> np.ndarray:
    """
    Convert one stored image to a 28x28 uint8 array.

    Parameters:
    -----------
    image : np.ndarray
        784 values or a 28x28 array, floats in [0, 1] or integers

    Returns:
    --------
    np.ndarray
        28x28 array of dtype uint8
    """
    image = np.asarray(image).reshape(28, 28)
    if np.issubdtype(image.dtype, np.floating):
        image = np.clip(np.rint(image * 255.0), 0, 255)
    return image.astype(np.uint8)


def export_split(images: np.ndarray, labels: np.ndarray, out_dir: str,
                 start_index: int = 0) -> int:
    """
    Write every image of a split to ``out_dir``.

    Returns:
    --------
    int
        Number of files written
    """
    os.makedirs(out_dir, exist_ok=True)
    for offset, (image, label) in enumerate(zip(images, labels)):
        filename = f"{int(label)}_{start_index + offset:05d}.png"
        Image.fromarray(to_pixels(image)).save(os.path.join(out_dir, filename))
    return len(labels)


def verify_export(out_dir: str, images: np.ndarray, start_index: int = 0,
                  samples: int = 20) -> bool:
    """Check that a few exported files decode back to their source pixels."""
    names = sorted(os.listdir(out_dir))[:samples]
    for name in names:
        index = int(os.path.splitext(name)[0].split('_', 1)[1]) - start_index
        if not 0 <= index < len(images):
            continue
        expected = to_pixels(images[index]).reshape(-1) / np.float32(255.0)
        decoded = load_image(os.path.join(out_dir, name))
        assert extract_label(name) >= 0
        assert np.allclose(decoded, expected), f"Pixel mismatch in {name}"
    return True


def main():
    """Main export function."""
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument('archive', help='Path to mnist.npz')
    parser.add_argument('out_dir', help='Directory that receives train/ and test/')
    parser.add_argument('--include-validation', action='store_true',
                        help='Append the validation split to train/')
    args = parser.parse_args()

    print("=" * 60)
    print("MNIST Image Exporter")
    print(".npz archive → labelled PNG files")
    print("=" * 60)

    if not os.path.exists(args.archive):
        print(f"❌ Error: Archive not found: {args.archive}")
        sys.exit(1)

    train_dir = os.path.join(args.out_dir, 'train')
    test_dir = os.path.join(args.out_dir, 'test')

    try:
        with np.load(args.archive) as data:
            print(f"📂 Loaded archive: {args.archive}")

            written = export_split(data['train_images'], data['train_labels'], train_dir)
            if args.include_validation and 'val_images' in data:
                written += export_split(data['val_images'], data['val_labels'],
                                        train_dir, start_index=written)
            print(f"✅ Wrote {written} training images to {train_dir}")

            written = export_split(data['test_images'], data['test_labels'], test_dir)
            print(f"✅ Wrote {written} test images to {test_dir}")

            print("\n🔍 Verifying export...")
            verify_export(test_dir, data['test_images'])
            print("✅ Verification passed!")

    except (OSError, KeyError, ValueError, AssertionError, MlpNetError) as e:
        print(f"\n❌ Error during export: {e}")
        sys.exit(1)

    print(f"\n📝 Next step: mlpnet train --train-dir {train_dir} --test-dir {test_dir}")


if __name__ == '__main__':
    main()
