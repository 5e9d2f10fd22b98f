"""
training.py
~~~~~~~~~~~

Epoch/mini-batch training driver for ``Network``.

Every epoch shuffles the full list of training files, feeds them one sample
at a time in batches of ``batch_size``, writes a checkpoint after each batch
and then measures top-1 accuracy on the test directory.
"""

import logging
import os
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import numpy as np

from .dataset import (
    IMAGE_SIZE,
    NUM_CLASSES,
    extract_label,
    list_image_files,
    load_image,
    one_hot,
)
from .errors import DimensionMismatch, ImageDecodeError, LabelParseError
from .model_persistence import save_network
from .network import Network, RandomSource

logger = logging.getLogger(__name__)

# Errors caused by a single bad file. ValueError covers labels outside the
# class range; network-side DimensionMismatch is never caught as one.
SAMPLE_ERRORS = (ImageDecodeError, LabelParseError, ValueError)

Callback = Callable[[Dict[str, Any]], None]


class TrainingConfig:
    """
    Hyper-parameters and policies for a training run.

    Args:
        epochs: Number of passes over the training files
        batch_size: Samples between two checkpoints
        learning_rate: SGD step size
        num_classes: Width of the one-hot target vectors
        image_size: Required ``(width, height)`` of every image
        skip_bad_samples: Log and skip undecodable or mislabelled files
            instead of aborting the epoch
        checkpoint_path: Snapshot written after every batch, or None
    """

    def __init__(
        self,
        epochs: int = 10,
        batch_size: int = 100,
        learning_rate: float = 0.0001,
        num_classes: int = NUM_CLASSES,
        image_size: Optional[Tuple[int, int]] = IMAGE_SIZE,
        skip_bad_samples: bool = True,
        checkpoint_path: Optional[str] = None
    ):
        if not isinstance(epochs, int) or epochs < 1:
            raise ValueError('epochs must be a positive integer')
        if not isinstance(batch_size, int) or batch_size < 1:
            raise ValueError('batch_size must be a positive integer')
        if not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
            raise ValueError('learning_rate must be a positive number')
        if not isinstance(num_classes, int) or num_classes < 1:
            raise ValueError('num_classes must be a positive integer')

        self.epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.num_classes = num_classes
        self.image_size = image_size
        self.skip_bad_samples = skip_bad_samples
        self.checkpoint_path = checkpoint_path

    def __repr__(self) -> str:
        return (
            f"TrainingConfig(epochs={self.epochs}, "
            f"batch_size={self.batch_size}, "
            f"learning_rate={self.learning_rate})"
        )


class PassResult(NamedTuple):
    """Outcome of training on a batch or a whole epoch."""
    samples: int
    skipped: int
    mean_loss: float


class EvaluationResult(NamedTuple):
    correct: int
    total: int
    skipped: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    def __str__(self) -> str:
        return f"{self.correct}/{self.total}"


class EpochResult(NamedTuple):
    epoch: int
    training: PassResult
    evaluation: Optional[EvaluationResult]
    elapsed_time: float


class Trainer:
    """
    Drives a ``Network`` through the training protocol.

    The trainer holds a reference to the network and mutates it in place;
    it must be the only code touching that network while it runs.
    """

    def __init__(
        self,
        network: Network,
        config: Optional[TrainingConfig] = None,
        rng: RandomSource = None
    ):
        self.network = network
        self.config = config or TrainingConfig()
        self._rng = np.random.default_rng(rng)

    def check_input_size(self) -> None:
        """Raise ``DimensionMismatch`` if images cannot feed the network."""
        if self.config.image_size is not None:
            width, height = self.config.image_size
            if self.network.input_size != width * height:
                raise DimensionMismatch(
                    f"{width}x{height} image", self.network.input_size, width * height
                )

    def check_dimensions(self) -> None:
        """
        Verify the network fits the configured images and classes.

        Raises:
            DimensionMismatch: If the input width differs from the pixel
                count of ``config.image_size`` or the output width differs
                from ``config.num_classes``.
        """
        self.check_input_size()
        if self.network.output_size != self.config.num_classes:
            raise DimensionMismatch(
                "one-hot target", self.network.output_size, self.config.num_classes
            )

    def _load_sample(
        self,
        directory: str,
        filename: str
    ) -> Tuple[np.ndarray, int]:
        label = extract_label(filename)
        inputs = load_image(
            os.path.join(directory, filename), self.config.image_size
        )
        return inputs, label

    def _handle_bad_sample(self, filename: str, error: Exception) -> None:
        if not self.config.skip_bad_samples:
            raise error
        logger.warning(f"Skipping '{filename}': {error}")

    def train_batch(
        self,
        directory: str,
        filenames: List[str],
        yield_func: Optional[Callable[[], None]] = None
    ) -> PassResult:
        """Apply one SGD step per file in ``filenames``."""
        samples = 0
        skipped = 0
        total_loss = 0.0

        for filename in filenames:
            try:
                inputs, label = self._load_sample(directory, filename)
                targets = one_hot(label, self.config.num_classes)
            except SAMPLE_ERRORS as e:
                self._handle_bad_sample(filename, e)
                skipped += 1
                continue

            loss = self.network.learn(inputs, targets, self.config.learning_rate)
            total_loss += loss
            samples += 1
            if yield_func:
                yield_func()

        mean_loss = total_loss / samples if samples else 0.0
        return PassResult(samples, skipped, mean_loss)

    def train_epoch(
        self,
        directory: str,
        filenames: List[str],
        epoch: int = 1,
        batch_callback: Optional[Callback] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> PassResult:
        """
        Shuffle ``filenames`` in place and train on them batch by batch.

        A checkpoint is written after every batch when
        ``config.checkpoint_path`` is set; ``PersistenceError`` from the
        checkpoint propagates.
        """
        self.check_dimensions()

        total_files = len(filenames)
        if not total_files:
            logger.warning(f"No training files in '{directory}'")
            return PassResult(0, 0, 0.0)

        self._rng.shuffle(filenames)

        samples = 0
        skipped = 0
        total_loss = 0.0
        batch_size = self.config.batch_size

        for batch_start in range(0, total_files, batch_size):
            batch_end = min(batch_start + batch_size, total_files)
            batch = self.train_batch(
                directory, filenames[batch_start:batch_end], yield_func
            )
            samples += batch.samples
            skipped += batch.skipped
            total_loss += batch.mean_loss * batch.samples

            if self.config.checkpoint_path:
                save_network(self.network, self.config.checkpoint_path)

            if batch_callback:
                batch_callback({
                    'epoch': epoch,
                    'progress': batch_end / total_files * 100,
                    'batch_loss': batch.mean_loss,
                    'processed': batch_end,
                    'total_files': total_files
                })

        mean_loss = total_loss / samples if samples else 0.0
        return PassResult(samples, skipped, mean_loss)

    def evaluate(
        self,
        directory: str,
        filenames: Optional[List[str]] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> EvaluationResult:
        """
        Count top-1 hits over ``filenames`` (default: every file in
        ``directory``).  Skipped files are not part of ``total``.
        """
        self.check_input_size()

        if filenames is None:
            filenames = list_image_files(directory)

        correct = 0
        total = 0
        skipped = 0

        for index, filename in enumerate(filenames):
            try:
                inputs, label = self._load_sample(directory, filename)
            except SAMPLE_ERRORS as e:
                self._handle_bad_sample(filename, e)
                skipped += 1
                continue

            total += 1
            if self.network.predict(inputs) == label:
                correct += 1

            if progress_callback:
                progress_callback(index + 1, len(filenames))
            if yield_func:
                yield_func()

        result = EvaluationResult(correct, total, skipped)
        logger.info(f"Evaluated '{directory}': {result} correct")
        return result

    def fit(
        self,
        train_dir: str,
        test_dir: Optional[str] = None,
        callback: Optional[Callback] = None,
        batch_callback: Optional[Callback] = None,
        yield_func: Optional[Callable[[], None]] = None,
        stage_callback: Optional[Callable[[str, int], None]] = None,
        evaluation_callback: Optional[Callable[[int, int], None]] = None
    ) -> List[EpochResult]:
        """
        Run the full protocol for ``config.epochs`` epochs.

        Args:
            train_dir: Directory of labelled training images
            test_dir: Directory evaluated after every epoch, or None
            callback: Called after each epoch with a progress dict
            batch_callback: Called after each batch with a progress dict
            yield_func: Called after each sample, e.g. to let other
                cooperative tasks run
            stage_callback: Called with ``('training', epoch)`` before
                each epoch and ``('evaluating', epoch)`` before each
                evaluation
            evaluation_callback: Called with ``(done, total)`` after each
                evaluated file

        Raises:
            DimensionMismatch: If the network does not fit the configured
                images or classes

        Returns:
            One ``EpochResult`` per epoch
        """
        self.check_dimensions()

        filenames = list_image_files(train_dir)
        total_epochs = self.config.epochs
        results = []

        logger.info(
            f"Training {self.network} on {len(filenames)} files from "
            f"'{train_dir}' with {self.config}"
        )

        for epoch in range(1, total_epochs + 1):
            start_time = time.time()

            if stage_callback:
                stage_callback('training', epoch)
            training = self.train_epoch(
                train_dir, filenames, epoch, batch_callback, yield_func
            )

            evaluation = None
            if test_dir:
                if stage_callback:
                    stage_callback('evaluating', epoch)
                evaluation = self.evaluate(
                    test_dir,
                    progress_callback=evaluation_callback,
                    yield_func=yield_func
                )
            elapsed_time = time.time() - start_time

            logger.info(
                f"Epoch {epoch}/{total_epochs}: {training.samples} samples, "
                f"{training.skipped} skipped, loss {training.mean_loss:.6f}"
                + (f", accuracy {evaluation}" if evaluation else "")
            )

            result = EpochResult(epoch, training, evaluation, elapsed_time)
            results.append(result)

            if callback:
                callback({
                    'epoch': epoch,
                    'total_epochs': total_epochs,
                    # None rather than 0.0 when nothing could be evaluated
                    'accuracy': (
                        evaluation.accuracy
                        if evaluation and evaluation.total else None
                    ),
                    'correct': evaluation.correct if evaluation else None,
                    'total': evaluation.total if evaluation else None,
                    'mean_loss': training.mean_loss,
                    'elapsed_time': elapsed_time
                })

        return results
