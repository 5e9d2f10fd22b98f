"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for the epoch/batch training driver.
"""

import os

import pytest

from conftest import write_image
from mlpnet.errors import DimensionMismatch, MlpNetError, PersistenceError
from mlpnet.model_persistence import load_network
from mlpnet.network import Network
from mlpnet.training import (
    EvaluationResult,
    PassResult,
    Trainer,
    TrainingConfig,
)


@pytest.mark.unit
class TestTrainingConfig:

    def test_defaults(self):
        config = TrainingConfig()

        assert config.epochs == 10
        assert config.batch_size == 100
        assert config.learning_rate == 0.0001
        assert config.num_classes == 10
        assert config.skip_bad_samples is True
        assert config.checkpoint_path is None

    @pytest.mark.parametrize("kwargs", [
        {'epochs': 0},
        {'epochs': 1.5},
        {'batch_size': 0},
        {'learning_rate': 0},
        {'learning_rate': -0.1},
        {'learning_rate': 'fast'},
        {'num_classes': 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            TrainingConfig(**kwargs)


@pytest.mark.unit
class TestEvaluationResult:

    def test_accuracy(self):
        assert EvaluationResult(3, 4).accuracy == 0.75
        assert EvaluationResult(0, 0).accuracy == 0.0

    def test_str(self):
        assert str(EvaluationResult(7, 10)) == "7/10"


@pytest.mark.unit
class TestCheckDimensions:

    def test_matching_network(self, digit_network):
        Trainer(digit_network).check_dimensions()

    def test_input_width_mismatch(self, image_dirs, tmp_path):
        train_dir, _ = image_dirs
        checkpoint = tmp_path / "checkpoint.json"
        trainer = Trainer(
            Network([100, 10], rng=0), TrainingConfig(checkpoint_path=str(checkpoint))
        )

        with pytest.raises(DimensionMismatch) as exc_info:
            trainer.train_epoch(train_dir, os.listdir(train_dir))
        assert exc_info.value.expected == 100
        assert exc_info.value.actual == 784
        assert not checkpoint.exists()

    def test_output_width_mismatch(self, image_dirs):
        train_dir, _ = image_dirs
        trainer = Trainer(Network([784, 4], rng=0), TrainingConfig(num_classes=10))

        with pytest.raises(DimensionMismatch):
            trainer.train_epoch(train_dir, os.listdir(train_dir))

    def test_evaluate_checks_input_width_only(self, image_dirs):
        _, test_dir = image_dirs

        with pytest.raises(DimensionMismatch):
            Trainer(Network([100, 10], rng=0)).evaluate(test_dir)
        # Evaluation compares indices, so the class count does not matter
        assert Trainer(Network([784, 4], rng=0)).evaluate(test_dir).total == 4

    def test_not_skippable(self, image_dirs):
        """Test that a width mismatch aborts even when bad samples are skipped."""
        train_dir, test_dir = image_dirs
        config = TrainingConfig(epochs=1, skip_bad_samples=True)

        with pytest.raises(DimensionMismatch):
            Trainer(Network([100, 10], rng=0), config).fit(train_dir, test_dir)

    def test_unchecked_image_size(self, image_dirs):
        train_dir, _ = image_dirs
        config = TrainingConfig(image_size=None)

        with pytest.raises(DimensionMismatch):
            Trainer(Network([100, 10], rng=0), config).train_epoch(
                train_dir, os.listdir(train_dir)
            )


@pytest.mark.unit
class TestTrainEpoch:
    """Test one pass over the training files."""

    def test_batches_and_checkpoints(self, digit_network, image_dirs, tmp_path):
        train_dir, _ = image_dirs
        checkpoint = str(tmp_path / "checkpoint.json")
        config = TrainingConfig(batch_size=4, learning_rate=0.01, checkpoint_path=checkpoint)
        trainer = Trainer(digit_network, config, rng=0)
        batches = []

        files = sorted(os.listdir(train_dir))
        result = trainer.train_epoch(train_dir, files, epoch=1, batch_callback=batches.append)

        assert result.samples == 6
        assert result.skipped == 0
        assert [batch['processed'] for batch in batches] == [4, 6]
        assert batches[-1]['progress'] == 100
        assert all(batch['total_files'] == 6 for batch in batches)
        assert load_network(checkpoint) == digit_network

    def test_shuffles_in_place(self, digit_network, image_dirs):
        train_dir, _ = image_dirs
        files = sorted(os.listdir(train_dir))
        original = list(files)

        Trainer(digit_network, TrainingConfig(batch_size=2), rng=0).train_epoch(train_dir, files)

        assert sorted(files) == original

    def test_updates_parameters(self, image_dirs):
        train_dir, _ = image_dirs
        net = Network([784, 10], rng=4)
        before = Network.from_dict(net.to_dict())

        Trainer(net, TrainingConfig(learning_rate=0.01)).train_epoch(
            train_dir, os.listdir(train_dir)
        )

        assert net != before

    def test_empty_file_list(self, digit_network, tmp_path):
        checkpoint = tmp_path / "checkpoint.json"
        trainer = Trainer(digit_network, TrainingConfig(checkpoint_path=str(checkpoint)))

        result = trainer.train_epoch(str(tmp_path), [])

        assert result == PassResult(0, 0, 0.0)
        assert not checkpoint.exists()

    def test_skips_bad_samples(self, digit_network, image_dirs):
        train_dir, _ = image_dirs
        (open(os.path.join(train_dir, "4_broken.png"), "wb")).close()
        write_image(os.path.join(train_dir, "unlabelled.png"))
        write_image(os.path.join(train_dir, "5_small.png"), size=(10, 10))

        result = Trainer(digit_network).train_epoch(train_dir, os.listdir(train_dir))

        assert result.samples == 6
        assert result.skipped == 3

    def test_label_outside_classes_is_skipped(self, image_dirs):
        train_dir, _ = image_dirs
        net = Network([784, 2], rng=0)
        config = TrainingConfig(num_classes=2)

        result = Trainer(net, config).train_epoch(train_dir, os.listdir(train_dir))

        # Labels 0 and 1 fit two classes, the two label-2 images do not
        assert result.samples == 4
        assert result.skipped == 2

    def test_strict_mode_aborts(self, digit_network, image_dirs):
        train_dir, _ = image_dirs
        write_image(os.path.join(train_dir, "unlabelled.png"))
        config = TrainingConfig(skip_bad_samples=False)

        with pytest.raises(MlpNetError):
            Trainer(digit_network, config).train_epoch(train_dir, os.listdir(train_dir))

    def test_checkpoint_failure_propagates(self, digit_network, image_dirs, tmp_path):
        train_dir, _ = image_dirs
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not directory")
        config = TrainingConfig(checkpoint_path=str(blocker / "network.json"))

        with pytest.raises(PersistenceError):
            Trainer(digit_network, config).train_epoch(train_dir, os.listdir(train_dir))

    def test_yield_func_called_per_sample(self, digit_network, image_dirs):
        train_dir, _ = image_dirs
        calls = []

        Trainer(digit_network).train_epoch(
            train_dir, os.listdir(train_dir), yield_func=lambda: calls.append(1)
        )

        assert len(calls) == 6


@pytest.mark.unit
class TestEvaluate:

    def test_counts_correct_predictions(self, constant_network, image_dirs):
        _, test_dir = image_dirs

        result = Trainer(constant_network).evaluate(test_dir)

        # The network always answers 0; two of the four test images are zeros
        assert result.correct == 2
        assert result.total == 4
        assert str(result) == "2/4"

    def test_explicit_file_list(self, constant_network, image_dirs):
        _, test_dir = image_dirs

        result = Trainer(constant_network).evaluate(test_dir, ["1_0002.png", "0_0000.png"])

        assert (result.correct, result.total) == (1, 2)

    def test_progress_callback(self, constant_network, image_dirs):
        _, test_dir = image_dirs
        progress = []

        Trainer(constant_network).evaluate(
            test_dir, progress_callback=lambda done, total: progress.append((done, total))
        )

        assert progress[-1] == (4, 4)

    def test_empty_directory(self, constant_network, tmp_path):
        result = Trainer(constant_network).evaluate(str(tmp_path))

        assert result == EvaluationResult(0, 0, 0)
        assert result.accuracy == 0.0

    def test_bad_files_not_counted(self, constant_network, image_dirs):
        _, test_dir = image_dirs
        write_image(os.path.join(test_dir, "bad.png"))

        result = Trainer(constant_network).evaluate(test_dir)

        assert result.total == 4
        assert result.skipped == 1

    def test_evaluate_does_not_train(self, digit_network, image_dirs):
        _, test_dir = image_dirs
        before = Network.from_dict(digit_network.to_dict())

        Trainer(digit_network).evaluate(test_dir)

        assert digit_network == before


@pytest.mark.integration
class TestFit:

    def test_full_protocol(self, digit_network, image_dirs, tmp_path):
        train_dir, test_dir = image_dirs
        checkpoint = str(tmp_path / "network.json")
        config = TrainingConfig(
            epochs=2, batch_size=4, learning_rate=0.001, checkpoint_path=checkpoint
        )
        epochs = []
        batches = []

        results = Trainer(digit_network, config, rng=1).fit(
            train_dir, test_dir, callback=epochs.append, batch_callback=batches.append
        )

        assert [result.epoch for result in results] == [1, 2]
        assert all(result.training.samples == 6 for result in results)
        assert all(result.evaluation.total == 4 for result in results)
        assert [data['epoch'] for data in epochs] == [1, 2]
        assert epochs[0]['total_epochs'] == 2
        assert 0.0 <= epochs[-1]['accuracy'] <= 1.0
        assert epochs[-1]['total'] == 4
        assert epochs[-1]['elapsed_time'] >= 0
        assert len(batches) == 4
        assert load_network(checkpoint) == digit_network

    def test_without_test_dir(self, digit_network, image_dirs):
        train_dir, _ = image_dirs
        epochs = []

        results = Trainer(digit_network, TrainingConfig(epochs=1)).fit(
            train_dir, callback=epochs.append
        )

        assert results[0].evaluation is None
        assert epochs[0]['accuracy'] is None

    def test_missing_training_directory(self, digit_network, tmp_path):
        results = Trainer(digit_network, TrainingConfig(epochs=1)).fit(str(tmp_path / "missing"))

        assert results[0].training == PassResult(0, 0, 0.0)

    def test_stage_and_evaluation_callbacks(self, digit_network, image_dirs):
        train_dir, test_dir = image_dirs
        stages = []
        evaluated = []

        Trainer(digit_network, TrainingConfig(epochs=2)).fit(
            train_dir, test_dir,
            stage_callback=lambda stage, epoch: stages.append((stage, epoch)),
            evaluation_callback=lambda done, total: evaluated.append((done, total))
        )

        assert stages == [
            ('training', 1), ('evaluating', 1), ('training', 2), ('evaluating', 2)
        ]
        assert evaluated[-1] == (4, 4)
        assert len(evaluated) == 8

    def test_empty_test_directory_has_no_accuracy(self, digit_network, image_dirs, tmp_path):
        train_dir, _ = image_dirs
        epochs = []

        results = Trainer(digit_network, TrainingConfig(epochs=1)).fit(
            train_dir, str(tmp_path / "missing"), callback=epochs.append
        )

        assert results[0].evaluation.total == 0
        assert epochs[0]['accuracy'] is None
        assert epochs[0]['total'] == 0
