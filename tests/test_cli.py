"""
test_cli.py
~~~~~~~~~~~

Tests for the ``mlpnet`` command-line interface.
"""

import os

import pytest

from conftest import write_image
from mlpnet.cli import main
from mlpnet.model_persistence import load_network, save_network
from mlpnet.network import Network


@pytest.fixture
def model_path(tmp_path):
    return str(tmp_path / "network.json")


@pytest.mark.integration
class TestInit:

    def test_creates_snapshot(self, model_path, capsys):
        status = main(['init', '--sizes', '4', '3', '2', '--seed', '1', '--model', model_path])

        assert status == 0
        assert load_network(model_path) == Network([4, 3, 2], rng=1)
        assert "Created network [4, 3, 2]" in capsys.readouterr().out

    def test_refuses_to_overwrite(self, model_path, capsys):
        main(['init', '--sizes', '4', '2', '--model', model_path])

        status = main(['init', '--sizes', '5', '2', '--model', model_path])

        assert status == 1
        assert load_network(model_path).sizes == [4, 2]
        assert "already exists" in capsys.readouterr().err

    def test_force_overwrites(self, model_path):
        main(['init', '--sizes', '4', '2', '--model', model_path])

        assert main(['init', '--sizes', '5', '2', '--model', model_path, '--force']) == 0
        assert load_network(model_path).sizes == [5, 2]

    def test_invalid_sizes(self, model_path, capsys):
        status = main(['init', '--sizes', '4', '--model', model_path])

        assert status == 1
        assert "Error:" in capsys.readouterr().err
        assert not os.path.exists(model_path)


@pytest.mark.integration
class TestTrain:

    def test_trains_and_reports_accuracy(self, model_path, image_dirs, capsys):
        train_dir, test_dir = image_dirs

        status = main([
            'train', '--model', model_path,
            '--train-dir', train_dir, '--test-dir', test_dir,
            '--epochs', '2', '--batch-size', '4', '--learning-rate', '0.001',
            '--sizes', '784', '8', '10', '--seed', '3'
        ])

        out = capsys.readouterr().out
        assert status == 0
        assert "Epoch 1/2" in out
        assert "Epoch 2/2" in out
        assert out.count("Testing model...") == 2
        assert out.count("Model tested!") == 2
        assert "/4\n" in out
        assert load_network(model_path).sizes == [784, 8, 10]

    def test_resumes_existing_snapshot(self, model_path, image_dirs):
        train_dir, test_dir = image_dirs
        save_network(Network([784, 5, 10], rng=0), model_path)

        status = main([
            'train', '--model', model_path,
            '--train-dir', train_dir, '--test-dir', test_dir, '--epochs', '1'
        ])

        assert status == 0
        assert load_network(model_path).sizes == [784, 5, 10]

    def test_empty_training_directory(self, model_path, tmp_path, capsys):
        status = main([
            'train', '--model', model_path,
            '--train-dir', str(tmp_path / "missing"), '--sizes', '784', '10'
        ])

        assert status == 1
        assert "No training images" in capsys.readouterr().err

    def test_strict_mode_reports_bad_file(self, model_path, image_dirs, capsys):
        train_dir, test_dir = image_dirs
        write_image(os.path.join(train_dir, "unlabelled.png"))

        status = main([
            'train', '--model', model_path, '--strict',
            '--train-dir', train_dir, '--test-dir', test_dir,
            '--epochs', '1', '--sizes', '784', '10'
        ])

        assert status == 1
        assert "unlabelled.png" in capsys.readouterr().err

    def test_input_width_mismatch(self, model_path, image_dirs, capsys):
        """Test that a network too narrow for 28x28 images is an error, not 0/0."""
        train_dir, test_dir = image_dirs

        status = main([
            'train', '--model', model_path,
            '--train-dir', train_dir, '--test-dir', test_dir,
            '--epochs', '1', '--sizes', '100', '10'
        ])

        captured = capsys.readouterr()
        assert status == 1
        assert "expected 100" in captured.err
        assert "Model tested!" not in captured.out

    def test_evaluate_input_width_mismatch(self, model_path, image_dirs, capsys):
        _, test_dir = image_dirs
        save_network(Network([100, 10], rng=0), model_path)

        status = main(['evaluate', '--model', model_path, '--test-dir', test_dir])

        assert status == 1
        assert "Error:" in capsys.readouterr().err

    def test_corrupt_snapshot(self, model_path, image_dirs, capsys):
        train_dir, test_dir = image_dirs
        with open(model_path, 'w') as f:
            f.write("{broken")

        status = main(['train', '--model', model_path, '--train-dir', train_dir])

        assert status == 1
        assert "Error:" in capsys.readouterr().err


@pytest.mark.integration
class TestEvaluateAndPredict:

    def test_evaluate(self, model_path, image_dirs, constant_network, capsys):
        _, test_dir = image_dirs
        save_network(constant_network, model_path)

        status = main(['evaluate', '--model', model_path, '--test-dir', test_dir])

        assert status == 0
        assert "2/4 (50.00%)" in capsys.readouterr().out

    def test_predict(self, model_path, constant_network, tmp_path, capsys):
        save_network(constant_network, model_path)
        image = write_image(tmp_path / "input.png")

        status = main(['predict', '--model', model_path, image])

        out = capsys.readouterr().out
        assert status == 0
        assert out.count("Number ") == 10
        assert "Number 0:   1.00 | " + "#" * 50 in out
        assert "Predicted: 0" in out

    def test_predict_missing_model(self, model_path, tmp_path, capsys):
        image = write_image(tmp_path / "input.png")

        status = main(['predict', '--model', model_path, image])

        assert status == 1
        assert "Error:" in capsys.readouterr().err

    def test_predict_bad_image(self, model_path, constant_network, tmp_path, capsys):
        save_network(constant_network, model_path)
        image = write_image(tmp_path / "input.png", size=(32, 32))

        status = main(['predict', '--model', model_path, image])

        assert status == 1
        assert "32x32" in capsys.readouterr().err
