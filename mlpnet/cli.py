"""
cli.py
~~~~~~

Command-line entry point.

Usage examples::

    mlpnet init --sizes 784 128 10
    mlpnet train --train-dir data/mnist/train --test-dir data/mnist/test
    mlpnet predict input.png
    mlpnet serve --port 8000
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .config import BATCH_SIZE, EPOCHS, LEARNING_RATE, configure_logging, load_settings
from .dataset import list_image_files, load_image
from .errors import MlpNetError
from .model_persistence import load_network, save_network
from .network import Network, format_output_bars, predict_class
from .training import Trainer, TrainingConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    settings = load_settings()

    parser = argparse.ArgumentParser(
        prog='mlpnet',
        description='Train and run a ReLU multilayer perceptron on digit images.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--log-level', default=settings['log_level'],
                        help='Logging level (default: $LOG_LEVEL or INFO).')
    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_model_argument(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument('--model', default=settings['model_path'],
                               help='JSON snapshot path (default: %(default)s).')

    init = subparsers.add_parser('init', help='Create a new randomly initialised network.')
    add_model_argument(init)
    init.add_argument('--sizes', type=int, nargs='+', default=settings['layer_sizes'],
                      help='Input width followed by layer widths (default: %(default)s).')
    init.add_argument('--seed', type=int, default=None, help='Seed for weight initialisation.')
    init.add_argument('--force', action='store_true', help='Overwrite an existing snapshot.')

    train = subparsers.add_parser('train', help='Train the network on a directory of images.')
    add_model_argument(train)
    train.add_argument('--train-dir', default=settings['train_dir'],
                       help='Training images (default: %(default)s).')
    train.add_argument('--test-dir', default=settings['test_dir'],
                       help='Test images (default: %(default)s).')
    train.add_argument('--epochs', type=int, default=EPOCHS, help='Number of epochs.')
    train.add_argument('--batch-size', type=int, default=BATCH_SIZE,
                       help='Samples between checkpoints.')
    train.add_argument('--learning-rate', type=float, default=LEARNING_RATE,
                       help='SGD step size.')
    train.add_argument('--sizes', type=int, nargs='+', default=settings['layer_sizes'],
                       help='Sizes used when the snapshot does not exist yet.')
    train.add_argument('--seed', type=int, default=None,
                       help='Seed for initialisation and shuffling.')
    train.add_argument('--strict', action='store_true',
                       help='Abort on the first unreadable or mislabelled file.')

    evaluate = subparsers.add_parser('evaluate', help='Measure accuracy on a directory of images.')
    add_model_argument(evaluate)
    evaluate.add_argument('--test-dir', default=settings['test_dir'],
                          help='Test images (default: %(default)s).')

    predict = subparsers.add_parser('predict', help='Classify a single image.')
    add_model_argument(predict)
    predict.add_argument('image', help='Path to a 28x28 grayscale image.')

    serve = subparsers.add_parser('serve', help='Run the HTTP/WebSocket API server.')
    serve.add_argument('--port', type=int, default=settings['port'], help='Port to listen on.')

    return parser


def _print_progress(percent: float) -> None:
    print(f"\r{percent:.2f}%", end='', flush=True)


def cmd_init(args: argparse.Namespace) -> int:
    if os.path.exists(args.model) and not args.force:
        print(f"{args.model} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    network = Network(args.sizes, rng=args.seed)
    save_network(network, args.model)
    print(f"Created network {network.sizes} at {args.model}")
    return 0


def cmd_train(args: argparse.Namespace) -> int:
    if os.path.exists(args.model):
        network = load_network(args.model)
    else:
        network = Network(args.sizes, rng=args.seed)
        save_network(network, args.model)
        print(f"Created network {network.sizes} at {args.model}")

    config = TrainingConfig(
        epochs=args.epochs,
        batch_size=args.batch_size,
        learning_rate=args.learning_rate,
        num_classes=network.output_size,
        skip_bad_samples=not args.strict,
        checkpoint_path=args.model
    )
    trainer = Trainer(network, config, rng=args.seed)

    files = list_image_files(args.train_dir)
    if not files:
        print(f"No training images found in {args.train_dir}", file=sys.stderr)
        return 1

    def on_stage(stage: str, epoch: int) -> None:
        if stage == 'training':
            print(f"Epoch {epoch}/{config.epochs}")
        else:
            print()
            print("Testing model...")

    def on_epoch_complete(data: dict) -> None:
        print()
        if data['total'] is not None:
            print("Model tested!")
            print(f"{data['correct']}/{data['total']}")

    trainer.fit(
        args.train_dir,
        args.test_dir,
        callback=on_epoch_complete,
        batch_callback=lambda data: _print_progress(data['progress']),
        stage_callback=on_stage,
        evaluation_callback=lambda done, total: _print_progress(done / total * 100)
    )
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    network = load_network(args.model)
    result = Trainer(network).evaluate(args.test_dir)
    print(f"{result} ({result.accuracy:.2%})")
    return 0


def cmd_predict(args: argparse.Namespace) -> int:
    network = load_network(args.model)
    outputs = network.forward(load_image(args.image))
    print(format_output_bars(outputs))
    print(f"Predicted: {predict_class(outputs)}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    # Imported lazily: the server pulls in gevent and Flask-SocketIO
    from . import api_server
    api_server.run(port=args.port)
    return 0


COMMANDS = {
    'init': cmd_init,
    'train': cmd_train,
    'evaluate': cmd_evaluate,
    'predict': cmd_predict,
    'serve': cmd_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        return COMMANDS[args.command](args)
    except (MlpNetError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
