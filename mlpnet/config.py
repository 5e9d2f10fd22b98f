"""
config.py
~~~~~~~~~

Environment-driven configuration and logging setup.

Recognised variables:

- ``MLPNET_MODEL_PATH``: JSON snapshot used by the CLI (``network.json``)
- ``MLPNET_TRAIN_DIR`` / ``MLPNET_TEST_DIR``: labelled image directories
- ``MLPNET_DB_PATH``: SQLite catalog used by the API server
- ``MLPNET_LAYER_SIZES``: comma separated sizes for new networks
- ``LOG_LEVEL``, ``FLASK_ENV``, ``PORT``: as usual
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_MODEL_PATH = 'network.json'
DEFAULT_TRAIN_DIR = os.path.join('data', 'mnist', 'train')
DEFAULT_TEST_DIR = os.path.join('data', 'mnist', 'test')
DEFAULT_DB_PATH = os.path.join('models', 'networks.db')
DEFAULT_LAYER_SIZES = [784, 128, 10]
DEFAULT_PORT = 8000

# Training protocol defaults
EPOCHS = 10
BATCH_SIZE = 100
LEARNING_RATE = 0.0001


def parse_layer_sizes(value: str) -> List[int]:
    """
    Parse ``"784,128,10"`` into ``[784, 128, 10]``.

    Raises:
        ValueError: If an entry is not an integer.
    """
    return [int(part) for part in value.split(',') if part.strip()]


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Read settings from ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ

    sizes = env.get('MLPNET_LAYER_SIZES')
    return {
        'model_path': env.get('MLPNET_MODEL_PATH', DEFAULT_MODEL_PATH),
        'train_dir': env.get('MLPNET_TRAIN_DIR', DEFAULT_TRAIN_DIR),
        'test_dir': env.get('MLPNET_TEST_DIR', DEFAULT_TEST_DIR),
        'db_path': env.get('MLPNET_DB_PATH', DEFAULT_DB_PATH),
        'layer_sizes': (
            parse_layer_sizes(sizes) if sizes else list(DEFAULT_LAYER_SIZES)
        ),
        'port': int(env.get('PORT', DEFAULT_PORT)),
        'log_level': env.get('LOG_LEVEL', 'INFO').upper(),
        'is_production': env.get('FLASK_ENV') == 'production'
    }


def configure_logging(level: Optional[str] = None) -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    settings = load_settings()
    log_level_str = (level or settings['log_level']).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if settings['is_production']:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('mlpnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
