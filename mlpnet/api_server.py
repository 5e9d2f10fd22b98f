"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for neural network training.

This module provides endpoints for:
- Creating and managing networks
- Training networks on image directories with real-time progress updates
- Classifying digits from raw pixel vectors or uploaded images
- Persisting networks to/from the SQLite catalog

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training tasks
- matplotlib to render output charts
"""

import base64
import logging
import os
import uuid
from io import BytesIO
from typing import Any, Dict, List, Optional

import gevent
import numpy as np
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from .config import configure_logging, load_settings
from .dataset import load_image
from .errors import DimensionMismatch, ImageDecodeError, PersistenceError
from .model_persistence import ModelDatabase
from .network import Network, predict_class
from .training import Trainer, TrainingConfig

# ============================================================================
# LOGGING SETUP
# ============================================================================

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

settings = load_settings()

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not settings['is_production'],
    engineio_logger=not settings['is_production'],
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

_db: Optional[ModelDatabase] = None


def _get_db() -> ModelDatabase:
    """Get or create the catalog at ``MLPNET_DB_PATH``."""
    global _db
    if _db is None:
        _db = ModelDatabase(settings['db_path'])
    return _db


def _network_info(
    net: Network,
    trained: bool = False,
    accuracy: Optional[float] = None
) -> Dict[str, Any]:
    return {
        'network': net,
        'architecture': net.sizes,
        'trained': trained,
        'accuracy': accuracy,
        'training_job': None
    }


def _get_active_network(network_id: str) -> Optional[Dict[str, Any]]:
    """Return the in-memory entry, loading it from the catalog if needed."""
    if network_id in active_networks:
        return active_networks[network_id]

    db = _get_db()
    net = db.load_network_from_db(network_id)
    if net is None:
        return None

    metadata = db.get_network_metadata_from_db(network_id) or {}
    active_networks[network_id] = _network_info(
        net, metadata.get('trained', False), metadata.get('accuracy')
    )
    return active_networks[network_id]


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the catalog into memory.

    Called at startup to restore networks saved before the server was
    restarted.
    """
    db = _get_db()
    saved_networks = db.list_networks_from_db()

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        try:
            net = db.load_network_from_db(network_id)
        except PersistenceError as e:
            logger.error(f"Error loading network {network_id}: {e}")
            continue

        if net is not None:
            active_networks[network_id] = _network_info(
                net, net_info['trained'], net_info['accuracy']
            )
            loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


def cleanup_finished_training_jobs() -> int:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")
    return len(jobs_to_remove)


@app.errorhandler(PersistenceError)
def handle_persistence_error(e: PersistenceError):
    logger.error(f"Persistence error: {e}")
    return jsonify({'error': f'Storage error: {e}'}), 500


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status, network count and running training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {'layer_sizes': [784, 128, 10], 'seed': 42}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', settings['layer_sizes'])
    seed = data.get('seed')

    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        return jsonify({'error': 'seed must be an integer'}), 400

    try:
        net = Network(layer_sizes, rng=seed)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return jsonify({'error': f'Invalid architecture: {e}'}), 400

    network_id = str(uuid.uuid4())
    active_networks[network_id] = _network_info(net)
    _get_db().save_network_to_db(net, network_id, trained=False)

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List networks in memory plus those only present in the catalog."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'training' if info['training_job'] else 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in _get_db().list_networks_from_db():
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Return architecture and training metadata for one network."""
    info = _get_active_network(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    net = info['network']
    return jsonify({
        'network_id': network_id,
        'architecture': info['architecture'],
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'training_job': info['training_job'],
        'parameters': sum(
            layer.size * (layer.input_size + 1) for layer in net.layers
        )
    }), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the catalog."""
    info = active_networks.get(network_id)
    if info is not None and info['training_job']:
        return jsonify({'error': 'Network is being trained'}), 409

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = _get_db().delete_network_from_db(network_id)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Delete catalog entries older than ``days`` and forget finished jobs.

    Request body (optional):
        {'days': 2}
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = _get_db().delete_old_networks_from_db(days=int(days))

    saved_ids = {net['network_id'] for net in _get_db().list_networks_from_db()}
    for nid in list(active_networks):
        if nid not in saved_ids and not active_networks[nid]['training_job']:
            del active_networks[nid]

    cleared_jobs = cleanup_finished_training_jobs()

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'cleared_jobs': cleared_jobs,
        'days': days
    }), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 10,
            'batch_size': 100,
            'learning_rate': 0.0001,
            'train_dir': 'data/mnist/train',
            'test_dir': 'data/mnist/test'
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = _get_active_network(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if info['training_job']:
        return jsonify({
            'error': 'Network is already being trained',
            'job_id': info['training_job']
        }), 409

    data = request.get_json(silent=True) or {}
    train_dir = data.get('train_dir', settings['train_dir'])
    test_dir = data.get('test_dir', settings['test_dir'])

    try:
        config = TrainingConfig(
            epochs=data.get('epochs', 10),
            batch_size=data.get('batch_size', 100),
            learning_rate=data.get('learning_rate', 0.0001),
            num_classes=info['network'].output_size
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if not isinstance(train_dir, str) or not os.path.isdir(train_dir):
        return jsonify({'error': f'Training directory not found: {train_dir}'}), 400
    if test_dir is not None and not isinstance(test_dir, str):
        return jsonify({'error': 'test_dir must be a string'}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': config.epochs
    }
    info['training_job'] = job_id

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"{config}, train_dir={train_dir}, test_dir={test_dir}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task, network_id, job_id, config, train_dir, test_dir
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    config: TrainingConfig,
    train_dir: str,
    test_dir: Optional[str]
) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket as training progresses.
    """
    info = active_networks[network_id]
    net = info['network']
    job = training_jobs[job_id]

    def on_batch_complete(data: Dict[str, Any]) -> None:
        """Checkpoint to the catalog and report the epoch's progress."""
        _get_db().save_network_to_db(
            net, network_id, trained=info['trained'], accuracy=info['accuracy']
        )

        progress = (
            ((data['epoch'] - 1) + data['progress'] / 100) / config.epochs * 100
        )
        job['status'] = 'training'
        job['progress'] = progress

        socketio.emit('training_progress', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'epoch_progress': data['progress'],
            'batch_loss': data['batch_loss'],
            'progress': progress
        })
        gevent.sleep(0)

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100
        job['status'] = 'training'
        job['progress'] = progress
        job['accuracy'] = data['accuracy']

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data['accuracy'],
            'correct': data['correct'],
            'total': data['total'],
            'mean_loss': data['mean_loss'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        results = Trainer(net, config).fit(
            train_dir,
            test_dir,
            callback=on_epoch_complete,
            batch_callback=on_batch_complete,
            yield_func=lambda: gevent.sleep(0)
        )

        evaluation = results[-1].evaluation if results else None
        accuracy = evaluation.accuracy if evaluation and evaluation.total else None

        info['trained'] = True
        info['accuracy'] = accuracy
        _get_db().save_network_to_db(net, network_id, trained=True, accuracy=accuracy)

        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': accuracy,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info['training_job'] = None


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Classify a digit.

    Accepts either a multipart upload with an ``image`` file or a JSON body
    ``{'pixels': [...]}`` with one brightness value in [0, 1] per input.

    Returns:
        JSON with the predicted digit, the raw network output and a
        base64-encoded bar chart of the output
    """
    info = _get_active_network(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404
    if info['training_job']:
        return jsonify({'error': 'Network is being trained'}), 409

    net = info['network']
    upload = request.files.get('image')

    try:
        if upload is not None:
            inputs = load_image(BytesIO(upload.read()), size=None)
        else:
            data = request.get_json(silent=True) or {}
            if 'pixels' not in data:
                return jsonify({'error': 'Provide an image file or a pixels list'}), 400
            inputs = np.asarray(data['pixels'], dtype=np.float32)
        output = net.forward(inputs)
    except ImageDecodeError as e:
        return jsonify({'error': str(e)}), 400
    except DimensionMismatch as e:
        return jsonify({'error': str(e)}), 400
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid pixels: {e}'}), 400

    predicted_digit = predict_class(output)

    return jsonify({
        'network_id': network_id,
        'predicted_digit': predicted_digit,
        'network_output': array_to_float_list(output),
        'output_chart': create_output_chart(output, predicted_digit)
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def create_output_chart(output: np.ndarray, predicted: int) -> str:
    """
    Create a base64-encoded PNG bar chart of the network output.

    Args:
        output: One activation per class
        predicted: Index of the winning class, highlighted in the chart

    Returns:
        Base64-encoded PNG image string
    """
    values = array_to_float_list(output)
    colors = ['tab:orange' if i == predicted else 'tab:blue' for i in range(len(values))]

    fig, ax = plt.subplots(figsize=(4, 3))
    ax.bar(range(len(values)), values, color=colors)
    ax.set_xticks(range(len(values)))
    ax.set_xlabel('Class')
    ax.set_ylabel('Activation')
    ax.set_title(f"Predicted: {predicted}")

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    plt.close(fig)
    buffer.seek(0)

    return base64.b64encode(buffer.getvalue()).decode('utf-8')


# ============================================================================
# SERVER STARTUP
# ============================================================================

def run(port: Optional[int] = None) -> None:
    """Reload the catalog and serve until interrupted."""
    port = port or settings['port']
    reload_saved_networks()

    logger.info(f"Starting server at http://localhost:{port}/")
    socketio.run(
        app,
        host='0.0.0.0',
        port=port,
        debug=not settings['is_production'],
        use_reloader=False
    )


if __name__ == '__main__':
    run()
