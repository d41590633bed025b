"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Creating, importing, exporting and deleting networks
- Training networks with real-time progress updates via WebSockets
- Cancelling running training jobs
- Predicting digits from pixel vectors or freehand strokes
- Persisting networks to/from the SQLite snapshot store

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import sys
import uuid
import logging
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from digitnet.config import Settings
from digitnet.data_loader import load_data_wrapper
from digitnet.evaluator import evaluate
from digitnet.exceptions import DigitNetError, InvalidInput
from digitnet.log_config import configure_logging
from digitnet.model_codec import export_model, import_model
from digitnet.network import construct
from digitnet.predictor import predict
from digitnet.preprocessing import StrokeStyle, preprocess_strokes
from digitnet.trainer import TrainingConfig, train
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

settings = Settings.from_env()
configure_logging(settings)
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not settings.is_production,
    engineio_logger=not settings.is_production,
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

# Datasets - loaded once at startup when configured
training_data: Any = None
test_data: Any = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_datasets() -> None:
    """
    Load the configured CSV datasets into global variables.

    Does nothing when DIGITNET_TRAIN_CSV is not set; training endpoints
    then answer 503.
    """
    global training_data, test_data

    if not settings.train_csv:
        logger.info("No training data configured (DIGITNET_TRAIN_CSV)")
        return

    logger.info("Loading datasets...")
    training_data, test_data = load_data_wrapper(
        settings.train_csv,
        settings.test_csv,
        num_classes=settings.num_classes
    )
    logger.info(
        f"Data loaded: {len(training_data)} training, "
        f"{len(test_data) if test_data else 0} test"
    )


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Keeps active_networks in sync with the database after a restart.
    """
    saved_networks = list_saved_networks(settings.model_dir)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        try:
            net = load_network(network_id, settings.model_dir)
        except DigitNetError as e:
            logger.error(f"Skipping corrupt network {network_id}: {e}")
            continue
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately, then every 24 hours to:
    - Delete networks older than the configured age from the database
    - Sync in-memory networks with the database
    - Remove finished training jobs from memory
    """
    while True:
        try:
            deleted_count = delete_old_networks(
                days=settings.cleanup_days,
                model_dir=settings.model_dir
            )

            if deleted_count > 0:
                saved_ids = {
                    net['network_id']
                    for net in list_saved_networks(settings.model_dir)
                }
                for nid in [n for n in active_networks if n not in saved_ids]:
                    del active_networks[nid]
                    logger.info(f"Removed network {nid} from memory")
            elif deleted_count < 0:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            # Wait a bit before retrying on error (don't spam)
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed, cancelled or failed training jobs from memory."""
    finished_statuses = {'completed', 'cancelled', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """Start the background cleanup task (idempotent)."""
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


def bootstrap() -> None:
    """Load data, restore saved networks and start background tasks."""
    load_datasets()
    reload_saved_networks()
    training_jobs.clear()
    start_cleanup_task()


# ============================================================================
# ERROR HANDLING
# ============================================================================

@app.errorhandler(DigitNetError)
def handle_digitnet_error(error: DigitNetError):
    """Report engine validation errors as 400 responses."""
    logger.warning(f"{type(error).__name__}: {error}")
    return jsonify({
        'error': str(error),
        'type': type(error).__name__
    }), 400


def _get_network_info(network_id: str) -> Optional[Dict[str, Any]]:
    return active_networks.get(network_id)


def _not_found():
    return jsonify({'error': 'Network not found'}), 404


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'training_data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {'layer_sizes': [784, 30, 10], 'activation': 'sigmoid'}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', settings.default_sizes)
    activation = data.get('activation', 'sigmoid')

    net = construct(layer_sizes, activation=activation)
    network_id = str(uuid.uuid4())

    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'activation': net.activation.name,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 5,
            'mini_batch_size': 10,
            'learning_rate': 3.0,
            'shuffle': true,
            'seed': null,
            'gradient_policy': 'sum'
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return _not_found()

    if training_data is None:
        return jsonify({'error': 'Training data not available'}), 503

    data = request.get_json(silent=True) or {}
    config = TrainingConfig(
        epochs=data.get('epochs', 5),
        mini_batch_size=data.get('mini_batch_size', 10),
        learning_rate=data.get('learning_rate', 3.0),
        shuffle=bool(data.get('shuffle', True)),
        seed=data.get('seed'),
        evaluation_data=test_data,
        gradient_policy=data.get('gradient_policy', 'sum')
    )
    config.validate(len(training_data))

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': config.epochs,
        'cancel_requested': False
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={config.epochs}, batch_size={config.mini_batch_size}, "
        f"lr={config.learning_rate}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(train_network_task, network_id, job_id, config)

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    config: TrainingConfig
) -> None:
    """
    Background task that trains a copy of a network.

    The served network is only replaced once the job stops, so predictions
    never see a network halfway through an update. Progress is sent via
    WebSocket after every epoch.
    """
    job = training_jobs[job_id]
    net = active_networks[network_id]['network'].copy()

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        job['status'] = 'training'
        job['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'cost': data['cost'],
            'accuracy': data['accuracy'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data['correct'],
            'total': data['total']
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    def yield_to_other_tasks() -> None:
        gevent.sleep(0)

    def cancel_requested() -> bool:
        return job.get('cancel_requested', False)

    try:
        logger.info(f"Starting training for job {job_id}")
        job['status'] = 'training'

        result = train(
            net,
            training_data,
            config,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks,
            cancel_check=cancel_requested
        )

        info = active_networks.get(network_id)
        if info is None:
            logger.warning(f"Network {network_id} was deleted during job {job_id}")
            job['status'] = 'failed'
            return
        info['network'] = net

        if result.cancelled:
            job['status'] = 'cancelled'
            job['batches_completed'] = result.batches_completed
            logger.info(f"Training cancelled for job {job_id}")
            socketio.emit('training_cancelled', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'cancelled',
                'epochs_completed': result.epochs_completed,
                'batches_completed': result.batches_completed
            })
            gevent.sleep(0)
            return

        accuracy = None
        if test_data:
            accuracy = evaluate(net, test_data).accuracy

        info['trained'] = True
        info['accuracy'] = accuracy

        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100

        save_network(net, network_id, model_dir=settings.model_dir,
                     trained=True, accuracy=accuracy)

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


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404

    job = dict(training_jobs[job_id])
    job['job_id'] = job_id
    return jsonify(job), 200


@app.route('/api/training/<job_id>/cancel', methods=['POST'])
def cancel_training(job_id: str):
    """
    Ask a running training job to stop.

    The job stops before its next mini-batch; the network keeps every
    update made so far.
    """
    job = training_jobs.get(job_id)
    if job is None:
        return jsonify({'error': 'Training job not found'}), 404

    if job['status'] not in ('pending', 'training'):
        return jsonify({
            'error': f"Training job already {job['status']}"
        }), 409

    job['cancel_requested'] = True
    logger.info(f"Cancellation requested for job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'cancelling'}), 202


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in list_saved_networks(settings.model_dir):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, settings.model_dir)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return _not_found()

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    saved_ids = [
        net['network_id'] for net in list_saved_networks(settings.model_dir)
    ]
    all_network_ids = list(set(active_networks) | set(saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0
    for network_id in all_network_ids:
        if active_networks.pop(network_id, None) is not None:
            deleted_from_memory_count += 1
        if delete_network(network_id, settings.model_dir):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, "
        f"{deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of networks older than specified days.

    Request body (optional):
        {'days': 2}
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', settings.cleanup_days)

    if not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=int(days),
                                        model_dir=settings.model_dir)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    return jsonify({
        'deleted_count': deleted_count,
        'days': days
    }), 200


# ============================================================================
# INFERENCE AND SNAPSHOTS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.ravel(array)]


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_endpoint(network_id: str):
    """
    Predict digits for pixel vectors or a freehand drawing.

    Request body, one of:
        {'inputs': [[0.0, 0.1, ...], ...]}
        {'strokes': [[[x, y], [x, y], ...], ...],
         'canvas_size': 280, 'line_width': 10}

    Returns:
        JSON with one {'digit', 'output'} entry per input
    """
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()

    data = request.get_json(silent=True) or {}
    if 'strokes' in data:
        style = StrokeStyle(
            canvas_size=int(data.get('canvas_size', 280)),
            line_width=float(data.get('line_width', 10)),
            output_size=int(round(np.sqrt(info['network'].input_size)))
        )
        inputs = [preprocess_strokes(data['strokes'], style)]
    elif 'inputs' in data:
        inputs = data['inputs']
        if not isinstance(inputs, list) or not inputs:
            raise InvalidInput("'inputs' must be a non-empty list of vectors")
    else:
        return jsonify({'error': "Request needs 'inputs' or 'strokes'"}), 400

    outputs = predict(info['network'], inputs)

    return jsonify({
        'network_id': network_id,
        'predictions': [
            {
                'digit': int(np.argmax(output)),
                'output': array_to_float_list(output)
            }
            for output in outputs
        ]
    }), 200


@app.route('/api/networks/<network_id>/evaluate', methods=['GET'])
def evaluate_endpoint(network_id: str):
    """Score a network against the configured test set."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()
    if not test_data:
        return jsonify({'error': 'Test data not available'}), 503

    result = evaluate(info['network'], test_data)
    return jsonify({'network_id': network_id, **result.to_dict()}), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Return the network as a model snapshot."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()
    return jsonify(export_model(info['network'])), 200


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """
    Load a network from a model snapshot and persist it.

    Request body: a snapshot as produced by the export endpoint.
    """
    snapshot = request.get_json(silent=True)
    net = import_model(snapshot)
    network_id = str(uuid.uuid4())

    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': True,
        'accuracy': None
    }
    save_network(net, network_id, model_dir=settings.model_dir, trained=True)

    logger.info(f"Imported network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'status': 'imported'
    }), 201


# ============================================================================
# SERVER STARTUP
# ============================================================================

def run_server(host: str = '0.0.0.0', port: Optional[int] = None) -> None:
    """Bootstrap state and serve the API with WebSocket support."""
    port = port or settings.port
    bootstrap()

    logger.info(f"Starting server at http://{host}:{port}/")
    try:
        socketio.run(
            app,
            host=host,
            port=port,
            debug=not settings.is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise


if __name__ == '__main__':
    run_server()
