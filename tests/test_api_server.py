"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API, using Flask's test client.

Background training is run synchronously and WebSocket emits are recorded
instead of sent.
"""

import numpy as np
import pytest

from digitnet import api_server
from digitnet.model_persistence import get_network_metadata, save_network
from digitnet.network import construct
from digitnet.trainer import TrainingConfig


@pytest.fixture
def client(monkeypatch, temp_db_dir):
    """Test client with empty in-memory state and a temporary database."""
    monkeypatch.setattr(api_server.settings, 'model_dir', temp_db_dir)
    monkeypatch.setattr(api_server, 'training_data', None)
    monkeypatch.setattr(api_server, 'test_data', None)
    api_server.active_networks.clear()
    api_server.training_jobs.clear()

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client

    api_server.active_networks.clear()
    api_server.training_jobs.clear()


@pytest.fixture
def emitted(monkeypatch):
    """Record socket events and run background tasks inline."""
    events = []

    def fake_emit(event, data=None, **kwargs):
        events.append((event, data))

    def run_inline(target, *args, **kwargs):
        target(*args, **kwargs)

    monkeypatch.setattr(api_server.socketio, 'emit', fake_emit)
    monkeypatch.setattr(api_server.socketio, 'start_background_task', run_inline)
    return events


@pytest.fixture
def with_data(monkeypatch, labelled_samples):
    """Serve the small labelled set as both training and test data."""
    monkeypatch.setattr(api_server, 'training_data', labelled_samples)
    monkeypatch.setattr(api_server, 'test_data', labelled_samples)
    return labelled_samples


def create(client, layer_sizes=(3, 4, 2), **extra):
    response = client.post('/api/networks',
                           json={'layer_sizes': list(layer_sizes), **extra})
    assert response.status_code == 201, response.get_json()
    return response.get_json()['network_id']


@pytest.mark.unit
class TestNetworks:
    """Test network creation, listing and deletion."""

    def test_status(self, client):
        response = client.get('/api/status')

        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'online'
        assert body['active_networks'] == 0
        assert body['training_data_loaded'] is False

    def test_create_network(self, client):
        response = client.post('/api/networks',
                               json={'layer_sizes': [3, 4, 2],
                                     'activation': 'tanh'})

        assert response.status_code == 201
        body = response.get_json()
        assert body['architecture'] == [3, 4, 2]
        assert body['activation'] == 'tanh'
        assert body['network_id'] in api_server.active_networks

    def test_create_default_architecture(self, client):
        response = client.post('/api/networks')

        assert response.status_code == 201
        assert response.get_json()['architecture'] == \
            api_server.settings.default_sizes

    @pytest.mark.parametrize("layer_sizes", [[784], [3, 0, 2], "784,30,10"])
    def test_create_invalid_architecture(self, client, layer_sizes):
        response = client.post('/api/networks',
                               json={'layer_sizes': layer_sizes})

        assert response.status_code == 400
        assert response.get_json()['type'] == 'InvalidArchitecture'

    def test_list_networks(self, client):
        network_id = create(client)
        save_network(construct([2, 2]), "saved_only",
                     model_dir=api_server.settings.model_dir)

        networks = client.get('/api/networks').get_json()['networks']
        statuses = {net['network_id']: net['status'] for net in networks}

        assert statuses == {network_id: 'in_memory', 'saved_only': 'saved'}

    def test_delete_network(self, client):
        network_id = create(client)

        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert network_id not in api_server.active_networks

        assert client.delete(f'/api/networks/{network_id}').status_code == 404

    def test_delete_all_networks(self, client):
        create(client)
        create(client)

        response = client.delete('/api/networks')

        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 2
        assert api_server.active_networks == {}

    def test_cleanup_rejects_negative_days(self, client):
        response = client.post('/api/networks/cleanup', json={'days': -1})
        assert response.status_code == 400

    def test_reload_saved_networks(self, client):
        save_network(construct([3, 2]), "persisted",
                     model_dir=api_server.settings.model_dir,
                     trained=True, accuracy=0.5)

        api_server.reload_saved_networks()

        info = api_server.active_networks['persisted']
        assert info['architecture'] == [3, 2]
        assert info['accuracy'] == 0.5


@pytest.mark.unit
class TestPredict:
    """Test inference endpoints."""

    def test_predict_inputs(self, client):
        network_id = create(client)
        net = api_server.active_networks[network_id]['network']

        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'inputs': [[0.1, 0.2, 0.3], [1, 0, 1]]})

        assert response.status_code == 200
        predictions = response.get_json()['predictions']
        assert len(predictions) == 2
        expected = net.feedforward(np.array([[0.1], [0.2], [0.3]])).ravel()
        assert np.allclose(predictions[0]['output'], expected)
        assert predictions[0]['digit'] == int(np.argmax(expected))

    def test_predict_dimension_mismatch(self, client):
        network_id = create(client)

        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'inputs': [[0.1, 0.2]]})

        assert response.status_code == 400
        assert response.get_json()['type'] == 'DimensionMismatch'

    def test_predict_needs_a_payload(self, client):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/predict', json={})
        assert response.status_code == 400

    def test_predict_empty_inputs(self, client):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'inputs': []})
        assert response.status_code == 400
        assert response.get_json()['type'] == 'InvalidInput'

    def test_predict_strokes(self, client):
        network_id = create(client, layer_sizes=(784, 10, 10))

        response = client.post(f'/api/networks/{network_id}/predict', json={
            'strokes': [[[140, 40], [140, 240]]]
        })

        assert response.status_code == 200
        predictions = response.get_json()['predictions']
        assert len(predictions) == 1
        assert len(predictions[0]['output']) == 10
        assert 0 <= predictions[0]['digit'] < 10

    def test_predict_unknown_network(self, client):
        response = client.post('/api/networks/missing/predict',
                               json={'inputs': [[0, 0, 0]]})
        assert response.status_code == 404

    def test_evaluate_needs_test_data(self, client):
        network_id = create(client)
        response = client.get(f'/api/networks/{network_id}/evaluate')
        assert response.status_code == 503

    def test_evaluate(self, client, with_data):
        network_id = create(client)

        response = client.get(f'/api/networks/{network_id}/evaluate')

        assert response.status_code == 200
        body = response.get_json()
        assert body['total'] == len(with_data)
        assert body['correct'] + body['incorrect'] == body['total']


@pytest.mark.unit
class TestSnapshots:
    """Test export and import of networks."""

    def test_export_import_round_trip(self, client):
        network_id = create(client)

        snapshot = client.get(f'/api/networks/{network_id}/export').get_json()
        assert snapshot['sizes'] == [3, 4, 2]

        response = client.post('/api/networks/import', json=snapshot)
        assert response.status_code == 201
        imported_id = response.get_json()['network_id']
        assert imported_id != network_id

        inputs = {'inputs': [[0.3, -0.2, 0.8]]}
        original = client.post(f'/api/networks/{network_id}/predict', json=inputs)
        restored = client.post(f'/api/networks/{imported_id}/predict', json=inputs)
        assert original.get_json()['predictions'] == \
            restored.get_json()['predictions']

        metadata = get_network_metadata(imported_id,
                                        api_server.settings.model_dir)
        assert metadata['architecture'] == [3, 4, 2]

    def test_import_corrupt_snapshot(self, client):
        network_id = create(client)
        snapshot = client.get(f'/api/networks/{network_id}/export').get_json()
        snapshot['layers'][1]['biases'].append(0.0)

        response = client.post('/api/networks/import', json=snapshot)

        assert response.status_code == 400
        assert response.get_json()['type'] == 'CorruptModel'
        assert len(api_server.active_networks) == 1

    def test_import_without_body(self, client):
        response = client.post('/api/networks/import', data='not json',
                               content_type='application/json')
        assert response.status_code == 400

    def test_export_unknown_network(self, client):
        assert client.get('/api/networks/missing/export').status_code == 404


@pytest.mark.integration
class TestTraining:
    """Test training jobs."""

    def test_train_unknown_network(self, client, with_data):
        response = client.post('/api/networks/missing/train', json={})
        assert response.status_code == 404

    def test_train_without_data(self, client):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/train', json={})
        assert response.status_code == 503

    def test_train_invalid_hyperparameters(self, client, with_data):
        network_id = create(client)

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'mini_batch_size': 100})

        assert response.status_code == 400
        assert response.get_json()['type'] == 'InvalidHyperparameter'
        assert api_server.training_jobs == {}

    def test_train_job_completes(self, client, with_data, emitted):
        network_id = create(client)
        before = api_server.active_networks[network_id]['network']
        initial_weights = before.weights[0].copy()

        response = client.post(f'/api/networks/{network_id}/train', json={
            'epochs': 2, 'mini_batch_size': 5, 'learning_rate': 0.5, 'seed': 0
        })

        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        status = client.get(f'/api/training/{job_id}').get_json()
        assert status['status'] == 'completed'
        assert status['progress'] == 100
        assert 0.0 <= status['accuracy'] <= 1.0

        events = [event for event, _ in emitted]
        assert events == ['training_update', 'training_update',
                          'training_complete']
        assert emitted[0][1]['epoch'] == 1
        assert emitted[1][1]['total_epochs'] == 2

        # The original network object is left untouched; the trained copy
        # replaces it.
        after = api_server.active_networks[network_id]
        assert after['network'] is not before
        assert np.array_equal(before.weights[0], initial_weights)
        assert not np.array_equal(after['network'].weights[0], initial_weights)
        assert after['trained'] is True

        metadata = get_network_metadata(network_id,
                                        api_server.settings.model_dir)
        assert metadata['trained'] is True
        assert metadata['accuracy'] == status['accuracy']

    def test_cancelled_before_first_batch(self, client, with_data, emitted):
        network_id = create(client)
        initial_weights = [
            w.copy() for w in api_server.active_networks[network_id]['network'].weights
        ]
        job_id = 'job-1'
        api_server.training_jobs[job_id] = {
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'epochs': 3,
            'cancel_requested': True
        }

        api_server.train_network_task(
            network_id, job_id,
            TrainingConfig(epochs=3, mini_batch_size=5, learning_rate=0.5)
        )

        job = api_server.training_jobs[job_id]
        assert job['status'] == 'cancelled'
        assert job['batches_completed'] == 0
        assert [event for event, _ in emitted] == ['training_cancelled']

        served = api_server.active_networks[network_id]['network']
        for w, initial in zip(served.weights, initial_weights):
            assert np.array_equal(w, initial)
        assert get_network_metadata(network_id,
                                    api_server.settings.model_dir) is None

    def test_cancel_unknown_job(self, client):
        response = client.post('/api/training/missing/cancel')
        assert response.status_code == 404

    def test_cancel_running_job(self, client):
        api_server.training_jobs['job-2'] = {
            'network_id': 'n', 'status': 'training', 'cancel_requested': False
        }

        response = client.post('/api/training/job-2/cancel')

        assert response.status_code == 202
        assert api_server.training_jobs['job-2']['cancel_requested'] is True

    def test_cancel_finished_job(self, client):
        api_server.training_jobs['job-3'] = {
            'network_id': 'n', 'status': 'completed', 'cancel_requested': False
        }

        response = client.post('/api/training/job-3/cancel')

        assert response.status_code == 409
        assert api_server.training_jobs['job-3']['cancel_requested'] is False

    def test_unknown_job_status(self, client):
        assert client.get('/api/training/missing').status_code == 404

    def test_cleanup_finished_training_jobs(self, client):
        api_server.training_jobs.update({
            'a': {'status': 'completed'},
            'b': {'status': 'training'},
            'c': {'status': 'failed'},
            'd': {'status': 'cancelled'},
        })

        api_server.cleanup_finished_training_jobs()

        assert list(api_server.training_jobs) == ['b']
