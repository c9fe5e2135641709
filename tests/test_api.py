"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from tabular_deidentification.api.main import create_app
from tabular_deidentification.policy.policy_set import PolicySet


@pytest.fixture
def policy_set(example_policy_set):
    return PolicySet(policies=example_policy_set.policies + PolicySet.from_dict({'policies': [
        {'field': 'patient_id', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'patients'}]},
    ]}).policies)


@pytest.fixture
def client(config, policy_set, memory_store):
    app = create_app(config, policy_set, memory_store)
    with TestClient(app) as client:
        yield client


class TestServiceEndpoints:
    """Test cases for the informational endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()['status'] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()['api_base'] == "/api/v1"

    def test_metrics_track_batches(self, client, example_record):
        client.post("/api/v1/deidentify", json={'records': [example_record]})

        data = client.get("/metrics").json()
        assert data['batch_stats']['batches_processed'] == 1
        assert data['batch_stats']['records_transformed'] == 1
        assert data['store']['backend'] == "memory"


class TestDeidentifyEndpoint:
    """Test cases for POST /api/v1/deidentify."""

    def test_default_policy_set(self, client, example_record):
        response = client.post("/api/v1/deidentify", json={'records': [example_record]})

        assert response.status_code == 200
        body = response.json()
        assert body['records'] == [{
            'id': "u1",
            'email': "j****@corp.com",
            'zip': "280**",
            'birthYear': "[1985-1989]",
        }]
        assert body['summary']['state'] == "finalized"
        assert body['summary']['passthrough_fields'] == ['id']

    def test_inline_policies(self, client):
        response = client.post("/api/v1/deidentify", json={
            'records': [{'name': "Jane", 'age': 40}],
            'policies': [{'field': 'name', 'techniques': [{'kind': 'suppress'}]}],
        })

        assert response.status_code == 200
        assert response.json()['records'] == [{'name': "[SUPPRESSED]", 'age': 40}]

    def test_schema_declares_types(self, client):
        response = client.post("/api/v1/deidentify", json={
            'records': [{'email': "not-an-email"}],
            'schema': {'email': 'email'},
        })

        summary = response.json()['summary']
        assert summary['success'] is True
        assert summary['warnings'][0]['code'] == "INVALID_FORMAT"

    def test_unknown_schema_type(self, client):
        response = client.post("/api/v1/deidentify", json={
            'records': [{'zip': "28045"}],
            'schema': {'zip': 'zipcode'},
        })
        assert response.status_code == 422

    def test_invalid_technique(self, client):
        response = client.post("/api/v1/deidentify", json={
            'records': [{'name': "Jane"}],
            'policies': [{'field': 'name', 'techniques': [{'kind': 'scramble'}]}],
        })
        assert response.status_code == 422

    def test_strict_failure_reported_in_summary(self, client):
        response = client.post("/api/v1/deidentify", json={
            'records': [{'email': "not-an-email"}],
            'schema': {'email': 'email'},
            'strict_mode': True,
        })

        assert response.status_code == 200
        body = response.json()
        assert body['records'] == []
        assert body['summary']['success'] is False
        assert body['summary']['state'] == "errored"
        assert client.get("/metrics").json()['batch_stats']['batches_failed'] == 1


class TestReverseEndpoint:
    """Test cases for POST /api/v1/reverse."""

    @pytest.fixture
    def pseudonym(self, client):
        response = client.post("/api/v1/deidentify", json={'records': [{'patient_id': "P-001"}]})
        return response.json()['records'][0]['patient_id']

    def test_authorized_reverse(self, client, pseudonym):
        response = client.post("/api/v1/reverse", json={
            'technique_id': 'patients',
            'pseudonym': pseudonym,
            'principal': 'auditor',
            'scopes': ['reverse:patients'],
        })

        assert response.status_code == 200
        assert response.json()['value'] == "P-001"

    def test_missing_scope(self, client, pseudonym):
        response = client.post("/api/v1/reverse", json={
            'technique_id': 'patients',
            'pseudonym': pseudonym,
            'principal': 'analyst',
        })

        assert response.status_code == 403
        assert response.json()['detail']['code'] == "UNAUTHORIZED"
        assert "P-001" not in response.text

    def test_unknown_pseudonym(self, client):
        response = client.post("/api/v1/reverse", json={
            'technique_id': 'patients',
            'pseudonym': 'unknown',
            'principal': 'auditor',
            'scopes': ['reverse:*'],
        })
        assert response.status_code == 404


class TestRiskEndpoint:
    """Test cases for POST /api/v1/risk."""

    def test_risk_report(self, client):
        records = [{'zip': "280", 'age': "30-34"}] * 9 + [{'zip': "281", 'age': "30-34"}]

        response = client.post("/api/v1/risk", json={
            'records': records,
            'quasi_identifiers': [['zip', 'age']],
            'k_min': 5,
        })

        assert response.status_code == 200
        report = response.json()['report']
        assert report['records_to_suppress'] == [9]
        assert report['record_risks'][9]['action'] == "suppress"

    def test_invalid_k(self, client):
        response = client.post("/api/v1/risk", json={'records': [], 'k_min': 0})
        assert response.status_code == 422
