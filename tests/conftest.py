"""Shared fixtures for the test suite."""

from datetime import date

import pytest

from tabular_deidentification.core.config import Config
from tabular_deidentification.correspondence.encryption import ValueProtector
from tabular_deidentification.correspondence.store import CallerCredential, InMemoryCorrespondenceStore
from tabular_deidentification.policy.policy_set import PolicySet


@pytest.fixture
def protector():
    """Protector with fresh random keys."""
    return ValueProtector.generate()


@pytest.fixture
def memory_store(protector):
    """In-memory correspondence store."""
    return InMemoryCorrespondenceStore(protector)


@pytest.fixture
def auditor():
    """Credential allowed to reverse the 'patients' namespace."""
    return CallerCredential(principal="auditor", scopes=frozenset({"reverse:patients"}))


@pytest.fixture
def analyst():
    """Credential without reversal rights."""
    return CallerCredential(principal="analyst")


@pytest.fixture
def config():
    """Test configuration independent of files and environment."""
    return Config(
        debug=True,
        deidentification={
            'reference_date': date(2024, 1, 1),
            'perturbation_seed': 1234,
        },
        processing={'max_workers': 4},
        risk={'enabled': False},
    )


@pytest.fixture
def example_policy_set():
    """Email masking, ZIP prefix and birth-year buckets."""
    return PolicySet.from_dict({
        'policies': [
            {'field': 'email', 'techniques': [{'kind': 'mask', 'keep_first': 1}]},
            {'field': 'zip', 'techniques': [{'kind': 'generalize', 'prefix_length': 3}]},
            {'field': 'birthYear', 'techniques': [{'kind': 'generalize', 'width': 5}]},
        ]
    })


@pytest.fixture
def example_record():
    return {'id': 'u1', 'email': 'jane.doe@corp.com', 'zip': '28045', 'birthYear': 1985}
