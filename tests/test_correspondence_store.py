"""Tests for the correspondence stores and value protection."""

import os
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tabular_deidentification.core.config import Config, DatabaseConfig
from tabular_deidentification.core.errors import NotFound, ReversibilityConflict, Unauthorized
from tabular_deidentification.correspondence.database import DatabaseCorrespondenceStore
from tabular_deidentification.correspondence.encryption import (
    KEY_SIZE,
    ValueProtector,
    canonical_value,
    generate_key,
)
from tabular_deidentification.correspondence.factory import create_store
from tabular_deidentification.correspondence.store import (
    CallerCredential,
    InMemoryCorrespondenceStore,
)


# Shared by the property tests, which cannot use function-scoped fixtures
_property_store = InMemoryCorrespondenceStore(ValueProtector.generate())
_property_credential = CallerCredential(principal="auditor", scopes=frozenset({"reverse:*"}))

field_values = st.one_of(
    st.text(max_size=50),
    st.integers(),
    st.floats(allow_nan=False),
    st.dates(),
)


class TestValueProtector:
    """Test cases for the ValueProtector class."""

    def test_encrypt_decrypt(self, protector):
        encrypted = protector.encrypt("patients", "Jane Doe")
        assert b"Jane Doe" not in encrypted
        assert protector.decrypt("patients", encrypted) == "Jane Doe"

    def test_technique_id_is_bound(self, protector):
        encrypted = protector.encrypt("patients", "Jane Doe")
        with pytest.raises(ValueError):
            protector.decrypt("doctors", encrypted)

    def test_types_are_preserved(self, protector):
        for value in (42, 4.2, True, date(2020, 1, 2), "42"):
            restored = protector.decrypt("t", protector.encrypt("t", value))
            assert restored == value
            assert type(restored) is type(value)

    def test_digest_distinguishes_types(self, protector):
        assert canonical_value(1) != canonical_value("1")
        assert protector.digest("t", 1) != protector.digest("t", "1")

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            ValueProtector(b"too-short")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_STORE_KEY", generate_key())
        protector = ValueProtector.from_env("TEST_STORE_KEY")
        assert protector.decrypt("t", protector.encrypt("t", "x")) == "x"

    def test_from_env_missing(self, monkeypatch):
        monkeypatch.delenv("TEST_STORE_KEY", raising=False)
        with pytest.raises(ValueError):
            ValueProtector.from_env("TEST_STORE_KEY")

    def test_generate_key_size(self):
        from base64 import b64decode
        assert len(b64decode(generate_key())) == KEY_SIZE


class TestInMemoryCorrespondenceStore:
    """Test cases for the InMemoryCorrespondenceStore class."""

    def test_get_or_create_is_idempotent(self, memory_store):
        first = memory_store.get_or_create("patients", "Jane Doe")
        assert memory_store.get_or_create("patients", "Jane Doe") == first
        assert memory_store.count() == 1

    def test_concurrent_callers_observe_one_pseudonym(self, memory_store):
        with ThreadPoolExecutor(max_workers=16) as executor:
            pseudonyms = list(executor.map(
                lambda _: memory_store.get_or_create("patients", "Jane Doe"), range(200)
            ))
        assert len(set(pseudonyms)) == 1
        assert memory_store.count("patients") == 1

    def test_distinct_values_get_distinct_pseudonyms(self, memory_store):
        values = [f"patient-{i}" for i in range(100)]
        pseudonyms = {memory_store.get_or_create("patients", v) for v in values}
        assert len(pseudonyms) == len(values)

    def test_namespaces_are_independent(self, memory_store):
        a = memory_store.get_or_create("patients", "Jane Doe")
        b = memory_store.get_or_create("doctors", "Jane Doe")
        assert a != b
        assert memory_store.count("patients") == 1
        assert memory_store.count("doctors") == 1

    @pytest.mark.parametrize("value", ["Jane Doe", 42, 3.5, date(2020, 1, 2)])
    def test_reverse_round_trip(self, memory_store, auditor, value):
        pseudonym = memory_store.get_or_create("patients", value)
        assert memory_store.reverse("patients", pseudonym, auditor) == value

    def test_wildcard_scope(self, memory_store):
        pseudonym = memory_store.get_or_create("patients", "Jane Doe")
        credential = CallerCredential(principal="dpo", scopes=frozenset({CallerCredential.REVERSE_ALL}))
        assert memory_store.reverse("patients", pseudonym, credential) == "Jane Doe"

    def test_unauthorized_reverse(self, memory_store, analyst):
        pseudonym = memory_store.get_or_create("patients", "Jane Doe")
        with pytest.raises(Unauthorized) as exc_info:
            memory_store.reverse("patients", pseudonym, analyst)
        assert "Jane" not in str(exc_info.value)

    def test_scope_for_other_namespace_is_unauthorized(self, memory_store, auditor):
        pseudonym = memory_store.get_or_create("doctors", "Dr. House")
        with pytest.raises(Unauthorized):
            memory_store.reverse("doctors", pseudonym, auditor)

    def test_unknown_pseudonym(self, memory_store, auditor):
        with pytest.raises(NotFound):
            memory_store.reverse("patients", "0000000000000000", auditor)

    def test_non_reversible_entries_cannot_be_reversed(self, memory_store, auditor):
        pseudonym = memory_store.get_or_create("patients", "Jane Doe", reversible=False)
        with pytest.raises(NotFound):
            memory_store.reverse("patients", pseudonym, auditor)

    def test_non_reversible_entries_hold_no_ciphertext(self, memory_store):
        memory_store.get_or_create("patients", "Jane Doe", reversible=False)
        entry = next(iter(memory_store._entries.values()))
        assert entry.ciphertext is None
        assert "Jane" not in entry.original_digest

    def test_non_reversible_pseudonyms_are_derived(self, protector):
        first = InMemoryCorrespondenceStore(protector).get_or_create("patients", "Jane", reversible=False)
        second = InMemoryCorrespondenceStore(protector).get_or_create("patients", "Jane", reversible=False)
        assert first == second

    def test_mixed_reversibility_rejected(self, memory_store):
        memory_store.get_or_create("patients", "Jane Doe", reversible=True)
        with pytest.raises(ReversibilityConflict):
            memory_store.get_or_create("patients", "Jane Doe", reversible=False)

    def test_delete_namespace(self, memory_store, auditor):
        pseudonym = memory_store.get_or_create("patients", "Jane Doe")
        memory_store.get_or_create("doctors", "Dr. House")

        assert memory_store.delete_namespace("patients") == 1
        assert memory_store.count() == 1
        with pytest.raises(NotFound):
            memory_store.reverse("patients", pseudonym, auditor)

    def test_rotate_key(self, memory_store, auditor):
        pseudonym = memory_store.get_or_create("patients", "Jane Doe")
        memory_store.get_or_create("tokens", "John Roe", reversible=False)

        assert memory_store.rotate_key(os.urandom(KEY_SIZE)) == 1
        assert memory_store.get_or_create("patients", "Jane Doe") == pseudonym
        assert memory_store.reverse("patients", pseudonym, auditor) == "Jane Doe"

    @settings(max_examples=50)
    @given(field_values)
    def test_idempotence_property(self, value):
        first = _property_store.get_or_create("property", value)
        assert _property_store.get_or_create("property", value) == first

    @settings(max_examples=50)
    @given(field_values)
    def test_round_trip_property(self, value):
        pseudonym = _property_store.get_or_create("property", value)
        assert _property_store.reverse("property", pseudonym, _property_credential) == value


class TestDatabaseCorrespondenceStore:
    """Test cases for the DatabaseCorrespondenceStore class."""

    @pytest.fixture
    def database(self, tmp_path):
        return DatabaseConfig(url=f"sqlite:///{tmp_path / 'correspondence.db'}")

    @pytest.fixture
    def store(self, database, protector):
        store = DatabaseCorrespondenceStore(database, protector)
        yield store
        store.close()

    def test_get_or_create_is_idempotent(self, store):
        first = store.get_or_create("patients", "Jane Doe")
        assert store.get_or_create("patients", "Jane Doe") == first
        assert store.count() == 1

    def test_mixed_reversibility_rejected(self, store):
        store.get_or_create("patients", "Jane Doe", reversible=False)
        with pytest.raises(ReversibilityConflict) as exc_info:
            store.get_or_create("patients", "Jane Doe", reversible=True)
        assert exc_info.value.code == "REVERSIBILITY_CONFLICT"

    def test_entries_persist_across_instances(self, store, database, protector, auditor):
        pseudonym = store.get_or_create("patients", "Jane Doe")

        with DatabaseCorrespondenceStore(database, protector) as reopened:
            assert reopened.get_or_create("patients", "Jane Doe") == pseudonym
            assert reopened.reverse("patients", pseudonym, auditor) == "Jane Doe"

    def test_concurrent_callers_observe_one_pseudonym(self, store):
        with ThreadPoolExecutor(max_workers=4) as executor:
            pseudonyms = list(executor.map(
                lambda _: store.get_or_create("patients", "Jane Doe"), range(20)
            ))
        assert len(set(pseudonyms)) == 1
        assert store.count("patients") == 1

    def test_reverse_round_trip(self, store, auditor):
        pseudonym = store.get_or_create("patients", 12345)
        assert store.reverse("patients", pseudonym, auditor) == 12345

    def test_unauthorized_reverse(self, store, analyst):
        pseudonym = store.get_or_create("patients", "Jane Doe")
        with pytest.raises(Unauthorized):
            store.reverse("patients", pseudonym, analyst)

    def test_unknown_pseudonym(self, store, auditor):
        with pytest.raises(NotFound):
            store.reverse("patients", "unknown", auditor)

    def test_non_reversible_entries_cannot_be_reversed(self, store, auditor):
        pseudonym = store.get_or_create("patients", "Jane Doe", reversible=False)
        with pytest.raises(NotFound):
            store.reverse("patients", pseudonym, auditor)

    def test_delete_namespace(self, store):
        store.get_or_create("patients", "Jane Doe")
        store.get_or_create("patients", "John Roe")
        store.get_or_create("doctors", "Dr. House")

        assert store.delete_namespace("patients") == 2
        assert store.count() == 1

    def test_rotate_key(self, store, auditor):
        pseudonym = store.get_or_create("patients", "Jane Doe")
        store.get_or_create("patients", "John Roe", reversible=False)

        assert store.rotate_key(os.urandom(KEY_SIZE)) == 1
        assert store.reverse("patients", pseudonym, auditor) == "Jane Doe"

    def test_in_memory_sqlite(self, protector, auditor):
        with DatabaseCorrespondenceStore(DatabaseConfig(url="sqlite://"), protector) as store:
            pseudonym = store.get_or_create("patients", "Jane Doe")
            assert store.reverse("patients", pseudonym, auditor) == "Jane Doe"


class TestCreateStore:
    """Test cases for store construction from configuration."""

    def test_memory_backend_with_ephemeral_keys(self, monkeypatch):
        monkeypatch.delenv("DEID_ENGINE_STORE_KEY", raising=False)
        store = create_store(Config())
        assert isinstance(store, InMemoryCorrespondenceStore)

    def test_database_backend_requires_key(self, monkeypatch, tmp_path):
        monkeypatch.delenv("DEID_ENGINE_STORE_KEY", raising=False)
        config = Config(
            correspondence={'backend': 'database'},
            database={'url': f"sqlite:///{tmp_path / 'c.db'}"},
        )
        with pytest.raises(ValueError):
            create_store(config)

    def test_database_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DEID_ENGINE_STORE_KEY", generate_key())
        config = Config(
            correspondence={'backend': 'database'},
            database={'url': f"sqlite:///{tmp_path / 'c.db'}"},
        )
        with create_store(config) as store:
            assert isinstance(store, DatabaseCorrespondenceStore)
            assert store.count() == 0
