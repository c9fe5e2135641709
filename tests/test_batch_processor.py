"""Tests for batch orchestration."""

import json
import random
import time
from unittest.mock import Mock, patch

import pytest

from tabular_deidentification.core.batch_processor import (
    VALID_TRANSITIONS,
    BatchProcessor,
    BatchState,
    BatchSummary,
)
from tabular_deidentification.core.errors import StoreUnavailable
from tabular_deidentification.correspondence.encryption import ValueProtector
from tabular_deidentification.correspondence.store import CorrespondenceStore
from tabular_deidentification.policy.policy_set import FieldType, PolicySet


def _without_seq(records):
    return [{k: v for k, v in r.items() if k != 'seq'} for r in records]


def assert_counts_balance(summary: BatchSummary):
    assert (
        summary.transformed + summary.suppressed + summary.errored + summary.abandoned
        == summary.total_records
    )


@pytest.fixture
def policy_set():
    return PolicySet.from_dict({'policies': [
        {'field': 'patient_id', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'patients'}]},
        {'field': 'email', 'techniques': [{'kind': 'mask'}]},
        {'field': 'zip', 'techniques': [{'kind': 'generalize', 'prefix_length': 3}]},
        {'field': 'age', 'techniques': [{'kind': 'generalize', 'width': 5}]},
        {'field': 'opt_out', 'techniques': [{'kind': 'suppress', 'scope': 'record'}]},
    ]})


@pytest.fixture
def records():
    return [
        {'seq': i, 'patient_id': f"P-{i:03d}", 'email': f"user{i}@corp.com", 'zip': "28045", 'age': 30 + i % 5}
        for i in range(40)
    ]


@pytest.fixture
def processor(config, policy_set, memory_store):
    with BatchProcessor(config, policy_set, memory_store) as processor:
        yield processor


class TestBatchProcessor:
    """Test cases for the BatchProcessor class."""

    def test_successful_batch(self, processor, records):
        result = processor.process_batch(records)
        summary = result.summary

        assert summary.success
        assert summary.state == BatchState.FINALIZED
        assert summary.state_history == [
            BatchState.RECEIVED, BatchState.CLASSIFIED, BatchState.TRANSFORMED, BatchState.FINALIZED,
        ]
        assert summary.transformed == len(records) == len(result.records)
        assert summary.passthrough_fields == ['seq']
        assert_counts_balance(summary)

    def test_stable_ordering(self, processor, records):
        process_record = processor.pipeline.process_record

        def jittered(record, index, schema):
            time.sleep(random.random() * 0.01)
            return process_record(record, index, schema)

        with patch.object(processor.pipeline, 'process_record', side_effect=jittered):
            result = processor.process_batch(records, stable_ordering=True)

        assert [r['seq'] for r in result.records] == list(range(len(records)))

    def test_unordered_output_holds_every_record(self, processor, records):
        result = processor.process_batch(records, stable_ordering=False)
        assert sorted(r['seq'] for r in result.records) == list(range(len(records)))

    def test_pseudonyms_shared_across_workers(self, processor):
        batch = [{'patient_id': "P-001"} for _ in range(20)]
        result = processor.process_batch(batch)
        assert len({r['patient_id'] for r in result.records}) == 1

    def test_record_scope_suppression_is_counted(self, processor, records):
        records[3]['opt_out'] = True
        records[17]['opt_out'] = True

        result = processor.process_batch(records)

        assert result.summary.suppressed == 2
        assert result.summary.suppressed_by_policy == 2
        assert len(result.records) == len(records) - 2
        assert 3 not in {r['seq'] for r in result.records}
        assert_counts_balance(result.summary)

    def test_non_strict_warnings(self, processor, records):
        records[5]['email'] = "not-an-email"

        result = processor.process_batch(records, schema={'email': FieldType.EMAIL})

        assert result.summary.success
        assert result.summary.warnings[0].record_index == 5
        assert result.records[5]['email'] == "not-an-email"

    def test_strict_failure_errors_batch(self, config, policy_set, memory_store, records):
        records = _without_seq(records)
        records[0]['email'] = "not-an-email"

        with BatchProcessor(config, policy_set, memory_store, deidentification={'strict_mode': True}) as processor:
            result = processor.process_batch(records, schema={'email': FieldType.EMAIL})

        summary = result.summary
        assert summary.state == BatchState.ERRORED
        assert not summary.success
        assert result.records == []
        assert summary.errored == 1
        assert summary.errors[0].code == "INVALID_FORMAT"
        assert summary.errors[0].record_index == 0
        assert_counts_balance(summary)

    def test_partial_results_on_error(self, config, policy_set, memory_store, records):
        batch = _without_seq(records[:5])
        batch[4]['email'] = "not-an-email"

        with BatchProcessor(
            config,
            policy_set,
            memory_store,
            deidentification={'strict_mode': True},
            processing={'return_partial_on_error': True},
        ) as processor:
            result = processor.process_batch(batch, schema={'email': FieldType.EMAIL})

        assert result.summary.state == BatchState.ERRORED
        assert len(result.records) == 4
        assert result.summary.transformed == 4
        assert result.summary.errored == 1
        assert_counts_balance(result.summary)

    def test_strict_unmatched_schema_field_fails_classification(self, config, policy_set, memory_store, records):
        with BatchProcessor(config, policy_set, memory_store, deidentification={'strict_mode': True}) as processor:
            result = processor.process_batch(records, schema={'seq': FieldType.NUMBER})

        summary = result.summary
        assert summary.state_history == [BatchState.RECEIVED, BatchState.ERRORED]
        assert summary.abandoned == len(records)
        assert summary.errors[0].code == "NO_POLICY_FOR_FIELD"
        assert summary.errors[0].record_index is None

    def test_store_outage_fails_records(self, config, policy_set, records):
        store = Mock(spec=CorrespondenceStore)
        store.protector = ValueProtector.generate()
        store.get_or_create.side_effect = StoreUnavailable("down")

        with BatchProcessor(config, policy_set, store) as processor:
            result = processor.process_batch(records)

        assert result.summary.success
        assert result.summary.errored == len(records)
        assert result.records == []
        assert_counts_balance(result.summary)

    def test_store_timeout_falls_back_to_hash(self, config, policy_set, records):
        store = Mock(spec=CorrespondenceStore)
        store.protector = ValueProtector.generate()
        store.get_or_create.side_effect = lambda *args, **kwargs: time.sleep(0.5)

        with BatchProcessor(
            config, policy_set, store, correspondence={'timeout_seconds': 0.02, 'fallback': 'hash'}
        ) as processor:
            result = processor.process_batch(records[:4])

        assert result.summary.success
        assert all(r['patient_id'].startswith("h-") for r in result.records)

    @pytest.fixture
    def shared_namespace(self):
        # 'a' inherits the reversible default, 'b' opts out, both in one namespace
        return PolicySet.from_dict({'policies': [
            {'field': 'a', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'ids'}]},
            {'field': 'b', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'ids', 'reversible': False}]},
        ]})

    @pytest.fixture
    def shared_records(self):
        records = [{'a': f"x{i}", 'b': f"y{i}"} for i in range(6)]
        records[1] = {'a': "shared", 'b': "shared"}
        return records

    def test_reversibility_conflict_fails_only_its_record(
        self, config, shared_namespace, memory_store, shared_records
    ):
        with BatchProcessor(config, shared_namespace, memory_store) as processor:
            result = processor.process_batch(shared_records)

        summary = result.summary
        assert summary.state == BatchState.FINALIZED
        assert summary.errored == 1
        assert summary.errors[0].code == "REVERSIBILITY_CONFLICT"
        assert summary.errors[0].record_index == 1
        assert summary.errors[0].field == 'b'
        assert summary.transformed == len(shared_records) - 1
        assert all("shared" not in r.values() for r in result.records)
        assert_counts_balance(summary)

    def test_reversibility_conflict_is_fatal_when_strict(
        self, config, shared_namespace, memory_store, shared_records
    ):
        with BatchProcessor(
            config, shared_namespace, memory_store, deidentification={'strict_mode': True}
        ) as processor:
            result = processor.process_batch(shared_records)

        assert result.summary.state == BatchState.ERRORED
        assert result.summary.errors[0].code == "REVERSIBILITY_CONFLICT"
        assert result.records == []
        assert_counts_balance(result.summary)

    def test_cancellation(self, config, policy_set, memory_store, records):
        with BatchProcessor(config, policy_set, memory_store, processing={'max_workers': 1}) as processor:
            process_record = processor.pipeline.process_record

            def cancel_on_first(record, index, schema):
                if index == 0:
                    processor.cancel()
                    time.sleep(0.05)
                return process_record(record, index, schema)

            with patch.object(processor.pipeline, 'process_record', side_effect=cancel_on_first):
                result = processor.process_batch(records)

        summary = result.summary
        assert summary.state == BatchState.CANCELLED
        assert summary.transformed >= 1
        assert summary.abandoned >= 1
        assert summary.transformed == len(result.records)
        assert_counts_balance(summary)

    def test_unexpected_failure_is_reported(self, processor, records):
        with patch.object(processor.pipeline, 'process_record', side_effect=RuntimeError("boom")):
            result = processor.process_batch(records)

        summary = result.summary
        assert summary.state == BatchState.ERRORED
        assert summary.errors[-1].code == "INTERNAL_ERROR"
        assert result.records == []
        assert_counts_balance(summary)

    def test_empty_batch(self, processor):
        result = processor.process_batch([])
        assert result.summary.success
        assert result.records == []

    def test_save_summary(self, processor, records, tmp_path):
        result = processor.process_batch(records)
        path = tmp_path / "out" / "summary.json"

        processor.save_summary(result.summary, path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data['state'] == "finalized"
        assert data['transformed'] == len(records)


class TestRiskDrivenSuppression:
    """Test cases for risk assessment inside the batch."""

    @pytest.fixture
    def risk_config(self, config):
        return config.with_overrides(risk={
            'enabled': True,
            'quasi_identifiers': [['zip', 'age']],
            'k_min_threshold': 5,
        })

    @pytest.fixture
    def ten_records(self):
        records = [{'zip': "28045", 'age': 31} for _ in range(9)]
        records.append({'zip': "28145", 'age': 31})
        return records

    def test_unique_record_is_dropped(self, risk_config, policy_set, memory_store, ten_records):
        with BatchProcessor(risk_config, policy_set, memory_store) as processor:
            result = processor.process_batch(ten_records)

        summary = result.summary
        assert summary.state_history[-2:] == [BatchState.RISK_ASSESSED, BatchState.FINALIZED]
        assert summary.suppressed_by_risk == 1
        assert summary.suppressed == 1
        assert summary.transformed == 9
        assert len(result.records) == 9
        assert all(r['zip'] == "280**" for r in result.records)
        assert summary.risk_report.records_to_suppress == [9]
        assert_counts_balance(summary)

    def test_quasi_identifier_override(self, risk_config, policy_set, memory_store, ten_records):
        with BatchProcessor(risk_config, policy_set, memory_store) as processor:
            result = processor.process_batch(ten_records, quasi_identifiers=[['age']])
        assert result.summary.suppressed_by_risk == 0
        assert len(result.records) == 10

    def test_input_report(self, risk_config, policy_set, memory_store, ten_records):
        risk_config = risk_config.with_overrides(risk={'evaluate_input': True})
        with BatchProcessor(risk_config, policy_set, memory_store) as processor:
            result = processor.process_batch(ten_records)

        # Raw ages are all equal; raw ZIPs leave the last record unique
        assert result.summary.input_risk_report.records_to_suppress == [9]


class TestStateMachine:
    """Test cases for the batch state transitions."""

    def test_terminal_states_have_no_exits(self):
        for state in BatchState:
            if state.is_terminal():
                assert VALID_TRANSITIONS[state] == set()

    def test_every_live_state_can_error(self):
        for state in BatchState:
            if not state.is_terminal():
                assert BatchState.ERRORED in VALID_TRANSITIONS[state]
