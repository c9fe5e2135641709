#!/usr/bin/env python3
"""
Batch processing example for the Tabular Deidentification Engine.

This example demonstrates how to:
1. Process a batch of records over the worker pool
2. Let risk evaluation drop records that remain unique
3. Inspect and save the batch summary
"""

import logging
import random
from pathlib import Path

from tabular_deidentification.core.batch_processor import BatchProcessor
from tabular_deidentification.core.config import Config
from tabular_deidentification.policy.policy_set import PolicySet

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_sample_records(count: int = 200):
    """Create synthetic records for batch processing."""
    rng = random.Random(7)
    zips = ["28045", "28046", "28047", "08001", "08002"]
    records = []
    for i in range(count):
        records.append({
            'patient_id': f"P-{i:06d}",
            'email': f"patient{i}@example.org",
            'zip': rng.choice(zips),
            'age': rng.randint(18, 90),
            'diagnosis': rng.choice(["flu", "cold", "asthma", "migraine"]),
        })
    # A record that stays unique after generalization
    records.append({
        'patient_id': "P-999999",
        'email': "outlier@example.org",
        'zip': "99999",
        'age': 101,
        'diagnosis': "rare",
    })
    return records


def main():
    """Main batch processing example."""
    print("Tabular Deidentification Engine - Batch Processing Example")
    print("=" * 60)

    policy_set = PolicySet.from_dict({'policies': [
        {'field': 'patient_id', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'patients'}]},
        {'field': 'email', 'techniques': [{'kind': 'mask'}]},
        {'field': 'zip', 'techniques': [{'kind': 'generalize', 'prefix_length': 2}]},
        {'field': 'age', 'techniques': [{'kind': 'generalize', 'width': 20}]},
    ]})

    config = Config(
        risk={
            'enabled': True,
            'quasi_identifiers': [['zip', 'age']],
            'k_min_threshold': 5,
            'sensitive_fields': ['diagnosis'],
            'outlier_exclude_fields': ['patient_id', 'email'],
        },
        processing={'max_workers': 4},
    )

    try:
        records = create_sample_records()
        print(f"\nCreated {len(records)} sample records")

        with BatchProcessor(config, policy_set) as processor:
            result = processor.process_batch(records)

            summary = result.summary
            print("\nBatch Processing Results")
            print("-" * 50)
            print(f"State: {summary.state.value} ({' -> '.join(s.value for s in summary.state_history)})")
            print(f"Total records: {summary.total_records}")
            print(f"Transformed: {summary.transformed}")
            print(f"Suppressed by policy: {summary.suppressed_by_policy}")
            print(f"Suppressed by risk: {summary.suppressed_by_risk}")
            print(f"Errored: {summary.errored}")
            print(f"Processing time: {summary.processing_time:.2f}s")

            if summary.risk_report is not None:
                report = summary.risk_report
                print(f"\nSmallest equivalence class: {report.min_class_size}")
                print(f"Records needing further generalization: {len(report.records_to_generalize)}")
                print(f"l-diversity: {report.l_diversity}")

            print("\nFirst records")
            print("-" * 50)
            for record in result.records[:3]:
                print(f"  {record}")

            output_dir = Path("examples/batch_output")
            processor.save_summary(summary, output_dir / "summary.json")
            print(f"\nSummary saved to {output_dir / 'summary.json'}")

    except Exception as e:
        logger.error(f"Batch processing example failed: {e}", exc_info=True)
        return 1

    print("\nBatch processing example completed successfully!")
    return 0 if result.summary.success else 1


if __name__ == "__main__":
    exit(main())
