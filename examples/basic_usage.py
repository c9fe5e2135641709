#!/usr/bin/env python3
"""
Basic usage example for the Tabular Deidentification Engine.

This example demonstrates how to:
1. Define a policy set
2. Deidentify a single record
3. Reverse a pseudonym with an authorized credential
"""

import logging
from pathlib import Path

from tabular_deidentification.core.config import Config
from tabular_deidentification.core.pipeline import DeidentificationPipeline
from tabular_deidentification.correspondence.store import CallerCredential
from tabular_deidentification.policy.policy_set import FieldType, PolicySet

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


POLICIES = {
    'policies': [
        {'field': 'patient_id', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'patients'}]},
        {'field': 'email', 'techniques': [{'kind': 'mask', 'keep_first': 1}]},
        {'field': 'zip', 'techniques': [{'kind': 'generalize', 'prefix_length': 3}]},
        {'field': 'birthYear', 'techniques': [{'kind': 'generalize', 'width': 5}]},
        {'field': 'salary', 'techniques': [
            {'kind': 'perturb', 'bound': 2500, 'min_value': 0},
            {'kind': 'generalize', 'width': 10000},
        ]},
        {'field_pattern': '*_notes', 'precedence': 10, 'techniques': [{'kind': 'suppress'}]},
    ]
}


def main():
    """Main example function."""
    print("Tabular Deidentification Engine - Basic Usage Example")
    print("=" * 60)

    record = {
        'patient_id': "P-000123",
        'email': "jane.doe@corp.com",
        'zip': "28045",
        'birthYear': 1985,
        'salary': 48250,
        'clinical_notes': "Follow-up in four weeks",
        'visit_count': 3,
    }

    try:
        # Step 1: Create configuration and policies
        print("\nStep 1: Creating configuration...")
        config = Config(
            debug=True,
            deidentification={'perturbation_seed': 42},
            risk={'enabled': False},
        )
        policy_set = PolicySet.from_dict(POLICIES)
        print(f"Loaded {len(policy_set.policies)} field policies")

        # Step 2: Initialize pipeline
        print("\nStep 2: Initializing deidentification pipeline...")
        with DeidentificationPipeline(config, policy_set) as pipeline:

            # Step 3: Process the record
            print("\nStep 3: Processing record...")
            result = pipeline.process_record(record, schema={'email': FieldType.EMAIL})

            print("\nStep 4: Results")
            print("-" * 40)
            if result.record is not None:
                for name, value in result.record.items():
                    print(f"  {name}: {record[name]!r} -> {value!r}")
            for warning in result.warnings:
                print(f"  warning: {warning.field}: {warning.message}")
            if result.passthrough_fields:
                print(f"  passed through: {', '.join(result.passthrough_fields)}")

            # Step 5: Reverse the pseudonym
            print("\nStep 5: Reversing the patient pseudonym...")
            auditor = CallerCredential(principal="auditor", scopes=frozenset({"reverse:patients"}))
            original = pipeline.reverse('patients', result.record['patient_id'], auditor)
            print(f"  {result.record['patient_id']} -> {original}")

            # Step 6: Save the policy set for reuse
            output_dir = Path("examples/output")
            policy_set.to_yaml(output_dir / "policy.yaml")
            print(f"\nPolicy set saved to: {output_dir / 'policy.yaml'}")

            print("\nPipeline statistics")
            print("-" * 40)
            for key, value in pipeline.get_stats().items():
                print(f"{key}: {value}")

    except Exception as e:
        logger.error(f"Example failed: {e}", exc_info=True)
        return 1

    print("\nExample completed successfully!")
    return 0


if __name__ == "__main__":
    exit(main())
