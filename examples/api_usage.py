#!/usr/bin/env python3
"""
API usage example for the Tabular Deidentification Engine.

Start the server first, for example with:
    DEID_ENGINE_POLICY_PATH=examples/output/policy.yaml deid-engine-api

This example demonstrates how to:
1. Deidentify records over HTTP
2. Assess the risk of a dataset
3. Reverse a pseudonym
"""

import asyncio
from typing import Any, Dict, List

import httpx

# API configuration
API_BASE_URL = "http://localhost:8000"
API_TIMEOUT = 30.0

POLICIES = [
    {'field': 'patient_id', 'techniques': [{'kind': 'pseudonymize', 'technique_id': 'patients'}]},
    {'field': 'email', 'techniques': [{'kind': 'mask', 'keep_first': 1}]},
    {'field': 'zip', 'techniques': [{'kind': 'generalize', 'prefix_length': 3}]},
    {'field': 'age', 'techniques': [{'kind': 'generalize', 'width': 10}]},
]


async def check_api_health(client: httpx.AsyncClient) -> bool:
    """Check if the API is healthy."""
    try:
        response = await client.get(f"{API_BASE_URL}/health")
        response.raise_for_status()
    except httpx.RequestError as e:
        print(f"API connection error: {e}")
        return False
    except httpx.HTTPStatusError as e:
        print(f"API health check failed: {e}")
        return False

    print("API is healthy")
    return True


async def deidentify(client: httpx.AsyncClient, records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Deidentify records using the API."""
    response = await client.post(
        f"{API_BASE_URL}/api/v1/deidentify",
        json={
            'records': records,
            'schema': {'email': 'email', 'zip': 'postal_code'},
            'policies': POLICIES,
            'quasi_identifiers': [['zip', 'age']],
        },
    )
    response.raise_for_status()
    return response.json()


async def assess_risk(client: httpx.AsyncClient, records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Assess the re-identification risk of records using the API."""
    response = await client.post(
        f"{API_BASE_URL}/api/v1/risk",
        json={'records': records, 'quasi_identifiers': [['zip', 'age']], 'k_min': 3},
    )
    response.raise_for_status()
    return response.json()['report']


async def reverse(client: httpx.AsyncClient, pseudonym: str) -> Dict[str, Any]:
    """Reverse a patient pseudonym as an auditor."""
    response = await client.post(
        f"{API_BASE_URL}/api/v1/reverse",
        json={
            'technique_id': 'patients',
            'pseudonym': pseudonym,
            'principal': 'auditor',
            'scopes': ['reverse:patients'],
        },
    )
    if response.status_code != 200:
        return {'error': response.json()['detail']}
    return response.json()


async def main():
    """Main API usage example."""
    print("Tabular Deidentification Engine - API Usage Example")
    print("=" * 60)

    records = [
        {'patient_id': f"P-{i:03d}", 'email': f"user{i}@corp.com", 'zip': "28045", 'age': 30 + i}
        for i in range(6)
    ]

    async with httpx.AsyncClient(timeout=API_TIMEOUT) as client:
        if not await check_api_health(client):
            print("\nPlease start the API server first: deid-engine-api")
            return 1

        print("\nStep 1: Deidentifying records...")
        try:
            result = await deidentify(client, records)
        except httpx.HTTPStatusError as e:
            print(f"HTTP error: {e.response.status_code} - {e.response.text}")
            return 1

        summary = result['summary']
        print(f"State: {summary['state']}, transformed {summary['transformed']}, "
              f"suppressed {summary['suppressed']}")
        for record in result['records']:
            print(f"  {record}")

        print("\nStep 2: Assessing risk of the output...")
        report = await assess_risk(client, result['records'])
        print(f"Smallest class: {report['min_class_size']}, max risk: {report['max_risk']:.2f}")

        if result['records']:
            print("\nStep 3: Reversing a pseudonym...")
            print(await reverse(client, result['records'][0]['patient_id']))

        metrics = (await client.get(f"{API_BASE_URL}/metrics")).json()
        print(f"\nServer batch stats: {metrics['batch_stats']}")

    return 0


if __name__ == "__main__":
    exit(asyncio.run(main()))
