"""CLI entrypoint.

Commands:
- `deid-engine deidentify --input records.jsonl --policy policy.yaml --output out.jsonl`
- `deid-engine risk --input records.jsonl --qi zip,age_bucket [--qi gender] [--k-min 5]`
- `deid-engine generate-key`

Records are read and written as JSON lines. Exit status is 0 when the batch
is finalized and 1 when it errored or was cancelled.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .core.batch_processor import BatchProcessor
from .core.config import Config, load_config
from .correspondence.encryption import generate_key
from .policy.policy_set import PolicySet, parse_schema
from .risk.risk_evaluator import RiskEvaluator


logger = logging.getLogger(__name__)


def _setup_logging(config: Config, verbose: bool) -> None:
    level = logging.DEBUG if verbose or config.debug else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def _read_records(path: str) -> List[Dict[str, Any]]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            record = json.loads(line)
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{line_number}: expected a JSON object per line")
            records.append(record)
    return records


def _write_records(path: str, records: List[Dict[str, Any]]) -> None:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def _load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _parse_quasi_identifiers(values: Optional[List[str]]) -> Optional[List[List[str]]]:
    if not values:
        return None
    return [[name.strip() for name in value.split(",") if name.strip()] for value in values]


def _deidentify(args: argparse.Namespace, config: Config) -> int:
    policy_set = PolicySet.from_yaml(args.policy)
    schema = parse_schema(_load_yaml(args.schema)) if args.schema else {}
    records = _read_records(args.input)

    overrides = {}
    if args.strict:
        overrides['deidentification'] = {'strict_mode': True}
    if args.seed is not None:
        overrides.setdefault('deidentification', {})['perturbation_seed'] = args.seed
    if args.workers is not None:
        overrides['processing'] = {'max_workers': args.workers}

    with BatchProcessor(config, policy_set, **overrides) as processor:
        result = processor.process_batch(
            records,
            schema=schema,
            quasi_identifiers=_parse_quasi_identifiers(args.qi),
        )
        if args.summary:
            processor.save_summary(result.summary, args.summary)

    _write_records(args.output, result.records)

    summary = result.summary
    print(
        f"{summary.state.value}: {summary.transformed} transformed, {summary.suppressed} suppressed, "
        f"{summary.errored} errored, {summary.abandoned} abandoned"
    )
    return 0 if summary.success else 1


def _risk(args: argparse.Namespace, config: Config) -> int:
    records = _read_records(args.input)
    evaluator = RiskEvaluator(config.risk)
    report = evaluator.evaluate(records, _parse_quasi_identifiers(args.qi), k_min=args.k_min)

    output = json.dumps(report.to_dict(), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
    else:
        print(output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="deid-engine")
    p.add_argument("--config", help="Configuration YAML")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    pd = sub.add_parser("deidentify", help="Deidentify a batch of JSON-lines records")
    pd.add_argument("--input", required=True)
    pd.add_argument("--policy", required=True)
    pd.add_argument("--output", required=True)
    pd.add_argument("--schema", help="YAML mapping of field name to declared type")
    pd.add_argument("--summary", help="Write the batch summary as JSON")
    pd.add_argument("--qi", action="append", metavar="FIELDS", help="Comma-separated quasi-identifier combination")
    pd.add_argument("--strict", action="store_true", help="Fail the batch on any field error")
    pd.add_argument("--seed", type=int, help="Perturbation seed")
    pd.add_argument("--workers", type=int, help="Worker pool size")

    pr = sub.add_parser("risk", help="Assess re-identification risk of a dataset")
    pr.add_argument("--input", required=True)
    pr.add_argument("--qi", action="append", metavar="FIELDS", help="Comma-separated quasi-identifier combination")
    pr.add_argument("--k-min", type=int, dest="k_min")
    pr.add_argument("--output", help="Write the report here instead of stdout")

    sub.add_parser("generate-key", help="Print a new base64 store key")

    args = p.parse_args(argv)

    if args.cmd == "generate-key":
        print(generate_key())
        return 0

    config = load_config(args.config)
    _setup_logging(config, args.verbose)

    if args.cmd == "risk":
        return _risk(args, config)
    return _deidentify(args, config)


if __name__ == "__main__":
    sys.exit(main())
