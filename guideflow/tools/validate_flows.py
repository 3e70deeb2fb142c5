#!/usr/bin/env python3
"""
validate_flows.py - Validate workflow definition files.

Each file is read, checked against the flow JSON schema, parsed, and run
through the structural FlowValidator (start node, dangling edges, invalid
conditions, unreachable nodes, cycles, display anchors, subflows).

Usage:
    guideflow-validate guideflow/config/flows/
    guideflow-validate flows/door_checkpoint.yaml --json
    guideflow-validate flows/ --strict --allow-cycles
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from guideflow.config.runtime_config import get_log_level
from guideflow.errors import FlowError
from guideflow.spec.loader import iter_flow_files, load_flow_file
from guideflow.validator.errors import ValidationResult
from guideflow.validator.flow_validator import FlowValidator

EXIT_SUCCESS = 0
EXIT_VALIDATION_FAILED = 1
EXIT_FATAL_ERROR = 2

logger = logging.getLogger(__name__)


def collect_paths(targets: Sequence[str]) -> List[Path]:
    paths: List[Path] = []
    for target in targets:
        path = Path(target)
        if path.is_dir():
            paths.extend(iter_flow_files(path))
        else:
            paths.append(path)
    return paths


def validate_paths(
    paths: Sequence[Path], allow_cycles: bool = False
) -> Dict[str, Any]:
    """Validate files and collect per-file results.

    Returns:
        {"results": {path: ValidationResult}, "fatal": {path: message}}
    """
    validator = FlowValidator(allow_cycles=allow_cycles)
    results: Dict[str, ValidationResult] = {}
    fatal: Dict[str, str] = {}
    for path in paths:
        try:
            flow = load_flow_file(path)
        except FlowError as e:
            logger.debug("Failed to load %s", path, exc_info=True)
            fatal[str(path)] = e.message
            continue
        results[str(path)] = validator.validate(flow)
    return {"results": results, "fatal": fatal}


def exit_code_for(outcome: Dict[str, Any], strict: bool = False) -> int:
    if outcome["fatal"]:
        return EXIT_FATAL_ERROR
    results: Dict[str, ValidationResult] = outcome["results"]
    if any(r.has_errors() for r in results.values()):
        return EXIT_VALIDATION_FAILED
    if strict and any(r.has_warnings() for r in results.values()):
        return EXIT_VALIDATION_FAILED
    return EXIT_SUCCESS


def build_report(outcome: Dict[str, Any], exit_code: int) -> Dict[str, Any]:
    results: Dict[str, ValidationResult] = outcome["results"]
    status = {EXIT_SUCCESS: "PASS", EXIT_VALIDATION_FAILED: "FAIL"}.get(exit_code, "ERROR")
    return {
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "summary": {
            "status": status,
            "files": len(results) + len(outcome["fatal"]),
            "errors": sum(len(r.errors) for r in results.values()),
            "warnings": sum(len(r.warnings) for r in results.values()),
        },
        "files": {path: result.to_dict() for path, result in results.items()},
        "fatal": dict(outcome["fatal"]),
    }


def print_text_report(outcome: Dict[str, Any], strict: bool = False) -> None:
    for path, message in outcome["fatal"].items():
        print(f"[ERROR] {path}: {message}", file=sys.stderr)
    for path, result in outcome["results"].items():
        if not result.has_errors() and not result.has_warnings():
            print(f"[PASS] {path}")
            continue
        for issue in result.sorted_errors():
            print(issue.format("FAIL"))
        for issue in result.sorted_warnings():
            print(issue.format("FAIL" if strict else "WARN"))
        label = "FAIL" if result.has_errors() or (strict and result.has_warnings()) else "PASS"
        print(f"[{label}] {path}: {len(result.errors)} error(s), {len(result.warnings)} warning(s)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Validate guided workflow definition files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit Codes:
  0 - All flow files passed validation
  1 - Validation failed (structural errors, or warnings with --strict)
  2 - Fatal error (missing, unreadable or schema-invalid files)

Examples:
  guideflow-validate guideflow/config/flows/
  guideflow-validate flows/door_checkpoint.yaml --json
  guideflow-validate flows/ --strict
        """,
    )
    parser.add_argument("paths", nargs="+", help="Flow files or directories of flow files")
    parser.add_argument("--json", action="store_true", help="Output a machine-readable JSON report")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as failures")
    parser.add_argument(
        "--allow-cycles", action="store_true", help="Report cycles as warnings instead of errors"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, get_log_level()),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    paths = collect_paths(args.paths)
    if not paths:
        print("ERROR: no flow files found", file=sys.stderr)
        return EXIT_FATAL_ERROR

    outcome = validate_paths(paths, allow_cycles=args.allow_cycles)
    exit_code = exit_code_for(outcome, strict=args.strict)

    if args.json:
        print(json.dumps(build_report(outcome, exit_code), indent=2))
    else:
        print_text_report(outcome, strict=args.strict)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
