"""Dry-run the schedule generator against a JSON input bundle and print the result.

The bundle holds ``sessions``, ``venues``, ``timeSlots`` and ``voterOverlap``
(snake_case keys work too) plus an optional ``config`` object. Nothing is
written back anywhere; applying the assignments is left to the caller.

Run:
  PYTHONPATH=backend python scripts/generate_schedule.py bundle.json
  PYTHONPATH=backend python scripts/generate_schedule.py bundle.json --conflict-threshold 70
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from app.core.config import get_settings
from app.services.scheduling.generator import generate


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("bundle", help="Path to the JSON input bundle, or - for stdin")
    parser.add_argument("--conflict-threshold", type=float, default=None)
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--target-quality-score", type=float, default=None)
    parser.add_argument("--indent", type=int, default=2)
    return parser.parse_args(argv)


def _load_bundle(path: str) -> dict:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text(encoding="utf-8"))


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    bundle = _load_bundle(args.bundle)
    config = dict(bundle.pop("config", None) or {})
    for key, value in (
        ("conflict_threshold", args.conflict_threshold),
        ("max_iterations", args.max_iterations),
        ("target_quality_score", args.target_quality_score),
    ):
        if value is not None:
            config[key] = value

    result = generate(bundle, config)
    print(json.dumps(result.model_dump(mode="json", by_alias=True), indent=args.indent))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
