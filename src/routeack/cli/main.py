from __future__ import annotations

import argparse
import json
import logging

from routeack.cli.run import load_effective_config, run_config
from routeack.cli.validate import validate_config
from routeack.core.errors import ConfigError
from routeack.eval.summarize import summarize_runs

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="routeack", description="Static versus dynamic route acknowledgment checks"
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run a scenario")
    p_run.add_argument("--config", required=True)
    p_run.add_argument("--repeat", type=int, default=1, help="Run the scenario N times.")
    p_run.add_argument("--output-dir", default="", help="Override output_dir from the config.")
    p_run.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)

    p_validate = sub.add_parser("validate", help="Validate a config file")
    p_validate.add_argument("--config", required=True)

    p_sum = sub.add_parser("summarize", help="Summarize run reports into CSV")
    p_sum.add_argument("--runs", required=True, help="Directory containing run folders")
    p_sum.add_argument("--out", required=True, help="Output CSV path")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        logging.basicConfig(
            level=getattr(logging, args.log_level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if args.repeat <= 0:
            print(json.dumps({"ok": False, "errors": ["--repeat must be > 0"]}, indent=2))
            return 2
        try:
            reports = run_config(args.config, repeat=args.repeat, output_dir=args.output_dir)
        except ConfigError as exc:
            print(json.dumps({"ok": False, "errors": [str(exc)]}, ensure_ascii=False, indent=2))
            return 2
        payload = [r.to_dict() for r in reports]
        print(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))
        return 0 if all(r.ok for r in reports) else 1

    if args.cmd == "validate":
        try:
            cfg = load_effective_config(args.config)
        except ConfigError as exc:
            errors = [str(exc)]
        else:
            errors = validate_config(cfg)
        if errors:
            print(json.dumps({"ok": False, "errors": errors}, ensure_ascii=False, indent=2))
            return 1
        print(json.dumps({"ok": True}, ensure_ascii=False, indent=2))
        return 0

    if args.cmd == "summarize":
        rows = summarize_runs(args.runs, args.out)
        print(json.dumps({"runs": len(rows), "out": args.out}, ensure_ascii=False, indent=2))
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
