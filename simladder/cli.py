from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .api import results, run
from .core.config import (
    load_data,
    load_engine_config,
    normalize_engine_config,
    validate_engine_config,
)
from .core.diagnostics import ConfigError, SimLadderError
from .core.fingerprint import fingerprint


def main() -> None:
    parser = argparse.ArgumentParser(prog="simladder")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate")
    validate.add_argument("-c", "--config", required=True)

    run_cmd = sub.add_parser("run")
    run_cmd.add_argument("-c", "--config", required=True)
    run_cmd.add_argument("-p", "--params", required=True)
    run_cmd.add_argument("--budget", type=float, default=None)

    fp = sub.add_parser("fingerprint")
    fp.add_argument("--pdk-hash", required=True)
    fp.add_argument("--layout-hash", required=True)
    fp.add_argument("--settings", required=True)
    fp.add_argument("--plan", required=True)

    res = sub.add_parser("results")
    res.add_argument("-c", "--config", required=True)
    res.add_argument("-r", "--revision", required=True)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "fingerprint":
        try:
            result = fingerprint(
                args.pdk_hash,
                args.layout_hash,
                load_data(Path(args.settings)),
                load_data(Path(args.plan)),
            )
        except SimLadderError as exc:
            _fail([exc.diagnostic.to_dict()])
        print(json.dumps({"fingerprint": result.key, "settings_hash": result.settings_hash, "plan_hash": result.plan_hash}))
        return

    config_path = Path(args.config)
    config = _with_root(load_engine_config(config_path), config_path.parent)

    if args.command == "validate":
        diagnostics = validate_engine_config(normalize_engine_config(config))
        if diagnostics.has_errors():
            _fail(diagnostics.to_list())
        print(json.dumps({"status": "ok"}))
        return

    try:
        if args.command == "run":
            params = load_data(Path(args.params))
            record = run(config, params, budget=args.budget)
            print(json.dumps(record.to_dict(), indent=2, sort_keys=True))
            if record.state.value == "failed":
                raise SystemExit(1)
            return

        if args.command == "results":
            found = results(config, args.revision)
            print(json.dumps([item.to_dict() for item in found], indent=2, sort_keys=True))
            return
    except ConfigError as exc:
        _fail(exc.diagnostics.to_list())


def _with_root(config, base_dir: Path):
    root = Path(config.get("root") or ".")
    if not root.is_absolute():
        config["root"] = str((base_dir / root).resolve())
    return config


def _fail(diagnostics) -> None:
    print(json.dumps(diagnostics, indent=2, sort_keys=True))
    raise SystemExit(1)


if __name__ == "__main__":
    main()
