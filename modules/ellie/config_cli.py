#!/usr/bin/env python3
"""Config CLI for Ellie: inspect and edit the JSON config file."""

from __future__ import annotations

import argparse
import json
import re
from dataclasses import asdict
from pathlib import Path
from typing import Any

from lib.config import get_ellie_home


def _config_path() -> Path:
    return get_ellie_home() / "config" / "ellie.json"


def _load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be an object: {path}")
    return data


def _save_config(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    tmp.replace(path)


def _segments(path: str) -> list[str]:
    return [seg for seg in str(path).split(".") if seg]


def _get(data: Any, dotted: str, default: Any = None) -> Any:
    cur: Any = data
    for seg in _segments(dotted):
        if not isinstance(cur, dict) or seg not in cur:
            return default
        cur = cur[seg]
    return cur


def _set(data: dict[str, Any], dotted: str, value: Any) -> None:
    parts = _segments(dotted)
    if not parts:
        raise ValueError("Empty key path")
    cur: Any = data
    for seg in parts[:-1]:
        if seg not in cur:
            cur[seg] = {}
        elif not isinstance(cur[seg], dict):
            raise ValueError(f"Cannot set {dotted}: intermediate path '{seg}' is not an object")
        cur = cur[seg]
    cur[parts[-1]] = value


def _effective() -> dict[str, Any]:
    from config import reload_config
    return asdict(reload_config())


def _print_summary(path: Path, effective: dict[str, Any]) -> None:
    print("Ellie Configuration")
    print(str(path))
    print()
    print(f"llm provider:      {_get(effective, 'models.llm_provider')}")
    print(f"gateway tier:      {_get(effective, 'models.gateway_tier')}")
    print(f"embeddings:        {_get(effective, 'embeddings.provider')} / {_get(effective, 'embeddings.model')}")
    print(f"database:          {_get(effective, 'database.path')}")
    print(f"fail hard:         {_get(effective, 'retrieval.fail_hard')}")
    print(f"injection:         threshold {_get(effective, 'injection.threshold')}, "
          f"max {_get(effective, 'injection.max_items')} items")
    print(f"dedup threshold:   {_get(effective, 'dedup.similarity_threshold')}")
    print(f"ingestion mode:    {_get(effective, 'ingestion.mode')} (llm {_get(effective, 'ingestion.use_llm')})")
    print(f"tuner interval:    {_get(effective, 'tuner.interval_hours')}h")


def parse_literal(raw: str) -> Any:
    value = raw.strip()
    if value.lower() == "null":
        return None
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if value.startswith("{") or value.startswith("["):
            return json.loads(value)
        if re.fullmatch(r"[-+]?(?:\d+\.\d*|\d*\.\d+)", value):
            return float(value)
        if re.fullmatch(r"[-+]?\d+", value):
            return int(value)
    except ValueError:
        pass
    return value


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ellie config helper")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("show", help="Show effective settings")
    sub.add_parser("path", help="Print config path")

    get_p = sub.add_parser("get", help="Print an effective setting by dotted path")
    get_p.add_argument("key", help="Dotted path (e.g. dedup.similarity_threshold)")

    set_p = sub.add_parser("set", help="Set a dotted key path in the config file")
    set_p.add_argument("key", help="Dotted path (e.g. injection.threshold)")
    set_p.add_argument("value", help="Value (string/number/true/false/json)")

    args = parser.parse_args(argv)
    cmd = args.cmd or "show"

    path = _config_path()
    if cmd == "path":
        print(str(path))
        return 0

    if cmd == "show":
        _print_summary(path, _effective())
        return 0

    if cmd == "get":
        missing = object()
        value = _get(_effective(), args.key, missing)
        if value is missing:
            print(f"Unknown key: {args.key}")
            return 1
        print(json.dumps(value) if isinstance(value, (dict, list)) else value)
        return 0

    if cmd == "set":
        try:
            data = _load_config(path)
            _set(data, args.key, parse_literal(args.value))
            _save_config(path, data)
        except (OSError, ValueError) as err:
            print(f"Failed to set {args.key}: {err}")
            return 1
        print(f"Set {args.key} in {path}")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
