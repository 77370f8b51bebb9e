from __future__ import annotations

import argparse
import hashlib
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd
from jsonschema import ValidationError

from pattern import PatternError, load_pattern, pattern_to_dict
from pipeline.io.files import ensure_dir, write_json, write_parquet
from pipeline.io.validate import SCHEMAS_ROOT, load_schema, validate_obj

from .margins import equations_frame
from .solver import ENGINES, BackendFactory, detect_capability, load_backend_factory
from .staged import optimize
from .types import (
    ErrorCodes,
    LayoutInvariantError,
    OptimizationResult,
    OptimizerError,
    OptimizerSettings,
)

logger = logging.getLogger("processes.optimizer.adapter")

KNOWN_KEYS = {"engine", "time_limit", "round_digits", "pin_epsilon", "solver_msg"}


def _utc_now_iso() -> str:
    # Millisecond precision per schema pattern
    now = datetime.now(timezone.utc)
    ms = int(now.microsecond / 1000)
    return f"{now.strftime('%Y-%m-%dT%H:%M:%S')}.{ms:03d}Z"


def _sha256_of_path(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _coerce_scalar(val: str) -> int | float | bool | str:
    lower = val.lower()
    if lower in ("true", "false"):
        return lower == "true"
    try:
        if "." in val or "e" in lower:
            return float(val)
        return int(val)
    except ValueError:
        return val


def _parse_kv(inline_kv: Sequence[str] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for item in inline_kv or []:
        if "=" not in item:
            continue
        k, v = item.split("=", 1)
        out[k.strip()] = _coerce_scalar(v.strip())
    return out


def load_config(
    config_path: Path | None, inline_kv: Sequence[str] | None = None
) -> dict[str, Any]:
    cfg: dict[str, Any] = {}
    if config_path:
        text = config_path.read_text(encoding="utf-8")
        if config_path.suffix.lower() in (".yaml", ".yml"):
            import yaml  # lazy

            cfg = dict(yaml.safe_load(text) or {})
        else:
            cfg = dict(json.loads(text))
    cfg.update(_parse_kv(inline_kv))
    return cfg


def map_config_to_settings(config: Mapping[str, Any]) -> OptimizerSettings:
    """Translate user config to optimizer settings; unknown keys are ignored."""
    try:
        settings = OptimizerSettings.from_dict(dict(config))
        settings.round_digits = int(settings.round_digits)
        settings.pin_epsilon = float(settings.pin_epsilon)
        if settings.time_limit is not None:
            settings.time_limit = float(settings.time_limit)
    except (TypeError, ValueError) as e:
        raise OptimizerError(
            code=ErrorCodes.CONFIG_ERROR,
            message=f"Invalid optimizer config: {e}",
            details={"config": dict(config)},
        ) from e
    if settings.time_limit is not None and settings.time_limit <= 0:
        raise OptimizerError(
            code=ErrorCodes.CONFIG_ERROR,
            message=f"time_limit must be positive, got {settings.time_limit}",
        )
    if settings.engine not in ENGINES:
        raise OptimizerError(
            code=ErrorCodes.CONFIG_ERROR,
            message=f"Unknown engine '{settings.engine}'",
            user_message=f"Unknown solver engine '{settings.engine}'. Choose one of: {', '.join(ENGINES)}.",
        )
    return settings


def _build_updates_df(run_id: str, result: OptimizationResult) -> pd.DataFrame:
    rows = [
        {
            "run_id": run_id,
            "event_id": u.event_id,
            "variable": int(u.variable),
            "old_x": float(u.old_x),
            "new_x": float(u.new_x),
        }
        for u in result.updates
    ]
    return pd.DataFrame(rows, columns=["run_id", "event_id", "variable", "old_x", "new_x"])


def _build_equations_df(run_id: str, result: OptimizationResult) -> pd.DataFrame:
    df = equations_frame(result.system)
    df.insert(0, "run_id", run_id)
    df["resolved"] = [k in result.partition.resolved for k in df["equation"]]
    df["final_margin"] = [
        result.system.equations[k].margin(result.values) for k in df["equation"]
    ]
    return df


def _load_backend_factory() -> BackendFactory:
    """Resolve the MILP backend factory; tests monkeypatch this."""
    return load_backend_factory()


def _schema_version(schemas_root: Path, name: str) -> str:
    schema = load_schema(schemas_root / f"{name}.schema.yaml")
    return str(schema.get("version", "0.0.0"))


def run_adapter(
    *,
    pattern_path: Path,
    config_path: Path | None,
    config_kv: Sequence[str] | None,
    out_root: Path,
    tag: str | None = None,
    schemas_root: Path | None = None,
) -> dict[str, Any]:
    created_ts = _utc_now_iso()
    schemas_root = schemas_root or SCHEMAS_ROOT

    try:
        pat = load_pattern(pattern_path, schemas_root=schemas_root)
    except PatternError as e:
        raise OptimizerError(
            code=ErrorCodes.INVALID_PATTERN,
            message=str(e),
            user_message=f"Invalid pattern: {e}",
            details={"path": str(pattern_path)},
        ) from e

    cfg = load_config(config_path, config_kv)
    settings = map_config_to_settings(cfg)
    capability = detect_capability(settings.engine)
    backend = _load_backend_factory()(settings) if capability.available else None
    result = optimize(pat, capability, settings, backend=backend)

    # Portable run_id: YYYYMMDD_HHMMSS_<shorthash>
    pattern_sha = _sha256_of_path(pattern_path)
    cfg_json = json.dumps(cfg, sort_keys=True, separators=(",", ":"))
    cfg_sha = hashlib.sha256(cfg_json.encode("utf-8")).hexdigest()
    ts = datetime.now(timezone.utc)
    short_hash = hashlib.sha256(f"{pattern_sha}|{cfg_sha}".encode()).hexdigest()[:8]
    run_id = f"{ts.strftime('%Y%m%d_%H%M%S')}_{short_hash}"

    inputs_list: list[dict[str, Any]] = [
        {"path": str(pattern_path), "content_sha256": pattern_sha, "role": "pattern"}
    ]
    if config_path is not None and config_path.exists():
        inputs_list.append(
            {
                "path": str(config_path),
                "content_sha256": _sha256_of_path(config_path),
                "role": "config",
            }
        )
    if config_kv:
        kv_json = json.dumps(_parse_kv(config_kv), sort_keys=True, separators=(",", ":"))
        inputs_list.append(
            {
                "path": "inline:config_kv",
                "content_sha256": hashlib.sha256(kv_json.encode("utf-8")).hexdigest(),
                "role": "config",
            }
        )

    updates_df = _build_updates_df(run_id, result)
    equations_df = _build_equations_df(run_id, result)
    pattern_doc = pattern_to_dict(result.pattern)

    run_dir = out_root / "runs" / "optimizer" / run_id
    artifacts_dir = run_dir / "artifacts"
    updates_path = artifacts_dir / "updates.parquet"
    equations_path = artifacts_dir / "equations.parquet"
    pattern_out = artifacts_dir / "pattern.json"

    manifest = {
        "schema_version": _schema_version(schemas_root, "manifest"),
        "run_id": run_id,
        "run_type": "optimizer",
        "created_ts": created_ts,
        "inputs": inputs_list,
        "config": {**cfg, "resolved": settings.to_dict()},
        "outputs": [
            {"path": str(updates_path), "kind": "optimizer_updates"},
            {"path": str(equations_path), "kind": "optimizer_equations"},
            {"path": str(pattern_out), "kind": "optimized_pattern"},
        ],
        "summary": {
            "variables": len(result.system.variables),
            "equations": len(result.system.equations),
            "stages": result.stages,
            "updates": len(result.updates),
            "initial_margin": result.initial_margin,
            "final_margin": result.final_margin,
        },
        "tags": [tag] if tag else [],
    }

    # Validate everything before any write (fail fast)
    updates_schema = load_schema(schemas_root / "optimizer_updates.schema.yaml")
    for row in updates_df.to_dict(orient="records"):
        validate_obj(updates_schema, row, schemas_root=schemas_root)
    pattern_schema = load_schema(schemas_root / "pattern_snapshot.schema.yaml")
    validate_obj(pattern_schema, pattern_doc, schemas_root=schemas_root)
    manifest_schema = load_schema(schemas_root / "manifest.schema.yaml")
    validate_obj(manifest_schema, manifest, schemas_root=schemas_root)

    ensure_dir(artifacts_dir)
    write_parquet(updates_df, updates_path)
    write_parquet(equations_df, equations_path)
    write_json(pattern_doc, pattern_out)
    write_json(manifest, run_dir / "manifest.json")
    logger.info(json.dumps({"event": "run_written", "run_id": run_id}))

    return {
        "run_id": run_id,
        "updates_path": str(updates_path),
        "equations_path": str(equations_path),
        "pattern_path": str(pattern_out),
        "manifest_path": str(run_dir / "manifest.json"),
        "update_count": int(len(updates_df)),
        "equation_count": int(len(equations_df)),
        "stages": result.stages,
        "initial_margin": result.initial_margin,
        "final_margin": result.final_margin,
    }


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="python -m processes.optimizer")
    p.add_argument("--pattern", type=Path, required=True, help="Laid-out pattern snapshot (JSON/YAML)")
    p.add_argument("--config", type=Path)
    p.add_argument("--config-kv", nargs="*", help="Inline overrides key=value")
    p.add_argument("--out-root", type=Path, default=Path("data"))
    p.add_argument("--tag", type=str)
    p.add_argument(
        "--schemas-root",
        type=Path,
        help="Override schemas root (defaults to repo-relative pipeline/schemas)",
    )
    p.add_argument("--verbose", action="store_true")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)
    try:
        result = run_adapter(
            pattern_path=args.pattern,
            config_path=args.config,
            config_kv=args.config_kv,
            out_root=args.out_root,
            tag=args.tag,
            schemas_root=args.schemas_root,
        )
    except OptimizerError as e:
        print(f"[optimizer] {e.code.value}: {e.user_message}", file=sys.stderr)
        return 2
    except ValidationError as e:
        print(f"[optimizer] schema validation failed: {e.message}", file=sys.stderr)
        return 1
    except LayoutInvariantError as e:
        logger.error(json.dumps({"event": "layout_invariant", "error": str(e)}))
        print(f"[optimizer] internal error: {e}", file=sys.stderr)
        return 3
    if args.verbose:
        cfg = load_config(args.config, args.config_kv)
        unknown = sorted(set(cfg.keys()) - KNOWN_KEYS)
        if unknown:
            print(
                f"[optimizer] Warning: unknown config keys ignored: {', '.join(unknown)}",
                file=sys.stderr,
            )
        print(f"[optimizer] manifest: {result.get('manifest_path')}", file=sys.stderr)
        print(
            f"[optimizer] equations: {result.get('equation_count')}, "
            f"stages: {result.get('stages')}, updates: {result.get('update_count')}",
            file=sys.stderr,
        )
        print(
            f"[optimizer] worst-case margin: {result.get('initial_margin')} -> "
            f"{result.get('final_margin')}",
            file=sys.stderr,
        )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
