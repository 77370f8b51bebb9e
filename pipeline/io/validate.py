from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from jsonschema.validators import Draft202012Validator as Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

# Repo-relative schemas directory
SCHEMAS_ROOT = Path(__file__).resolve().parents[1] / "schemas"


def load_schema(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        schema = yaml.safe_load(f)
    Validator.check_schema(schema)
    return schema


def _registry_for(schemas_root: Path) -> Registry:
    resources: list[tuple[str, Resource]] = []
    for path in sorted(schemas_root.resolve().glob("*.yaml")):
        with path.open("r", encoding="utf-8") as f:
            s = yaml.safe_load(f)
        resource = Resource.from_contents(s, default_specification=DRAFT202012)
        resources.append((path.resolve().as_uri(), resource))
        sid = s.get("$id") if isinstance(s, dict) else None
        if sid:
            resources.append((str(sid), resource))
    return Registry().with_resources(resources)


def validate_obj(
    schema: dict[str, Any], obj: dict[str, Any], *, schemas_root: Path | None = None
) -> None:
    if schemas_root is None:
        Validator(schema).validate(obj)
        return
    Validator(schema, registry=_registry_for(schemas_root)).validate(obj)
