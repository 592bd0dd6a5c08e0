"""JSON Schema validation for settlement wire formats.

Schemas live in pomsettle/schemas/*.schema.json and cross-reference each
other through their $id URIs, resolved with a referencing registry.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SCHEMA_BASE_URI = "https://schemas.momentum-sez.org/pomsettle/"

WIRE_KINDS: Dict[str, str] = {
    "treasury-snapshot": "treasury-snapshot.schema.json",
    "pom-delta": "pom-delta.schema.json",
    "withdrawal-intents": "withdrawal-intents.schema.json",
    "settlement-confirmation": "settlement-confirmation.schema.json",
}


def _load_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of every bundled schema, keyed by $id."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = _load_json(schema_path)
        schema_id = schema.get("$id") or SCHEMA_BASE_URI + schema_path.name
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


def load_schema(kind: str) -> Dict[str, Any]:
    try:
        filename = WIRE_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown wire kind '{kind}'; expected one of {sorted(WIRE_KINDS)}") from None
    return _load_json(SCHEMAS_DIR / filename)


@lru_cache(maxsize=None)
def schema_validator(kind: str) -> Draft202012Validator:
    return Draft202012Validator(load_schema(kind), registry=_schema_registry())


def validate_wire(kind: str, obj: Any) -> List[str]:
    """Validate a wire object.

    Args:
        kind: One of WIRE_KINDS
        obj: Decoded JSON value

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(kind)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
