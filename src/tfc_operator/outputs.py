"""Workspace output extraction.

Outputs are read from the workspace's current state document, converted to
strings and published to the downstream output store.

STRINGIFICATION:
Every output value is converted by ``convert_value_to_string`` according to
its declared type (state v4 records a type expression next to each value):
- null → "" (empty results are dropped by the caller)
- string → quoted, unless it holds a JSON array or object, which is
  stringified as the decoded value
- bool → true / false
- number → fixed-point decimal text, never scientific notation
- list, set, tuple → [elem,elem]
- map → {"key":value,...} in key order, empty keys or values skipped
- object → {"attr":value,...} with attribute names sorted, empty values skipped

The conversion is pure: equal inputs always give byte-identical text.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .models import OutputStatus, WorkspaceResource
from .store import KeyValueStore
from .tfc_client import ResourceNotFoundError, TerraformCloudClient


class OutputExtractionError(Exception):
    """Raised when outputs cannot be read from the workspace state."""

    pass


# =============================================================================
# Type expressions
# =============================================================================


PRIMITIVE_KINDS = frozenset({"string", "number", "bool"})
COLLECTION_KINDS = frozenset({"list", "set", "map"})


@dataclass(frozen=True)
class CtyType:
    """A value type as recorded in Terraform state.

    ``kind`` is one of string, number, bool, list, set, map, object, tuple
    or dynamic. Collections carry ``element``; objects carry
    ``attributes``; tuples carry ``elements``.
    """

    kind: str
    element: CtyType | None = None
    attributes: tuple[tuple[str, CtyType], ...] = ()
    elements: tuple[CtyType, ...] = ()

    @classmethod
    def parse(cls, expr: Any) -> CtyType:
        """Parse a JSON type expression such as ``["list", "string"]``.

        Raises:
            OutputExtractionError: If the expression is malformed.
        """
        if isinstance(expr, str):
            if expr in PRIMITIVE_KINDS or expr == "dynamic":
                return cls(expr)
            raise OutputExtractionError(f"Unknown type: {expr!r}")

        if not isinstance(expr, list) or len(expr) != 2 or not isinstance(expr[0], str):
            raise OutputExtractionError(f"Malformed type expression: {expr!r}")

        kind, arg = expr
        if kind in COLLECTION_KINDS:
            return cls(kind, element=cls.parse(arg))
        if kind == "object":
            if not isinstance(arg, dict):
                raise OutputExtractionError(f"Malformed object type: {expr!r}")
            return cls(
                "object",
                attributes=tuple(sorted((name, cls.parse(t)) for name, t in arg.items())),
            )
        if kind == "tuple":
            if not isinstance(arg, list):
                raise OutputExtractionError(f"Malformed tuple type: {expr!r}")
            return cls("tuple", elements=tuple(cls.parse(t) for t in arg))
        raise OutputExtractionError(f"Unknown type: {kind!r}")


STRING = CtyType("string")
NUMBER = CtyType("number")
BOOL = CtyType("bool")
DYNAMIC = CtyType("dynamic")


def implied_type(value: Any) -> CtyType:
    """Infer the type a decoded JSON value would have.

    Arrays become tuples and objects become objects, matching how
    Terraform types JSON it has not been told the type of.
    """
    if value is None:
        return DYNAMIC
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, (int, float, Decimal)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    if isinstance(value, list):
        return CtyType("tuple", elements=tuple(implied_type(v) for v in value))
    if isinstance(value, dict):
        return CtyType(
            "object",
            attributes=tuple(sorted((str(k), implied_type(v)) for k, v in value.items())),
        )
    raise OutputExtractionError(f"Unsupported value: {type(value).__name__}")


def _decode_json(text: str) -> Any:
    return json.loads(text, parse_float=Decimal)


# =============================================================================
# Stringification
# =============================================================================


def _number_to_string(value: Any) -> str:
    number = value if isinstance(value, Decimal) else Decimal(str(value))
    return format(number.normalize(), "f")


def _string_to_string(text: str) -> str:
    try:
        decoded = _decode_json(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, (list, dict)) and text.strip() != "null":
        return convert_value_to_string(decoded, implied_type(decoded))
    return f'"{text}"'


def _sequence_to_string(value: Any, ty: CtyType) -> str:
    if not isinstance(value, list):
        return ""
    parts = []
    for i, item in enumerate(value):
        if ty.kind == "tuple":
            item_type = ty.elements[i] if i < len(ty.elements) else DYNAMIC
        else:
            item_type = ty.element or DYNAMIC
        parts.append(convert_value_to_string(item, item_type))
    joined = ",".join(parts)
    if not joined:
        return ""
    return f"[{joined}]"


def _map_to_string(value: Any, ty: CtyType) -> str:
    if not isinstance(value, dict):
        return ""
    entries = []
    for key in sorted(value):
        k = convert_value_to_string(str(key), STRING)
        v = convert_value_to_string(value[key], ty.element or DYNAMIC)
        if k == "" or v == "":
            continue
        entries.append(f"{k}:{v}")
    if not entries:
        return ""
    return "{" + ",".join(entries) + "}"


def _object_to_string(value: Any, ty: CtyType) -> str:
    if not isinstance(value, dict):
        return ""
    entries = []
    for attr, attr_type in ty.attributes:
        v = convert_value_to_string(value.get(attr), attr_type)
        if v == "":
            continue
        entries.append(f'"{attr}":{v}')
    if not entries:
        return ""
    return "{" + ",".join(entries) + "}"


def convert_value_to_string(value: Any, ty: CtyType | None = None) -> str:
    """Convert a typed output value to its string form.

    Args:
        value: Decoded JSON value (numbers as int or Decimal).
        ty: Declared type; inferred from the value when omitted or dynamic.

    Returns:
        The stringified value, "" for null or empty results.
    """
    if value is None:
        return ""
    if ty is None or ty.kind == "dynamic":
        ty = implied_type(value)

    match ty.kind:
        case "string":
            return _string_to_string(str(value))
        case "bool":
            return "true" if value else "false"
        case "number":
            return _number_to_string(value)
        case "list" | "set" | "tuple":
            return _sequence_to_string(value, ty)
        case "map":
            return _map_to_string(value, ty)
        case "object":
            return _object_to_string(value, ty)
    return ""


# =============================================================================
# State documents
# =============================================================================


def parse_state_outputs(data: bytes) -> dict[str, tuple[Any, CtyType]]:
    """Read root module output values and their types from a state document.

    Supports state format version 4 (typed outputs) and the legacy
    per-module layout of earlier versions, whose values are typed by
    inference.

    Raises:
        OutputExtractionError: If the document is not valid state JSON.
    """
    try:
        state = json.loads(data, parse_float=Decimal)
    except ValueError as e:
        raise OutputExtractionError(f"Could not read state file: {e}") from e

    if not isinstance(state, dict):
        raise OutputExtractionError("Could not read state file: not a JSON object")

    version = state.get("version", 0)
    if isinstance(version, int) and version >= 4:
        raw_outputs = state.get("outputs") or {}
        return {
            name: (
                output.get("value"),
                CtyType.parse(output["type"]) if "type" in output else DYNAMIC,
            )
            for name, output in raw_outputs.items()
            if isinstance(output, dict)
        }

    for module in state.get("modules") or []:
        if module.get("path") == ["root"]:
            return {
                name: (output.get("value"), DYNAMIC)
                for name, output in (module.get("outputs") or {}).items()
                if isinstance(output, dict)
            }
    return {}


def outputs_from_state(data: bytes) -> list[OutputStatus]:
    """Stringify every output in a state document, dropping empty values.

    Results are sorted by key.
    """
    outputs = []
    for key, (value, ty) in parse_state_outputs(data).items():
        text = convert_value_to_string(value, ty)
        if text != "":
            outputs.append(OutputStatus(key=key, value=text))
    return sorted(outputs, key=lambda o: o.key)


# =============================================================================
# Extractor
# =============================================================================


class OutputExtractor:
    """Reads workspace outputs and publishes them downstream."""

    def __init__(
        self,
        client: TerraformCloudClient,
        output_store: KeyValueStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = output_store
        self._logger = logger or logging.getLogger(__name__)

    async def extract(self, workspace_id: str) -> list[OutputStatus]:
        """Download the current state and stringify its outputs.

        A workspace without any state version has no outputs.
        """
        try:
            download_url = await self._client.current_state_download_url(workspace_id)
        except ResourceNotFoundError:
            return []
        if not download_url:
            raise OutputExtractionError(
                f"Workspace {workspace_id} has no state to download"
            )
        data = await self._client.download_state(download_url)
        return outputs_from_state(data)

    def publish(self, resource: WorkspaceResource, outputs: list[OutputStatus]) -> bool:
        """Publish outputs to the output store.

        An entry published under a different name or namespace on an
        earlier pass is deleted first. Records the published location on
        the resource status.

        Returns:
            True if the store or the recorded location changed.
        """
        namespace = resource.metadata.namespace
        name = resource.output_secret_name
        status = resource.status
        changed = False

        previous = (status.output_secret_namespace, status.output_secret_name)
        if status.output_secret_name and previous != (namespace, name):
            removed = self._store.delete(
                status.output_secret_namespace or namespace, status.output_secret_name
            )
            self._logger.info(
                "Removed previous output store entry",
                extra={
                    "resource": resource.key,
                    "previous": "/".join(previous),
                    "found": removed,
                },
            )
            changed = True

        data = {o.key: o.value for o in outputs}
        if self._store.get(namespace, name) != data:
            self._store.put(namespace, name, data)
            self._logger.info(
                "Published outputs",
                extra={
                    "resource": resource.key,
                    "output_store": f"{namespace}/{name}",
                    "output_keys": sorted(data),
                },
            )
            changed = True

        if previous != (namespace, name):
            status.output_secret_namespace = namespace
            status.output_secret_name = name
            changed = True
        return changed
