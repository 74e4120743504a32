"""
Intake Validator - compiles a template's intake schema into a validator.

Template intake schemas are JSON-Schema-shaped trees stored on the template:

    {
        "type": "object",
        "required": ["client_name"],
        "properties": {
            "client_name": {"type": "string", "title": "Client Name"},
            "budget_usd": {"type": "number"},
            "billing_model": {"type": "string", "enum": ["fixed", "tm"]},
            "contacts": {"type": "array", "items": {"type": "string"}},
            "site": {"type": "object", "required": ["city"], "properties": {...}}
        }
    }

The schema is compiled once into a closed tree of ScalarField / ArrayField /
ObjectField nodes; an unknown type fails at compile time, not at submit time.

VALIDATION RULES:
- enum: value must equal a listed member (case-sensitive)
- string: non-empty unless optional ("" on an optional field is dropped)
- number / integer: numeric strings are coerced
- boolean: literal true / false only
- array: every element validated against the item schema
- object: nested fields validated recursively; only the section's own
  `required` list applies inside it
- undeclared fields are dropped unless the object sets additionalProperties: false
- all errors are collected before returning

FIELD ORDER (errors, normalized output, form rendering):
required fields in the order of the `required` list, then the remaining
fields by their `x-order` hint and then by name. Stored property order is
never relied on.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from utils.errors import AppError

logger = logging.getLogger(__name__)

SCALAR_TYPES = ("string", "number", "integer", "boolean")
REQUIRED_MESSAGE = "This field is required"

_MISSING = object()


# ============================================================================
# ERRORS
# ============================================================================

@dataclass(frozen=True)
class FieldError:
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}


class SchemaDefinitionError(AppError):
    """The template's intake schema itself is invalid."""
    error_code = "INVALID_SCHEMA"
    status_code = 400


class IntakeValidationError(AppError):
    """Submitted intake data does not satisfy the template schema."""
    error_code = "VALIDATION_FAILED"
    status_code = 400

    def __init__(self, field_errors: List[FieldError]):
        self.field_errors = list(field_errors)
        summary = "; ".join(f"{e.path}: {e.message}" for e in self.field_errors)
        super().__init__(f"Intake validation failed: {summary}")

    def to_dict(self):
        data = super().to_dict()
        data["field_errors"] = [e.to_dict() for e in self.field_errors]
        return data


# ============================================================================
# COMPILED SCHEMA NODES
# ============================================================================

@dataclass(frozen=True)
class ScalarField:
    kind: str
    enum: Optional[Tuple[Any, ...]] = None
    title: Optional[str] = None
    description: Optional[str] = None
    format: Optional[str] = None


@dataclass(frozen=True)
class ArrayField:
    items: Optional["FieldNode"] = None
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class ObjectField:
    properties: Tuple[Tuple[str, "FieldNode"], ...] = ()
    required: frozenset = frozenset()
    strict: bool = False
    title: Optional[str] = None
    description: Optional[str] = None


FieldNode = Union[ScalarField, ArrayField, ObjectField]


@dataclass
class ValidationResult:
    ok: bool
    data: Optional[Dict[str, Any]] = None
    errors: List[FieldError] = field(default_factory=list)


def _order_hint(prop: Any) -> float:
    if isinstance(prop, dict):
        hint = prop.get("x-order")
        if isinstance(hint, (int, float)) and not isinstance(hint, bool):
            return float(hint)
    return math.inf


def ordered_field_names(properties: Dict[str, Any], required: List[str]) -> List[str]:
    """Required fields first (required-list order), then by x-order hint and name."""
    names = []
    for name in required:
        if name in properties and name not in names:
            names.append(name)
    rest = [name for name in properties if name not in names]
    rest.sort(key=lambda name: (_order_hint(properties[name]), name))
    return names + rest


def _compile_node(prop: Any, path: str) -> FieldNode:
    if not isinstance(prop, dict):
        raise SchemaDefinitionError(f"Schema for '{path}' must be an object")

    kind = prop.get("type")
    if kind is None and "properties" in prop:
        kind = "object"
    title = prop.get("title")
    description = prop.get("description")

    if kind in SCALAR_TYPES:
        enum = prop.get("enum")
        if enum is not None:
            if not isinstance(enum, list) or not enum:
                raise SchemaDefinitionError(f"enum for '{path}' must be a non-empty list")
            enum = tuple(enum)
        return ScalarField(kind=kind, enum=enum, title=title, description=description, format=prop.get("format"))

    if kind == "array":
        items = prop.get("items")
        item_node = _compile_node(items, f"{path}.items") if items is not None else None
        return ArrayField(items=item_node, title=title, description=description)

    if kind == "object":
        return _compile_object(prop, path)

    raise SchemaDefinitionError(f"Unsupported type for '{path}': {kind!r}")


def _compile_object(prop: Dict[str, Any], path: str) -> ObjectField:
    properties = prop.get("properties") or {}
    if not isinstance(properties, dict):
        raise SchemaDefinitionError(f"properties for '{path or 'root'}' must be an object")
    required = prop.get("required") or []
    if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
        raise SchemaDefinitionError(f"required for '{path or 'root'}' must be a list of field names")
    undefined = [r for r in required if r not in properties]
    if undefined:
        raise SchemaDefinitionError(
            f"required fields without a definition in '{path or 'root'}': {', '.join(undefined)}"
        )

    compiled = []
    for name in ordered_field_names(properties, required):
        child_path = f"{path}.{name}" if path else name
        compiled.append((name, _compile_node(properties[name], child_path)))

    return ObjectField(
        properties=tuple(compiled),
        required=frozenset(required),
        strict=prop.get("additionalProperties") is False,
        title=prop.get("title"),
        description=prop.get("description"),
    )


def compile_schema(schema: Any, strict: Optional[bool] = None) -> "IntakeValidator":
    """Compile a template intake schema. Raises SchemaDefinitionError."""
    if not isinstance(schema, dict):
        raise SchemaDefinitionError("Template intake schema must be a JSON Schema object")
    # Same rule as nested nodes: properties without a type means an object
    kind = schema.get("type", "object" if "properties" in schema else None)
    if kind != "object":
        raise SchemaDefinitionError(f"Template intake schema must have type 'object', got {kind!r}")
    root = _compile_object(schema, "")
    if strict is not None:
        root = ObjectField(
            properties=root.properties,
            required=root.required,
            strict=strict,
            title=root.title,
            description=root.description,
        )
    return IntakeValidator(root)


# ============================================================================
# VALIDATOR
# ============================================================================

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce_number(value: Any, integer: bool) -> Any:
    if isinstance(value, bool):
        return _MISSING
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                return _MISSING
    if not isinstance(value, (int, float)):
        return _MISSING
    if isinstance(value, float) and not math.isfinite(value):
        return _MISSING
    if integer:
        if isinstance(value, float):
            if not value.is_integer():
                return _MISSING
            value = int(value)
    return value


def _enum_member(value: Any, enum: Tuple[Any, ...]) -> bool:
    for member in enum:
        # bool is an int subclass; True must not match 1
        if isinstance(member, bool) or isinstance(value, bool):
            if type(member) is type(value) and member == value:
                return True
        elif member == value:
            return True
    return False


class IntakeValidator:
    """Runtime validator/normalizer for one compiled intake schema."""

    def __init__(self, root: ObjectField):
        self.root = root

    def validate(self, data: Any) -> ValidationResult:
        errors: List[FieldError] = []
        normalized = self._validate_object(self.root, data, "", errors)
        if errors:
            return ValidationResult(ok=False, errors=errors)
        return ValidationResult(ok=True, data=normalized)

    def validate_or_raise(self, data: Any) -> Dict[str, Any]:
        result = self.validate(data)
        if not result.ok:
            raise IntakeValidationError(result.errors)
        return result.data

    def describe_fields(self) -> List[Dict[str, Any]]:
        """Ordered field descriptors for rendering the intake form."""
        return self._describe_object(self.root, "")

    # ------------------------------------------------------------------

    def _validate_object(self, node: ObjectField, value: Any, path: str, errors: List[FieldError]) -> Any:
        if not isinstance(value, dict):
            errors.append(FieldError(path or "root", "Expected an object"))
            return _MISSING

        out: Dict[str, Any] = {}
        for name, child in node.properties:
            child_path = f"{path}.{name}" if path else name
            required = name in node.required
            raw = value.get(name)
            if _is_blank(raw) or (isinstance(raw, list) and not raw and required):
                if required:
                    errors.append(FieldError(child_path, REQUIRED_MESSAGE))
                continue
            normalized = self._validate_node(child, raw, child_path, errors)
            if normalized is not _MISSING:
                out[name] = normalized

        if node.strict:
            declared = {name for name, _ in node.properties}
            for name in sorted(k for k in value if k not in declared):
                child_path = f"{path}.{name}" if path else name
                errors.append(FieldError(child_path, "Unexpected field"))
        return out

    def _validate_node(self, node: FieldNode, value: Any, path: str, errors: List[FieldError]) -> Any:
        if isinstance(node, ObjectField):
            return self._validate_object(node, value, path, errors)
        if isinstance(node, ArrayField):
            return self._validate_array(node, value, path, errors)
        return self._validate_scalar(node, value, path, errors)

    def _validate_array(self, node: ArrayField, value: Any, path: str, errors: List[FieldError]) -> Any:
        if not isinstance(value, list):
            errors.append(FieldError(path, "Expected a list"))
            return _MISSING
        if node.items is None:
            return list(value)
        items = []
        for index, item in enumerate(value):
            item_path = f"{path}.{index}"
            if _is_blank(item):
                errors.append(FieldError(item_path, REQUIRED_MESSAGE))
                continue
            normalized = self._validate_node(node.items, item, item_path, errors)
            if normalized is not _MISSING:
                items.append(normalized)
        return items

    def _validate_scalar(self, node: ScalarField, value: Any, path: str, errors: List[FieldError]) -> Any:
        if node.kind == "string":
            if not isinstance(value, str):
                errors.append(FieldError(path, "Expected a string"))
                return _MISSING
        elif node.kind in ("number", "integer"):
            coerced = _coerce_number(value, integer=node.kind == "integer")
            if coerced is _MISSING:
                expected = "an integer" if node.kind == "integer" else "a number"
                errors.append(FieldError(path, f"Expected {expected}"))
                return _MISSING
            value = coerced
        elif node.kind == "boolean":
            if not isinstance(value, bool):
                errors.append(FieldError(path, "Expected true or false"))
                return _MISSING

        if node.enum is not None and not _enum_member(value, node.enum):
            options = ", ".join(str(member) for member in node.enum)
            errors.append(FieldError(path, f"Must be one of: {options}"))
            return _MISSING
        return value

    def _describe_object(self, node: ObjectField, path: str) -> List[Dict[str, Any]]:
        fields = []
        for name, child in node.properties:
            child_path = f"{path}.{name}" if path else name
            descriptor: Dict[str, Any] = {
                "key": name,
                "path": child_path,
                "required": name in node.required,
                "title": child.title or name,
                "description": child.description,
            }
            if isinstance(child, ScalarField):
                descriptor.update({
                    "type": child.kind,
                    "enum": list(child.enum) if child.enum else None,
                    "format": child.format,
                })
            elif isinstance(child, ArrayField):
                descriptor["type"] = "array"
                descriptor["item_type"] = (
                    child.items.kind if isinstance(child.items, ScalarField)
                    else "array" if isinstance(child.items, ArrayField)
                    else "object" if child.items is not None else None
                )
            else:
                descriptor["type"] = "object"
                descriptor["fields"] = self._describe_object(child, child_path)
            fields.append(descriptor)
        return fields
