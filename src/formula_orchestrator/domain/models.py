"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from decimal import Decimal
from enum import Enum, StrEnum
from fractions import Fraction
from types import MappingProxyType
from typing import NoReturn, TypeVar, cast

from formula_orchestrator.constants import (
    DEFAULT_FORMULA_VERSION,
    RECORD_SCHEMA_VERSION,
    RESULT_OUTPUT_KEY,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_SOURCE_TEXT = 4 * 1024 * 1024
_MAX_TYPE_DEPTH = 16

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


class BaseType(StrEnum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    OBJECT = "object"


class RoundingStrategy(StrEnum):
    ROUND = "round"
    FLOOR = "floor"
    CEIL = "ceil"
    TRUNC = "trunc"


class CreationKind(StrEnum):
    EMBEDDED = "embedded"
    IMPORTED = "imported"
    UPLOADED = "uploaded"
    USER_AUTHORED = "user_authored"
    PLACEHOLDER = "placeholder"


class BackendKind(StrEnum):
    EMBEDDED = "embedded"
    STATIC = "static"
    REMOTE = "remote"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: JSONValue) -> str:
    """Deterministic JSON used for persisted records."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(
    value: object, path: str, *, max_len: int = _MAX_TEXT, strip: bool = True
) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len, strip=strip)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_number(value: object, path: str) -> float | int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        _fail(path, "must be finite")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_enum(value: object, enum_type: type[TEnum], path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected {enum_type.__name__} string, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(str(item.value) for item in enum_type)
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str, *, unique: bool = False) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array of strings, got {type(value).__name__}")
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]")
        if unique and parsed in out:
            _fail(path, f"duplicate value {parsed!r}")
        out.append(parsed)
    return tuple(out)


def _as_optional_str_tuple(value: object, path: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    return _as_str_tuple(value, path)


def _as_identifier(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=256)
    if not _IDENTIFIER_RE.fullmatch(parsed):
        _fail(path, f"invalid identifier {parsed!r}")
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_TYPE_DEPTH:
        _fail(path, "JSON value nesting is too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[]", depth=depth + 1) for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    _fail(path, f"expected JSON value, got {type(value).__name__}")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return repr(value)
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, (Decimal, Fraction)):
        return str(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value) and not isinstance(value, type):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            if dataclass_field.name.startswith("_"):
                continue
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


@dataclass(slots=True)
class TypeConstraints(CanonicalModel):
    """Optional bounds attached to a type model."""

    min: float | int | None = None
    max: float | int | None = None
    enum_values: tuple[str, ...] | None = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        self.min = _as_optional_number(self.min, "TypeConstraints.min")
        self.max = _as_optional_number(self.max, "TypeConstraints.max")
        self.enum_values = _as_optional_str_tuple(self.enum_values, "TypeConstraints.enum_values")
        self.pattern = _as_optional_str(self.pattern, "TypeConstraints.pattern", strip=False)
        if self.min is not None and self.max is not None and self.min > self.max:
            _fail("TypeConstraints", "min must be <= max")

    @property
    def is_empty(self) -> bool:
        return (
            self.min is None
            and self.max is None
            and not self.enum_values
            and self.pattern is None
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TypeConstraints:
        parsed = _expect_object(
            data,
            "TypeConstraints",
            required=set(),
            optional={"min", "max", "enum_values", "pattern"},
        )
        return cls(
            min=_as_optional_number(parsed.get("min"), "TypeConstraints.min"),
            max=_as_optional_number(parsed.get("max"), "TypeConstraints.max"),
            enum_values=_as_optional_str_tuple(
                parsed.get("enum_values"), "TypeConstraints.enum_values"
            ),
            pattern=_as_optional_str(parsed.get("pattern"), "TypeConstraints.pattern", strip=False),
        )


@dataclass(slots=True)
class TypeModel(CanonicalModel):
    """Recursive descriptor for a value's shape.

    When ``is_array`` is true, ``properties`` describe the element type, never
    the array wrapper itself.
    """

    base_type: BaseType
    nullable: bool = False
    is_array: bool = False
    constraints: TypeConstraints | None = None
    properties: tuple[PropertySpec, ...] | None = None

    def __post_init__(self) -> None:
        self.base_type = _as_enum(self.base_type, BaseType, "TypeModel.base_type")
        self.nullable = _as_bool(self.nullable, "TypeModel.nullable")
        self.is_array = _as_bool(self.is_array, "TypeModel.is_array")
        if self.constraints is not None and not isinstance(self.constraints, TypeConstraints):
            _fail("TypeModel.constraints", "expected TypeConstraints")
        if self.properties is not None:
            self.properties = tuple(self.properties)
            for index, item in enumerate(self.properties):
                if not isinstance(item, PropertySpec):
                    _fail(f"TypeModel.properties[{index}]", "expected PropertySpec")

    @classmethod
    def primitive(cls, base_type: BaseType, *, nullable: bool = False) -> TypeModel:
        return cls(base_type=base_type, nullable=nullable)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TypeModel:
        return _type_model_from_dict(data, "TypeModel", depth=0)


@dataclass(slots=True)
class PropertySpec(CanonicalModel):
    """Named field of an object type model (or member of an enum type)."""

    key: str
    base_type: BaseType
    type_model: TypeModel
    unit: str | None = None
    default: JSONValue = None
    description: str | None = None

    def __post_init__(self) -> None:
        self.key = _as_str(self.key, "PropertySpec.key", max_len=256)
        self.base_type = _as_enum(self.base_type, BaseType, "PropertySpec.base_type")
        if not isinstance(self.type_model, TypeModel):
            _fail("PropertySpec.type_model", "expected TypeModel")
        self.unit = _as_optional_str(self.unit, "PropertySpec.unit")
        self.default = _as_json_value(self.default, "PropertySpec.default")
        self.description = _as_optional_str(self.description, "PropertySpec.description")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PropertySpec:
        return _property_from_dict(data, "PropertySpec", depth=0)


def _type_model_from_dict(data: Mapping[str, object], path: str, *, depth: int) -> TypeModel:
    if depth > _MAX_TYPE_DEPTH:
        _fail(path, "type model nesting is too deep")
    parsed = _expect_object(
        data,
        path,
        required={"base_type"},
        optional={"nullable", "is_array", "constraints", "properties"},
    )
    raw_constraints = parsed.get("constraints")
    constraints = (
        None
        if raw_constraints is None
        else TypeConstraints.from_dict(cast("Mapping[str, object]", raw_constraints))
    )
    raw_properties = parsed.get("properties")
    properties: tuple[PropertySpec, ...] | None = None
    if raw_properties is not None:
        if not isinstance(raw_properties, (list, tuple)):
            _fail(f"{path}.properties", "expected array")
        properties = tuple(
            _property_from_dict(
                cast("Mapping[str, object]", item),
                f"{path}.properties[{index}]",
                depth=depth + 1,
            )
            for index, item in enumerate(raw_properties)
        )
    return TypeModel(
        base_type=_as_enum(parsed["base_type"], BaseType, f"{path}.base_type"),
        nullable=_as_bool(parsed.get("nullable", False), f"{path}.nullable"),
        is_array=_as_bool(parsed.get("is_array", False), f"{path}.is_array"),
        constraints=constraints,
        properties=properties,
    )


def _property_from_dict(data: Mapping[str, object], path: str, *, depth: int) -> PropertySpec:
    parsed = _expect_object(
        data,
        path,
        required={"key", "base_type", "type_model"},
        optional={"unit", "default", "description"},
    )
    return PropertySpec(
        key=_as_str(parsed["key"], f"{path}.key"),
        base_type=_as_enum(parsed["base_type"], BaseType, f"{path}.base_type"),
        type_model=_type_model_from_dict(
            cast("Mapping[str, object]", parsed["type_model"]),
            f"{path}.type_model",
            depth=depth,
        ),
        unit=_as_optional_str(parsed.get("unit"), f"{path}.unit"),
        default=_as_json_value(parsed.get("default"), f"{path}.default"),
        description=_as_optional_str(parsed.get("description"), f"{path}.description"),
    )


@dataclass(slots=True)
class InputSpec(CanonicalModel):
    key: str
    base_type: BaseType
    type_model: TypeModel
    unit: str | None = None
    default: JSONValue = None
    description: str | None = None

    def __post_init__(self) -> None:
        self.key = _as_str(self.key, f"{type(self).__name__}.key", max_len=256)
        self.base_type = _as_enum(self.base_type, BaseType, f"{type(self).__name__}.base_type")
        if not isinstance(self.type_model, TypeModel):
            _fail(f"{type(self).__name__}.type_model", "expected TypeModel")
        self.unit = _as_optional_str(self.unit, f"{type(self).__name__}.unit")
        self.default = _as_json_value(self.default, f"{type(self).__name__}.default")
        self.description = _as_optional_str(self.description, f"{type(self).__name__}.description")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InputSpec:
        return cls(**_io_spec_kwargs(data, cls.__name__))


@dataclass(slots=True)
class OutputSpec(InputSpec):
    """Output descriptor; formulas always expose exactly one, keyed ``result``."""

    @classmethod
    def result(
        cls,
        type_model: TypeModel,
        *,
        unit: str | None = None,
        description: str | None = None,
    ) -> OutputSpec:
        return cls(
            key=RESULT_OUTPUT_KEY,
            base_type=type_model.base_type,
            type_model=type_model,
            unit=unit,
            description=description,
        )


def _io_spec_kwargs(data: Mapping[str, object], path: str) -> dict[str, object]:
    parsed = _expect_object(
        data,
        path,
        required={"key", "base_type", "type_model"},
        optional={"unit", "default", "description"},
    )
    return {
        "key": _as_str(parsed["key"], f"{path}.key"),
        "base_type": _as_enum(parsed["base_type"], BaseType, f"{path}.base_type"),
        "type_model": TypeModel.from_dict(cast("Mapping[str, object]", parsed["type_model"])),
        "unit": _as_optional_str(parsed.get("unit"), f"{path}.unit"),
        "default": _as_json_value(parsed.get("default"), f"{path}.default"),
        "description": _as_optional_str(parsed.get("description"), f"{path}.description"),
    }


@dataclass(slots=True)
class EngineHint(CanonicalModel):
    """Per-backend rounding strategy and decimal scale."""

    rounding: RoundingStrategy | None = None
    scale: int | None = None

    def __post_init__(self) -> None:
        if self.rounding is not None:
            self.rounding = _as_enum(self.rounding, RoundingStrategy, "EngineHint.rounding")
        if self.scale is not None:
            self.scale = _as_int(self.scale, "EngineHint.scale")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EngineHint:
        parsed = _expect_object(data, "EngineHint", required=set(), optional={"rounding", "scale"})
        rounding = parsed.get("rounding")
        scale = parsed.get("scale")
        return cls(
            rounding=None if rounding is None else _as_enum(rounding, RoundingStrategy, "EngineHint.rounding"),
            scale=None if scale is None else _as_int(scale, "EngineHint.scale"),
        )


@dataclass(slots=True)
class StaticModuleInfo(CanonicalModel):
    """Statically linked module backend configuration."""

    module_name: str
    function_name: str
    import_path: str | None = None
    enabled: bool = True

    def __post_init__(self) -> None:
        self.module_name = _as_str(self.module_name, "StaticModuleInfo.module_name", max_len=512)
        self.function_name = _as_str(
            self.function_name, "StaticModuleInfo.function_name", max_len=512
        )
        self.import_path = _as_optional_str(self.import_path, "StaticModuleInfo.import_path")
        self.enabled = _as_bool(self.enabled, "StaticModuleInfo.enabled")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StaticModuleInfo:
        parsed = _expect_object(
            data,
            "StaticModuleInfo",
            required={"module_name", "function_name"},
            optional={"import_path", "enabled"},
        )
        return cls(
            module_name=_as_str(parsed["module_name"], "StaticModuleInfo.module_name"),
            function_name=_as_str(parsed["function_name"], "StaticModuleInfo.function_name"),
            import_path=_as_optional_str(parsed.get("import_path"), "StaticModuleInfo.import_path"),
            enabled=_as_bool(parsed.get("enabled", True), "StaticModuleInfo.enabled"),
        )


@dataclass(slots=True)
class RemoteBundleInfo(CanonicalModel):
    """Remotely fetched, sandboxed bundle backend configuration."""

    url: str
    function_name: str | None = None
    version: str | None = None
    allowed_modules: tuple[str, ...] = ()
    enabled: bool = True

    def __post_init__(self) -> None:
        self.url = _as_str(self.url, "RemoteBundleInfo.url", max_len=4096)
        self.function_name = _as_optional_str(self.function_name, "RemoteBundleInfo.function_name")
        self.version = _as_optional_str(self.version, "RemoteBundleInfo.version")
        self.allowed_modules = _as_str_tuple(
            self.allowed_modules, "RemoteBundleInfo.allowed_modules", unique=True
        )
        self.enabled = _as_bool(self.enabled, "RemoteBundleInfo.enabled")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RemoteBundleInfo:
        parsed = _expect_object(
            data,
            "RemoteBundleInfo",
            required={"url"},
            optional={"function_name", "version", "allowed_modules", "enabled"},
        )
        return cls(
            url=_as_str(parsed["url"], "RemoteBundleInfo.url", max_len=4096),
            function_name=_as_optional_str(
                parsed.get("function_name"), "RemoteBundleInfo.function_name"
            ),
            version=_as_optional_str(parsed.get("version"), "RemoteBundleInfo.version"),
            allowed_modules=_as_str_tuple(
                parsed.get("allowed_modules", ()), "RemoteBundleInfo.allowed_modules"
            ),
            enabled=_as_bool(parsed.get("enabled", True), "RemoteBundleInfo.enabled"),
        )


@dataclass(slots=True)
class FormulaDefinition(CanonicalModel):
    """Structured schema derived from an annotated function.

    ``inputs`` order is authoritative for positional argument binding.
    """

    id: str
    name: str
    version: str = DEFAULT_FORMULA_VERSION
    description: str | None = None
    tags: tuple[str, ...] | None = None
    engine_hints: dict[str, EngineHint] | None = None
    inputs: tuple[InputSpec, ...] = ()
    outputs: tuple[OutputSpec, ...] = ()
    source_text: str | None = None
    formula_text: str | None = None
    source_path: str | None = None
    function_name: str | None = None
    static_module_info: StaticModuleInfo | None = None
    remote_bundle_info: RemoteBundleInfo | None = None
    creation_kind: CreationKind = CreationKind.IMPORTED
    schema_version: int = RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(self.schema_version, "FormulaDefinition.schema_version", minimum=1)
        self.id = _as_identifier(self.id, "FormulaDefinition.id")
        self.name = _as_str(self.name, "FormulaDefinition.name", max_len=512)
        self.version = _as_str(self.version, "FormulaDefinition.version", max_len=128)
        self.description = _as_optional_str(self.description, "FormulaDefinition.description")
        self.tags = _as_optional_str_tuple(self.tags, "FormulaDefinition.tags")
        if self.engine_hints is not None:
            hints: dict[str, EngineHint] = {}
            for backend, hint in self.engine_hints.items():
                key = _as_str(backend, "FormulaDefinition.engine_hints", max_len=64)
                if not isinstance(hint, EngineHint):
                    _fail(f"FormulaDefinition.engine_hints.{key}", "expected EngineHint")
                hints[key] = hint
            self.engine_hints = hints
        self.inputs = tuple(self.inputs)
        keys: set[str] = set()
        for index, spec in enumerate(self.inputs):
            if not isinstance(spec, InputSpec):
                _fail(f"FormulaDefinition.inputs[{index}]", "expected InputSpec")
            if spec.key in keys:
                _fail("FormulaDefinition.inputs", f"duplicate input key {spec.key!r}")
            keys.add(spec.key)
        self.outputs = tuple(self.outputs)
        for index, out in enumerate(self.outputs):
            if not isinstance(out, OutputSpec):
                _fail(f"FormulaDefinition.outputs[{index}]", "expected OutputSpec")
        self.source_text = _as_optional_str(
            self.source_text, "FormulaDefinition.source_text", max_len=_MAX_SOURCE_TEXT, strip=False
        )
        self.formula_text = _as_optional_str(self.formula_text, "FormulaDefinition.formula_text")
        self.source_path = _as_optional_str(self.source_path, "FormulaDefinition.source_path")
        self.function_name = _as_optional_str(
            self.function_name, "FormulaDefinition.function_name", max_len=256
        )
        if self.static_module_info is not None and not isinstance(
            self.static_module_info, StaticModuleInfo
        ):
            _fail("FormulaDefinition.static_module_info", "expected StaticModuleInfo")
        if self.remote_bundle_info is not None and not isinstance(
            self.remote_bundle_info, RemoteBundleInfo
        ):
            _fail("FormulaDefinition.remote_bundle_info", "expected RemoteBundleInfo")
        self.creation_kind = _as_enum(
            self.creation_kind, CreationKind, "FormulaDefinition.creation_kind"
        )

    @property
    def input_keys(self) -> tuple[str, ...]:
        return tuple(spec.key for spec in self.inputs)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FormulaDefinition:
        parsed = _expect_object(
            data,
            "FormulaDefinition",
            required={"id", "name"},
            optional={
                "version",
                "description",
                "tags",
                "engine_hints",
                "inputs",
                "outputs",
                "source_text",
                "formula_text",
                "source_path",
                "function_name",
                "static_module_info",
                "remote_bundle_info",
                "creation_kind",
                "schema_version",
            },
        )
        raw_hints = parsed.get("engine_hints")
        engine_hints: dict[str, EngineHint] | None = None
        if raw_hints is not None:
            if not isinstance(raw_hints, Mapping):
                _fail("FormulaDefinition.engine_hints", "expected object")
            engine_hints = {
                str(key): EngineHint.from_dict(cast("Mapping[str, object]", value))
                for key, value in raw_hints.items()
            }
        raw_static = parsed.get("static_module_info")
        raw_remote = parsed.get("remote_bundle_info")
        return cls(
            id=_as_str(parsed["id"], "FormulaDefinition.id"),
            name=_as_str(parsed["name"], "FormulaDefinition.name"),
            version=_as_str(
                parsed.get("version", DEFAULT_FORMULA_VERSION), "FormulaDefinition.version"
            ),
            description=_as_optional_str(parsed.get("description"), "FormulaDefinition.description"),
            tags=_as_optional_str_tuple(parsed.get("tags"), "FormulaDefinition.tags"),
            engine_hints=engine_hints,
            inputs=tuple(
                InputSpec.from_dict(cast("Mapping[str, object]", item))
                for item in _as_list(parsed.get("inputs", ()), "FormulaDefinition.inputs")
            ),
            outputs=tuple(
                OutputSpec.from_dict(cast("Mapping[str, object]", item))
                for item in _as_list(parsed.get("outputs", ()), "FormulaDefinition.outputs")
            ),
            source_text=_as_optional_str(
                parsed.get("source_text"),
                "FormulaDefinition.source_text",
                max_len=_MAX_SOURCE_TEXT,
                strip=False,
            ),
            formula_text=_as_optional_str(parsed.get("formula_text"), "FormulaDefinition.formula_text"),
            source_path=_as_optional_str(parsed.get("source_path"), "FormulaDefinition.source_path"),
            function_name=_as_optional_str(
                parsed.get("function_name"), "FormulaDefinition.function_name"
            ),
            static_module_info=(
                None
                if raw_static is None
                else StaticModuleInfo.from_dict(cast("Mapping[str, object]", raw_static))
            ),
            remote_bundle_info=(
                None
                if raw_remote is None
                else RemoteBundleInfo.from_dict(cast("Mapping[str, object]", raw_remote))
            ),
            creation_kind=_as_enum(
                parsed.get("creation_kind", CreationKind.IMPORTED.value),
                CreationKind,
                "FormulaDefinition.creation_kind",
            ),
            schema_version=_as_int(
                parsed.get("schema_version", RECORD_SCHEMA_VERSION),
                "FormulaDefinition.schema_version",
                minimum=1,
            ),
        )


def _as_list(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


@dataclass(slots=True)
class RemoteBundleCacheEntry(CanonicalModel):
    """Persisted remote bundle keyed by ``formula_id:version``.

    ``integrity_hash`` must equal a recomputed hash of ``source_text``; the
    cache manager treats a mismatch as absent.
    """

    formula_id: str
    version: str
    source_url: str
    source_text: str
    function_name: str | None
    fetched_at: float
    integrity_hash: str

    def __post_init__(self) -> None:
        self.formula_id = _as_str(self.formula_id, "RemoteBundleCacheEntry.formula_id", max_len=256)
        self.version = _as_str(self.version, "RemoteBundleCacheEntry.version", max_len=128)
        self.source_url = _as_str(self.source_url, "RemoteBundleCacheEntry.source_url", max_len=4096)
        self.source_text = _as_str(
            self.source_text,
            "RemoteBundleCacheEntry.source_text",
            min_len=0,
            max_len=_MAX_SOURCE_TEXT,
            strip=False,
        )
        self.function_name = _as_optional_str(
            self.function_name, "RemoteBundleCacheEntry.function_name"
        )
        self.fetched_at = _as_float(self.fetched_at, "RemoteBundleCacheEntry.fetched_at", minimum=0.0)
        self.integrity_hash = _as_str(
            self.integrity_hash, "RemoteBundleCacheEntry.integrity_hash", max_len=64
        )

    @property
    def id(self) -> str:
        return bundle_entry_id(self.formula_id, self.version)

    def to_dict(self) -> dict[str, JSONValue]:
        payload = CanonicalModel.to_dict(self)
        payload["id"] = self.id
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RemoteBundleCacheEntry:
        parsed = _expect_object(
            data,
            "RemoteBundleCacheEntry",
            required={
                "formula_id",
                "version",
                "source_url",
                "source_text",
                "fetched_at",
                "integrity_hash",
            },
            optional={"id", "function_name"},
        )
        return cls(
            formula_id=_as_str(parsed["formula_id"], "RemoteBundleCacheEntry.formula_id"),
            version=_as_str(parsed["version"], "RemoteBundleCacheEntry.version"),
            source_url=_as_str(
                parsed["source_url"], "RemoteBundleCacheEntry.source_url", max_len=4096
            ),
            source_text=_as_str(
                parsed["source_text"],
                "RemoteBundleCacheEntry.source_text",
                min_len=0,
                max_len=_MAX_SOURCE_TEXT,
                strip=False,
            ),
            function_name=_as_optional_str(
                parsed.get("function_name"), "RemoteBundleCacheEntry.function_name"
            ),
            fetched_at=_as_float(parsed["fetched_at"], "RemoteBundleCacheEntry.fetched_at"),
            integrity_hash=_as_str(parsed["integrity_hash"], "RemoteBundleCacheEntry.integrity_hash"),
        )


def bundle_entry_id(formula_id: str, version: str) -> str:
    return f"{formula_id}:{version}"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one ``execute`` call; constructed once and never merged."""

    success: bool
    backend_id: BackendKind
    duration_ms: float
    outputs: Mapping[str, object] | None = None
    error: str | None = None
    error_kind: str | None = None

    def __post_init__(self) -> None:
        if self.outputs is not None and not isinstance(self.outputs, MappingProxyType):
            object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))

    @property
    def result(self) -> object:
        if self.outputs is None:
            return None
        return self.outputs.get(RESULT_OUTPUT_KEY)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "success": self.success,
            "backend_id": self.backend_id.value,
            "duration_ms": self.duration_ms,
            "outputs": (
                None if self.outputs is None else _serialize_value(self.outputs, "outputs")
            ),
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True, slots=True)
class CacheStats:
    entry_count: int
    total_bytes: int
    memory_entries: int = 0
    in_flight: int = 0


@dataclass(frozen=True, slots=True)
class SourceUnit:
    """One analyzable piece of source text."""

    path: str
    text: str = field(repr=False)


__all__ = [
    "BackendKind",
    "BaseType",
    "CacheStats",
    "CanonicalModel",
    "CreationKind",
    "EngineHint",
    "ExecutionResult",
    "FormulaDefinition",
    "InputSpec",
    "JSONValue",
    "OutputSpec",
    "PropertySpec",
    "RemoteBundleCacheEntry",
    "RemoteBundleInfo",
    "RoundingStrategy",
    "SourceUnit",
    "StaticModuleInfo",
    "TypeConstraints",
    "TypeModel",
    "bundle_entry_id",
    "canonical_json",
]
