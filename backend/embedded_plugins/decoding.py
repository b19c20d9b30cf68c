from __future__ import annotations

"""Weakly typed materialization of untyped configuration bags into pydantic models.

Middleware configuration arrives as loosely typed nested maps (YAML labels,
environment-derived providers, key/value stores) where scalars frequently show
up as strings. ``decode_config`` binds such a bag onto a plugin's default
configuration with the following rules:

* Keys match fields by exact name, then alias, then case-insensitively, then
  case-insensitively with ``_`` and ``-`` ignored (``trustedIPs`` finds
  ``trusted_ips``). Keys that match nothing are ignored.
* Fields missing from the bag keep their default value. Nested models and
  dict fields merge the incoming map over the existing value.
* Primitive coercion: bool -> str ("1"/"0"), number -> str, bool -> int,
  str -> int (base prefixes allowed, "" is 0), float -> int (truncated),
  number -> bool (non-zero), str -> bool (Go ``strconv.ParseBool`` spellings,
  "" is False), str -> float ("" is 0.0).
* Sequence fields split a string on the list separator without trimming
  ("" is an empty list), wrap a lone scalar into a one-element list, and treat
  an empty map as an empty list. Elements are coerced individually.
* Maps expected where a list of maps was given are merged left to right.

Every problem found is collected and reported in a single ``ConfigDecodeError``.
The final value is built with ``model_validate`` so nothing partially decoded
ever escapes, and the default configuration passed in is left untouched.
"""

import logging
import math
import types
from collections.abc import Mapping
from typing import Annotated, Any, Dict, List, TypeVar, Union, get_args, get_origin

from pydantic import BaseModel, ValidationError
from pydantic.fields import FieldInfo

from embedded_plugins.errors import ConfigDecodeError, ConfigDecoderError

_log = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

_TRUE_STRINGS = frozenset({'1', 't', 'T', 'TRUE', 'true', 'True'})
_FALSE_STRINGS = frozenset({'0', 'f', 'F', 'FALSE', 'false', 'False'})
_SEQUENCE_TYPES = (list, tuple, set, frozenset)
_MAPPING_TYPES = (dict, Mapping)


def decode_config(bag: Mapping[str, Any], target: M, *, separator: str = ',') -> M:
    """Return a new config of ``type(target)`` built from ``target`` overlaid with ``bag``."""

    if not isinstance(target, BaseModel):
        raise ConfigDecoderError(f"result must be a pydantic model instance, got {type(target).__name__}")
    if not separator:
        raise ConfigDecoderError("list separator must not be empty")
    if not isinstance(bag, Mapping):
        raise ConfigDecodeError([f"expected a map, got {_kind(bag)}"])

    errors: List[str] = []
    values = _decode_model(type(target), target, bag, '', errors, separator)
    if errors:
        raise ConfigDecodeError(errors)
    try:
        return type(target).model_validate(values)
    except ValidationError as exc:
        raise ConfigDecodeError(_format_validation_errors(exc)) from exc


def _decode_model(
    model_cls: type[BaseModel],
    current: BaseModel | None,
    bag: Mapping[str, Any],
    path: str,
    errors: List[str],
    separator: str,
) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if isinstance(current, model_cls):
        for name, field in model_cls.model_fields.items():
            values[_input_key(name, field)] = getattr(current, name)

    keys = [str(k) for k in bag.keys()]
    by_text = {str(k): k for k in bag.keys()}
    lowered: Dict[str, str] = {}
    squashed: Dict[str, str] = {}
    for key in keys:
        lowered.setdefault(key.lower(), key)
        squashed.setdefault(_squash(key), key)

    consumed: set[str] = set()
    for name, field in model_cls.model_fields.items():
        candidates = [name]
        if field.alias and field.alias != name:
            candidates.append(field.alias)
        bag_key = _find_key(by_text, lowered, squashed, candidates, consumed)
        if bag_key is None:
            continue
        consumed.add(bag_key)
        input_key = _input_key(name, field)
        values[input_key] = _coerce(
            bag[by_text[bag_key]],
            field.annotation,
            values.get(input_key),
            _join(path, name),
            errors,
            separator,
        )

    unused = [k for k in keys if k not in consumed]
    if unused:
        _log.debug("ignoring unknown configuration keys at %s: %s", path or '<root>', ', '.join(sorted(unused)))
    return values


def _find_key(
    by_text: Mapping[str, Any],
    lowered: Mapping[str, str],
    squashed: Mapping[str, str],
    candidates: List[str],
    consumed: set[str],
) -> str | None:
    for candidate in candidates:
        if candidate in by_text and candidate not in consumed:
            return candidate
    for candidate in candidates:
        hit = lowered.get(candidate.lower())
        if hit is not None and hit not in consumed:
            return hit
    for candidate in candidates:
        hit = squashed.get(_squash(candidate))
        if hit is not None and hit not in consumed:
            return hit
    return None


def _coerce(value: Any, annotation: Any, existing: Any, path: str, errors: List[str], separator: str) -> Any:
    target = _strip_optional(_unwrap(annotation))
    if value is None or target is Any or target is object or target is None:
        return value

    origin = get_origin(target)
    if origin is None and isinstance(target, type) and issubclass(target, BaseModel):
        incoming = _as_mapping(value, path, errors)
        if incoming is None:
            return value
        base = existing if isinstance(existing, target) else None
        return _decode_model(target, base, incoming, path, errors, separator)

    if target in _SEQUENCE_TYPES or origin in _SEQUENCE_TYPES:
        items = _as_sequence(value, path, errors, separator)
        if items is None:
            return value
        item_types = _item_types(target, len(items))
        return [
            _coerce(item, item_type, None, f"{path}[{index}]", errors, separator)
            for index, (item, item_type) in enumerate(zip(items, item_types))
        ]

    if target is dict or origin in _MAPPING_TYPES:
        incoming = _as_mapping(value, path, errors)
        if incoming is None:
            return value
        args = get_args(target)
        value_type = args[1] if len(args) == 2 else Any
        merged = dict(existing) if isinstance(existing, Mapping) else {}
        for key, item in incoming.items():
            merged[key] = _coerce(item, value_type, merged.get(key), _join(path, str(key)), errors, separator)
        return merged

    if target is str:
        return _coerce_str(value, path, errors)
    if target is bool:
        return _coerce_bool(value, path, errors)
    if target is int:
        return _coerce_int(value, path, errors)
    if target is float:
        return _coerce_float(value, path, errors)

    # Literals, enums, unions and other annotated types are left to pydantic.
    return value


def _coerce_str(value: Any, path: str, errors: List[str]) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    errors.append(f"{path}: expected a string, got {_kind(value)}")
    return value


def _coerce_bool(value: Any, path: str, errors: List[str]) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == '':
            return False
        if value in _TRUE_STRINGS:
            return True
        if value in _FALSE_STRINGS:
            return False
        errors.append(f"{path}: cannot parse {value!r} as a boolean")
        return value
    errors.append(f"{path}: expected a boolean, got {_kind(value)}")
    return value


def _coerce_int(value: Any, path: str, errors: List[str]) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            errors.append(f"{path}: cannot convert {value!r} to an integer")
            return value
        return int(value)
    if isinstance(value, str):
        if value == '':
            return 0
        try:
            return int(value, 0)
        except ValueError:
            errors.append(f"{path}: cannot parse {value!r} as an integer")
            return value
    errors.append(f"{path}: expected an integer, got {_kind(value)}")
    return value


def _coerce_float(value: Any, path: str, errors: List[str]) -> Any:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value == '':
            return 0.0
        try:
            return float(value)
        except ValueError:
            errors.append(f"{path}: cannot parse {value!r} as a number")
            return value
    errors.append(f"{path}: expected a number, got {_kind(value)}")
    return value


def _as_mapping(value: Any, path: str, errors: List[str]) -> Mapping[Any, Any] | None:
    if isinstance(value, Mapping):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(item, Mapping) for item in value):
        merged: Dict[Any, Any] = {}
        for item in value:
            merged.update(item)
        return merged
    errors.append(f"{path}: expected a map, got {_kind(value)}")
    return None


def _as_sequence(value: Any, path: str, errors: List[str], separator: str) -> List[Any] | None:
    if isinstance(value, str):
        # The one bespoke hook: "a,b,c" feeds list-typed fields.
        return [] if value == '' else value.split(separator)
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, Mapping):
        if not value:
            return []
        errors.append(f"{path}: expected a list, got map")
        return None
    return [value]


def _item_types(target: Any, count: int) -> List[Any]:
    args = get_args(target)
    if not args:
        return [Any] * count
    if get_origin(target) is tuple and not (len(args) == 2 and args[1] is Ellipsis):
        # Fixed-size tuple; a length mismatch is reported by pydantic.
        return list(args) + [Any] * max(0, count - len(args))
    return [args[0]] * count


def _unwrap(annotation: Any) -> Any:
    while get_origin(annotation) is Annotated:
        annotation = get_args(annotation)[0]
    return annotation


def _strip_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        members = [a for a in get_args(annotation) if a is not type(None)]
        if len(members) == 1:
            return _unwrap(members[0])
    return annotation


def _input_key(name: str, field: FieldInfo) -> str:
    if isinstance(field.validation_alias, str):
        return field.validation_alias
    return field.alias or name


def _squash(text: str) -> str:
    return text.replace('_', '').replace('-', '').lower()


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _kind(value: Any) -> str:
    if isinstance(value, Mapping):
        return 'map'
    if isinstance(value, (list, tuple, set, frozenset)):
        return 'list'
    return type(value).__name__


def _format_validation_errors(exc: ValidationError) -> List[str]:
    details: List[str] = []
    for error in exc.errors(include_url=False):
        loc = ".".join(str(part) for part in error["loc"])
        details.append(f"{loc}: {error['msg']}")
    return details

