"""Attribute expressions: ${...} references inside declaration values.

A value is any YAML/JSON structure. Strings may embed references:

    "${var.env}"                          variable (root or module input)
    "${null_resource.network.id}"         attribute of another resource
    "${module.data.endpoint}"             output of a module
    "db-${var.env}-${random_id.x.hex}"    interpolated into a larger string

A string that is exactly one reference evaluates to the referenced value
itself (any type); references embedded in a larger string are rendered
as text.
"""

import json
import re
from typing import Any, Callable

REFERENCE_RE = re.compile(r'\$\{\s*([^}\s]+)\s*\}')


class _Unknown:
    """Placeholder for a value only known after its producer is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __deepcopy__(self, memo):
        return self

    def __copy__(self):
        return self


UNKNOWN = _Unknown()


def to_text(value: Any) -> str:
    """Render a resolved value for interpolation into a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def find_references(value: Any) -> list[str]:
    """Return every reference body in value, in document order."""
    found: list[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in REFERENCE_RE.finditer(value))
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(find_references(v))
    elif isinstance(value, list):
        for v in value:
            found.extend(find_references(v))
    return found


def rewrite(value: Any, replace: Callable[[str], Any]) -> Any:
    """Return a copy of value with every reference replaced.

    Args:
        value: Declaration value
        replace: Called with each reference body, returns the replacement.
            A non-string replacement for an embedded reference is rendered
            with to_text.
    """
    if isinstance(value, str):
        whole = REFERENCE_RE.fullmatch(value)
        if whole:
            return replace(whole.group(1))
        return REFERENCE_RE.sub(lambda m: to_text(replace(m.group(1))), value)
    if isinstance(value, dict):
        return {k: rewrite(v, replace) for k, v in value.items()}
    if isinstance(value, list):
        return [rewrite(v, replace) for v in value]
    return value


def resolve(value: Any, lookup: Callable[[str], Any]) -> Any:
    """Evaluate every reference in value.

    lookup may return UNKNOWN; a string embedding an UNKNOWN reference
    becomes UNKNOWN as a whole.
    """
    if isinstance(value, str):
        whole = REFERENCE_RE.fullmatch(value)
        if whole:
            return lookup(whole.group(1))
        unknown = False

        def _sub(m):
            nonlocal unknown
            resolved = lookup(m.group(1))
            if resolved is UNKNOWN:
                unknown = True
                return ''
            return to_text(resolved)

        text = REFERENCE_RE.sub(_sub, value)
        return UNKNOWN if unknown else text
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def split_reference(body: str) -> tuple[str, list[str]]:
    """Split an absolute resource reference into (address, attribute path).

    'module.data.aws_db.main.endpoint' -> ('module.data.aws_db.main', ['endpoint'])

    Raises:
        ValueError: If body does not name a resource
    """
    parts = body.split('.')
    i = 0
    while i + 1 < len(parts) and parts[i] == 'module':
        i += 2
    if len(parts) - i < 2:
        raise ValueError(f"'{body}' is not a resource reference")
    address = '.'.join(parts[:i + 2])
    return address, parts[i + 2:]


def get_path(data: Any, path: list[str]) -> Any:
    """Walk dict keys / list indexes.

    Raises:
        KeyError: If a path element is missing
    """
    current = data
    for part in path:
        if isinstance(current, dict):
            if part not in current:
                raise KeyError(part)
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                raise KeyError(part)
        else:
            raise KeyError(part)
    return current


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality over resolved values.

    Unlike ==, True is not equal to 1, and UNKNOWN equals nothing.
    """
    if a is UNKNOWN or b is UNKNOWN:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return False
    return a == b


def changed_keys(desired: dict, prior: dict, ignore: frozenset = frozenset()) -> list[str]:
    """Top-level keys whose values differ between desired and prior."""
    keys = sorted(set(desired) | set(prior))
    return [
        k for k in keys
        if k not in ignore and (
            k not in desired or k not in prior or not values_equal(desired[k], prior[k])
        )
    ]


def to_jsonable(value: Any) -> Any:
    """Copy of value with UNKNOWN rendered as its display text."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    return value
