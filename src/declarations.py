"""Declaration loading and validation.

Declarations describe the desired infrastructure: input variables, typed
resources with attribute expressions, nested modules and exported outputs.
They are read from YAML or JSON files; a directory is read as the union of
every *.yaml, *.yml and *.json file in it (so variables, resources and
outputs can live in separate files).

Schema v1:
    schema_version: 1
    name: <str>
    variables: {<name>: {default: <any>, type: <str>, description: <str>}}
    providers: {<provider>: {<setting>: <value>}}
    resources: [{name, type, attributes, depends_on, lifecycle}]
    modules: [{name, source | resources/variables/outputs/modules, inputs}]
    outputs: {<name>: <expression>}
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = {1}

DECLARATION_SUFFIXES = ('.yaml', '.yml', '.json')

NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')

# Types usable in variable declarations and the Python types they accept
VARIABLE_TYPES: dict[str, tuple] = {
    'string': (str,),
    'number': (int, float),
    'bool': (bool,),
    'list': (list,),
    'map': (dict,),
    'any': (object,),
}

RESERVED_TYPES = {'module', 'var'}

_NO_DEFAULT = object()


class RawValue(str):
    """A -var value as typed on the command line.

    Stays text until the variable's declared type is known; see
    VariableDeclaration.coerce.
    """


def _check_name(kind: str, name: Any, where: str = '') -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ValidationError(f"Invalid {kind} name {name!r}{where}")
    return name


@dataclass
class Lifecycle:
    """Per-resource lifecycle policy.

    Attributes:
        create_before_destroy: On replace, create the new instance before destroying the old
        prevent_destroy: Refuse any plan that destroys or replaces this resource
        ignore_changes: Attribute keys excluded from diffing
        replace_on_change: Attribute keys whose change forces replacement
    """
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = field(default_factory=list)
    replace_on_change: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict], where: str = '') -> 'Lifecycle':
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError(f"lifecycle must be a mapping{where}")
        unknown = set(data) - {'create_before_destroy', 'prevent_destroy',
                               'ignore_changes', 'replace_on_change'}
        if unknown:
            raise ValidationError(f"Unknown lifecycle keys {sorted(unknown)}{where}")
        for flag in ('create_before_destroy', 'prevent_destroy'):
            if flag in data and not isinstance(data[flag], bool):
                raise ValidationError(f"lifecycle.{flag} must be true or false{where}")
        for keys in ('ignore_changes', 'replace_on_change'):
            if keys in data and not isinstance(data[keys], list):
                raise ValidationError(f"lifecycle.{keys} must be a list{where}")
        return cls(
            create_before_destroy=data.get('create_before_destroy', False),
            prevent_destroy=data.get('prevent_destroy', False),
            ignore_changes=list(data.get('ignore_changes', [])),
            replace_on_change=list(data.get('replace_on_change', [])),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        if self.ignore_changes:
            d['ignore_changes'] = list(self.ignore_changes)
        if self.replace_on_change:
            d['replace_on_change'] = list(self.replace_on_change)
        return d


@dataclass
class ResourceDeclaration:
    """A typed resource with attribute expressions.

    Attributes:
        name: Logical name, unique per type within a scope
        type: Resource type, served by a provider
        attributes: Attribute expressions (may contain ${...} references)
        depends_on: Explicit dependencies ('type.name' or 'module.<name>')
        lifecycle: Lifecycle policy
    """
    name: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceDeclaration':
        """Create ResourceDeclaration from dictionary.

        Raises:
            ValidationError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Resource {index} must be a mapping")
        if 'name' not in data:
            raise ValidationError(f"Resource {index} missing required field: name")
        if 'type' not in data:
            raise ValidationError(
                f"Resource {index} ({data.get('name', 'unnamed')}) missing required field: type"
            )
        name = _check_name('resource', data['name'], f" (resource {index})")
        rtype = _check_name('resource type', data['type'], f" (resource '{name}')")
        if rtype in RESERVED_TYPES:
            raise ValidationError(f"Resource type '{rtype}' is reserved (resource '{name}')")
        where = f" (resource '{rtype}.{name}')"

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ValidationError(f"attributes must be a mapping{where}")
        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ValidationError(f"depends_on must be a list of addresses{where}")

        unknown = set(data) - {'name', 'type', 'attributes', 'depends_on', 'lifecycle'}
        if unknown:
            raise ValidationError(f"Unknown resource keys {sorted(unknown)}{where}")

        return cls(
            name=name,
            type=rtype,
            attributes=dict(attributes),
            depends_on=list(depends_on),
            lifecycle=Lifecycle.from_dict(data.get('lifecycle'), where),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if lifecycle := self.lifecycle.to_dict():
            d['lifecycle'] = lifecycle
        return d


@dataclass
class VariableDeclaration:
    """An input variable with optional default and type constraint."""
    name: str
    default: Any = _NO_DEFAULT
    type: str = 'any'
    description: str = ''

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def coerce(self, value: Any) -> Any:
        """Convert a command-line value to the declared type, then check it.

        string and any variables take the text as given; number, bool, list
        and map variables read it as YAML.
        """
        if isinstance(value, RawValue):
            text = str(value)
            if self.type in ('string', 'any') or not text:
                value = text
            else:
                try:
                    value = yaml.safe_load(text)
                except yaml.YAMLError:
                    value = text
        return self.check(value)

    def check(self, value: Any) -> Any:
        """Validate value against the type constraint.

        Raises:
            ValidationError: If value has the wrong type
        """
        accepted = VARIABLE_TYPES[self.type]
        if self.type == 'number' and isinstance(value, bool):
            accepted = ()
        if not isinstance(value, accepted):
            raise ValidationError(
                f"Variable '{self.name}' expects {self.type}, got {type(value).__name__}"
            )
        return value

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'VariableDeclaration':
        _check_name('variable', name)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError(f"Variable '{name}' must be a mapping")
        vtype = data.get('type', 'any')
        if vtype not in VARIABLE_TYPES:
            raise ValidationError(
                f"Variable '{name}' has unknown type '{vtype}'. "
                f"Supported: {', '.join(sorted(VARIABLE_TYPES))}"
            )
        var = cls(
            name=name,
            default=data['default'] if 'default' in data else _NO_DEFAULT,
            type=vtype,
            description=data.get('description', ''),
        )
        if var.has_default and var.default is not None:
            var.check(var.default)
        return var


@dataclass
class ModuleDeclaration:
    """A module call: a nested set of declarations with bound inputs.

    Attributes:
        name: Module instance name (address prefix module.<name>.)
        inputs: Expressions, in the caller's scope, bound to the module's variables
        body: The module's own declarations
        source: Source path as written, if the module was loaded from a file
    """
    name: str
    body: 'Declarations'
    inputs: dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None


@dataclass
class Declarations:
    """A parsed declaration set (root configuration or module body)."""
    name: str
    schema_version: int = 1
    variables: dict[str, VariableDeclaration] = field(default_factory=dict)
    resources: list[ResourceDeclaration] = field(default_factory=list)
    modules: list[ModuleDeclaration] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    providers: dict[str, dict] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def get_resource(self, address: str) -> ResourceDeclaration:
        """Get a resource by 'type.name'.

        Raises:
            KeyError: If not declared
        """
        for res in self.resources:
            if res.address == address:
                return res
        raise KeyError(address)

    def variable_values(self, overrides: Optional[dict] = None) -> dict[str, Any]:
        """Resolve root variable values from defaults and overrides.

        Raises:
            ValidationError: On unknown overrides, missing values or type mismatch
        """
        overrides = overrides or {}
        unknown = set(overrides) - set(self.variables)
        if unknown:
            raise ValidationError(f"Values given for undeclared variables: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        missing = []
        for name, var in self.variables.items():
            if name in overrides:
                values[name] = var.coerce(overrides[name])
            elif var.has_default:
                values[name] = var.default
            else:
                missing.append(name)
        if missing:
            raise ValidationError(f"No value for required variables: {', '.join(missing)}")
        return values

    @classmethod
    def from_dict(
        cls,
        data: dict,
        source_path: Optional[Path] = None,
        _loading: tuple = (),
    ) -> 'Declarations':
        """Create Declarations from a dictionary.

        Args:
            data: Parsed declaration document
            source_path: File or directory the document came from; module
                sources resolve relative to it
            _loading: Module source paths being loaded (recursion guard)

        Raises:
            ValidationError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ValidationError("Declarations must be a mapping")

        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValidationError(
                f"Unsupported schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        unknown = set(data) - {'schema_version', 'name', 'description', 'variables',
                               'providers', 'resources', 'modules', 'outputs'}
        if unknown:
            raise ValidationError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

        name = data.get('name')
        if name is None:
            name = source_path.stem if source_path else 'root'

        variables = {}
        raw_vars = data.get('variables') or {}
        if not isinstance(raw_vars, dict):
            raise ValidationError("variables must be a mapping")
        for var_name, var_data in raw_vars.items():
            variables[var_name] = VariableDeclaration.from_dict(var_name, var_data)

        raw_resources = data.get('resources') or []
        if not isinstance(raw_resources, list):
            raise ValidationError("resources must be a list")
        resources = []
        seen: set[str] = set()
        for i, res_data in enumerate(raw_resources):
            res = ResourceDeclaration.from_dict(res_data, i)
            if res.address in seen:
                raise ValidationError(f"Duplicate resource: '{res.address}'")
            seen.add(res.address)
            resources.append(res)

        outputs = data.get('outputs') or {}
        if not isinstance(outputs, dict):
            raise ValidationError("outputs must be a mapping")
        for out_name in outputs:
            _check_name('output', out_name)

        providers = data.get('providers') or {}
        if not isinstance(providers, dict) or not all(
                isinstance(v, dict) or v is None for v in providers.values()):
            raise ValidationError("providers must map provider names to settings")
        providers = {k: dict(v or {}) for k, v in providers.items()}

        base_dir = None
        if source_path is not None:
            base_dir = source_path if source_path.is_dir() else source_path.parent

        raw_modules = data.get('modules') or []
        if not isinstance(raw_modules, list):
            raise ValidationError("modules must be a list")
        modules = []
        module_names: set[str] = set()
        for i, mod_data in enumerate(raw_modules):
            module = _parse_module(mod_data, i, base_dir, _loading)
            if module.name in module_names:
                raise ValidationError(f"Duplicate module: '{module.name}'")
            module_names.add(module.name)
            modules.append(module)

        return cls(
            name=name,
            schema_version=schema_version,
            variables=variables,
            resources=resources,
            modules=modules,
            outputs=dict(outputs),
            providers=providers,
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Declarations':
        """Create Declarations from a JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid declaration JSON: {e}")
        return cls.from_dict(data)


def _parse_module(data: Any, index: int, base_dir: Optional[Path], loading: tuple) -> ModuleDeclaration:
    """Parse a module call, loading its source file if given."""
    if not isinstance(data, dict):
        raise ValidationError(f"Module {index} must be a mapping")
    if 'name' not in data:
        raise ValidationError(f"Module {index} missing required field: name")
    name = _check_name('module', data['name'], f" (module {index})")

    inputs = data.get('inputs') or {}
    if not isinstance(inputs, dict):
        raise ValidationError(f"Module '{name}' inputs must be a mapping")

    source = data.get('source')
    if source is not None:
        inline = set(data) & {'variables', 'resources', 'modules', 'outputs'}
        if inline:
            raise ValidationError(
                f"Module '{name}' has both source and inline {', '.join(sorted(inline))}"
            )
        path = Path(source)
        if not path.is_absolute():
            path = (base_dir or Path.cwd()) / path
        path = path.resolve()
        if path in loading:
            chain = ' -> '.join(str(p) for p in (*loading, path))
            raise ValidationError(f"Module '{name}' includes itself: {chain}")
        body = load_declarations(path, _loading=(*loading, path))
    else:
        body_data = {k: v for k, v in data.items() if k not in ('inputs', 'source')}
        body = Declarations.from_dict(body_data, source_path=base_dir, _loading=loading)

    return ModuleDeclaration(name=name, body=body, inputs=dict(inputs), source=source)


def _read_document(path: Path) -> dict:
    """Read one YAML or JSON declaration file."""
    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid declaration file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Declaration file {path} must contain a mapping")
    return data


def _merge_documents(documents: list[tuple[Path, dict]]) -> dict:
    """Merge the sections of several files into one document.

    Raises:
        ValidationError: If two files declare the same variable, output or provider
    """
    merged: dict[str, Any] = {'resources': [], 'modules': []}
    for path, doc in documents:
        for key, value in doc.items():
            if key in ('resources', 'modules'):
                if not isinstance(value, list):
                    raise ValidationError(f"{key} must be a list in {path}")
                merged[key].extend(value)
            elif key in ('variables', 'outputs', 'providers'):
                if not isinstance(value, dict):
                    raise ValidationError(f"{key} must be a mapping in {path}")
                section = merged.setdefault(key, {})
                for name in value:
                    if name in section:
                        raise ValidationError(f"{key[:-1].capitalize()} '{name}' declared twice ({path})")
                section.update(value)
            elif key in merged and merged[key] != value:
                raise ValidationError(f"Conflicting '{key}' in {path}")
            else:
                merged[key] = value
    return merged


def load_declarations(path: Path, _loading: tuple = ()) -> Declarations:
    """Load declarations from a file or a directory of files.

    Args:
        path: Declaration file, or a directory whose *.yaml/*.yml/*.json files
            are merged

    Returns:
        Declarations instance

    Raises:
        ValidationError: If the path does not exist or the content is invalid
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Declaration path not found: {path}")

    if path.is_dir():
        files = sorted(p for p in path.iterdir()
                       if p.is_file() and p.suffix in DECLARATION_SUFFIXES)
        if not files:
            raise ValidationError(f"No declaration files in {path}")
        data = _merge_documents([(f, _read_document(f)) for f in files])
        data.setdefault('name', path.name)
    else:
        data = _read_document(path)

    logger.debug(f"Loaded declarations from {path}")
    return Declarations.from_dict(data, source_path=path, _loading=_loading)


def parse_var_assignment(assignment: str) -> tuple[str, RawValue]:
    """Parse a -var 'key=value' assignment.

    The value is returned as RawValue; Declarations.variable_values converts
    it once the variable's declared type is known.

    Raises:
        ValidationError: If the assignment has no '='
    """
    if '=' not in assignment:
        raise ValidationError(f"Variable assignment must be key=value, got '{assignment}'")
    key, raw = assignment.split('=', 1)
    return key.strip(), RawValue(raw)


def load_var_file(path: Path) -> dict[str, Any]:
    """Load variable values from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Variable file not found: {path}")
    return _read_document(path)
