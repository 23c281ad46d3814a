"""Stack loading and validation.

A stack is a YAML document describing variables, resources, modules and
outputs:

    name: web
    variables:
      location: {type: string, default: eastus}
    resources:
      - name: rg
        kind: resource_group
        attributes:
          location: "${var.location}"
    modules:
      - name: app
        source: modules/app.yaml
        inputs:
          group: "${resource_group.rg.name}"
    outputs:
      group_id: {value: "${resource_group.rg.id}"}

Module bodies use the same layout (minus ``name``) and are loaded from
``source`` relative to the including file, or given inline under ``body``.
All attribute strings are compiled into expression trees at load time, so
a malformed expression fails here rather than mid-apply.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from engine.errors import ValidationError
from engine.expressions import Expr, compile_optional, compile_value, json_value

logger = logging.getLogger(__name__)

# Default stack file name inside a workdir
DEFAULT_STACK_FILE = 'stack.yaml'

VARIABLE_TYPES = {'string', 'number', 'bool', 'list', 'map', 'any'}

_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class ValidationRule:
    """A variable validation rule.

    Attributes:
        condition: Compiled bool expression over var.<name>
        error_message: Message reported when the condition is false
        text: Source text of the condition
    """
    condition: Expr
    error_message: str
    text: str


@dataclass
class VariableDecl:
    """A declared input variable.

    Attributes:
        name: Variable name, referenced as var.<name>
        type: One of VARIABLE_TYPES
        default: Default value (only meaningful when has_default)
        has_default: True when the declaration carries a default (even null)
        description: Free-form description
        validations: Validation rules applied to the effective value
    """
    name: str
    type: str = 'any'
    default: Any = None
    has_default: bool = False
    description: str = ''
    validations: list[ValidationRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict], where: str) -> 'VariableDecl':
        """Create VariableDecl from dictionary."""
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{where}: variable '{name}' must be a mapping")
        var_type = data.get('type', 'any')
        if var_type not in VARIABLE_TYPES:
            raise ValidationError(
                f"{where}: variable '{name}' has unknown type '{var_type}'. "
                f"Supported: {', '.join(sorted(VARIABLE_TYPES))}"
            )
        rules = []
        for i, rule in enumerate(data.get('validation') or []):
            if not isinstance(rule, dict) or 'condition' not in rule:
                raise ValidationError(f"{where}: variable '{name}' validation {i} missing 'condition'")
            rules.append(ValidationRule(
                condition=compile_value(rule['condition']),
                error_message=rule.get('error_message', f"condition failed: {rule['condition']}"),
                text=str(rule['condition']),
            ))
        return cls(
            name=name,
            type=var_type,
            default=json_value(data.get('default'), f"{where}: variable '{name}' default"),
            has_default='default' in data,
            description=data.get('description', ''),
            validations=rules,
        )


@dataclass
class ResourceSpec:
    """A resource definition as written in the stack.

    Attributes:
        name: Local name (unique per kind within its body)
        kind: Resource kind passed to the provider
        attributes: Top-level attribute name -> compiled expression
        count: Optional compiled count expression (0 or 1)
        depends_on: Explicit dependency addresses, relative to the body
    """
    name: str
    kind: str
    attributes: dict[str, Expr] = field(default_factory=dict)
    count: Optional[Expr] = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def local_address(self) -> str:
        return f'{self.kind}.{self.name}'


@dataclass
class OutputSpec:
    """A named output of a stack or module body."""
    name: str
    value: Expr
    description: str = ''
    sensitive: bool = False


@dataclass
class StackBody:
    """Variables, resources, modules and outputs of a stack or module."""
    variables: dict[str, VariableDecl] = field(default_factory=dict)
    resources: list[ResourceSpec] = field(default_factory=list)
    modules: list['ModuleSpec'] = field(default_factory=list)
    outputs: dict[str, OutputSpec] = field(default_factory=dict)


@dataclass
class ModuleSpec:
    """A module call.

    Attributes:
        name: Module name, referenced as module.<name>
        body: Parsed module body
        inputs: Input name -> compiled expression (parent scope)
        count: Optional compiled count expression gating every node
        depends_on: Explicit dependency addresses, relative to the parent body
        source: Source path of the module body, if loaded from a file
    """
    name: str
    body: StackBody
    inputs: dict[str, Expr] = field(default_factory=dict)
    count: Optional[Expr] = None
    depends_on: list[str] = field(default_factory=list)
    source: Optional[Path] = None


@dataclass
class Stack:
    """A loaded stack.

    Attributes:
        name: Stack name
        body: Root body
        description: Optional description
        source_path: Path the stack was loaded from (for error messages)
        fingerprint: sha256 of the canonical stack document with modules inlined
    """
    name: str
    body: StackBody
    description: str = ''
    source_path: Optional[Path] = None
    fingerprint: str = ''

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None,
                  source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Args:
            data: Stack document
            base_dir: Directory module sources are resolved against
            source_path: Optional source path for error messages

        Raises:
            ValidationError: If the stack is malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Stack must be a mapping")
        if 'name' not in data:
            raise ValidationError("Stack missing required field: name")

        base_dir = base_dir or (source_path.parent if source_path else Path.cwd())
        chain = (source_path.resolve(),) if source_path else ()
        inlined: dict = {}
        body = _parse_body(data, base_dir, where='stack', chain=chain, inlined=inlined)
        canonical = json.dumps({'stack': data, 'modules': inlined}, sort_keys=True, default=str)

        return cls(
            name=data['name'],
            body=body,
            description=data.get('description', ''),
            source_path=source_path,
            fingerprint=hashlib.sha256(canonical.encode('utf-8')).hexdigest(),
        )


def _check_name(name: Any, what: str, where: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValidationError(f"{where}: invalid {what} name {name!r}")
    return name


def _depends_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{where}: depends_on must be a list of addresses")
    return list(value)


def _parse_body(data: dict, base_dir: Path, where: str, chain: tuple, inlined: dict) -> StackBody:
    """Parse a stack or module body."""
    body = StackBody()

    variables = data.get('variables') or {}
    if not isinstance(variables, dict):
        raise ValidationError(f"{where}: 'variables' must be a mapping")
    for name, decl in variables.items():
        _check_name(name, 'variable', where)
        body.variables[name] = VariableDecl.from_dict(name, decl, where)

    resources = data.get('resources') or []
    if not isinstance(resources, list):
        raise ValidationError(f"{where}: 'resources' must be a list")
    seen: set[str] = set()
    for i, res in enumerate(resources):
        if not isinstance(res, dict):
            raise ValidationError(f"{where}: resource {i} must be a mapping")
        for key in ('name', 'kind'):
            if key not in res:
                raise ValidationError(f"{where}: resource {i} missing required field: {key}")
        name = _check_name(res['name'], 'resource', where)
        kind = _check_name(res['kind'], 'resource kind', where)
        if kind in ('var', 'module', 'output'):
            raise ValidationError(f"{where}: resource kind '{kind}' is reserved")
        attrs = res.get('attributes') or {}
        if not isinstance(attrs, dict):
            raise ValidationError(f"{where}: resource '{kind}.{name}' attributes must be a mapping")
        spec = ResourceSpec(
            name=name,
            kind=kind,
            attributes={str(k): compile_value(v) for k, v in attrs.items()},
            count=compile_optional(res.get('count')),
            depends_on=_depends_list(res.get('depends_on'), f"{where}: {kind}.{name}"),
        )
        if spec.local_address in seen:
            raise ValidationError(f"{where}: duplicate resource '{spec.local_address}'")
        seen.add(spec.local_address)
        body.resources.append(spec)

    modules = data.get('modules') or []
    if not isinstance(modules, list):
        raise ValidationError(f"{where}: 'modules' must be a list")
    module_names: set[str] = set()
    for i, mod in enumerate(modules):
        if not isinstance(mod, dict) or 'name' not in mod:
            raise ValidationError(f"{where}: module {i} missing required field: name")
        name = _check_name(mod['name'], 'module', where)
        if name in module_names:
            raise ValidationError(f"{where}: duplicate module '{name}'")
        module_names.add(name)
        body.modules.append(_parse_module(mod, base_dir, f"{where}.module.{name}", chain, inlined))

    outputs = data.get('outputs') or {}
    if not isinstance(outputs, dict):
        raise ValidationError(f"{where}: 'outputs' must be a mapping")
    for name, out in outputs.items():
        _check_name(name, 'output', where)
        if not isinstance(out, dict) or 'value' not in out:
            raise ValidationError(f"{where}: output '{name}' missing required field: value")
        body.outputs[name] = OutputSpec(
            name=name,
            value=compile_value(out['value']),
            description=out.get('description', ''),
            sensitive=bool(out.get('sensitive', False)),
        )

    return body


def _parse_module(mod: dict, base_dir: Path, where: str, chain: tuple, inlined: dict) -> ModuleSpec:
    """Parse a module call, loading its body from source or inline."""
    source: Optional[Path] = None
    if 'source' in mod:
        source = (base_dir / mod['source']).resolve()
        if source in chain:
            raise ValidationError(f"{where}: module source recursion via {source}")
        body_data = _read_yaml(source)
        inlined[where] = body_data
        body = _parse_body(body_data, source.parent, where, chain + (source,), inlined)
    elif 'body' in mod:
        if not isinstance(mod['body'], dict):
            raise ValidationError(f"{where}: module body must be a mapping")
        body = _parse_body(mod['body'], base_dir, where, chain, inlined)
    else:
        raise ValidationError(f"{where}: module requires 'source' or 'body'")

    inputs = mod.get('inputs') or {}
    if not isinstance(inputs, dict):
        raise ValidationError(f"{where}: module inputs must be a mapping")

    return ModuleSpec(
        name=mod['name'],
        body=body,
        inputs={str(k): compile_value(v) for k, v in inputs.items()},
        count=compile_optional(mod.get('count')),
        depends_on=_depends_list(mod.get('depends_on'), where),
        source=source,
    )


def _read_yaml(path: Path) -> dict:
    """Read a YAML mapping from disk."""
    if not path.exists():
        raise ValidationError(f"File not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must be a YAML object (dict)")
    return data


def load_stack(file_path: Path) -> Stack:
    """Load a stack from a YAML file.

    Raises:
        ValidationError: If the file is missing or the stack is invalid
    """
    path = Path(file_path)
    data = _read_yaml(path)
    stack = Stack.from_dict(data, source_path=path)
    logger.debug(f"Loaded stack '{stack.name}' from {path}")
    return stack
