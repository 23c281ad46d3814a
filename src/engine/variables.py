"""Variable registry: resolve declared variables from defaults and overrides.

Override sources, lowest to highest precedence:
1. Declaration default
2. Var file (name=value lines)
3. Environment (IAC_VAR_<name>)
4. CLI flags (--var name=value)

Overrides from files, environment and flags arrive as strings and are
coerced to the declared type before validation rules run.
"""

import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import yaml

from engine.errors import ValidationError
from engine.expressions import BoundRef, Ref, bind, evaluate, json_value, traverse
from stack import VariableDecl

logger = logging.getLogger(__name__)

ENV_PREFIX = 'IAC_VAR_'

_TRUE = {'true', 'yes', '1', 'on'}
_FALSE = {'false', 'no', '0', 'off'}


def load_var_file(path: Path) -> dict[str, str]:
    """Parse a var file of ``name=value`` lines.

    Blank lines and lines starting with '#' are ignored. Values may be
    wrapped in single or double quotes.

    Raises:
        ValidationError: On a line without '=' or an unreadable file
    """
    overrides: dict[str, str] = {}
    try:
        lines = Path(path).read_text(encoding='utf-8').splitlines()
    except OSError as e:
        raise ValidationError(f"Cannot read var file {path}: {e}") from e

    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if '=' not in line:
            raise ValidationError(f"{path}:{lineno}: expected name=value, got '{line}'")
        name, value = line.split('=', 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        overrides[name.strip()] = value
    return overrides


def parse_cli_vars(values: Optional[list[str]]) -> dict[str, str]:
    """Parse repeated ``--var name=value`` flags."""
    overrides: dict[str, str] = {}
    for item in values or []:
        if '=' not in item:
            raise ValidationError(f"--var expects name=value, got '{item}'")
        name, value = item.split('=', 1)
        overrides[name.strip()] = value
    return overrides


def collect_overrides(
    declared: Iterable[str],
    var_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    cli_vars: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Merge override sources in precedence order.

    Undeclared names in the var file or CLI flags are rejected. Undeclared
    IAC_VAR_* environment variables are ignored, since the environment is
    shared with unrelated tools.

    Raises:
        ValidationError: On undeclared names from file or flags
    """
    declared = set(declared)
    environ = os.environ if environ is None else environ
    merged: dict[str, Any] = {}

    if var_file is not None:
        file_vars = load_var_file(var_file)
        unknown = sorted(set(file_vars) - declared)
        if unknown:
            raise ValidationError(f"Var file {var_file} sets undeclared variable(s): {', '.join(unknown)}")
        merged.update(file_vars)

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):]
        if name in declared:
            merged[name] = value
        else:
            logger.debug(f"Ignoring {key}: no variable '{name}' declared")

    if cli_vars:
        unknown = sorted(set(cli_vars) - declared)
        if unknown:
            raise ValidationError(f"--var sets undeclared variable(s): {', '.join(unknown)}")
        merged.update(cli_vars)

    return merged


def _coerce(decl: VariableDecl, value: Any, where: str) -> Any:
    """Coerce a value to the declared type or raise ValidationError."""
    var_type = decl.type
    if value is None or var_type == 'any':
        return value

    if var_type == 'string':
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (str, int, float)):
            return str(value)
    elif var_type == 'number':
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return float(value) if any(c in value for c in '.eE') else int(value)
            except ValueError:
                pass
    elif var_type == 'bool':
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
    elif var_type in ('list', 'map'):
        expected = list if var_type == 'list' else dict
        if isinstance(value, str):
            try:
                value = json_value(yaml.safe_load(value), where)
            except yaml.YAMLError:
                pass
        if isinstance(value, expected):
            return value

    raise ValidationError(f"{where}: expected {var_type}, got {value!r}", code="E101")


def check_value(decl: VariableDecl, value: Any, where: str = '') -> Any:
    """Coerce and validate a value against a declaration.

    Args:
        decl: Variable declaration
        value: Candidate value
        where: Prefix for error messages (defaults to "Variable '<name>'")

    Returns:
        The coerced value

    Raises:
        ValidationError: Naming the variable and the violated rule
    """
    where = where or f"Variable '{decl.name}'"
    value = _coerce(decl, value, where)

    def _binder(ref: Ref) -> BoundRef:
        if len(ref.parts) >= 2 and ref.parts[0] == 'var' and ref.parts[1] == decl.name:
            return BoundRef('variable', decl.name, tuple(ref.parts[2:]), ref.text)
        raise ValidationError(
            f"{where}: validation may only reference var.{decl.name}, found '{ref.text}'"
        )

    for rule in decl.validations:
        condition = bind(rule.condition, _binder)
        result = evaluate(condition, lambda r: traverse(value, r.path, r.text))
        if result is not True:
            raise ValidationError(
                f"{where}: {rule.error_message} (rule: {rule.text})", code="E102"
            )
    return value


class VariableRegistry:
    """Holds variable declarations and resolves their effective values."""

    def __init__(self, declarations: Mapping[str, VariableDecl]):
        self.declarations = dict(declarations)

    def resolve(self, overrides: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
        """Resolve every declared variable.

        Args:
            overrides: Name -> value from files, environment or flags

        Returns:
            Immutable name -> value mapping

        Raises:
            ValidationError: If a value is missing, mistyped or fails a rule
        """
        overrides = dict(overrides or {})
        unknown = sorted(set(overrides) - set(self.declarations))
        if unknown:
            raise ValidationError(f"Override(s) for undeclared variable(s): {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for name, decl in self.declarations.items():
            if name in overrides:
                raw = overrides[name]
                logger.debug(f"Variable '{name}' set by override")
            elif decl.has_default:
                raw = decl.default
            else:
                raise ValidationError(
                    f"Variable '{name}' is required: no value given and no default", code="E103"
                )
            values[name] = check_value(decl, raw)

        return MappingProxyType(values)
