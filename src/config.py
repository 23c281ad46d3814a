"""Run configuration management.

Configuration is loaded from the workdir:
- settings.yaml: Endpoint, tuning and path settings
- secrets.yaml: API token (kept out of settings so it can be encrypted)

Resolution order (lowest to highest):
1. Built-in defaults
2. settings.yaml / secrets.yaml
3. Environment (IAC_API_ENDPOINT, IAC_API_TOKEN, IAC_PARALLELISM,
   IAC_STATE_PATH, IAC_INSECURE)
4. CLI flags

The resulting RunConfig is passed explicitly into every phase; nothing
reads ambient process state after loading.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

SETTINGS_FILE = 'settings.yaml'
SECRETS_FILE = 'secrets.yaml'
DEFAULT_STATE_PATH = Path('.state') / 'state.json'
DEFAULT_REPORT_DIR = Path('reports')
DEFAULT_VAR_FILE = 'stack.vars'

_TRUE = {'1', 'true', 'yes', 'on'}
_FALSE = {'0', 'false', 'no', 'off', ''}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RunConfig:
    """Configuration for one engine run.

    Attributes:
        workdir: Directory holding the stack and settings
        stack_file: Stack YAML path
        var_file: Optional var file path (name=value lines)
        state_path: State JSON path
        report_dir: Directory for run reports
        api_endpoint: Provider base URL
        insecure: Skip TLS verification
        parallelism: Worker pool size for apply/destroy
        poll_interval: Seconds between provider status polls
        poll_timeout: Seconds before giving up on a provider operation
        read_retries: Attempts for provider reads/polls that time out
        request_timeout: Per-request timeout in seconds
    """
    workdir: Path
    stack_file: Path = Path('stack.yaml')
    var_file: Optional[Path] = None
    state_path: Path = DEFAULT_STATE_PATH
    report_dir: Path = DEFAULT_REPORT_DIR
    api_endpoint: str = ''
    insecure: bool = False
    parallelism: int = 4
    poll_interval: float = 2.0
    poll_timeout: float = 600.0
    read_retries: int = 4
    request_timeout: float = 30.0

    # API token (resolved from secrets.yaml or environment at load time)
    _api_token: str = field(default='', init=False, repr=False)

    def __post_init__(self):
        self.workdir = Path(self.workdir)
        self.stack_file = self._in_workdir(self.stack_file)
        self.state_path = self._in_workdir(self.state_path)
        self.report_dir = self._in_workdir(self.report_dir)
        if self.var_file is not None:
            self.var_file = self._in_workdir(self.var_file)

    def _in_workdir(self, path: Any) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.workdir / path

    def get_api_token(self) -> str:
        """Get resolved API token."""
        return self._api_token

    def set_api_token(self, token: str) -> None:
        self._api_token = token

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On an out-of-range setting
        """
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        for name in ('poll_interval', 'poll_timeout', 'request_timeout'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0, got {getattr(self, name)}")
        if self.read_retries < 1:
            raise ConfigError(f"read_retries must be >= 1, got {self.read_retries}")
        if self.api_endpoint and not self.api_endpoint.startswith(('http://', 'https://')):
            raise ConfigError(f"api_endpoint must be an http(s) URL, got '{self.api_endpoint}'")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML mapping")
    return data


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got '{value}'")


def _as_number(value: Any, name: str, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a {kind.__name__}, got '{value}'") from e


_SETTINGS = {
    'stack_file': Path,
    'var_file': Path,
    'state_path': Path,
    'report_dir': Path,
    'api_endpoint': str,
    'insecure': bool,
    'parallelism': int,
    'poll_interval': float,
    'poll_timeout': float,
    'read_retries': int,
    'request_timeout': float,
}

_ENV = {
    'IAC_API_ENDPOINT': 'api_endpoint',
    'IAC_PARALLELISM': 'parallelism',
    'IAC_STATE_PATH': 'state_path',
    'IAC_INSECURE': 'insecure',
}


def _convert(name: str, value: Any) -> Any:
    kind = _SETTINGS[name]
    if kind is bool:
        return _as_bool(value, name)
    if kind in (int, float):
        return _as_number(value, name, kind)
    if kind is Path:
        return Path(str(value))
    return str(value)


def load_run_config(
    workdir: Path,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """Load configuration for a workdir.

    Args:
        workdir: Workdir containing settings.yaml and the stack
        overrides: Values from CLI flags (None values are ignored)
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: On unreadable files, unknown settings or bad values
    """
    workdir = Path(workdir)
    if not workdir.is_dir():
        raise ConfigError(f"Workdir {workdir} does not exist")
    environ = os.environ if environ is None else environ

    values: dict[str, Any] = {}
    settings_file = workdir / SETTINGS_FILE
    if settings_file.exists():
        settings = _parse_yaml(settings_file)
        unknown = sorted(set(settings) - set(_SETTINGS))
        if unknown:
            raise ConfigError(f"{settings_file}: unknown setting(s): {', '.join(unknown)}")
        values.update({k: _convert(k, v) for k, v in settings.items() if v is not None})

    for env_name, name in _ENV.items():
        if env_value := environ.get(env_name):
            values[name] = _convert(name, env_value)

    for name, value in (overrides or {}).items():
        if value is not None:
            if name not in _SETTINGS:
                raise ConfigError(f"Unknown setting '{name}'")
            values[name] = _convert(name, value)

    if 'var_file' not in values and (workdir / DEFAULT_VAR_FILE).exists():
        values['var_file'] = Path(DEFAULT_VAR_FILE)

    config = RunConfig(workdir=workdir, **values)

    token = ''
    secrets_file = workdir / SECRETS_FILE
    if secrets_file.exists():
        token = str(_parse_yaml(secrets_file).get('api_token') or '')
    if env_token := environ.get('IAC_API_TOKEN'):
        token = env_token
    config.set_api_token(token)

    config.validate()
    return config
