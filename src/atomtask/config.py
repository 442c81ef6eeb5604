"""Option models and the optional YAML settings file.

A settings file looks like::

    log_level: DEBUG
    task:
      concurrency: 4
      drain_timeout: 30
    atom_task:
      retry_times: 1
      retry_delay: 0.5
      timeout: 10
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, TypeVar, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import TaskValidationError

DEFAULT_CONFIG_FILE = "atomtask.yaml"

_M = TypeVar("_M", bound=BaseModel)


class AtomTaskOptions(BaseModel):
    """Retry policy for one atomic task. Durations are in seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    retry_times: int = Field(3, ge=0)
    retry_delay: float = Field(1.0, ge=0)
    timeout: float = Field(60.0, gt=0)


class TaskOptions(BaseModel):
    """Construction options for a task.

    ``shared_ctx`` borrows another task's context; when set,
    ``default_ctx_data`` is ignored.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    concurrency: int = Field(1, ge=1)
    default_ctx_data: Optional[dict[str, Any]] = None
    shared_ctx: Any = None
    drain_timeout: float = Field(60.0, gt=0)
    drain_poll_interval: float = Field(0.5, gt=0)
    listener_grace: float = Field(1.0, ge=0)


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task: TaskOptions = Field(default_factory=TaskOptions)
    atom_task: AtomTaskOptions = Field(default_factory=AtomTaskOptions)
    log_level: str = "INFO"


def coerce_options(model: type[_M], value: Union[_M, dict[str, Any], None], **overrides: Any) -> _M:
    """Build *model* from an instance, a mapping or ``None``.

    pydantic validation failures surface as ``TaskValidationError``.
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if value is None:
        data: dict[str, Any] = {}
    elif isinstance(value, model):
        if not overrides:
            return value
        data = {name: getattr(value, name) for name in model.model_fields}
    elif isinstance(value, dict):
        data = dict(value)
    else:
        raise TaskValidationError(
            f"{model.__name__} must be a mapping or {model.__name__} instance, got {type(value).__name__}"
        )
    data.update(overrides)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise TaskValidationError(f"Invalid {model.__name__}: {exc}") from exc


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from a YAML file.

    Args:
        path: File to read. Defaults to ``atomtask.yaml`` in the working directory.

    Returns:
        The parsed settings, or defaults when the file does not exist.
    """
    path = Path(path) if path is not None else Path.cwd() / DEFAULT_CONFIG_FILE
    if not path.exists():
        return Settings()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise TaskValidationError(f"Unreadable settings file {path}: {exc}") from exc
    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise TaskValidationError(f"Settings file {path} must contain a mapping")
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise TaskValidationError(f"Invalid settings in {path}: {exc}") from exc
