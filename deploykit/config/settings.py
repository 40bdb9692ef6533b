"""
Settings for the deployment safety core.
Loaded from deploy-kit.yaml with environment overrides.
"""
import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from deploykit.errors import ValidationError, validate_number
from deploykit.locks.manager import DEFAULT_TTL_MINUTES
from deploykit.progress.tracker import DEFAULT_STAGES
from deploykit.rollout.canary_manager import CanaryConfig, HealthCheck, HealthThresholds

DEFAULT_SETTINGS_FILE = "deploy-kit.yaml"

ENV_PROJECT_ROOT = "DEPLOYKIT_PROJECT_ROOT"
ENV_LOCK_TTL = "DEPLOYKIT_LOCK_TTL_MINUTES"
ENV_SST_TIMEOUT = "DEPLOYKIT_SST_TIMEOUT"


def _default_canary() -> Dict[str, Any]:
    return {
        "initial_percentage": 10,
        "increment_percentage": 25,
        "increment_interval": 300.0,
        "final_percentage": 100,
        "failure_threshold_count": 3,
        "rollback_on": HealthThresholds.defaults().to_dict(),
        "health_checks": [],
    }


@dataclass
class DeployKitSettings:
    """Settings for locks, pipeline stages and canary defaults"""
    project_root: str = "."
    lock_ttl_minutes: int = DEFAULT_TTL_MINUTES
    sst_timeout_seconds: float = 30.0
    pipeline_stages: List[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    canary: Dict[str, Any] = field(default_factory=_default_canary)

    def validate(self) -> None:
        validate_number(self.lock_ttl_minutes, "lock_ttl_minutes", minimum=1, integer=True)
        validate_number(self.sst_timeout_seconds, "sst_timeout_seconds", minimum=0)
        if self.sst_timeout_seconds == 0:
            raise ValidationError("sst_timeout_seconds must be positive",
                                  details={"field": "sst_timeout_seconds"})
        if not isinstance(self.pipeline_stages, list) or not self.pipeline_stages \
                or not all(isinstance(s, str) and s for s in self.pipeline_stages):
            raise ValidationError("pipeline_stages must be a non-empty list of names",
                                  details={"field": "pipeline_stages"})
        self.canary_config().validate()

    def canary_config(self) -> CanaryConfig:
        """Build the default CanaryConfig from the canary section"""
        data = dict(self.canary)
        try:
            rollback_on = HealthThresholds(**(data.pop("rollback_on", None) or {}))
            health_checks = [HealthCheck(**c) for c in data.pop("health_checks", None) or []]
            return CanaryConfig(rollback_on=rollback_on, health_checks=health_checks, **data)
        except TypeError as e:
            raise ValidationError(f"Malformed canary settings: {e}",
                                  details={"field": "canary"}) from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_root": self.project_root,
            "lock_ttl_minutes": self.lock_ttl_minutes,
            "sst_timeout_seconds": self.sst_timeout_seconds,
            "pipeline_stages": list(self.pipeline_stages),
            "canary": self.canary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeployKitSettings':
        known = set(cls().to_dict())
        unknown = set(data) - known
        if unknown:
            raise ValidationError(
                f"Unknown settings: {', '.join(sorted(unknown))}",
                details={"unknown": sorted(unknown)}
            )

        section = data.get("canary") or {}
        if not isinstance(section, dict):
            raise ValidationError("canary settings must be a mapping",
                                  details={"field": "canary"})
        canary = _default_canary()
        canary.update(section)
        merged = {k: v for k, v in data.items() if k != "canary"}
        return cls(canary=canary, **merged)


def _apply_env_overrides(settings: DeployKitSettings, environ: Mapping[str, str]) -> None:
    if environ.get(ENV_PROJECT_ROOT):
        settings.project_root = environ[ENV_PROJECT_ROOT]

    try:
        if environ.get(ENV_LOCK_TTL):
            settings.lock_ttl_minutes = int(environ[ENV_LOCK_TTL])
        if environ.get(ENV_SST_TIMEOUT):
            settings.sst_timeout_seconds = float(environ[ENV_SST_TIMEOUT])
    except ValueError as e:
        raise ValidationError(f"Invalid environment override: {e}") from e


def load_settings(path: Optional[Union[str, Path]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> DeployKitSettings:
    """
    Load settings from YAML.

    A missing file yields the built-in defaults. Environment variables are
    applied last.
    """
    settings_path = Path(path or DEFAULT_SETTINGS_FILE)
    environ = os.environ if environ is None else environ

    if settings_path.exists():
        with open(settings_path, 'r') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValidationError(f"Invalid YAML in {settings_path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"{settings_path} must contain a mapping")
        settings = DeployKitSettings.from_dict(data)
    else:
        settings = DeployKitSettings()

    _apply_env_overrides(settings, environ)
    settings.validate()
    return settings


def save_settings(settings: DeployKitSettings, path: Union[str, Path]) -> None:
    """Write settings to YAML."""
    settings_path = Path(path)
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_path, 'w') as f:
        yaml.dump(settings.to_dict(), f, default_flow_style=False)
