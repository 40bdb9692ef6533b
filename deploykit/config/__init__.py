# deploykit/config/__init__.py
"""Configuration module: YAML settings with environment overrides."""
from .settings import DeployKitSettings, load_settings, save_settings

__all__ = [
    'DeployKitSettings',
    'load_settings',
    'save_settings'
]
