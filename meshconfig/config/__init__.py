"""Mesh config schema, defaults, and the merge-onto-defaults loader."""

from meshconfig.config.loader import apply_mesh_config, get_app_settings, read_mesh_config
from meshconfig.config.schemas import MeshConfig, default_mesh_config

__all__ = ["MeshConfig", "apply_mesh_config", "default_mesh_config", "get_app_settings", "read_mesh_config"]
