"""Type mapping registry and mapping file loader."""

from .loader import MappingLoadError, MappingSpec, load_mapping_file, load_mapping_spec
from .registry import MappingResolution, TypeMappingRegistry

__all__ = [
    "MappingLoadError",
    "MappingResolution",
    "MappingSpec",
    "TypeMappingRegistry",
    "load_mapping_file",
    "load_mapping_spec",
]
