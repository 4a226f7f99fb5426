from .base import Base
from .control import Control
from .control_mapping import ControlMapping, MappingType, MAPPING_TYPES

__all__ = [
    "Base",
    "Control",
    "ControlMapping", "MappingType", "MAPPING_TYPES",
]
