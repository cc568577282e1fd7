"""Pydantic data models for physical device resources and pool configuration."""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


class DeviceType(str, Enum):
    """Substitutable device classes."""
    HIGH_SPEED_MIXER = "HIGH_SPEED_MIXER"
    MIXING_TANK = "MIXING_TANK"
    PIPELINE = "PIPELINE"
    FILTER = "FILTER"
    UHT_MACHINE = "UHT_MACHINE"
    FILLING_MACHINE = "FILLING_MACHINE"
    ASEPTIC_TANK = "ASEPTIC_TANK"
    OTHER = "OTHER"


class DeviceState(str, Enum):
    """Runtime state of a device."""
    IDLE = "IDLE"
    IN_USE = "IN_USE"
    CLEANING = "CLEANING"
    MAINTENANCE = "MAINTENANCE"
    FAULT = "FAULT"
    RESERVED = "RESERVED"


class DeviceUsageMode(str, Enum):
    """How a production line treats a device."""
    PRIMARY = "PRIMARY"
    BACKUP = "BACKUP"
    DISABLED = "DISABLED"


class ConfigurationLevel(str, Enum):
    """Which device pool a schedule runs against."""
    RECIPE = "RECIPE"
    FACTORY = "FACTORY"
    PRODUCTION_LINE = "PRODUCTION_LINE"


class QuantityValue(BaseModel):
    """A value with a unit, e.g. 2000 L."""
    value: float
    unit: str


class EquipmentSpec(BaseModel):
    """A named device specification such as filter precision."""
    name: str
    value: Union[str, float]
    unit: Optional[str] = None


class DeviceResource(BaseModel):
    """A named, typed physical device in a device pool."""
    device_code: str
    device_type: DeviceType
    display_name: str
    capacity: Optional[QuantityValue] = None
    specifications: list[EquipmentSpec] = Field(default_factory=list)
    usage_mode: Optional[DeviceUsageMode] = None
    current_state: DeviceState = DeviceState.IDLE


class ProductionLineConfig(BaseModel):
    """Device configuration of one production line."""
    id: str
    factory_name: str
    line_name: str
    device_pool: list[DeviceResource] = Field(default_factory=list)
    missing_device_types: list[DeviceType] = Field(default_factory=list)
    device_mapping: dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None
    enabled: bool = True


class FactoryConfig(BaseModel):
    """A factory with its production lines."""
    id: str
    name: str
    location: Optional[str] = None
    production_lines: list[ProductionLineConfig] = Field(default_factory=list)
    enabled: bool = True


class DeviceConfigContext(BaseModel):
    """The device pool selected for a scheduling run."""
    level: ConfigurationLevel
    recipe_device_pool: list[DeviceResource] = Field(default_factory=list)
    production_line_config: Optional[ProductionLineConfig] = None
    active_device_pool: list[DeviceResource] = Field(default_factory=list)
