"""Device pools: the R&D default pool and per-production-line configurations."""

import logging
from typing import Optional

from models.device_model import (
    ConfigurationLevel,
    DeviceConfigContext,
    DeviceResource,
    DeviceState,
    DeviceType,
    DeviceUsageMode,
    EquipmentSpec,
    FactoryConfig,
    ProductionLineConfig,
    QuantityValue,
)
from models.recipe_model import Process

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised for unknown production lines or invalid configuration levels."""


def _device(
    code: str,
    device_type: DeviceType,
    name: str,
    litres: float | None = None,
    usage_mode: DeviceUsageMode | None = None,
    specifications: list[EquipmentSpec] | None = None,
) -> DeviceResource:
    return DeviceResource(
        device_code=code,
        device_type=device_type,
        display_name=name,
        capacity=QuantityValue(value=litres, unit="L") if litres else None,
        specifications=specifications or [],
        usage_mode=usage_mode,
        current_state=DeviceState.IDLE,
    )


_FILTER_SPEC = [EquipmentSpec(name="filterPrecision", value=0.5, unit="μm")]


def default_device_pool() -> list[DeviceResource]:
    """R&D pool: two high-speed mixers, one mixing tank and the downstream line."""
    return [
        _device("高搅桶1", DeviceType.HIGH_SPEED_MIXER, "高速搅拌桶#1", 2000),
        _device("高搅桶2", DeviceType.HIGH_SPEED_MIXER, "高速搅拌桶#2", 2000),
        _device("调配桶", DeviceType.MIXING_TANK, "主调配桶", 5000),
        _device("管道过滤器1", DeviceType.FILTER, "管道过滤器#1", specifications=_FILTER_SPEC),
        _device("UHT机", DeviceType.UHT_MACHINE, "UHT灭菌机"),
        _device("灌装机", DeviceType.FILLING_MACHINE, "无菌灌装机"),
    ]


def find_devices_by_type(pool: list[DeviceResource], device_type: DeviceType) -> list[DeviceResource]:
    return [d for d in pool if d.device_type == device_type]


def find_device_by_code(pool: list[DeviceResource], device_code: str) -> Optional[DeviceResource]:
    for device in pool:
        if device.device_code == device_code:
            return device
    return None


def _default_factories() -> list[FactoryConfig]:
    tianjin_line1 = ProductionLineConfig(
        id="tianjin-line1",
        factory_name="天津厂",
        line_name="一线",
        device_pool=[
            _device("TJ-L1-高搅桶1", DeviceType.HIGH_SPEED_MIXER, "天津一线-高搅桶#1", 2000,
                    DeviceUsageMode.PRIMARY),
            _device("TJ-L1-高搅桶2", DeviceType.HIGH_SPEED_MIXER, "天津一线-高搅桶#2", 2000,
                    DeviceUsageMode.PRIMARY),
            _device("TJ-L1-高搅桶3", DeviceType.HIGH_SPEED_MIXER, "天津一线-高搅桶#3（备用）", 2000,
                    DeviceUsageMode.BACKUP),
            _device("TJ-L1-调配桶", DeviceType.MIXING_TANK, "天津一线-调配桶", 5000,
                    DeviceUsageMode.PRIMARY),
            _device("TJ-L1-过滤器1", DeviceType.FILTER, "天津一线-过滤器#1",
                    usage_mode=DeviceUsageMode.PRIMARY, specifications=_FILTER_SPEC),
        ],
        device_mapping={
            "高搅桶1": "TJ-L1-高搅桶1",
            "高搅桶2": "TJ-L1-高搅桶2",
            "调配桶": "TJ-L1-调配桶",
            "管道过滤器1": "TJ-L1-过滤器1",
        },
        description="天津工厂一号生产线，配备3个高搅桶（2个常用+1个备用）",
    )
    shanghai_line2 = ProductionLineConfig(
        id="shanghai-line2",
        factory_name="上海厂",
        line_name="二线",
        device_pool=[
            _device("SH-L2-高搅桶A", DeviceType.HIGH_SPEED_MIXER, "上海二线-高搅桶A", 1500,
                    DeviceUsageMode.PRIMARY),
            _device("SH-L2-高搅桶B", DeviceType.HIGH_SPEED_MIXER, "上海二线-高搅桶B", 1500,
                    DeviceUsageMode.PRIMARY),
            _device("SH-L2-调配桶", DeviceType.MIXING_TANK, "上海二线-调配桶", 4000,
                    DeviceUsageMode.PRIMARY),
        ],
        missing_device_types=[DeviceType.FILTER],
        device_mapping={
            "高搅桶1": "SH-L2-高搅桶A",
            "高搅桶2": "SH-L2-高搅桶B",
            "调配桶": "SH-L2-调配桶",
        },
        description="上海工厂二号生产线，设备容量较小，无过滤器",
    )
    return [
        FactoryConfig(id="tianjin", name="天津厂", location="天津市",
                      production_lines=[tianjin_line1]),
        FactoryConfig(id="shanghai", name="上海厂", location="上海市",
                      production_lines=[shanghai_line2]),
    ]


class FactoryConfigService:
    """Looks up factories and production lines and builds device contexts.

    Each instance owns its own factory table; nothing is shared between
    instances.
    """

    def __init__(self, factories: list[FactoryConfig] | None = None) -> None:
        if factories is None:
            factories = _default_factories()
        self._factories: dict[str, FactoryConfig] = {f.id: f for f in factories}

    def get_all_factories(self) -> list[FactoryConfig]:
        return list(self._factories.values())

    def get_factory(self, factory_id: str) -> FactoryConfig | None:
        return self._factories.get(factory_id)

    def get_production_line(self, line_id: str) -> ProductionLineConfig | None:
        for factory in self._factories.values():
            for line in factory.production_lines:
                if line.id == line_id:
                    return line
        return None

    def get_all_production_lines(self) -> list[ProductionLineConfig]:
        return [line for f in self._factories.values() for line in f.production_lines]

    def _require_line(self, line_id: str) -> ProductionLineConfig:
        line = self.get_production_line(line_id)
        if line is None:
            raise ConfigurationError(f"Production line '{line_id}' not found")
        return line

    def create_device_context(
        self, level: ConfigurationLevel, line_id: str | None = None
    ) -> DeviceConfigContext:
        """Select the active device pool for a configuration level.

        Raises:
            ConfigurationError: If the line is unknown or the level is not supported.
        """
        if level == ConfigurationLevel.RECIPE:
            pool = default_device_pool()
            return DeviceConfigContext(
                level=level, recipe_device_pool=pool, active_device_pool=pool
            )

        if level == ConfigurationLevel.PRODUCTION_LINE and line_id:
            line = self._require_line(line_id)
            return DeviceConfigContext(
                level=level,
                recipe_device_pool=default_device_pool(),
                production_line_config=line,
                active_device_pool=[
                    d for d in line.device_pool if d.usage_mode != DeviceUsageMode.DISABLED
                ],
            )

        raise ConfigurationError(f"Invalid configuration level: {level.value}")

    def map_device_code(self, recipe_device_code: str, line_id: str) -> str:
        """Map a recipe device code to the line's physical device (identity if unmapped)."""
        line = self.get_production_line(line_id)
        if line is None or not line.device_mapping:
            return recipe_device_code
        return line.device_mapping.get(recipe_device_code, recipe_device_code)

    def supports_device_type(self, line_id: str, device_type: DeviceType) -> bool:
        line = self.get_production_line(line_id)
        if line is None:
            return False
        if device_type in line.missing_device_types:
            return False
        return any(
            d.device_type == device_type and d.usage_mode != DeviceUsageMode.DISABLED
            for d in line.device_pool
        )

    def apply_line_mapping(self, processes: list[Process], line_id: str) -> list[Process]:
        """Return copies of processes with device requirements remapped to a line.

        Specific codes go through the line's mapping. A requirement whose device
        type the line lacks keeps only its type, so scheduling reports a
        DEVICE_CONFLICT instead of binding an unrelated device.
        """
        line = self._require_line(line_id)
        mapped = [p.model_copy(deep=True) for p in processes]
        for process in mapped:
            for step in process.sub_steps:
                req = step.device_requirement
                if req is None:
                    continue
                if req.device_type is not None and not self.supports_device_type(
                    line_id, req.device_type
                ):
                    logger.info(
                        "Line %s lacks device type %s required by step %s",
                        line.id, req.device_type.value, step.id,
                    )
                    req.device_code = None
                    continue
                if req.device_code:
                    req.device_code = self.map_device_code(req.device_code, line_id)
        return mapped
