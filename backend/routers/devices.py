"""Device router: device pools and factory configuration."""

from typing import Optional

from fastapi import APIRouter, HTTPException

from models.device_model import ConfigurationLevel, DeviceConfigContext, FactoryConfig
from services.device_pool import ConfigurationError, FactoryConfigService

router = APIRouter()
factory_service = FactoryConfigService()


@router.get("/devices/pool", response_model=DeviceConfigContext)
async def get_device_pool(line_id: Optional[str] = None) -> DeviceConfigContext:
    """Active device pool: the R&D pool, or a production line's pool."""
    level = ConfigurationLevel.PRODUCTION_LINE if line_id else ConfigurationLevel.RECIPE
    try:
        return factory_service.create_device_context(level, line_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/devices/factories", response_model=list[FactoryConfig])
async def list_factories() -> list[FactoryConfig]:
    """All configured factories with their production lines."""
    return factory_service.get_all_factories()
