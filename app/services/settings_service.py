import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.setting import Setting, SettingType
from app.services.cache_service import CacheBackend

logger = logging.getLogger(__name__)


# Well-known keys
COUNT_FOLIO_FORMAT = "count_folio_format"
REQUEST_FOLIO_FORMAT = "request_folio_format"

_CACHE_PREFIX = "inv:settings:"


def _cast(value: Optional[str], value_type: str) -> Any:
    if value is None:
        return None
    if value_type == SettingType.NUMBER.value:
        number = float(value)
        return int(number) if number.is_integer() else number
    if value_type == SettingType.BOOLEAN.value:
        return value.strip().lower() in ("1", "true", "yes", "si", "sí")
    if value_type == SettingType.JSON.value:
        return json.loads(value)
    return value


class SettingsService:
    """Typed reads and writes of the settings table."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheBackend] = None):
        self.db = db
        self.cache = cache

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Value of a setting, or `default` when unset or empty."""
        if self.cache is not None:
            cached = await self.cache.get(_CACHE_PREFIX + key)
            if cached is not None:
                return cached

        result = await self.db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()
        if setting is None or setting.value in (None, ""):
            return default

        try:
            value = _cast(setting.value, setting.value_type)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(f"Setting '{key}' has an invalid {setting.value_type} value: {e}")
            return default

        if self.cache is not None:
            await self.cache.set(_CACHE_PREFIX + key, value, settings.CACHE_TTL_CONFIG)
        return value

    async def set_value(
        self,
        key: str,
        value: Any,
        value_type: SettingType = SettingType.STRING,
        description: Optional[str] = None,
    ) -> Setting:
        stored = json.dumps(value) if value_type == SettingType.JSON else str(value)

        result = await self.db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()
        if setting is None:
            setting = Setting(key=key, value=stored, value_type=value_type.value, description=description)
            self.db.add(setting)
        else:
            setting.value = stored
            setting.value_type = value_type.value
            if description is not None:
                setting.description = description
        await self.db.flush()

        if self.cache is not None:
            await self.cache.delete(_CACHE_PREFIX + key)
        return setting
