"""
Provider adapter registry.
"""
import logging
from typing import Dict, Iterable, List, Optional

import httpx

from repurpose.config import ProvidersConfig
from repurpose.orchestration.models import TaskType

from .base import BaseProviderAdapter
from .exceptions import ProviderUnavailable
from .fal import FalAdapter
from .kie import KieAdapter
from .vizard import VizardAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Adapters looked up by provider name (webhooks) or by task type (dispatch)."""

    _adapters = {
        "vizard": VizardAdapter,
        "fal": FalAdapter,
        "kie": KieAdapter,
    }

    def __init__(self, adapters: Iterable[BaseProviderAdapter]):
        self._by_name: Dict[str, BaseProviderAdapter] = {}
        self._by_task_type: Dict[TaskType, BaseProviderAdapter] = {}

        for adapter in adapters:
            self._by_name[adapter.name] = adapter
            for task_type in adapter.task_types:
                self._by_task_type[task_type] = adapter

    @classmethod
    def create(cls, config: ProvidersConfig, client: Optional[httpx.AsyncClient] = None) -> "ProviderRegistry":
        """Build one adapter instance per known provider."""
        registry = cls(adapter_cls(config, client=client) for adapter_cls in cls._adapters.values())
        for adapter in registry.adapters:
            if not adapter.is_available:
                logger.warning(f"{adapter.tag} No API key configured - {adapter.name} jobs will be rejected")
        return registry

    @property
    def adapters(self) -> List[BaseProviderAdapter]:
        return list(self._by_name.values())

    def has(self, name: str) -> bool:
        return name in self._by_name

    def get(self, name: str) -> BaseProviderAdapter:
        if name not in self._by_name:
            raise ProviderUnavailable(name, "unknown provider")
        return self._by_name[name]

    def for_task_type(self, task_type: TaskType) -> BaseProviderAdapter:
        task_type = TaskType(task_type)
        if task_type not in self._by_task_type:
            raise ProviderUnavailable("registry", f"no provider for task type {task_type.value}")
        return self._by_task_type[task_type]

    async def close(self) -> None:
        for adapter in self.adapters:
            await adapter.close()
