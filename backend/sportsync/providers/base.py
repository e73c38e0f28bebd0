from abc import ABC, abstractmethod
from typing import Any


class ProviderClient(ABC):
    """Abstract base class for reference-data providers."""

    @abstractmethod
    async def fetch(self, entity_type: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch provider records for one entity type.

        ``filters`` are already validated against the entity registry.
        Returns normalized snake_case dicts with at least:
        - external_id: int | str
        - the entity's compared fields
        - <target>_external_id for every declared foreign key
        Raises on transport or payload errors; callers decide how to degrade.
        """
        ...

    async def aclose(self) -> None:
        return None
