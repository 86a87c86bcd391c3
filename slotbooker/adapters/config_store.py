"""
Policy store backed by the validated application configuration.
"""

from typing import Dict, List

from pendulum import DateTime

from ..config import AppConfig, ProviderConfig
from ..domain.exceptions import NotFoundError, PolicyViolationError
from ..domain.intervals import overlaps
from ..domain.models import (
    BookingPolicy,
    Provider,
    Service,
    ServiceOffering,
    TimeOff,
    TimeRange,
    WeeklyHours,
)


class ConfigPolicyStore:
    """
    Read-only provider rules, service catalogue and booking policy.

    Domain objects are built once from ``AppConfig``; time-off entries are
    materialised in the configured business timezone.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self._policy = config.booking_policy.to_policy()
        self._providers: Dict[str, ProviderConfig] = {p.id: p for p in config.providers}
        self._services: Dict[str, Service] = {s.id: s.to_domain() for s in config.services}
        self._weekly_hours: Dict[str, List[WeeklyHours]] = {
            p.id: [w.to_domain() for w in p.weekly_hours] for p in config.providers
        }
        self._time_off: Dict[str, List[TimeOff]] = {
            p.id: [t.to_domain(config.timezone) for t in p.time_off] for p in config.providers
        }

    def _provider_config(self, provider_id: str) -> ProviderConfig:
        provider = self._providers.get(provider_id)
        if provider is None or not provider.active:
            raise NotFoundError(f"Provider {provider_id} not found")
        return provider

    def get_service(self, service_id: str) -> Service:
        service = self._services.get(service_id)
        if service is None or not service.active:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    def get_service_offering(self, provider_id: str, service_id: str) -> ServiceOffering:
        """
        Resolve a service as offered by a provider.

        Raises:
            NotFoundError: Unknown or inactive provider or service
            PolicyViolationError: The provider does not offer the service
        """
        provider = self._provider_config(provider_id)
        service = self.get_service(service_id)

        for offering in provider.services:
            if offering.service_id == service_id and offering.active:
                return ServiceOffering(
                    provider_id=provider.id,
                    provider_name=provider.name,
                    service_id=service.service_id,
                    service_name=service.name,
                    duration_minutes=offering.duration_minutes or service.duration_minutes,
                    price=offering.price if offering.price is not None else service.price,
                )

        raise PolicyViolationError(f"{provider.name} does not offer {service.name}")

    def get_service_duration(self, provider_id: str, service_id: str) -> int:
        return self.get_service_offering(provider_id, service_id).duration_minutes

    def get_weekly_hours(self, provider_id: str) -> List[WeeklyHours]:
        self._provider_config(provider_id)
        return [w for w in self._weekly_hours[provider_id] if w.active]

    def get_time_off(
        self,
        provider_id: str,
        range_start: DateTime,
        range_end: DateTime
    ) -> List[TimeOff]:
        """Time-off entries of the provider overlapping ``[range_start, range_end)``."""
        self._provider_config(provider_id)
        requested = TimeRange(start=range_start, end=range_end)
        return [entry for entry in self._time_off[provider_id] if overlaps(entry.time_range, requested)]

    def get_booking_policy(self) -> BookingPolicy:
        return self._policy

    def list_providers(self) -> List[Provider]:
        """Active providers in configuration order."""
        return [
            Provider(provider_id=p.id, name=p.name, active=p.active)
            for p in self.config.providers
            if p.active
        ]

    def offerings_for(self, provider_id: str) -> List[ServiceOffering]:
        """Active services the provider offers, overrides applied."""
        provider = self._provider_config(provider_id)
        offerings: List[ServiceOffering] = []
        for offering in provider.services:
            service = self._services[offering.service_id]
            if offering.active and service.active:
                offerings.append(self.get_service_offering(provider_id, offering.service_id))
        return offerings
