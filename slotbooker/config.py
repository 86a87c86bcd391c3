"""
Configuration management using Pydantic models loaded from YAML.

The configuration doubles as the provider/service catalogue: working hours,
time-off and service offerings are validated here, once, at startup.
"""

from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .domain.exceptions import ConfigurationError
from .domain.models import BookingPolicy, Service, TimeOff, WeeklyHours


def _coerce_clock_time(value: Any) -> Any:
    # YAML 1.1 reads an unquoted 12:30 as the sexagesimal integer 750 (minutes)
    if isinstance(value, int) and not isinstance(value, bool):
        hours, minutes = divmod(value, 60)
        return time(hour=hours, minute=minutes)
    return value


class BookingPolicyConfig(BaseModel):
    """Global booking rules."""
    buffer_minutes: int = 15
    min_advance_hours: int = 2
    max_advance_days: int = 60
    slot_granularity_minutes: int = 15

    @field_validator("buffer_minutes", "min_advance_hours", "max_advance_days")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"must not be negative, got {value}")
        return value

    @field_validator("slot_granularity_minutes")
    @classmethod
    def validate_granularity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("slot_granularity_minutes must be greater than zero")
        return value

    def to_policy(self) -> BookingPolicy:
        return BookingPolicy(
            buffer_minutes=self.buffer_minutes,
            min_advance_hours=self.min_advance_hours,
            max_advance_days=self.max_advance_days,
            slot_granularity_minutes=self.slot_granularity_minutes,
        )


class WeeklyHoursConfig(BaseModel):
    """One recurring working window; day_of_week 0=Sunday, 6=Saturday."""
    day_of_week: int
    start: time
    end: time
    active: bool = True

    @field_validator("start", "end", mode="before")
    @classmethod
    def coerce_clock_time(cls, value: Any) -> Any:
        return _coerce_clock_time(value)

    @field_validator("day_of_week")
    @classmethod
    def validate_day(cls, value: int) -> int:
        if value not in range(7):
            raise ValueError(f"day_of_week must be between 0 and 6, got {value}")
        return value

    @model_validator(mode="after")
    def validate_order(self) -> "WeeklyHoursConfig":
        if self.end <= self.start:
            raise ValueError(f"window end {self.end} must be later than start {self.start}")
        return self

    def to_domain(self) -> WeeklyHours:
        return WeeklyHours(
            day_of_week=self.day_of_week,
            start_time=self.start,
            end_time=self.end,
            active=self.active,
        )


class TimeOffConfig(BaseModel):
    """Time-off entry; naive timestamps are read in the business timezone."""
    start: str
    end: str
    reason: str = ""

    @field_validator("start", "end", mode="before")
    @classmethod
    def coerce_timestamp(cls, value: Any) -> Any:
        # YAML turns unquoted dates and full timestamps into Python objects
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    @field_validator("start", "end")
    @classmethod
    def validate_timestamp(cls, value: str) -> str:
        try:
            pendulum.parse(value)
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp '{value}': {exc}") from exc
        return value

    def to_domain(self, timezone: str) -> TimeOff:
        return TimeOff(
            start=pendulum.parse(self.start, tz=timezone),
            end=pendulum.parse(self.end, tz=timezone),
            reason=self.reason,
        )


class ServiceConfig(BaseModel):
    """Catalogue entry for a bookable service."""
    id: str
    name: str
    duration_minutes: int
    price: Decimal
    active: bool = True

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, value: int) -> int:
        """Ensure service duration is positive."""
        if value <= 0:
            raise ValueError("duration_minutes must be greater than zero")
        return value

    def to_domain(self) -> Service:
        return Service(
            service_id=self.id,
            name=self.name,
            duration_minutes=self.duration_minutes,
            price=self.price,
            active=self.active,
        )


class ProviderServiceConfig(BaseModel):
    """A service offered by a provider, optionally with custom duration/price."""
    service_id: str
    duration_minutes: Optional[int] = None
    price: Optional[Decimal] = None
    active: bool = True

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("duration_minutes must be greater than zero")
        return value


class ProviderConfig(BaseModel):
    """Provider with weekly hours, time-off and offered services."""
    id: str
    name: str
    active: bool = True
    weekly_hours: List[WeeklyHoursConfig] = Field(default_factory=list)
    time_off: List[TimeOffConfig] = Field(default_factory=list)
    services: List[ProviderServiceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_windows_do_not_overlap(self) -> "ProviderConfig":
        """Windows on the same weekday must not overlap (touching is fine)."""
        by_day: Dict[int, List[WeeklyHoursConfig]] = {}
        for window in self.weekly_hours:
            by_day.setdefault(window.day_of_week, []).append(window)

        for day, windows in by_day.items():
            windows.sort(key=lambda w: w.start)
            for previous, current in zip(windows, windows[1:]):
                if current.start < previous.end:
                    raise ValueError(
                        f"Provider {self.id}: overlapping working windows on day {day} "
                        f"({previous.start}-{previous.end} and {current.start}-{current.end})"
                    )
        return self

    @model_validator(mode="after")
    def validate_unique_offerings(self) -> "ProviderConfig":
        service_ids = [offering.service_id for offering in self.services]
        duplicates = sorted({sid for sid in service_ids if service_ids.count(sid) > 1})
        if duplicates:
            raise ValueError(f"Provider {self.id}: duplicate service offerings {duplicates}")
        return self


class StoreConfig(BaseModel):
    """Booking store; no path means an in-memory store."""
    path: Optional[Path] = None
    timeout_seconds: float = 5.0

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be greater than zero")
        return value


class NotificationConfig(BaseModel):
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "America/New_York"
    booking_policy: BookingPolicyConfig
    exact_dates: bool = False
    store: StoreConfig = Field(default_factory=StoreConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    services: List[ServiceConfig] = Field(default_factory=list)
    providers: List[ProviderConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @model_validator(mode="after")
    def validate_catalogue(self) -> "AppConfig":
        """Ensure ids are unique and offerings reference known services."""
        service_ids = [service.id for service in self.services]
        provider_ids = [provider.id for provider in self.providers]

        for kind, ids in (("service", service_ids), ("provider", provider_ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"Duplicate {kind} id(s): {', '.join(duplicates)}")

        known = set(service_ids)
        for provider in self.providers:
            unknown = [o.service_id for o in provider.services if o.service_id not in known]
            if unknown:
                raise ValueError(
                    f"Provider {provider.id} offers unknown service(s): {', '.join(unknown)}"
                )
        return self

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If config is invalid or lacks a booking policy
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc

        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Any) -> "AppConfig":
        """Validate an already parsed configuration mapping."""
        if not isinstance(data, dict):
            raise ConfigurationError("Config file must contain a mapping at the root level.")

        if not data.get("booking_policy"):
            raise ConfigurationError(
                "Missing 'booking_policy' section; the booking engine cannot start without it."
            )

        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration:\n{exc}") from exc


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
