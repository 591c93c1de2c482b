from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ClockEventIn(Coordinates):
    shift_id: str
    accuracy_meters: Optional[float] = Field(default=None, ge=0)
    device_timestamp: datetime


class LocationPingIn(Coordinates):
    accuracy_meters: Optional[float] = Field(default=None, ge=0)
    device_timestamp: Optional[datetime] = None


class ManagerOverrideIn(BaseModel):
    assignment_id: str
    clock_in_time: Optional[datetime] = None
    clock_out_time: Optional[datetime] = None
    break_minutes: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None

    @model_validator(mode="after")
    def coordinates_pair(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class GeocodeIn(BaseModel):
    force_refresh: bool = False
