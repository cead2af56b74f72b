"""
Pydantic schemas for sensor payloads, panel specs and API responses.
"""
from typing import Optional
from pydantic import BaseModel, Field


# ============ Sensor Payload ============

class SensorPayload(BaseModel):
    """
    Latest environmental sensor reading as published by the station.

    Field names follow the station's camelCase JSON; snake_case names are
    accepted as well.
    """
    timestamp: str
    error_flag: float = Field(0, alias="errorFlag")
    wind_velocity: float = Field(0, alias="windVelocity")
    wind_direction: float = Field(0, alias="windDirection")
    temperature: float = 0
    humidity: float = 0
    air_pressure: float = Field(0, alias="airPressure")
    illuminance: float = 0
    rain_level: float = Field(0, alias="rainLevel")
    ultra_violet_a: float = Field(0, alias="ultraVioletA")
    ultra_violet_b: float = Field(0, alias="ultraVioletB")
    acceleration_x: float = Field(0, alias="accelerationX")
    acceleration_y: float = Field(0, alias="accelerationY")
    acceleration_z: float = Field(0, alias="accelerationZ")
    inclination_xz: float = Field(0, alias="inclinationXZ")
    inclination_yz: float = Field(0, alias="inclinationYZ")
    max_wind_velocity: float = Field(0, alias="maxWindVelocity")
    direct_max_wind_velocity: float = Field(0, alias="directMaxWindVelocity")
    max_inst_wind_velocity: float = Field(0, alias="maxInstWindVelocity")
    direct_max_inst_wind_velocity: float = Field(0, alias="directMaxInstWindVelocity")

    class Config:
        populate_by_name = True


# ============ Panels ============

class SensorFieldSpec(BaseModel):
    """One display slot of a panel. An empty key marks a placeholder."""
    label: str
    unit: str = ""
    key: str = ""
    digit: int = Field(0, ge=0)

    class Config:
        frozen = True

    @property
    def is_placeholder(self) -> bool:
        return not self.key


class SensorReading(BaseModel):
    """Mutable display state for one slot."""
    label: str
    unit: str = ""
    key: str = ""
    digit: int = 0
    value: str = ""

    @classmethod
    def from_spec(cls, spec: SensorFieldSpec) -> "SensorReading":
        return cls(label=spec.label, unit=spec.unit, key=spec.key, digit=spec.digit)


# ============ Dashboard API ============

class PanelResponse(BaseModel):
    """Ordered readings of one panel."""
    name: str
    readings: list[SensorReading]


class StreamStatusResponse(BaseModel):
    """Current stream session, if any."""
    session_id: str
    kind: str   # live, snapshot
    phase: str  # LOADING, PLAYING, PAUSED, FROZEN, STALLED


class DashboardStateResponse(BaseModel):
    """Everything the presentation layer needs to paint the dashboard."""
    mode: str  # IDLE, LIVE, SNAPSHOT
    is_polling: bool
    captured_at: Optional[str] = None
    timestamp_label: str
    stream: Optional[StreamStatusResponse] = None
    panels: list[PanelResponse]


class ModeChangeResponse(BaseModel):
    """Response after a mode selection."""
    mode: str
    is_polling: bool
    stream: Optional[StreamStatusResponse] = None
