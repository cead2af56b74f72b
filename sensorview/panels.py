"""
Display layout of the station dashboard.

Two panels, painted as two table rows. Order is display-significant.
digit = number of decimal places kept when a reading is formatted.
"""
from sensorview.schemas import SensorFieldSpec, SensorReading


PLACEHOLDER = SensorFieldSpec(label="", unit="", key="", digit=0)

# Environmental readings (row 1)
PRIMARY_PANEL: tuple[SensorFieldSpec, ...] = (
    SensorFieldSpec(label="温度", unit="℃", key="temperature", digit=1),
    SensorFieldSpec(label="湿度", unit="%", key="humidity", digit=0),
    SensorFieldSpec(label="気圧", unit="hPa", key="airPressure", digit=0),
    SensorFieldSpec(label="風速", unit="m/s", key="windVelocity", digit=1),
    SensorFieldSpec(label="風向き", unit="deg", key="windDirection", digit=1),
    SensorFieldSpec(label="最大瞬間風速", unit="m/s", key="maxInstWindVelocity", digit=1),
    SensorFieldSpec(label="最大瞬間時風向き", unit="deg", key="directMaxInstWindVelocity", digit=1),
    SensorFieldSpec(label="照度", unit="lx", key="illuminance", digit=0),
    SensorFieldSpec(label="UV", unit="w/m2", key="ultraVioletA", digit=1),
)

# Attitude and status readings (row 2)
SECONDARY_PANEL: tuple[SensorFieldSpec, ...] = (
    SensorFieldSpec(label="レインレベル", unit="", key="rainLevel", digit=0),
    SensorFieldSpec(label="加速度X軸", unit="G", key="accelerationX", digit=1),
    SensorFieldSpec(label="加速度Y軸", unit="G", key="accelerationY", digit=1),
    SensorFieldSpec(label="加速度Z軸", unit="G", key="accelerationZ", digit=1),
    SensorFieldSpec(label="傾きXZ軸", unit="deg", key="inclinationXZ", digit=1),
    SensorFieldSpec(label="傾きYZ軸", unit="deg", key="inclinationYZ", digit=1),
    SensorFieldSpec(label="エラーフラグ", unit="", key="errorFlag", digit=0),
    PLACEHOLDER,
    PLACEHOLDER,
)

DEFAULT_PANELS: dict[str, tuple[SensorFieldSpec, ...]] = {
    "primary": PRIMARY_PANEL,
    "secondary": SECONDARY_PANEL,
}


def build_readings(panels: dict[str, tuple[SensorFieldSpec, ...]]) -> dict[str, list[SensorReading]]:
    """Blank readings laid out like the given panels."""
    return {
        name: [SensorReading.from_spec(spec) for spec in specs]
        for name, specs in panels.items()
    }
