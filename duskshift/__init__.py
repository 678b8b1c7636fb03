from .brain import ColorIntensity, TemperatureCurve
from .controller import CycleState, DisplayController, RuntimeState
from .settings import GeoInfo, Settings, load_settings, save_settings
from .smoother import ValueSmoother
from .timers import AlignedTimer, RepeatingTimer, Scheduler

__all__ = [
    "AlignedTimer",
    "ColorIntensity",
    "CycleState",
    "DisplayController",
    "GeoInfo",
    "RepeatingTimer",
    "RuntimeState",
    "Scheduler",
    "Settings",
    "TemperatureCurve",
    "ValueSmoother",
    "load_settings",
    "save_settings",
]
