from .measurement_engine import MeasurementEngine

__all__ = ["MeasurementEngine"]
