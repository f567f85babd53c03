"""Calibration metrics over correction history."""

from .metrics import CalibrationMetrics, compute_learning_metrics

__all__ = ["CalibrationMetrics", "compute_learning_metrics"]
