"""
Calibration and accuracy metrics over correction history.

Used by the feedback learner's batch pass to report how well confidence
scores track what users actually confirmed.
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from sklearn.metrics import accuracy_score, mean_squared_error

logger = logging.getLogger(__name__)


class CalibrationMetrics:
    """Accumulates (confidence, accuracy) pairs from user corrections."""

    def __init__(self, n_bins: int = 10):
        self.n_bins = n_bins
        self.reset()

    def reset(self):
        """Reset all metrics."""
        self.confidences = []
        self.accuracies = []
        self.confirmed = []
        self.original_categories = []
        self.corrected_categories = []

    def update(
        self,
        confidence: float,
        accuracy: float,
        confirmed: bool,
        original_category: Optional[str] = None,
        corrected_category: Optional[str] = None,
    ):
        """Update metrics with one correction."""
        self.confidences.append(confidence)
        self.accuracies.append(accuracy)
        self.confirmed.append(1.0 if confirmed else 0.0)
        if original_category is not None:
            self.original_categories.append(original_category)
            self.corrected_categories.append(corrected_category or original_category)

    def compute_metrics(self) -> Dict[str, Any]:
        """Compute all calibration metrics."""
        if not self.confidences:
            return {}

        confidences = np.asarray(self.confidences, dtype=float)
        accuracies = np.asarray(self.accuracies, dtype=float)
        confirmed = np.asarray(self.confirmed, dtype=float)

        metrics = {
            'mean_confidence': float(np.mean(confidences)),
            'mean_accuracy': float(np.mean(accuracies)),
            'confidence_gap': float(np.mean(confidences - accuracies)),
            'brier_score': float(mean_squared_error(confirmed, confidences)),
            'expected_calibration_error': self.expected_calibration_error(confidences, accuracies),
            'total_samples': len(self.confidences),
        }
        if self.original_categories:
            metrics['category_accuracy'] = float(
                accuracy_score(self.corrected_categories, self.original_categories)
            )
        return metrics

    def expected_calibration_error(self, confidences: np.ndarray, accuracies: np.ndarray) -> float:
        """Bin-weighted mean of |confidence - accuracy| over equal-width bins."""
        edges = np.linspace(0.0, 1.0, self.n_bins + 1)
        # Rightmost bin is closed so confidence 1.0 is counted
        bins = np.clip(np.digitize(confidences, edges[1:-1], right=True), 0, self.n_bins - 1)

        error = 0.0
        for index in range(self.n_bins):
            mask = bins == index
            if not np.any(mask):
                continue
            gap = abs(float(np.mean(confidences[mask])) - float(np.mean(accuracies[mask])))
            error += gap * float(np.sum(mask)) / len(confidences)
        return error


def compute_learning_metrics(corrections: List[Any], n_bins: int = 10) -> Dict[str, Any]:
    """
    Compute calibration metrics for a batch of CorrectionRecords.

    Args:
        corrections: Correction records from the learning store
        n_bins: Number of bins for the expected calibration error

    Returns:
        Dictionary of metrics (empty when there are no corrections)
    """
    metrics = CalibrationMetrics(n_bins=n_bins)
    for record in corrections:
        metrics.update(
            confidence=record.original_confidence,
            accuracy=record.accuracy,
            confirmed=record.feedback.value == "CORRECT",
            original_category=record.original_category,
            corrected_category=record.corrected_category,
        )
    result = metrics.compute_metrics()
    if result:
        logger.info(
            f"Calibration over {result['total_samples']} corrections: "
            f"ECE {result['expected_calibration_error']:.3f}, Brier {result['brier_score']:.3f}"
        )
    return result
