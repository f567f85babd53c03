"""
Tests for calibration metrics.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai.evaluation import CalibrationMetrics, compute_learning_metrics
from vatdoc_ai.learning.records import CorrectionRecord, FeedbackTag


def record(confidence, accuracy, feedback, original_category="SALES", corrected_category=None):
    return CorrectionRecord(
        id=f"c-{confidence}",
        document_id=None,
        document_type="INVOICE",
        extraction_method="AI_VISION",
        feedback=feedback,
        original_confidence=confidence,
        original_amounts=[10.0],
        corrected_amounts=[10.0],
        accuracy=accuracy,
        original_category=original_category,
        corrected_category=corrected_category,
    )


class TestCalibrationMetrics:
    """Test cases for CalibrationMetrics."""

    def setup_method(self):
        """Set up test fixtures."""
        self.metrics = CalibrationMetrics()

    def test_empty_metrics(self):
        """Test no samples gives no metrics."""
        assert self.metrics.compute_metrics() == {}

    def test_two_corrections(self):
        """Test Brier score, ECE and category accuracy on two corrections."""
        self.metrics.update(0.85, 1.0, True, "SALES", "SALES")
        self.metrics.update(0.75, 0.2, False, "SALES", "PURCHASES")

        result = self.metrics.compute_metrics()

        assert result['total_samples'] == 2
        assert result['mean_confidence'] == pytest.approx(0.8)
        assert result['mean_accuracy'] == pytest.approx(0.6)
        assert result['confidence_gap'] == pytest.approx(0.2)
        assert result['brier_score'] == pytest.approx(0.2925)
        assert result['expected_calibration_error'] == pytest.approx(0.35)
        assert result['category_accuracy'] == pytest.approx(0.5)

    def test_perfectly_calibrated_bin(self):
        """Test a bin whose mean confidence equals its accuracy adds no error."""
        confidences = np.array([0.95, 0.95])
        accuracies = np.array([1.0, 0.9])
        assert self.metrics.expected_calibration_error(confidences, accuracies) == pytest.approx(0.0)

    def test_confidence_of_one_is_binned(self):
        """Test confidence 1.0 falls into the last bin."""
        error = self.metrics.expected_calibration_error(np.array([1.0]), np.array([0.0]))
        assert error == pytest.approx(1.0)

    def test_reset(self):
        """Test reset clears accumulated samples."""
        self.metrics.update(0.5, 0.5, True)
        self.metrics.reset()
        assert self.metrics.compute_metrics() == {}


class TestLearningMetrics:
    """Test cases for metrics over correction records."""

    def test_records_are_aggregated(self):
        """Test CORRECT feedback counts as a confirmed outcome."""
        corrections = [
            record(0.85, 1.0, FeedbackTag.CORRECT),
            record(0.75, 0.2, FeedbackTag.INCORRECT, corrected_category="PURCHASES"),
        ]
        result = compute_learning_metrics(corrections)

        assert result['brier_score'] == pytest.approx(0.2925)
        assert result['expected_calibration_error'] == pytest.approx(0.35)
        assert result['category_accuracy'] == pytest.approx(0.5)

    def test_no_records(self):
        """Test an empty batch gives no metrics."""
        assert compute_learning_metrics([]) == {}
