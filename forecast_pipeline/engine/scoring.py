"""Forecaster scoring — accuracy and Brier score over graded predictions."""

from __future__ import annotations

from collections.abc import Iterable

from forecast_pipeline.models.prediction import Outcome, Prediction


def brier_score(pairs: Iterable[tuple[float, Outcome]]) -> float | None:
    """Mean of (confidence − outcome)², outcome = 1 for CORRECT else 0.

    Only terminal outcomes count.  Lower is better; None without data.
    """
    terms = [
        (conf - (1.0 if outcome is Outcome.CORRECT else 0.0)) ** 2
        for conf, outcome in pairs
        if outcome.is_terminal
    ]
    if not terms:
        return None
    return sum(terms) / len(terms)


def forecaster_metrics(predictions: Iterable[Prediction]) -> dict:
    """Accuracy counts a PARTIALLY_CORRECT prediction as half a hit."""
    preds = list(predictions)
    graded = [p for p in preds if p.outcome.is_terminal]
    correct = sum(p.outcome is Outcome.CORRECT for p in graded)
    partial = sum(p.outcome is Outcome.PARTIALLY_CORRECT for p in graded)
    incorrect = sum(p.outcome is Outcome.INCORRECT for p in graded)
    accuracy = (correct + 0.5 * partial) / len(graded) if graded else None
    brier = brier_score((p.confidence, p.outcome) for p in graded)
    return {
        "totalPredictions": len(preds),
        "pendingPredictions": len(preds) - len(graded),
        "gradedPredictions": len(graded),
        "correct": correct,
        "partiallyCorrect": partial,
        "incorrect": incorrect,
        "accuracy": round(accuracy, 4) if accuracy is not None else None,
        "brierScore": round(brier, 4) if brier is not None else None,
    }
