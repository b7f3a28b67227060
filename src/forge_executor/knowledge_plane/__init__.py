"""Knowledge plane: failure classification and learning feedback."""

from __future__ import annotations

from forge_executor.knowledge_plane.failure_classifier import (
    ClassificationRule,
    Classifier,
    FailureClassifier,
    load_rules,
)
from forge_executor.knowledge_plane.feedback import (
    CollectingLearningSink,
    LearningRecord,
    LearningSink,
    LoggingLearningSink,
    Outcome,
    build_learning_record,
)

__all__ = [
    "ClassificationRule",
    "Classifier",
    "CollectingLearningSink",
    "FailureClassifier",
    "LearningRecord",
    "LearningSink",
    "LoggingLearningSink",
    "Outcome",
    "build_learning_record",
    "load_rules",
]
