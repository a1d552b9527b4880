from abc import ABC, abstractmethod

from pydantic import BaseModel


class Prediction(BaseModel):
    label: str
    confidence: float  # 0.0 to 1.0
    source: str  # "memory_exact", "memory_fuzzy", "tfidf"


class Classifier(ABC):
    @abstractmethod
    def classify(self, text: str, valid_labels: set[str] | None = None) -> Prediction | None:
        """Predict a label for the text, or None when not confident enough."""

    @abstractmethod
    def learn(self, text: str, label: str) -> None:
        """Record a confirmed text/label pair."""

    @abstractmethod
    def forget_label(self, label: str) -> None:
        """Drop every example carrying the label."""
