import json
import os

from rapidfuzz import fuzz, process

from ledgerflow.logger import get_logger

from .base import Classifier, Prediction

logger = get_logger(__name__)


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


class MemoryMatcher(Classifier):
    """Remembers confirmed descriptions and recalls them exactly or fuzzily."""

    def __init__(self, data_path: str = "memory.json", threshold: float = 90.0) -> None:
        self.data_path = data_path
        self.threshold = threshold
        self.memory: dict[str, str] = {}  # normalized description -> label
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                self.memory = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("[ML] Corrupt memory file %s, starting empty.", self.data_path)
            self.memory = {}

    def save(self) -> None:
        directory = os.path.dirname(self.data_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.data_path, "w", encoding="utf-8") as handle:
            json.dump(self.memory, handle, indent=2)

    def classify(self, text: str, valid_labels: set[str] | None = None) -> Prediction | None:
        if not self.memory or not text:
            return None
        key = _normalize(text)

        label = self.memory.get(key)
        if label is not None and (valid_labels is None or label in valid_labels):
            return Prediction(label=label, confidence=1.0, source="memory_exact")

        candidates = {
            description: label
            for description, label in self.memory.items()
            if valid_labels is None or label in valid_labels
        }
        if not candidates:
            return None
        result = process.extractOne(key, candidates.keys(), scorer=fuzz.token_sort_ratio)
        if result:
            match_description, score, _ = result
            if score >= self.threshold:
                return Prediction(
                    label=candidates[match_description],
                    confidence=score / 100.0,
                    source="memory_fuzzy",
                )
        return None

    def learn(self, text: str, label: str) -> None:
        if not text:
            return
        self.memory[_normalize(text)] = label
        self.save()

    def forget_label(self, label: str) -> None:
        self.memory = {key: value for key, value in self.memory.items() if value != label}
        self.save()
