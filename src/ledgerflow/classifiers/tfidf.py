import os
import pickle

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import SGDClassifier
from sklearn.pipeline import Pipeline

from ledgerflow.logger import get_logger

from .base import Classifier, Prediction

logger = get_logger(__name__)


def _build_pipeline() -> Pipeline:
    return Pipeline([
        ("tfidf", TfidfVectorizer(analyzer="char_wb", ngram_range=(3, 5), min_df=1)),
        ("clf", SGDClassifier(loss="log_loss", random_state=42)),
    ])


class TfidfClassifier(Classifier):
    def __init__(self, data_path: str = "tfidf.pkl", threshold: float = 0.5) -> None:
        self.data_path = data_path
        self.threshold = threshold
        self.pipeline = _build_pipeline()
        self.examples: list[str] = []
        self.labels: list[str] = []
        self.is_fitted = False
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, "rb") as handle:
                data = pickle.load(handle)
        except (pickle.UnpicklingError, EOFError):
            logger.warning("[ML] Corrupt model file %s, starting empty.", self.data_path)
            return
        self.examples = data.get("examples", [])
        self.labels = data.get("labels", [])
        self._fit()

    def save(self) -> None:
        directory = os.path.dirname(self.data_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.data_path, "wb") as handle:
            pickle.dump({"examples": self.examples, "labels": self.labels}, handle)

    def _fit(self) -> None:
        # SGD needs at least two classes.
        if len(set(self.labels)) < 2:
            self.pipeline = _build_pipeline()
            self.is_fitted = False
            return
        self.pipeline.fit(self.examples, self.labels)
        self.is_fitted = True

    def classify(self, text: str, valid_labels: set[str] | None = None) -> Prediction | None:
        if not self.is_fitted or not text:
            return None

        probs = self.pipeline.predict_proba([text])[0]
        best = probs.argmax()
        confidence = float(probs[best])
        label = str(self.pipeline.classes_[best])

        if confidence < self.threshold:
            return None
        if valid_labels is not None and label not in valid_labels:
            return None
        return Prediction(label=label, confidence=confidence, source="tfidf")

    def learn(self, text: str, label: str) -> None:
        if not text:
            return
        self.examples.append(text)
        self.labels.append(label)
        # Personal-finance volumes are small enough to refit on every example.
        self._fit()
        self.save()

    def forget_label(self, label: str) -> None:
        kept = [(example, lbl) for example, lbl in zip(self.examples, self.labels) if lbl != label]
        self.examples = [example for example, _ in kept]
        self.labels = [lbl for _, lbl in kept]
        self._fit()
        self.save()
