import os
import re
import threading

from ledgerflow.classifiers.base import Classifier, Prediction
from ledgerflow.classifiers.memory import MemoryMatcher
from ledgerflow.classifiers.tfidf import TfidfClassifier
from ledgerflow.core import settings
from ledgerflow.logger import get_logger

logger = get_logger(__name__)

_SAFE_USER_DIR = re.compile(r"[^A-Za-z0-9_.-]")


class CategoryLearner:
    """
    Per-user local models trained from confirmed categorizations.

    Each user gets a description memory (checked first) and a TF-IDF
    classifier, persisted under ``<data_dir>/models/<user>``. Labels are
    category ids rendered as strings.
    """

    def __init__(
        self,
        data_dir: str = ".",
        memory_threshold: float | None = None,
        tfidf_threshold: float | None = None,
    ) -> None:
        self.data_dir = data_dir
        self.memory_threshold = (
            memory_threshold
            if memory_threshold is not None
            else settings.get_env_float("MEMORY_THRESHOLD", settings.DEFAULT_MEMORY_THRESHOLD)
        )
        self.tfidf_threshold = (
            tfidf_threshold
            if tfidf_threshold is not None
            else settings.get_env_float("TFIDF_THRESHOLD", settings.DEFAULT_TFIDF_THRESHOLD)
        )
        self._classifiers: dict[str, list[Classifier]] = {}
        self._user_locks: dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def _user_dir(self, user_id: str) -> str:
        return os.path.join(self.data_dir, "models", _SAFE_USER_DIR.sub("_", user_id))

    def classifiers_for(self, user_id: str) -> list[Classifier]:
        with self._lock:
            classifiers = self._classifiers.get(user_id)
            if classifiers is None:
                user_dir = self._user_dir(user_id)
                classifiers = [
                    MemoryMatcher(
                        data_path=os.path.join(user_dir, "memory.json"),
                        threshold=self.memory_threshold,
                    ),
                    TfidfClassifier(
                        data_path=os.path.join(user_dir, "tfidf.pkl"),
                        threshold=self.tfidf_threshold,
                    ),
                ]
                self._classifiers[user_id] = classifiers
            return classifiers

    def _user_lock(self, user_id: str) -> threading.RLock:
        with self._lock:
            return self._user_locks.setdefault(user_id, threading.RLock())

    def predict(self, user_id: str, text: str, valid_category_ids: set[int] | None = None) -> Prediction | None:
        valid_labels = {str(cid) for cid in valid_category_ids} if valid_category_ids is not None else None
        with self._user_lock(user_id):
            for classifier in self.classifiers_for(user_id):
                name = classifier.__class__.__name__
                result = classifier.classify(text, valid_labels=valid_labels)
                if result:
                    logger.debug(
                        f"[ML] {name} predicted category {result.label} "
                        f"(confidence: {result.confidence:.2f}) for '{text[:50]}'"
                    )
                    return result
        return None

    def learn(self, user_id: str, text: str, category_id: int) -> None:
        # Classifiers refit and save in place; one writer per user at a time.
        with self._user_lock(user_id):
            for classifier in self.classifiers_for(user_id):
                classifier.learn(text, str(category_id))

    def forget_category(self, user_id: str, category_id: int) -> None:
        with self._user_lock(user_id):
            for classifier in self.classifiers_for(user_id):
                classifier.forget_label(str(category_id))
        logger.info("[ML] Dropped training data for category %s of user %s.", category_id, user_id)
