"""Cross-encoder scorer using sentence-transformers.

Cross-encoders jointly encode query and passage, which scores relevance more
accurately than comparing separately computed embeddings. Requires the
``models`` extra.
"""

import logging

import numpy as np
from sentence_transformers import CrossEncoder

from kb_retrieval.rerankers.base import PassageScorer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "cross-encoder/ms-marco-MiniLM-L-6-v2"


class CrossEncoderScorer(PassageScorer):
    """Cross-encoder based relevance scorer.

    Single-label cross-encoders already apply a sigmoid in ``predict``, which keeps
    scores in the [0, 1] range the fallback scorer and score thresholds use. For
    heads that emit raw logits, set ``apply_sigmoid``.

    Attributes:
        model_name: HuggingFace model name.
        model: Loaded CrossEncoder model.
        device: Device for inference (cuda, cpu, mps).
        batch_size: Maximum batch size for inference.
    """

    method = "model"

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: str | None = None,
        batch_size: int = 8,
        max_length: int = 512,
        apply_sigmoid: bool = False,
    ) -> None:
        """Initialize and load the cross-encoder.

        Args:
            model_name: HuggingFace model name.
            device: Device for inference. Auto-detected if None.
            batch_size: Batch size for inference.
            max_length: Maximum sequence length for input.
            apply_sigmoid: Map raw logits to [0, 1] after prediction.
        """
        self.model_name = model_name
        self.batch_size = batch_size
        self.max_length = max_length
        self.apply_sigmoid = apply_sigmoid

        logger.info(f"Loading CrossEncoder model: {model_name}")
        self.model = CrossEncoder(model_name, device=device, max_length=max_length)
        self.device = self.model.device
        logger.info(f"CrossEncoder loaded on device: {self.device}")

    def score(
        self,
        query: str,
        passages: list[str],
        prior_scores: list[float] | None = None,
    ) -> list[float]:
        if not passages:
            return []

        raw = self.model.predict(
            [(query, passage) for passage in passages],
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        scores = np.asarray(raw, dtype=np.float64).reshape(len(passages), -1)
        # Multi-class heads: take the highest class score
        scores = scores.max(axis=1)
        if self.apply_sigmoid:
            scores = 1.0 / (1.0 + np.exp(-scores))
        return [float(s) for s in scores]
